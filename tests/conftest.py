"""Pytest fixtures and configuration for sender categorizer tests.

Provides common fixtures for configuration, database, and rate limiter state.
"""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from sender_categorizer.config import CONFIG_PATH_ENV, reset_config
from sender_categorizer.config_schema import AppConfig
from sender_categorizer.core.rate_limiter import reset_buckets
from sender_categorizer.db.store import DatabaseStore


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def reset_rate_limiters() -> Generator[None, None, None]:
    """Start every test with full rate limit buckets."""
    reset_buckets()
    yield
    reset_buckets()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

auth:
  client_id: "test-client-id"
  tenant_id: "test-tenant-id"

categorize:
  page_size: 20
  fallback_concurrency: 2

default_categories:
  - name: "Newsletter"
  - name: "Receipt"
    description: "Receipts and invoices"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "auth": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
        },
        "categorize": {
            "page_size": 20,
            "fallback_snippet_count": 3,
            "fallback_concurrency": 1,
        },
        "llm_logging": {"enabled": True},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Point SENDER_CATEGORIZER_CONFIG_PATH at the temporary config file."""
    old_value = os.environ.get(CONFIG_PATH_ENV)
    os.environ[CONFIG_PATH_ENV] = str(config_file)
    yield
    if old_value is None:
        del os.environ[CONFIG_PATH_ENV]
    else:
        os.environ[CONFIG_PATH_ENV] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore in a temp directory."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s
