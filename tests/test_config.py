"""Tests for config loading, validation and hot-reload."""

import os
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError

from sender_categorizer.config import (
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from sender_categorizer.config_schema import AppConfig
from sender_categorizer.core.errors import ConfigLoadError, ConfigValidationError


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_valid_config(self, config_file: Path) -> None:
        config = load_config(config_file)

        assert config.auth.client_id == "test-client-id"
        assert config.categorize.page_size == 20
        assert config.categorize.fallback_concurrency == 2
        assert [c.name for c in config.default_categories] == ["Newsletter", "Receipt"]

    def test_defaults_for_missing_sections(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 1\n")

        config = load_config(path)

        assert config.auth is None
        assert config.categorize.fallback_concurrency == 1
        assert config.categorize.fallback_snippet_count == 3
        assert config.llm_logging.enabled is True
        assert "Personal" in [c.name for c in config.default_categories]

    def test_missing_file(self, temp_config_dir: Path) -> None:
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(temp_config_dir / "missing.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("categorize: [unclosed\n")

        with pytest.raises(ConfigLoadError, match="Failed to parse YAML"):
            load_config(path)

    def test_non_mapping_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigLoadError, match="YAML mapping"):
            load_config(path)

    def test_validation_error_names_field(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("categorize:\n  page_size: 500\n")

        with pytest.raises(ConfigValidationError, match="categorize.page_size"):
            load_config(path)

    def test_newer_schema_version_rejected(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\n")

        with pytest.raises(ConfigValidationError, match="newer than"):
            load_config(path)


class TestSchemaValidation:
    """Tests for AppConfig field validators."""

    def test_duplicate_default_categories(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["default_categories"] = [{"name": "Work"}, {"name": "Work"}]

        with pytest.raises(ValidationError, match="Duplicate category names"):
            AppConfig(**sample_config_dict)

    def test_blank_category_name(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["default_categories"] = [{"name": "   "}]

        with pytest.raises(ValidationError):
            AppConfig(**sample_config_dict)

    def test_category_name_trimmed(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["default_categories"] = [{"name": " Travel "}]

        assert AppConfig(**sample_config_dict).default_categories[0].name == "Travel"

    def test_path_traversal_rejected(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["database"] = {"path": "../elsewhere.db"}

        with pytest.raises(ValidationError, match="path traversal"):
            AppConfig(**sample_config_dict)

    def test_fallback_concurrency_bounds(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["categorize"]["fallback_concurrency"] = 0

        with pytest.raises(ValidationError):
            AppConfig(**sample_config_dict)


class TestConfigSingleton:
    """Tests for get_config and hot-reload."""

    def test_get_config_uses_env_path(self, set_config_env: None) -> None:
        config = get_config()

        assert config.categorize.page_size == 20
        assert get_config() is config

    def test_reload_when_file_changes(self, set_config_env: None, config_file: Path) -> None:
        get_config()
        config_file.write_text("categorize:\n  page_size: 10\n")
        mtime = config_file.stat().st_mtime + 5
        os.utime(config_file, (mtime, mtime))

        assert reload_config_if_changed() is True
        assert get_config().categorize.page_size == 10

    def test_reload_unchanged(self, set_config_env: None) -> None:
        get_config()
        assert reload_config_if_changed() is False

    def test_invalid_reload_keeps_previous(
        self, set_config_env: None, config_file: Path
    ) -> None:
        original = get_config()
        config_file.write_text("categorize:\n  page_size: -1\n")
        mtime = config_file.stat().st_mtime + 5
        os.utime(config_file, (mtime, mtime))

        assert reload_config_if_changed() is False
        assert get_config() is original


class TestValidateConfigFile:
    def test_valid(self, config_file: Path) -> None:
        is_valid, message = validate_config_file(config_file)

        assert is_valid
        assert "schema version 1" in message
        assert "2 default categories" in message

    def test_invalid(self, temp_config_dir: Path) -> None:
        is_valid, message = validate_config_file(temp_config_dir / "missing.yaml")

        assert not is_valid
        assert message.startswith("Load error")
