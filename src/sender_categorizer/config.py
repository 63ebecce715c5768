"""Configuration loading for the sender categorizer.

The YAML file is parsed, validated into an AppConfig and cached as a
process-wide singleton. Callers that run many pages in one process (the
`categorize --all` loop, a scheduler wrapping the CLI) can pick up edits with
reload_config_if_changed(); an edit that fails validation is ignored and the
last good config stays active.

Usage:
    from sender_categorizer.config import get_config, reload_config_if_changed

    config = get_config()

    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from sender_categorizer.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from sender_categorizer.core.errors import ConfigLoadError, ConfigValidationError
from sender_categorizer.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "SENDER_CATEGORIZER_CONFIG_PATH"

# Friendlier wording for the pydantic error types users hit most
_ERROR_TEMPLATES = {
    "missing": "Missing required field '{field}'",
    "string_type": "Field '{field}' must be a string",
    "int_type": "Field '{field}' must be an integer",
    "int_parsing": "Field '{field}' must be an integer",
    "bool_type": "Field '{field}' must be true or false",
    "bool_parsing": "Field '{field}' must be true or false",
}


@dataclass
class _LoadedConfig:
    config: AppConfig
    path: Path
    mtime: float


_lock = threading.Lock()
_loaded: _LoadedConfig | None = None


def resolve_config_path() -> Path:
    """Config path from SENDER_CATEGORIZER_CONFIG_PATH, else config/config.yaml."""
    override = os.environ.get(CONFIG_PATH_ENV)
    return Path(override) if override else DEFAULT_CONFIG_PATH


def describe_validation_error(error: ValidationError) -> str:
    """One indented line per field error, naming the dotted field path."""
    lines = []
    for detail in error.errors():
        field = ".".join(str(part) for part in detail["loc"]) or "<root>"
        template = _ERROR_TEMPLATES.get(detail["type"])
        text = template.format(field=field) if template else f"Field '{field}': {detail['msg']}"
        lines.append(f"  - {text}")
    return "\n".join(lines)


def _read_mapping(path: Path) -> dict[str, Any]:
    """Parse the YAML file into a dict (an empty file is an empty dict).

    Raises:
        ConfigLoadError: Missing file, unparseable YAML, or a non-mapping document
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example to {path} and fill in auth.client_id."
        ) from None
    except OSError as e:
        raise ConfigLoadError(f"Cannot read configuration file {path}: {e}") from e

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigLoadError(
            f"Configuration file {path} must be a YAML mapping, got {type(document).__name__}"
        )
    return document


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a config file, bypassing the cache.

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If the contents do not match the schema
    """
    config_path = path or resolve_config_path()
    logger.debug("config_loading", path=str(config_path))

    try:
        config = AppConfig(**_read_mapping(config_path))
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {config_path}:\n{describe_validation_error(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{config_path} declares schema_version {config.schema_version}, which is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. Upgrade sender-categorizer."
        )

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        default_categories=len(config.default_categories),
    )
    return config


def get_config() -> AppConfig:
    """Cached config, loaded from disk on first use.

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If the contents do not match the schema
    """
    global _loaded

    with _lock:
        if _loaded is None:
            path = resolve_config_path()
            config = load_config(path)
            _loaded = _LoadedConfig(config=config, path=path, mtime=path.stat().st_mtime)
        return _loaded.config


def reload_config_if_changed() -> bool:
    """Re-read the cached config if its file was modified.

    Returns:
        True when a new config was loaded. False when nothing is cached yet,
        the file is unchanged, or the edited file is invalid.
    """
    with _lock:
        if _loaded is None:
            return False

        try:
            mtime = _loaded.path.stat().st_mtime
        except OSError as e:
            logger.warning("config_mtime_check_failed", path=str(_loaded.path), error=str(e))
            return False

        if mtime <= _loaded.mtime:
            return False

        # Record the mtime either way so a broken edit is reported once
        _loaded.mtime = mtime
        try:
            _loaded.config = load_config(_loaded.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_failed", path=str(_loaded.path), error=str(e))
            return False

        logger.info("config_reloaded", path=str(_loaded.path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file without touching the cache.

    Returns:
        (is_valid, human-readable summary or error)
    """
    config_path = path or resolve_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    summary = [
        f"Configuration valid (schema version {config.schema_version})",
        f"  - auth: {'configured' if config.auth else 'not configured (login disabled)'}",
        f"  - database: {config.database.path}",
        f"  - page size: {config.categorize.page_size}, "
        f"fallback concurrency: {config.categorize.fallback_concurrency}",
        f"  - {len(config.default_categories)} default categories",
    ]
    return True, "\n".join(summary)


def reset_config() -> None:
    """Forget the cached config. Used by tests."""
    global _loaded
    with _lock:
        _loaded = None
