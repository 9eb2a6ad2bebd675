"""Configuration loader.

Loads config.yaml and validates it against the Pydantic schema. There is no
process-wide config singleton: callers load a config once (CLI command, app
lifespan) and pass it to the objects that need it.

Usage:
    from mailrelay.config import load_config

    config = load_config()  # MAILRELAY_CONFIG_PATH or config/config.yaml
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailrelay.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from mailrelay.core.errors import ConfigLoadError, ConfigValidationError
from mailrelay.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")


def get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get("MAILRELAY_CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into actionable messages.

    Args:
        error: Pydantic ValidationError

    Returns:
        Formatted error message with one line per field error
    """
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])
        err_type = err["type"]

        if err_type == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        elif err_type == "string_type":
            messages.append(f"  - Field '{field_path}' must be a string")
        elif err_type in ("int_type", "int_parsing"):
            messages.append(f"  - Field '{field_path}' must be an integer")
        else:
            messages.append(f"  - Field '{field_path}': {err['msg']}")

    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file.

    Raises:
        ConfigLoadError: If file not found or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it, or point MAILRELAY_CONFIG_PATH at an existing file."
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate config data against the Pydantic schema.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        error_details = _format_validation_errors(e)
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{error_details}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Upgrade mailrelay or downgrade the config."
        )

    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Args:
        path: Optional path to config file. Defaults to MAILRELAY_CONFIG_PATH
              or config/config.yaml.

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or get_config_path()

    logger.debug("Loading configuration", path=str(config_path))

    data = _load_yaml(config_path)
    config = _validate_config(data, config_path)

    logger.info(
        "Configuration loaded successfully",
        path=str(config_path),
        schema_version=config.schema_version,
        database=config.database.path,
    )

    return config


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file and describe the result.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - database: {config.database.path}\n"
        f"  - server: {config.server.host}:{config.server.port}\n"
        f"  - smtp: {config.smtp.host}:{config.smtp.port}\n"
        f"  - rate limit: "
        + (
            f"{config.rate_limit.requests_per_second}/s burst {config.rate_limit.burst}"
            if config.rate_limit.enabled
            else "disabled"
        ),
    )
