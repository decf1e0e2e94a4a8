"""Configuration loader: YAML file validated by Pydantic, plus environment."""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import ValidationError

from movenotify.logging import get_logger

from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .models import AppConfig
from .validators import check_for_warnings, emit_warnings

logger = get_logger(__name__, component="config")

DEFAULT_CONFIG_LOCATIONS = (
    Path("config.yaml"),
    Path("config") / "config.yaml",
)


def load_config(config_path: Optional[Path] = None) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load and validate configuration from a YAML file and environment variables.

    File lookup:
    1. ``config_path`` if given (must exist)
    2. ./config.yaml
    3. ./config/config.yaml
    4. none found: built-in defaults

    Returns:
        Tuple of (AppConfig, EnvironmentConfig)

    Raises:
        ConfigurationError: If the file is unreadable or invalid
    """
    config_file = _find_config_file(config_path)
    config_dict = _read_yaml(config_file) if config_file else {}

    app_config = build_app_config(config_dict)

    try:
        env_config = load_environment_config()
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load environment configuration: {e}",
            suggestions=["Check the variables in your .env file"],
        ) from e

    return app_config, env_config


def build_app_config(config_dict: Dict[str, Any]) -> AppConfig:
    """Validate a raw configuration mapping into an :class:`AppConfig`.

    Raises:
        ConfigurationError: With one entry per Pydantic validation error
    """
    warnings = check_for_warnings(config_dict)
    if warnings:
        emit_warnings(warnings)

    try:
        return AppConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigurationError(
            "Configuration validation failed",
            errors=[_describe_error(error) for error in e.errors()],
            suggestions=[
                "Review config.example.yaml for correct format",
                "Durations look like '30s', '10m', '1h' or 'PT10M'",
                "Verify field types match the expected schema",
            ],
        ) from e


def _describe_error(error: Dict[str, Any]) -> str:
    field_path = " -> ".join(str(loc) for loc in error["loc"]) or "(root)"
    error_type = error["type"]

    if error_type == "missing":
        return f"Missing required field: {field_path}"
    if error_type.endswith("_type") or error_type.endswith("_parsing"):
        return f"Invalid type for '{field_path}': {error['msg']} (got {error.get('input')!r})"
    if error_type == "enum":
        return f"Invalid value for '{field_path}': {error['msg']}"
    return f"{field_path}: {error['msg']}"


def _read_yaml(config_file: Path) -> Dict[str, Any]:
    try:
        with open(config_file, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {e}",
            suggestions=[
                "Check YAML syntax in your config file",
                "Ensure proper indentation (use spaces, not tabs)",
            ],
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read configuration file: {e}",
            suggestions=[f"Ensure {config_file} is readable"],
        ) from e

    if config_dict is None:
        return {}
    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            "Configuration file must contain a mapping at the top level",
            suggestions=["Copy config.example.yaml to config.yaml and edit it"],
        )
    return config_dict


def _find_config_file(config_path: Optional[Path] = None) -> Optional[Path]:
    """Resolve the configuration file, or None to run on defaults."""
    if config_path:
        if not config_path.exists():
            raise ConfigurationError(
                f"Specified configuration file not found: {config_path}",
                suggestions=[
                    f"Ensure {config_path} exists",
                    "Omit --config to run with built-in defaults",
                ],
            )
        return config_path

    for candidate in DEFAULT_CONFIG_LOCATIONS:
        if candidate.exists():
            return candidate

    logger.info(
        "No configuration file found, using defaults",
        extra={
            "event": "config.defaults_used",
            "searched": [str(p) for p in DEFAULT_CONFIG_LOCATIONS],
        },
    )
    return None


def validate_config_file(config_path: Path) -> bool:
    """Validate a configuration file without reading the environment.

    Returns:
        True if valid, False otherwise (errors printed to stdout)
    """
    try:
        build_app_config(_read_yaml(config_path))
    except ConfigurationError as e:
        print(f"Configuration validation failed:\n{e}")
        return False
    print(f"Configuration file {config_path} is valid")
    return True
