"""Configuration management."""

from .duration import DurationParseError, parse_duration
from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import build_app_config, load_config, validate_config_file
from .models import (
    AppConfig,
    EventCaptureConfig,
    EventCaptureMode,
    LifecycleConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    ReconciliationConfig,
    SchedulerConfig,
)

__all__ = [
    "load_config",
    "build_app_config",
    "validate_config_file",
    "load_environment_config",
    "parse_duration",
    "AppConfig",
    "EventCaptureConfig",
    "LifecycleConfig",
    "LoggingConfig",
    "ReconciliationConfig",
    "SchedulerConfig",
    "EnvironmentConfig",
    "EventCaptureMode",
    "LogLevel",
    "LogFormat",
    "ConfigurationError",
    "DurationParseError",
]
