"""Configuration schema models using Pydantic."""

import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from movenotify.domain.models import RetentionPolicy

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


class EventCaptureMode(str, Enum):
    """How domain changes are detected.

    ``auto`` probes for the live change feed and falls back to polling.
    """

    AUTO = "auto"
    CHANGE_FEED = "change_feed"
    POLLING = "polling"


def _checked_duration(value: str, min_seconds: int, max_seconds: int, name: str) -> str:
    try:
        validate_duration_range(parse_duration(value), min_seconds, max_seconds, name=name)
    except DurationParseError as e:
        raise ValueError(str(e)) from e
    return value


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(LogFormat.KEY_VALUE, description="Log output format (json or key-value)")

    model_config = {"use_enum_values": True, "validate_default": True}


class EventCaptureConfig(BaseModel):
    """Change detection settings."""

    mode: EventCaptureMode = Field(EventCaptureMode.AUTO, description="auto, change_feed or polling")
    poll_interval: str = Field("10m", description="Polling fallback interval")
    poll_initial_delay: str = Field("1m", description="Delay before the first poll")
    queue_size: int = Field(10000, ge=1, description="Maximum pending change events")

    model_config = {"use_enum_values": True, "validate_default": True}

    @field_validator("poll_interval")
    @classmethod
    def validate_poll_interval(cls, v: str) -> str:
        return _checked_duration(v, 60, 86400, "Poll interval")

    @field_validator("poll_initial_delay")
    @classmethod
    def validate_poll_delay(cls, v: str) -> str:
        return _checked_duration(v, 1, 3600, "Poll initial delay")

    @property
    def poll_interval_seconds(self) -> int:
        return parse_duration(self.poll_interval)

    @property
    def poll_initial_delay_seconds(self) -> int:
        return parse_duration(self.poll_initial_delay)


class SchedulerConfig(BaseModel):
    """Job timing settings."""

    timezone: str = Field("UTC", min_length=1, description="Timezone for cron-style triggers")
    reconciliation_interval: str = Field("1h")
    reconciliation_initial_delay: str = Field("30s")
    cleanup_interval: str = Field("24h")
    cleanup_initial_delay: str = Field("10s")
    lifecycle_run_time: str = Field("02:00", description="Daily lifecycle run time (HH:MM)")
    lifecycle_run_immediately: bool = Field(
        False, description="Also run the lifecycle job shortly after startup"
    )
    lifecycle_immediate_delay: str = Field("5s")
    health_stale_after: str = Field("2h", description="A job idle this long is reported as a warning")
    health_max_error_rate: float = Field(0.1, ge=0.0, le=1.0)

    @field_validator("reconciliation_interval", "cleanup_interval")
    @classmethod
    def validate_intervals(cls, v: str) -> str:
        return _checked_duration(v, 60, 7 * 86400, "Job interval")

    @field_validator(
        "reconciliation_initial_delay", "cleanup_initial_delay", "lifecycle_immediate_delay"
    )
    @classmethod
    def validate_delays(cls, v: str) -> str:
        return _checked_duration(v, 1, 3600, "Initial delay")

    @field_validator("health_stale_after")
    @classmethod
    def validate_stale_after(cls, v: str) -> str:
        return _checked_duration(v, 60, 7 * 86400, "Health staleness window")

    @field_validator("lifecycle_run_time")
    @classmethod
    def validate_run_time(cls, v: str) -> str:
        match = re.match(r"^(\d{1,2}):(\d{2})$", v.strip())
        if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
            raise ValueError(f"lifecycle_run_time must be HH:MM (24h), got '{v}'")
        return v.strip()

    @property
    def lifecycle_hour(self) -> int:
        return int(self.lifecycle_run_time.split(":")[0])

    @property
    def lifecycle_minute(self) -> int:
        return int(self.lifecycle_run_time.split(":")[1])

    def seconds(self, field_name: str) -> int:
        """Parsed value of one of the duration fields, in seconds."""
        return parse_duration(getattr(self, field_name))


class LifecycleConfig(BaseModel):
    """Lifecycle advancement settings."""

    review_age_days: int = Field(30, ge=1, description="Age at which active items need review")
    extension_days: int = Field(30, ge=1, description="Auto-extension length for important types")
    batch_size: int = Field(50, ge=1, le=1000)
    batch_pause_seconds: float = Field(0.1, ge=0.0, le=10.0)
    max_candidates_per_run: int = Field(5000, ge=1, description="Upper bound on items advanced per run")
    urgent_review_age_days: int = Field(35, ge=1, description="Pending groups older than this are urgent")


class ReconciliationConfig(BaseModel):
    """Read reconciliation settings."""

    batch_size: int = Field(500, ge=1, le=10000)
    max_batches_per_run: int = Field(20, ge=1)
    cleanup_min_spacing: str = Field("6h", description="Minimum gap before triggering cleanup again")

    @field_validator("cleanup_min_spacing")
    @classmethod
    def validate_spacing(cls, v: str) -> str:
        return _checked_duration(v, 60, 7 * 86400, "Cleanup spacing")

    @property
    def cleanup_min_spacing_seconds(self) -> int:
        return parse_duration(self.cleanup_min_spacing)


class AppConfig(BaseModel):
    """Root configuration object. Every section has defaults."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    event_capture: EventCaptureConfig = Field(default_factory=EventCaptureConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    retention: RetentionPolicy = Field(
        default_factory=RetentionPolicy,
        description="Default retention policy (persisted settings override it)",
    )

    @model_validator(mode="after")
    def validate_cross_section(self):
        """Reject combinations that would make the lifecycle inconsistent."""
        if self.lifecycle.urgent_review_age_days < self.lifecycle.review_age_days:
            raise ValueError(
                "lifecycle.urgent_review_age_days must be >= lifecycle.review_age_days"
            )
        return self
