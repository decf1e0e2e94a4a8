"""Process-wide retention settings with a persisted override record.

Defaults come from the configuration file. Admin updates are validated,
written to the settings record and swapped in atomically; jobs take one
snapshot per run, so an update lands on the next run.
"""

import threading
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from movenotify.domain.models import RetentionPolicy
from movenotify.logging import get_logger
from movenotify.persistence import SettingsRepository, get_session
from movenotify.utils.timestamps import parse_iso_datetime, utc_now

from .exceptions import ValidationError

logger = get_logger(__name__, component="settings")


class SettingsStore:
    """Holds the current :class:`RetentionPolicy` for every job."""

    def __init__(
        self,
        defaults: Optional[RetentionPolicy] = None,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
    ):
        self.defaults = defaults or RetentionPolicy()
        self.session_factory = session_factory
        self._lock = threading.Lock()
        self._policy = self.defaults.model_copy(deep=True)
        self.updated_at: Optional[datetime] = None
        self.updated_by: Optional[str] = None

    def load(self) -> RetentionPolicy:
        """Merge the persisted record (if any) over the defaults.

        An unreadable or invalid record is logged and ignored.
        """
        with self.session_factory() as session:
            record = SettingsRepository(session).load()

        if record is None:
            return self.snapshot()

        merged = {**self.defaults.model_dump(mode="json"), **record["policy"]}
        try:
            policy = RetentionPolicy.model_validate(merged)
        except PydanticValidationError as e:
            logger.warning(
                "Persisted notification settings are invalid, using defaults",
                extra={"event": "settings.load.invalid", "error_count": e.error_count()},
            )
            return self.snapshot()

        with self._lock:
            self._policy = policy
            self.updated_at = parse_iso_datetime(record["updated_at"])
            self.updated_by = record["updated_by"]

        logger.info(
            "Loaded persisted notification settings",
            extra={"event": "settings.loaded", "updated_by": self.updated_by},
        )
        return self.snapshot()

    def snapshot(self) -> RetentionPolicy:
        """An independent copy of the current policy."""
        with self._lock:
            return self._policy.model_copy(deep=True)

    def update(
        self,
        changes: Dict[str, Any],
        updated_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RetentionPolicy:
        """Validate, persist and apply a partial policy update.

        Raises:
            ValidationError: On unknown fields or invalid values (nothing is written)
        """
        if not changes:
            raise ValidationError("No settings supplied")

        unknown = sorted(set(changes) - set(RetentionPolicy.model_fields))
        if unknown:
            raise ValidationError("Unknown settings", [f"Unknown setting: {name}" for name in unknown])

        with self._lock:
            merged = {**self._policy.model_dump(mode="json"), **changes}

        try:
            policy = RetentionPolicy.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid settings",
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            ) from e

        now = now or utc_now()
        with self.session_factory() as session:
            SettingsRepository(session).save(policy.model_dump(mode="json"), updated_by, now)

        with self._lock:
            self._policy = policy
            self.updated_at = now
            self.updated_by = updated_by

        logger.info(
            "Notification settings updated",
            extra={"event": "settings.updated", "updated_by": updated_by, "changed": sorted(changes)},
        )
        return policy.model_copy(deep=True)

    def describe(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "policy": self._policy.model_dump(mode="json"),
                "updated_at": self.updated_at,
                "updated_by": self.updated_by,
            }
