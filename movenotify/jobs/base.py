"""Shared run machinery for background jobs.

Each job guards itself with a non-blocking in-process lock: a second
``run()`` while one is in progress returns a skipped result immediately
and writes nothing. The guard covers one process only.
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional, Type

from movenotify.logging import get_logger, log_context
from movenotify.utils.timestamps import utc_now

from .models import JobRunResult, JobStats

logger = get_logger(__name__, component="jobs")

# Keep this many error messages per job for status output
RECENT_ERROR_LIMIT = 5


class BaseJob(ABC):
    """Template for a lock-guarded, statistics-tracking job run."""

    name: str = "job"
    result_class: Type[JobRunResult] = JobRunResult

    def __init__(self):
        self._run_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats = JobStats(name=self.name)

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(self, now: Optional[datetime] = None, **kwargs: Any) -> JobRunResult:
        """Execute one run unless another is already in progress.

        Args:
            now: Reference instant for every age comparison in this run
            **kwargs: Job-specific options

        Raises:
            Exception: Whatever the run raised, after it has been counted
        """
        if not self._run_lock.acquire(blocking=False):
            with self._stats_lock:
                self.stats.skipped_runs += 1
            logger.info(
                f"{self.name} already running, skipping",
                extra={"event": "job.run.skipped", "job": self.name},
            )
            return self.result_class(job=self.name, skipped=True)

        run_id = uuid.uuid4().hex[:12]
        started_at = now or utc_now()
        start = time.monotonic()
        try:
            with log_context(job=self.name, run_id=run_id):
                logger.info(f"{self.name} started", extra={"event": "job.run.started"})
                try:
                    result = self._execute(run_id, started_at, **kwargs)
                except Exception as e:
                    duration = time.monotonic() - start
                    self._record(started_at, duration, error=e)
                    logger.error(
                        f"{self.name} failed: {e}",
                        extra={
                            "event": "job.run.failed",
                            "error_type": type(e).__name__,
                            "duration_seconds": round(duration, 3),
                        },
                        exc_info=True,
                    )
                    raise

                duration = time.monotonic() - start
                result.job = self.name
                result.run_id = run_id
                result.started_at = started_at
                result.finished_at = utc_now()
                result.duration_seconds = round(duration, 3)
                self._record(started_at, duration)

                logger.info(
                    f"{self.name} completed",
                    extra={"event": "job.run.completed", **self._summary(result)},
                )
                return result
        finally:
            self._run_lock.release()

    def _record(self, started_at: datetime, duration: float, error: Optional[Exception] = None) -> None:
        with self._stats_lock:
            self.stats.total_runs += 1
            self.stats.last_run = started_at
            self.stats.last_duration_seconds = round(duration, 3)
            self.stats.total_duration_seconds += duration
            if error is None:
                self.stats.last_success = started_at
            else:
                self.stats.errors += 1
                self.stats.last_error = f"{type(error).__name__}: {error}"
                self.stats.last_error_at = started_at
                self.stats.recent_errors = (self.stats.recent_errors + [self.stats.last_error])[-RECENT_ERROR_LIMIT:]

    def _summary(self, result: JobRunResult) -> Dict[str, Any]:
        data = result.to_dict()
        for key in ("job", "run_id", "started_at", "finished_at", "skipped", "rules"):
            data.pop(key, None)
        return data

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            data = self.stats.to_dict()
        data["is_running"] = self.is_running
        return data

    def reset_stats(self) -> None:
        with self._stats_lock:
            self.stats = JobStats(name=self.name)

    @abstractmethod
    def _execute(self, run_id: str, now: datetime, **kwargs: Any) -> JobRunResult:
        """Do the work of one run and return its result."""
        pass
