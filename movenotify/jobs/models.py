"""Run results and statistics for the background jobs."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class JobRunResult:
    """Fields common to every job run.

    ``skipped`` is True when the run did nothing because another run of
    the same job was already in progress.
    """

    job: str = ""
    run_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationResult(JobRunResult):
    checked: int = 0
    updated: int = 0
    batches: int = 0
    remaining: int = 0
    cleanup_triggered: bool = False


@dataclass
class LifecycleResult(JobRunResult):
    candidates: int = 0
    moved_to_pending: int = 0
    reminders_sent: int = 0
    reminder_failures: int = 0
    extended: int = 0
    item_errors: int = 0


@dataclass
class CleanupResult(JobRunResult):
    disabled: bool = False
    dry_run: bool = False
    archived: int = 0
    deleted: int = 0
    read_deleted: int = 0
    cap_deleted: int = 0
    report_sent: bool = False
    rules: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return self.deleted + self.read_deleted + self.cap_deleted

    @property
    def changed(self) -> bool:
        return self.archived > 0 or self.total_deleted > 0


@dataclass
class JobStats:
    """Cumulative per-job statistics kept in memory for status and health."""

    name: str
    total_runs: int = 0
    errors: int = 0
    skipped_runs: int = 0
    last_run: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_duration_seconds: Optional[float] = None
    total_duration_seconds: float = 0.0
    recent_errors: List[str] = field(default_factory=list)

    @property
    def average_duration_seconds(self) -> float:
        return self.total_duration_seconds / self.total_runs if self.total_runs else 0.0

    @property
    def error_rate(self) -> float:
        return self.errors / self.total_runs if self.total_runs else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["average_duration_seconds"] = round(self.average_duration_seconds, 3)
        data["error_rate"] = round(self.error_rate, 4)
        return data
