"""Background jobs: read reconciliation, lifecycle advancement and cleanup."""

from .base import BaseJob
from .cleanup import CleanupJob
from .lifecycle import LifecycleJob
from .models import CleanupResult, JobRunResult, JobStats, LifecycleResult, ReconciliationResult
from .read_reconciliation import ReadReconciliationJob, thread_launcher

__all__ = [
    "BaseJob",
    "CleanupJob",
    "LifecycleJob",
    "ReadReconciliationJob",
    "thread_launcher",
    "JobRunResult",
    "JobStats",
    "CleanupResult",
    "LifecycleResult",
    "ReconciliationResult",
]
