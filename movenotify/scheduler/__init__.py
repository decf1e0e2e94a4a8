"""Scheduling of the background jobs and the event source."""

from .service import CLEANUP_JOB, LIFECYCLE_JOB, RECONCILIATION_JOB, JobNotFoundError, JobScheduler, OneTimeJob

__all__ = [
    "JobScheduler",
    "JobNotFoundError",
    "OneTimeJob",
    "RECONCILIATION_JOB",
    "LIFECYCLE_JOB",
    "CLEANUP_JOB",
]
