"""Scheduler service wiring the background jobs and the event source.

Wraps APScheduler's BackgroundScheduler: each job gets its own trigger
and startup delay and runs on a scheduler worker thread while the main
thread handles signals and shutdown.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from movenotify.config.models import SchedulerConfig
from movenotify.jobs import BaseJob
from movenotify.logging import get_logger
from movenotify.utils.timestamps import utc_now

logger = get_logger(__name__, component="scheduler")

RECONCILIATION_JOB = "read_reconciliation"
LIFECYCLE_JOB = "lifecycle"
CLEANUP_JOB = "cleanup"

_IMMEDIATE_ENVIRONMENTS = ("development", "test")


class JobNotFoundError(KeyError):
    """Raised when a job name is not registered with the scheduler."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Job not found"


class OneTimeJob:
    """Handle for a job scheduled once via :meth:`JobScheduler.schedule_one_time`."""

    def __init__(self, scheduler: BackgroundScheduler, job_id: str, name: str, run_at: datetime):
        self._scheduler = scheduler
        self.id = job_id
        self.name = name
        self.run_at = run_at

    @property
    def pending(self) -> bool:
        return self._scheduler.get_job(self.id) is not None

    def cancel(self) -> bool:
        """Cancel if it has not run yet. Returns True if it was cancelled."""
        if not self.pending:
            return False
        self._scheduler.remove_job(self.id)
        logger.info("One-time job cancelled", extra={"event": "scheduler.one_time.cancelled", "job": self.name})
        return True


class JobScheduler:
    """Owns the background jobs, their timers and the event source lifecycle."""

    def __init__(
        self,
        jobs: List[BaseJob],
        config: Optional[SchedulerConfig] = None,
        event_source=None,
        environment: str = "production",
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.config = config or SchedulerConfig()
        self.jobs: Dict[str, BaseJob] = {job.name: job for job in jobs}
        self.event_source = event_source
        self.environment = environment
        self.started_at: Optional[datetime] = None
        self._started = False

        self.scheduler = scheduler or BackgroundScheduler(
            job_defaults={
                "max_instances": 1,  # Prevent overlapping runs
                "coalesce": True,  # If runs were missed, only execute once
                "misfire_grace_time": 300,
            },
            timezone=self.config.timezone,
        )
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

    @property
    def is_started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def _triggers(self, now: datetime) -> Dict[str, Dict[str, Any]]:
        cfg = self.config
        return {
            RECONCILIATION_JOB: {
                "trigger": IntervalTrigger(seconds=cfg.seconds("reconciliation_interval"), timezone=timezone.utc),
                "next_run_time": now + timedelta(seconds=cfg.seconds("reconciliation_initial_delay")),
            },
            LIFECYCLE_JOB: {
                "trigger": CronTrigger(hour=cfg.lifecycle_hour, minute=cfg.lifecycle_minute, timezone=cfg.timezone),
            },
            CLEANUP_JOB: {
                "trigger": IntervalTrigger(seconds=cfg.seconds("cleanup_interval"), timezone=timezone.utc),
                "next_run_time": now + timedelta(seconds=cfg.seconds("cleanup_initial_delay")),
            },
        }

    def start(self) -> None:
        """Register every job's timer and start the event source. Idempotent."""
        if self._started:
            logger.debug("Scheduler already started", extra={"event": "scheduler.already_started"})
            return

        now = utc_now()
        triggers = self._triggers(now)
        for name, job in self.jobs.items():
            options = triggers.get(name)
            if options is None:
                logger.warning(f"No schedule for job {name}, manual runs only", extra={"event": "scheduler.unscheduled"})
                continue
            self.scheduler.add_job(
                func=job.run,
                id=name,
                name=name,
                replace_existing=True,
                **options,
            )

        if LIFECYCLE_JOB in self.jobs and (
            self.environment in _IMMEDIATE_ENVIRONMENTS or self.config.lifecycle_run_immediately
        ):
            self.scheduler.add_job(
                func=self.jobs[LIFECYCLE_JOB].run,
                trigger=DateTrigger(run_date=now + timedelta(seconds=self.config.seconds("lifecycle_immediate_delay"))),
                id=f"{LIFECYCLE_JOB}-startup",
                name=f"{LIFECYCLE_JOB} (startup run)",
                replace_existing=True,
            )

        self.scheduler.start()

        if self.event_source is not None:
            self.event_source.start(self.scheduler)

        self._started = True
        self.started_at = now
        logger.info(
            "Scheduler started",
            extra={
                "event": "scheduler.started",
                "jobs": sorted(self.jobs),
                "event_source": getattr(self.event_source, "mode", None),
                "next_run_times": self._next_run_times(),
            },
        )

    def stop(self) -> None:
        """Remove timers and stop the event source. A job already running is left to finish."""
        if not self._started:
            return

        logger.info("Shutting down scheduler", extra={"event": "scheduler.stopping"})

        if self.event_source is not None:
            self.event_source.stop()

        self.scheduler.remove_all_jobs()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        self._started = False
        logger.info("Scheduler shutdown complete", extra={"event": "scheduler.stopped"})

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        # Jobs log their own failures; this catches anything that slips past them
        logger.error(
            f"Scheduled job {event.job_id} raised: {event.exception}",
            extra={
                "event": "scheduler.job_error",
                "job": event.job_id,
                "error_type": type(event.exception).__name__,
            },
        )

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    def get_job(self, name: str) -> BaseJob:
        try:
            return self.jobs[name]
        except KeyError:
            raise JobNotFoundError(f"Unknown job '{name}'. Available: {', '.join(sorted(self.jobs))}") from None

    def get_available_jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": name,
                "description": (type(job).__doc__ or "").strip().splitlines()[0] if type(job).__doc__ else "",
                "is_running": job.is_running,
                "scheduled": self.scheduler.get_job(name) is not None,
            }
            for name, job in sorted(self.jobs.items())
        ]

    def run_job(self, name: str, **kwargs: Any):
        """Run a job synchronously in the calling thread, bypassing its timer.

        Raises:
            JobNotFoundError: If ``name`` is not registered
        """
        job = self.get_job(name)
        logger.info(f"Running {name} on demand", extra={"event": "scheduler.run_job", "job": name})
        return job.run(**kwargs)

    def restart_job(self, name: str) -> None:
        """Re-register a job's timer from its configured schedule."""
        job = self.get_job(name)
        if not self._started:
            raise RuntimeError("Scheduler is not started")

        options = self._triggers(utc_now()).get(name)
        if options is None:
            raise JobNotFoundError(f"Job '{name}' has no schedule")
        if self.scheduler.get_job(name) is not None:
            self.scheduler.remove_job(name)
        self.scheduler.add_job(func=job.run, id=name, name=name, replace_existing=True, **options)
        logger.info(f"Restarted {name}", extra={"event": "scheduler.job_restarted", "job": name})

    def schedule_one_time(self, func: Callable[[], Any], delay_seconds: float, name: str) -> OneTimeJob:
        """Run ``func`` once after ``delay_seconds``. Returns a cancellable handle."""
        run_at = utc_now() + timedelta(seconds=delay_seconds)
        job_id = f"one-time-{name}-{uuid.uuid4().hex[:8]}"
        self.scheduler.add_job(func=func, trigger=DateTrigger(run_date=run_at), id=job_id, name=name)
        logger.info(
            f"Scheduled one-time job {name}",
            extra={"event": "scheduler.one_time.scheduled", "job": name, "run_at": run_at.isoformat()},
        )
        return OneTimeJob(self.scheduler, job_id, name, run_at)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _next_run_times(self) -> Dict[str, Optional[str]]:
        times = {}
        for name in self.jobs:
            scheduled = self.scheduler.get_job(name)
            next_run = getattr(scheduled, "next_run_time", None) if scheduled else None
            times[name] = next_run.isoformat() if next_run else None
        return times

    def get_status(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "environment": self.environment,
            "timezone": self.config.timezone,
            "next_run_times": self._next_run_times() if self._started else {},
            "jobs": {name: job.get_stats() for name, job in self.jobs.items()},
            "event_source": self.event_source.get_stats() if self.event_source is not None else None,
        }

    def health_check(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Per-job health plus an overall verdict.

        A job is ``unhealthy`` above the configured error rate and
        ``warning`` when the scheduler is running but the job's last run is
        older than ``health_stale_after``.
        """
        now = now or utc_now()
        max_error_rate = self.config.health_max_error_rate
        stale_after = timedelta(seconds=self.config.seconds("health_stale_after"))
        jobs: Dict[str, Dict[str, Any]] = {}

        for name, job in self.jobs.items():
            stats = job.get_stats()
            health = "healthy"
            issues: List[str] = []

            if stats["total_runs"] and stats["error_rate"] > max_error_rate:
                health = "unhealthy"
                issues.append(f"High error rate: {stats['error_rate'] * 100:.1f}%")

            last_run = stats.get("last_run")
            if self._started and last_run is not None and now - last_run > stale_after:
                hours = (now - last_run).total_seconds() / 3600
                issues.append(f"Last run was {hours:.1f} hours ago")
                if health == "healthy":
                    health = "warning"

            jobs[name] = {"health": health, "issues": issues, "stats": stats}

        verdicts = {entry["health"] for entry in jobs.values()}
        overall = "unhealthy" if "unhealthy" in verdicts else "warning" if "warning" in verdicts else "healthy"
        return {"overall": overall, "jobs": jobs, "timestamp": now}
