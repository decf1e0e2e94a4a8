"""Read reconciliation: keep the cached ``is_read_by_all`` flag accurate.

Mismatches are found and fixed in SQL with correlated counts; no
notification is loaded into memory to decide its flag.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from movenotify.config.models import ReconciliationConfig
from movenotify.logging import get_logger
from movenotify.notifications.settings import SettingsStore
from movenotify.persistence import NotificationRepository, get_session
from movenotify.utils.timestamps import days_ago, parse_iso_datetime, utc_now

from .base import BaseJob
from .models import ReconciliationResult

logger = get_logger(__name__, component="read_reconciliation")

Launcher = Callable[[Callable[[], Any], str], Any]


def thread_launcher(func: Callable[[], Any], name: str) -> threading.Thread:
    """Run ``func`` on a daemon thread without waiting for it."""
    thread = threading.Thread(target=func, name=name, daemon=True)
    thread.start()
    return thread


class ReadReconciliationJob(BaseJob):
    """Recomputes ``is_read_by_all`` for notifications whose flag has drifted."""

    name = "read_reconciliation"
    result_class = ReconciliationResult

    def __init__(
        self,
        settings: SettingsStore,
        config: Optional[ReconciliationConfig] = None,
        session_factory=get_session,
        cleanup_job: Optional[BaseJob] = None,
        launcher: Launcher = thread_launcher,
    ):
        super().__init__()
        self.settings = settings
        self.config = config or ReconciliationConfig()
        self.session_factory = session_factory
        self.cleanup_job = cleanup_job
        self.launcher = launcher

    def _execute(self, run_id: str, now: datetime, **kwargs: Any) -> ReconciliationResult:
        policy = self.settings.snapshot()
        result = ReconciliationResult()
        batch_size = self.config.batch_size

        while result.batches < self.config.max_batches_per_run:
            with self.session_factory() as session:
                repo = NotificationRepository(session)
                ids = repo.find_read_flag_mismatches(batch_size)
                if not ids:
                    break
                repo.reconcile_read_flags(ids)

            result.batches += 1
            result.checked += len(ids)
            result.updated += len(ids)
            logger.debug(
                "Reconciled read flag batch",
                extra={"event": "read_reconciliation.batch", "batch": result.batches, "size": len(ids)},
            )
            if len(ids) < batch_size:
                break
        else:
            with self.session_factory() as session:
                result.remaining = NotificationRepository(session).count_read_flag_mismatches()
            if result.remaining:
                logger.warning(
                    "Batch limit reached with read flag mismatches remaining",
                    extra={"event": "read_reconciliation.backlog", "remaining": result.remaining},
                )

        result.cleanup_triggered = self._maybe_trigger_cleanup(policy, now)
        return result

    def _maybe_trigger_cleanup(self, policy, now: datetime) -> bool:
        """Launch cleanup in the background when read auto-deletion is due.

        Cleanup keeps its own schedule; this only brings a run forward.
        """
        if self.cleanup_job is None:
            return False
        if not (policy.enable_auto_cleanup and policy.auto_delete_read_notifications):
            return False
        if self.cleanup_job.is_running:
            return False

        last_run = self.cleanup_job.stats.last_run
        spacing = timedelta(seconds=self.config.cleanup_min_spacing_seconds)
        if last_run is not None and now - last_run < spacing:
            return False

        self.launcher(self.cleanup_job.run, f"{self.cleanup_job.name}-triggered")
        logger.info(
            "Triggered cleanup after read reconciliation",
            extra={
                "event": "read_reconciliation.cleanup_triggered",
                "last_cleanup_run": last_run.isoformat() if last_run else None,
            },
        )
        return True

    def get_inconsistency_report(self) -> Dict[str, Any]:
        """Current mismatches grouped by notification group (read-only)."""
        with self.session_factory() as session:
            rows = NotificationRepository(session).read_flag_mismatch_rows()

        groups: Dict[Optional[str], Dict[str, Any]] = {}
        for group, notification_type, created_at in rows:
            entry = groups.setdefault(
                group, {"notification_group": group, "count": 0, "types": set(), "oldest": created_at, "newest": created_at}
            )
            entry["count"] += 1
            entry["types"].add(notification_type)
            entry["oldest"] = min(entry["oldest"], created_at)
            entry["newest"] = max(entry["newest"], created_at)

        report_groups = sorted(
            (
                {
                    **g,
                    "types": sorted(g["types"]),
                    "oldest": parse_iso_datetime(g["oldest"]),
                    "newest": parse_iso_datetime(g["newest"]),
                }
                for g in groups.values()
            ),
            key=lambda g: g["count"],
            reverse=True,
        )
        return {
            "generated_at": utc_now(),
            "total_inconsistent": len(rows),
            "groups": report_groups,
        }

    def cleanup_old_read_data(self, days_old: int = 90, now: Optional[datetime] = None) -> int:
        """Drop read receipts older than ``days_old`` from expired notifications.

        Returns:
            Number of notifications whose read data was pruned
        """
        now = now or utc_now()
        with self.session_factory() as session:
            cleaned = NotificationRepository(session).prune_read_receipts(days_ago(days_old, now), now)

        logger.info(
            f"Pruned old read data from {cleaned} notifications",
            extra={"event": "read_reconciliation.read_data_pruned", "days_old": days_old, "notifications": cleaned},
        )
        return cleaned
