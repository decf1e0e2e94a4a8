"""Retention cleanup: archive, delete and cap admin-managed notifications.

One run executes these steps in order, each in its own transaction and
each bounded by the policy's batch size:

1. archive items older than ``min_age_for_archiving``
2. delete archived items older than ``min_age_for_deletion``
3. delete fully read active items older than ``max_retention_days``
   (only when ``auto_delete_read_notifications`` is on)
4. delete the oldest archived items above ``max_archive_size``

Important types are skipped by every step while
``preserve_important_notifications`` is on.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from movenotify.domain.models import NotificationType, Priority, RetentionPolicy
from movenotify.logging import get_logger
from movenotify.notifications.service import NotificationService
from movenotify.notifications.settings import SettingsStore
from movenotify.notifications.templates import CLEANUP_REPORT
from movenotify.persistence import NotificationRepository, NotificationStatsRepository, UserRepository, get_session
from movenotify.utils.timestamps import days_ago, utc_now

from .base import BaseJob
from .models import CleanupResult

logger = get_logger(__name__, component="cleanup")

ARCHIVE_REASON = "auto_cleanup_age_based"


def _rules(policy: RetentionPolicy) -> Dict[str, Any]:
    return {
        "min_age_for_archiving": policy.min_age_for_archiving,
        "min_age_for_deletion": policy.min_age_for_deletion,
        "max_retention_days": policy.max_retention_days,
        "archive_before_delete": policy.archive_before_delete,
        "preserve_important_notifications": policy.preserve_important_notifications,
        "important_notification_types": list(policy.important_notification_types),
        "max_archive_size": policy.max_archive_size,
        "batch_size": policy.notification_batch_size,
        "auto_delete_read_notifications": policy.auto_delete_read_notifications,
    }


class CleanupJob(BaseJob):
    """Applies the retention policy to admin-managed notifications."""

    name = "cleanup"
    result_class = CleanupResult

    def __init__(
        self,
        settings: SettingsStore,
        notification_service: NotificationService,
        session_factory=get_session,
    ):
        super().__init__()
        self.settings = settings
        self.notification_service = notification_service
        self.session_factory = session_factory
        self.totals = {"archived": 0, "deleted": 0, "read_deleted": 0, "cap_deleted": 0, "reports_sent": 0}
        self.last_result: Optional[CleanupResult] = None

    def run(self, now: Optional[datetime] = None, dry_run: bool = False, **kwargs: Any) -> CleanupResult:
        """Run cleanup, or count what a run would do when ``dry_run`` is set."""
        if dry_run:
            return self.preview(now)
        return super().run(now=now, **kwargs)

    def _execute(self, run_id: str, now: datetime, **kwargs: Any) -> CleanupResult:
        policy = self.settings.snapshot()
        result = CleanupResult(rules=_rules(policy))

        if not policy.enable_auto_cleanup:
            result.disabled = True
            logger.info("Auto cleanup disabled, nothing to do", extra={"event": "cleanup.disabled"})
            self._remember(result)
            return result

        excluded = policy.excluded_types()
        batch = policy.notification_batch_size

        if policy.archive_before_delete:
            with self.session_factory() as session:
                repo = NotificationRepository(session)
                ids = repo.archive_candidates(days_ago(policy.min_age_for_archiving, now), excluded, batch, now)
                result.archived = repo.archive(ids, now, ARCHIVE_REASON)

        with self.session_factory() as session:
            repo = NotificationRepository(session)
            ids = repo.deletion_candidates(
                days_ago(policy.min_age_for_deletion, now),
                excluded,
                batch,
                now,
                include_unarchived=not policy.archive_before_delete,
            )
            result.deleted = repo.delete(ids)

        if policy.auto_delete_read_notifications:
            with self.session_factory() as session:
                repo = NotificationRepository(session)
                ids = repo.read_deletion_candidates(days_ago(policy.max_retention_days, now), excluded, batch)
                result.read_deleted = repo.delete(ids)

        if policy.archive_before_delete:
            with self.session_factory() as session:
                repo = NotificationRepository(session)
                excess = repo.count_archived() - policy.max_archive_size
                if excess > 0:
                    ids = repo.archive_overflow_candidates(excluded, min(excess, batch))
                    result.cap_deleted = repo.delete(ids)
                    logger.info(
                        "Archive above size limit, deleted oldest archived",
                        extra={"event": "cleanup.archive_cap", "excess": excess, "deleted": result.cap_deleted},
                    )

        if result.changed:
            result.report_sent = self._send_report(result, now)

        self._remember(result)
        return result

    def _remember(self, result: CleanupResult) -> None:
        with self._stats_lock:
            self.totals["archived"] += result.archived
            self.totals["deleted"] += result.deleted
            self.totals["read_deleted"] += result.read_deleted
            self.totals["cap_deleted"] += result.cap_deleted
            if result.report_sent:
                self.totals["reports_sent"] += 1
            self.last_result = result

    def _send_report(self, result: CleanupResult, now: datetime) -> bool:
        """Tell active admins what changed. A failure is logged and ignored."""
        try:
            with self.session_factory() as session:
                admin_ids = UserRepository(session).active_admin_ids()
                storage = NotificationStatsRepository(session).storage_stats()

            if not admin_ids:
                logger.warning("No active admins for cleanup report", extra={"event": "cleanup.report.no_admins"})
                return False

            stats = {
                "archived": result.archived,
                "deleted": result.total_deleted,
                "read_deleted": result.read_deleted,
                "cap_deleted": result.cap_deleted,
                "total": storage["total_notifications"],
                "size_mb": storage["estimated_size_mb"],
            }
            sent = self.notification_service.fan_out_template(
                CLEANUP_REPORT,
                stats,
                notification_type=NotificationType.SYSTEM_MAINTENANCE.value,
                recipient_ids=admin_ids,
                priority=Priority.NORMAL.value,
                action_url="/admin/notifications/analytics",
                action_text="View Analytics",
                notification_group=f"cleanup_report_{now:%Y_%m_%d}",
                metadata={"cleanup_stats": stats, "rules": result.rules},
                created_at=now,
            )
            return sent is not None
        except Exception as e:
            logger.error(
                f"Failed to send cleanup report: {e}",
                extra={"event": "cleanup.report.failed", "error_type": type(e).__name__},
                exc_info=True,
            )
            return False

    def preview(self, now: Optional[datetime] = None) -> CleanupResult:
        """Count what a run would touch without writing anything.

        The counts are upper bounds on the next real run: deletion counts
        include items the archive step would archive first, and no batch
        limit is applied.
        """
        now = now or utc_now()
        policy = self.settings.snapshot()
        result = CleanupResult(job=self.name, dry_run=True, started_at=now, rules=_rules(policy))

        if not policy.enable_auto_cleanup:
            result.disabled = True
            return result

        excluded = policy.excluded_types()
        with self.session_factory() as session:
            repo = NotificationRepository(session)
            if policy.archive_before_delete:
                result.archived = repo.count_archive_candidates(
                    days_ago(policy.min_age_for_archiving, now), excluded, now
                )
            result.deleted = repo.count_deletion_candidates(
                days_ago(policy.min_age_for_deletion, now), excluded, now, include_unarchived=True
            )
            if policy.auto_delete_read_notifications:
                result.read_deleted = repo.count_read_deletion_candidates(
                    days_ago(policy.max_retention_days, now), excluded
                )
            if policy.archive_before_delete:
                result.cap_deleted = max(0, repo.count_archived() + result.archived - policy.max_archive_size)

        result.finished_at = utc_now()
        logger.info(
            "Cleanup preview computed",
            extra={
                "event": "cleanup.preview",
                "archive": result.archived,
                "delete": result.deleted,
                "read_delete": result.read_deleted,
                "cap_delete": result.cap_deleted,
            },
        )
        return result

    def get_stats(self) -> Dict[str, Any]:
        data = super().get_stats()
        with self._stats_lock:
            data["totals"] = dict(self.totals)
            last = self.last_result
        data["last_result"] = None
        if last is not None:
            data["last_result"] = {
                "archived": last.archived,
                "deleted": last.deleted,
                "read_deleted": last.read_deleted,
                "cap_deleted": last.cap_deleted,
                "disabled": last.disabled,
                "report_sent": last.report_sent,
            }
            data["last_rules"] = last.rules
        return data

    def reset_stats(self) -> None:
        super().reset_stats()
        with self._stats_lock:
            self.totals = {key: 0 for key in self.totals}
            self.last_result = None
