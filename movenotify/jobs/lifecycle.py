"""Lifecycle advancement: age active notifications into review.

For every admin-managed notification that has been active longer than
the review age and has not had a reminder:

1. move it to ``pending_review`` and stamp ``reminder_sent_at``
2. send one reminder notification to all active admins

Then, when auto-extension is on, every pending-review item of an important
type that has never been extended is extended. This sweep also picks up
items whose earlier extension failed or that reached review while
auto-extension was off.

Each item is handled in its own transaction. A failure on one item is
counted and logged; the run carries on with the next item.
"""

import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from movenotify.config.models import LifecycleConfig
from movenotify.domain.models import Notification, NotificationType, Priority
from movenotify.logging import get_logger, log_context
from movenotify.notifications.service import NotificationService
from movenotify.notifications.settings import SettingsStore
from movenotify.notifications.templates import LIFECYCLE_REMINDER
from movenotify.persistence import NotificationRepository, NotificationStatsRepository, UserRepository, get_session
from movenotify.utils.timestamps import days_ago, format_timestamp, utc_now

from .base import BaseJob
from .models import LifecycleResult

logger = get_logger(__name__, component="lifecycle")

REMINDER_GROUP_PREFIX = "lifecycle_reminder_"
AUTO_EXTEND_REASON = "auto_extend_important"


def reminder_group(now: datetime) -> str:
    return f"{REMINDER_GROUP_PREFIX}{now:%Y_%m_%d}"


class LifecycleJob(BaseJob):
    """Moves aged notifications to pending review and notifies admins."""

    name = "lifecycle"
    result_class = LifecycleResult

    def __init__(
        self,
        settings: SettingsStore,
        notification_service: NotificationService,
        config: Optional[LifecycleConfig] = None,
        session_factory=get_session,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__()
        self.settings = settings
        self.notification_service = notification_service
        self.config = config or LifecycleConfig()
        self.session_factory = session_factory
        self.sleep = sleep

    def _execute(self, run_id: str, now: datetime, **kwargs: Any) -> LifecycleResult:
        policy = self.settings.snapshot()
        result = LifecycleResult()
        cutoff = days_ago(self.config.review_age_days, now)

        with self.session_factory() as session:
            candidate_ids = NotificationRepository(session).find_review_candidates(
                cutoff,
                limit=self.config.max_candidates_per_run,
                exclude_group_prefix=REMINDER_GROUP_PREFIX,
            )
        result.candidates = len(candidate_ids)

        if candidate_ids:
            self._in_batches(candidate_ids, lambda notification_id: self._advance(notification_id, now, result))
        else:
            logger.info("No notifications due for review", extra={"event": "lifecycle.no_candidates"})

        if policy.auto_extend_important:
            with self.session_factory() as session:
                extension_ids = NotificationRepository(session).find_extension_candidates(
                    policy.important_notification_types,
                    limit=self.config.max_candidates_per_run,
                )
            if extension_ids:
                self._in_batches(extension_ids, lambda notification_id: self._extend_one(notification_id, now, result))

        return result

    def _in_batches(self, notification_ids: List[str], handle: Callable[[str], None]) -> None:
        batch_size = self.config.batch_size
        for offset in range(0, len(notification_ids), batch_size):
            if offset:
                self.sleep(self.config.batch_pause_seconds)
            for notification_id in notification_ids[offset:offset + batch_size]:
                with log_context(notification_id=notification_id):
                    handle(notification_id)

    def _advance(self, notification_id: str, now: datetime, result: LifecycleResult) -> None:
        try:
            with self.session_factory() as session:
                repo = NotificationRepository(session)
                if not repo.mark_pending_review(notification_id, now):
                    # Changed since the candidate query ran
                    return
                notification = repo.get(notification_id)
        except Exception as e:
            result.item_errors += 1
            logger.error(
                f"Failed to move notification to pending review: {e}",
                extra={"event": "lifecycle.item.failed", "error_type": type(e).__name__},
                exc_info=True,
            )
            return

        result.moved_to_pending += 1

        try:
            if self._send_reminder(notification, now) is not None:
                result.reminders_sent += 1
        except Exception as e:
            result.reminder_failures += 1
            logger.error(
                f"Failed to send review reminder: {e}",
                extra={"event": "lifecycle.reminder.failed", "error_type": type(e).__name__},
                exc_info=True,
            )

    def _send_reminder(self, notification: Notification, now: datetime) -> Optional[Notification]:
        with self.session_factory() as session:
            admin_ids = UserRepository(session).active_admin_ids()

        if not admin_ids:
            logger.warning("No active admins to remind", extra={"event": "lifecycle.reminder.no_admins"})
            return None

        age_days = max(0, (now - notification.created_at).days)
        return self.notification_service.fan_out_template(
            LIFECYCLE_REMINDER,
            {
                "original_title": notification.title,
                "original_type": notification.type,
                "age_days": age_days,
            },
            notification_type=NotificationType.SYSTEM_MAINTENANCE.value,
            recipient_ids=admin_ids,
            priority=Priority.HIGH.value,
            action_url=f"/admin/notifications/pending-review?notification={notification.id}",
            action_text="Review notification",
            notification_group=reminder_group(now),
            metadata={
                "original_notification_id": notification.id,
                "original_type": notification.type,
                "original_created_at": format_timestamp(notification.created_at),
                "age_days": age_days,
            },
            created_at=now,
        )

    def _extend_one(self, notification_id: str, now: datetime, result: LifecycleResult) -> None:
        try:
            with self.session_factory() as session:
                notification = NotificationRepository(session).get(notification_id)
            if notification is None or notification.extended_until is not None:
                # Changed since the candidate query ran
                return
            self._auto_extend(notification, now)
            result.extended += 1
        except Exception as e:
            result.item_errors += 1
            logger.error(
                f"Failed to auto-extend notification: {e}",
                extra={"event": "lifecycle.extend.failed", "error_type": type(e).__name__},
                exc_info=True,
            )

    def _auto_extend(self, notification: Notification, now: datetime) -> None:
        until = now + timedelta(days=self.config.extension_days)
        entry = {
            "extended_at": format_timestamp(now),
            "extended_by": None,
            "extend_days": self.config.extension_days,
            "reason": AUTO_EXTEND_REASON,
            "previous_expires_at": format_timestamp(notification.expires_at),
            "new_expires_at": format_timestamp(until),
        }
        with self.session_factory() as session:
            NotificationRepository(session).extend(notification.id, until, entry)

        logger.info(
            "Auto-extended important notification",
            extra={"event": "lifecycle.extended", "notification_type": notification.type, "extended_until": format_timestamp(until)},
        )

    def get_pending_review_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Pending-review items grouped, with groups past the urgent age flagged."""
        now = now or utc_now()
        with self.session_factory() as session:
            groups = NotificationStatsRepository(session).pending_review_groups()

        urgent_cutoff = days_ago(self.config.urgent_review_age_days, now)
        urgent: List[Dict[str, Any]] = []
        for group in groups:
            group["age_days"] = max(0, (now - group["oldest"]).days) if group["oldest"] else 0
            group["urgent"] = group["oldest"] is not None and group["oldest"] <= urgent_cutoff
            if group["urgent"]:
                urgent.append(group)

        return {
            "generated_at": now,
            "total_pending": sum(g["count"] for g in groups),
            "group_count": len(groups),
            "urgent_group_count": len(urgent),
            "groups": groups,
            "urgent_groups": urgent,
        }
