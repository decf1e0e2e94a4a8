"""Polling fallback for stores without a change feed.

Periodic checks re-derive the time-based notifications:
- quotations past ``valid_until`` that are still active and unconverted
  produce ``quotation_expired`` and are marked expired
- pending receipts past their due date produce ``payment_overdue`` at
  most once per receipt per day
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from apscheduler.triggers.interval import IntervalTrigger

from movenotify.domain.models import NotificationType, Priority, QuotationStatus, Quotation, Receipt
from movenotify.domain.schemas import get_entity_schema
from movenotify.logging import get_logger, log_context
from movenotify.persistence import NotificationRepository, QuotationRepository, ReceiptRepository, UserRepository
from movenotify.utils.timestamps import format_timestamp, utc_now

from .base import EventSource
from .handlers import ChangeDispatcher

logger = get_logger(__name__, component="polling")

POLL_JOB_ID = "event_polling"


class PollingEventSource(EventSource):
    """Runs the periodic checks as a job on the application scheduler."""

    mode = "polling"

    def __init__(
        self,
        dispatcher: ChangeDispatcher,
        interval_seconds: int = 600,
        initial_delay_seconds: int = 60,
        batch_limit: int = 500,
    ):
        super().__init__()
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.batch_limit = batch_limit
        self._scheduler = None
        self.last_poll_at: Optional[datetime] = None

    @property
    def session_factory(self):
        return self.dispatcher.session_factory

    @property
    def notification_service(self):
        return self.dispatcher.notification_service

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.get_job(POLL_JOB_ID) is not None

    def start(self, scheduler: Any = None) -> None:
        if scheduler is None:
            raise ValueError("Polling needs a scheduler to run on")
        if self.is_running:
            return

        self._scheduler = scheduler
        scheduler.add_job(
            self.poll,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=POLL_JOB_ID,
            name="Event polling",
            next_run_time=utc_now() + timedelta(seconds=self.initial_delay_seconds),
            replace_existing=True,
        )
        self.started_at = utc_now()
        logger.info(
            "Polling started",
            extra={
                "event": "event_capture.started",
                "mode": self.mode,
                "interval_seconds": self.interval_seconds,
                "initial_delay_seconds": self.initial_delay_seconds,
            },
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.get_job(POLL_JOB_ID) is not None:
            self._scheduler.remove_job(POLL_JOB_ID)
        self._scheduler = None
        logger.info("Polling stopped", extra={"event": "event_capture.stopped", "mode": self.mode})

    def poll(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run both checks once. Per-record failures are counted, not raised."""
        now = now or utc_now()
        with log_context(event_source=self.mode):
            summary = {
                "quotations_expired": self.check_expired_quotations(now),
                "payments_overdue": self.check_overdue_payments(now),
            }
        self.last_poll_at = now
        logger.info("Periodic checks completed", extra={"event": "polling.completed", **summary})
        return summary

    def _stakeholders(self, session, created_by: Optional[str]):
        ids = UserRepository(session).active_admin_ids()
        if created_by and created_by not in ids:
            ids.append(created_by)
        return ids

    def check_expired_quotations(self, now: datetime) -> int:
        with self.session_factory() as session:
            expired = QuotationRepository(session).find_expired(now, limit=self.batch_limit)

        handled = 0
        for quotation in expired:
            self._count("events_received")
            try:
                if self._expire_quotation(quotation, now):
                    handled += 1
                self._count("events_dispatched")
            except Exception as e:
                self._count("events_failed")
                logger.error(
                    f"Failed to process expired quotation {quotation.id}: {e}",
                    extra={"event": "polling.quotation.failed", "error_type": type(e).__name__},
                    exc_info=True,
                )
        if handled:
            logger.info(f"{handled} quotations marked as expired", extra={"event": "polling.quotations_expired"})
        return handled

    def _expire_quotation(self, quotation: Quotation, now: datetime) -> bool:
        # Notification and status change commit together
        with self.session_factory() as session:
            created = self.notification_service.fan_out_template(
                NotificationType.QUOTATION_EXPIRED.value,
                {
                    "quotation": quotation.model_dump(),
                    "valid_until": quotation.valid_until.date().isoformat(),
                    "reference": get_entity_schema("quotation").reference(quotation.model_dump()),
                },
                notification_type=NotificationType.QUOTATION_EXPIRED.value,
                recipient_ids=self._stakeholders(session, quotation.created_by),
                priority=Priority.NORMAL.value,
                action_url=f"/quotations/{quotation.id}",
                action_text="View",
                notification_group=f"quotation_expired_{quotation.id}",
                metadata={"entity": "quotation", "entity_id": quotation.id, "valid_until": format_timestamp(quotation.valid_until)},
                created_at=now,
                session=session,
            )
            QuotationRepository(session).update(quotation.id, {"status": QuotationStatus.EXPIRED.value}, now=now)
        if created is not None:
            self._count("notifications_created")
        return True

    def check_overdue_payments(self, now: datetime) -> int:
        with self.session_factory() as session:
            overdue = ReceiptRepository(session).find_overdue(now, limit=self.batch_limit)

        notified = 0
        for receipt in overdue:
            self._count("events_received")
            try:
                if self._notify_overdue(receipt, now):
                    notified += 1
                self._count("events_dispatched")
            except Exception as e:
                self._count("events_failed")
                logger.error(
                    f"Failed to process overdue receipt {receipt.id}: {e}",
                    extra={"event": "polling.receipt.failed", "error_type": type(e).__name__},
                    exc_info=True,
                )
        if notified:
            logger.info(f"{notified} receipts are overdue", extra={"event": "polling.payments_overdue"})
        return notified

    def _notify_overdue(self, receipt: Receipt, now: datetime) -> bool:
        group = f"payment_overdue_{receipt.id}_{now:%Y_%m_%d}"
        with self.session_factory() as session:
            if NotificationRepository(session).exists_in_group(group, NotificationType.PAYMENT_OVERDUE.value):
                return False
            created = self.notification_service.fan_out_template(
                NotificationType.PAYMENT_OVERDUE.value,
                {
                    "receipt": receipt.model_dump(),
                    "due_date": receipt.due_date.date().isoformat(),
                },
                notification_type=NotificationType.PAYMENT_OVERDUE.value,
                recipient_ids=self._stakeholders(session, receipt.created_by),
                priority=Priority.HIGH.value,
                action_url=f"/receipts/{receipt.id}",
                action_text="View",
                notification_group=group,
                metadata={"entity": "receipt", "entity_id": receipt.id, "due_date": format_timestamp(receipt.due_date)},
                created_at=now,
                session=session,
            )
        if created is None:
            return False
        self._count("notifications_created")
        return True

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["interval_seconds"] = self.interval_seconds
        stats["last_poll_at"] = self.last_poll_at.isoformat() if self.last_poll_at else None
        return stats
