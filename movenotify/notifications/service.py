"""Recipient-facing notification operations and the shared fan-out path.

Every notification, whether produced by event capture, a job or an
admin, is created through :meth:`NotificationService.fan_out`: one record
per logical event, many recipients, independent read state.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, Iterable, Iterator, List, Optional

from sqlalchemy.orm import Session

from movenotify.domain.models import Notification, Priority, default_expiry
from movenotify.logging import get_logger
from movenotify.persistence import (
    DataIntegrityError,
    NotificationRepository,
    RecordNotFoundError,
    get_session,
)
from movenotify.utils.timestamps import utc_now

from .exceptions import NotificationNotFoundError, ValidationError
from .models import Page, RecipientNotification
from .templates import NotificationTemplates

logger = get_logger(__name__, component="notifications")

MAX_PAGE_SIZE = 100

SessionFactory = Callable[[], ContextManager[Session]]


def new_notification_id() -> str:
    return uuid.uuid4().hex


class NotificationService:
    """Creates notifications and serves per-recipient views of them."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        templates: Optional[NotificationTemplates] = None,
    ):
        self.session_factory = session_factory
        self.templates = templates or NotificationTemplates()

    @contextmanager
    def _session(self, session: Optional[Session]) -> Iterator[Session]:
        # Reuse the caller's transaction when one is supplied
        if session is not None:
            yield session
        else:
            with self.session_factory() as own_session:
                yield own_session

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def fan_out(
        self,
        notification_type: str,
        recipient_ids: Iterable[str],
        title: str,
        message: str,
        priority: str = Priority.NORMAL.value,
        actor_id: Optional[str] = None,
        action_url: Optional[str] = None,
        action_text: Optional[str] = None,
        notification_group: Optional[str] = None,
        admin_managed: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Optional[Notification]:
        """Create one notification addressed to every recipient in ``recipient_ids``.

        Duplicate recipients are collapsed, keeping first-seen order.

        Returns:
            The stored notification, or None when there is nobody to notify
        """
        recipients = list(dict.fromkeys(r for r in recipient_ids if r))
        if not recipients:
            logger.info(
                "Skipping notification with no recipients",
                extra={"event": "notification.skipped_no_recipients", "notification_type": str(notification_type)},
            )
            return None

        created = created_at or utc_now()
        notification = Notification(
            id=new_notification_id(),
            type=notification_type,
            title=title,
            message=message,
            priority=priority,
            actor_id=actor_id,
            action_url=action_url,
            action_text=action_text,
            recipient_ids=recipients,
            notification_group=notification_group,
            admin_managed=admin_managed,
            created_at=created,
            expires_at=expires_at or default_expiry(priority, created),
            metadata=dict(metadata or {}),
        )

        with self._session(session) as db:
            stored = NotificationRepository(db).add(notification)

        logger.info(
            "Notification created",
            extra={
                "event": "notification.created",
                "notification_id": stored.id,
                "notification_type": stored.type,
                "recipient_count": len(stored.recipient_ids),
                "notification_group": stored.notification_group,
            },
        )
        return stored

    def fan_out_template(
        self,
        template_key: str,
        context: Dict[str, Any],
        notification_type: str,
        recipient_ids: Iterable[str],
        **kwargs: Any,
    ) -> Optional[Notification]:
        """Render ``template_key`` with ``context`` and fan the result out."""
        title, message = self.templates.render(template_key, **context)
        return self.fan_out(notification_type, recipient_ids, title, message, **kwargs)

    # ------------------------------------------------------------------
    # Recipient views
    # ------------------------------------------------------------------

    def list_for_recipient(
        self,
        recipient_id: str,
        read: Optional[bool] = None,
        notification_type: Optional[str] = None,
        priority: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> Page[RecipientNotification]:
        """Non-archived, unexpired notifications for a recipient, newest first.

        Raises:
            ValidationError: If paging parameters are out of range
        """
        _check_paging(page, limit)
        now = now or utc_now()

        with self.session_factory() as session:
            repo = NotificationRepository(session)
            notifications, total = repo.list_for_recipient(
                recipient_id,
                now,
                read=read,
                notification_type=notification_type,
                priority=priority,
                offset=(page - 1) * limit,
                limit=limit,
            )
            unread = repo.count_unread(recipient_id, now)

        return Page(
            items=[RecipientNotification.for_recipient(n, recipient_id) for n in notifications],
            page=page,
            limit=limit,
            total=total,
            extra={"unread_count": unread},
        )

    def get_unread_count(self, recipient_id: str, now: Optional[datetime] = None) -> int:
        with self.session_factory() as session:
            return NotificationRepository(session).count_unread(recipient_id, now or utc_now())

    def get_for_recipient(self, notification_id: str, recipient_id: str) -> RecipientNotification:
        """Raises NotificationNotFoundError if the caller is not a recipient."""
        with self.session_factory() as session:
            notification = NotificationRepository(session).get_for_recipient(notification_id, recipient_id)
        if notification is None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return RecipientNotification.for_recipient(notification, recipient_id)

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    def mark_read(
        self, notification_id: str, recipient_id: str, now: Optional[datetime] = None
    ) -> RecipientNotification:
        """Record a read receipt for the caller. Idempotent.

        Raises:
            NotificationNotFoundError: If the caller is not a recipient
        """
        try:
            with self.session_factory() as session:
                added = NotificationRepository(session).add_read_receipt(
                    notification_id, recipient_id, now or utc_now()
                )
        except RecordNotFoundError as e:
            raise NotificationNotFoundError(str(e)) from e
        except DataIntegrityError:
            # Concurrent mark_read from the same recipient won the insert
            added = False

        if added:
            logger.debug(
                "Notification marked read",
                extra={"event": "notification.read", "notification_id": notification_id, "recipient_id": recipient_id},
            )
        return self.get_for_recipient(notification_id, recipient_id)

    def mark_unread(self, notification_id: str, recipient_id: str) -> RecipientNotification:
        """Remove the caller's read receipt. Idempotent.

        Raises:
            NotificationNotFoundError: If the caller is not a recipient
        """
        try:
            with self.session_factory() as session:
                NotificationRepository(session).remove_read_receipt(notification_id, recipient_id)
        except RecordNotFoundError as e:
            raise NotificationNotFoundError(str(e)) from e
        return self.get_for_recipient(notification_id, recipient_id)

    def mark_all_read(self, recipient_id: str, now: Optional[datetime] = None) -> int:
        """Mark every visible unread notification read for the caller. Returns the count."""
        now = now or utc_now()
        with self.session_factory() as session:
            repo = NotificationRepository(session)
            ids = repo.unread_ids_for(recipient_id, now)
            marked = repo.add_read_receipts(ids, recipient_id, now)

        logger.info(
            "Marked all notifications read",
            extra={"event": "notification.read_all", "recipient_id": recipient_id, "count": marked},
        )
        return marked


def _check_paging(page: int, limit: int) -> None:
    errors: List[str] = []
    if page < 1:
        errors.append("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        errors.append(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if errors:
        raise ValidationError("Invalid paging parameters", errors)
