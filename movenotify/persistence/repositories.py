"""Data access layer (repositories) for persistence operations.

Repositories wrap a session, return domain models rather than ORM models
and translate SQLAlchemy failures into persistence exceptions. Batch
writes are always keyed by ``id IN (batch)`` so that re-running a batch
after a partial failure is harmless.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, delete, exists, false, func, or_, select, true, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from movenotify.domain.models import (
    ADMIN_ROLES,
    LifecycleStatus,
    Notification,
    PaymentStatus,
    Quotation,
    QuotationStatus,
    Receipt,
    User,
    UserStatus,
)

from .exceptions import DataIntegrityError, PersistenceError, RecordNotFoundError
from .schema import (
    NotificationModel,
    NotificationRecipientModel,
    NotificationSettingsModel,
    QuotationModel,
    ReadReceiptModel,
    ReceiptModel,
    UserModel,
    _format_datetime,
)

logger = logging.getLogger(__name__)

ACTIVE = LifecycleStatus.ACTIVE.value
PENDING_REVIEW = LifecycleStatus.PENDING_REVIEW.value
EXTENDED = LifecycleStatus.EXTENDED.value
ARCHIVED = LifecycleStatus.ARCHIVED.value


def _recipient_count():
    return (
        select(func.count())
        .select_from(NotificationRecipientModel)
        .where(NotificationRecipientModel.notification_id == NotificationModel.id)
        .correlate(NotificationModel)
        .scalar_subquery()
    )


def _read_recipient_count():
    # Receipts are only counted when they belong to a current recipient
    return (
        select(func.count())
        .select_from(ReadReceiptModel)
        .join(
            NotificationRecipientModel,
            and_(
                NotificationRecipientModel.notification_id == ReadReceiptModel.notification_id,
                NotificationRecipientModel.recipient_id == ReadReceiptModel.recipient_id,
            ),
        )
        .where(ReadReceiptModel.notification_id == NotificationModel.id)
        .correlate(NotificationModel)
        .scalar_subquery()
    )


def read_flag_mismatch():
    """SQL predicate: stored ``is_read_by_all`` disagrees with the receipts."""
    recipients = _recipient_count()
    readers = _read_recipient_count()
    return and_(
        recipients > 0,
        or_(
            and_(NotificationModel.is_read_by_all == true(), readers < recipients),
            and_(NotificationModel.is_read_by_all == false(), readers >= recipients),
        ),
    )


def _type_filter(excluded_types: Sequence[str]):
    if not excluded_types:
        return true()
    return NotificationModel.type.not_in([_value(t) for t in excluded_types])


def _value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def archive_eligible(now: datetime):
    """Statuses the age-based archive step may move to ``archived``.

    Extended notifications qualify once their extension has elapsed.
    """
    return or_(
        NotificationModel.lifecycle_status.in_([ACTIVE, PENDING_REVIEW]),
        and_(
            NotificationModel.lifecycle_status == EXTENDED,
            NotificationModel.extended_until.is_not(None),
            NotificationModel.extended_until < _format_datetime(now),
        ),
    )


class NotificationRepository:
    """Repository for notification records and their per-recipient state."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy session for database operations
        """
        self.session = session

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def add(self, notification: Notification) -> Notification:
        """Insert a new notification with its recipient rows.

        Raises:
            DataIntegrityError: If the id already exists
            PersistenceError: On any other database error
        """
        try:
            model = NotificationModel.from_domain(notification)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()
        except IntegrityError as e:
            logger.error(f"Integrity error inserting notification {notification.id}: {e}")
            raise DataIntegrityError(f"Failed to insert notification: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error inserting notification {notification.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert notification: {e}") from e

    def get(self, notification_id: str) -> Optional[Notification]:
        model = self._get_model(notification_id)
        return model.to_domain() if model is not None else None

    def get_for_recipient(self, notification_id: str, recipient_id: str) -> Optional[Notification]:
        """Return the notification only if ``recipient_id`` is one of its recipients."""
        notification = self.get(notification_id)
        if notification is None or recipient_id not in notification.recipient_ids:
            return None
        return notification

    def get_many(self, notification_ids: Iterable[str]) -> List[Notification]:
        ids = list(notification_ids)
        if not ids:
            return []
        try:
            stmt = (
                select(NotificationModel)
                .where(NotificationModel.id.in_(ids))
                .order_by(NotificationModel.created_at, NotificationModel.id)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve notifications: {e}") from e

    def exists_in_group(self, notification_group: str, notification_type: Optional[str] = None) -> bool:
        """Whether any notification (of ``notification_type``) carries the group key."""
        try:
            stmt = select(NotificationModel.id).where(
                NotificationModel.notification_group == notification_group
            )
            if notification_type:
                stmt = stmt.where(NotificationModel.type == _value(notification_type))
            return self.session.execute(stmt.limit(1)).first() is not None
        except SQLAlchemyError as e:
            logger.error(f"Error checking notification group {notification_group}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to check notification group: {e}") from e

    def _get_model(self, notification_id: str) -> Optional[NotificationModel]:
        try:
            return self.session.get(NotificationModel, notification_id)
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving notification {notification_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve notification: {e}") from e

    # ------------------------------------------------------------------
    # Recipient views and read state
    # ------------------------------------------------------------------

    def _visible_to(self, recipient_id: str, now: datetime):
        return (
            select(NotificationModel)
            .join(
                NotificationRecipientModel,
                and_(
                    NotificationRecipientModel.notification_id == NotificationModel.id,
                    NotificationRecipientModel.recipient_id == recipient_id,
                ),
            )
            .where(
                NotificationModel.lifecycle_status != ARCHIVED,
                or_(
                    NotificationModel.expires_at.is_(None),
                    NotificationModel.expires_at > _format_datetime(now),
                ),
            )
        )

    @staticmethod
    def _read_by(recipient_id: str):
        return exists().where(
            ReadReceiptModel.notification_id == NotificationModel.id,
            ReadReceiptModel.recipient_id == recipient_id,
        )

    def list_for_recipient(
        self,
        recipient_id: str,
        now: datetime,
        read: Optional[bool] = None,
        notification_type: Optional[str] = None,
        priority: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Notification], int]:
        """Page of non-archived, unexpired notifications for a recipient (newest first).

        Returns:
            Tuple of (notifications, total matching count)
        """
        try:
            stmt = self._visible_to(recipient_id, now)
            if read is True:
                stmt = stmt.where(self._read_by(recipient_id))
            elif read is False:
                stmt = stmt.where(~self._read_by(recipient_id))
            if notification_type:
                stmt = stmt.where(NotificationModel.type == _value(notification_type))
            if priority:
                stmt = stmt.where(NotificationModel.priority == _value(priority))

            total = self.session.execute(
                select(func.count()).select_from(stmt.with_only_columns(NotificationModel.id).subquery())
            ).scalar_one()

            page_stmt = (
                stmt.order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
                .offset(offset)
                .limit(limit)
            )
            models = self.session.execute(page_stmt).scalars().all()
            return [m.to_domain() for m in models], total
        except SQLAlchemyError as e:
            logger.error(f"Error listing notifications for {recipient_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list notifications: {e}") from e

    def count_unread(self, recipient_id: str, now: datetime) -> int:
        try:
            stmt = self._visible_to(recipient_id, now).where(~self._read_by(recipient_id))
            return self.session.execute(
                select(func.count()).select_from(stmt.with_only_columns(NotificationModel.id).subquery())
            ).scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Error counting unread notifications for {recipient_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count unread notifications: {e}") from e

    def add_read_receipt(self, notification_id: str, recipient_id: str, read_at: datetime) -> bool:
        """Record that ``recipient_id`` read the notification.

        Returns:
            True if a receipt was added, False if one already existed

        Raises:
            RecordNotFoundError: If the notification does not exist or the
                caller is not one of its recipients
        """
        model = self._require_recipient(notification_id, recipient_id)
        if any(r.recipient_id == recipient_id for r in model.read_receipts):
            return False

        try:
            model.read_receipts.append(
                ReadReceiptModel(recipient_id=recipient_id, read_at=_format_datetime(read_at))
            )
            model.is_read_by_all = self._all_read(model)
            self.session.flush()
            return True
        except IntegrityError as e:
            # Another writer recorded the same receipt first
            raise DataIntegrityError(f"Read receipt already exists for {recipient_id}: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error adding read receipt to {notification_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to add read receipt: {e}") from e

    def remove_read_receipt(self, notification_id: str, recipient_id: str) -> bool:
        """Remove the caller's receipt. Returns False if there was none."""
        model = self._require_recipient(notification_id, recipient_id)
        remaining = [r for r in model.read_receipts if r.recipient_id != recipient_id]
        if len(remaining) == len(model.read_receipts):
            return False

        try:
            model.read_receipts = remaining
            model.is_read_by_all = False
            self.session.flush()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Error removing read receipt from {notification_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to remove read receipt: {e}") from e

    def unread_ids_for(self, recipient_id: str, now: datetime) -> List[str]:
        try:
            stmt = (
                self._visible_to(recipient_id, now)
                .where(~self._read_by(recipient_id))
                .with_only_columns(NotificationModel.id)
            )
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing unread notifications for {recipient_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list unread notifications: {e}") from e

    def add_read_receipts(self, notification_ids: Sequence[str], recipient_id: str, read_at: datetime) -> int:
        """Bulk-insert receipts for ids the caller has not read yet, then refresh their flags."""
        if not notification_ids:
            return 0
        try:
            self.session.add_all(
                ReadReceiptModel(
                    notification_id=notification_id,
                    recipient_id=recipient_id,
                    read_at=_format_datetime(read_at),
                )
                for notification_id in notification_ids
            )
            self.session.flush()
            self.reconcile_read_flags(notification_ids)
            return len(notification_ids)
        except SQLAlchemyError as e:
            logger.error(f"Error bulk adding read receipts for {recipient_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to add read receipts: {e}") from e

    def _require_recipient(self, notification_id: str, recipient_id: str) -> NotificationModel:
        model = self._get_model(notification_id)
        if model is None or recipient_id not in {r.recipient_id for r in model.recipients}:
            raise RecordNotFoundError(
                f"Notification {notification_id} not found for recipient {recipient_id}"
            )
        return model

    @staticmethod
    def _all_read(model: NotificationModel) -> bool:
        readers = {r.recipient_id for r in model.read_receipts}
        recipients = [r.recipient_id for r in model.recipients]
        return bool(recipients) and all(r in readers for r in recipients)

    # ------------------------------------------------------------------
    # Read reconciliation
    # ------------------------------------------------------------------

    def find_read_flag_mismatches(self, limit: int) -> List[str]:
        """Ids whose cached ``is_read_by_all`` is wrong, oldest first."""
        try:
            stmt = (
                select(NotificationModel.id)
                .where(read_flag_mismatch())
                .order_by(NotificationModel.created_at, NotificationModel.id)
                .limit(limit)
            )
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error finding read flag mismatches: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find read flag mismatches: {e}") from e

    def count_read_flag_mismatches(self) -> int:
        try:
            stmt = select(func.count()).select_from(NotificationModel).where(read_flag_mismatch())
            return self.session.execute(stmt).scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Error counting read flag mismatches: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count read flag mismatches: {e}") from e

    def read_flag_mismatch_rows(self) -> List[Tuple[Optional[str], str, str]]:
        """``(notification_group, type, created_at)`` for every mismatched row."""
        try:
            stmt = select(
                NotificationModel.notification_group,
                NotificationModel.type,
                NotificationModel.created_at,
            ).where(read_flag_mismatch())
            return [tuple(row) for row in self.session.execute(stmt).all()]
        except SQLAlchemyError as e:
            logger.error(f"Error loading read flag mismatches: {e}", exc_info=True)
            raise PersistenceError(f"Failed to load read flag mismatches: {e}") from e

    def reconcile_read_flags(self, notification_ids: Sequence[str]) -> int:
        """Recompute ``is_read_by_all`` in SQL for ``id IN notification_ids``."""
        if not notification_ids:
            return 0
        recipients = _recipient_count()
        readers = _read_recipient_count()
        try:
            stmt = (
                update(NotificationModel)
                .where(NotificationModel.id.in_(list(notification_ids)))
                .values(
                    is_read_by_all=case(
                        (and_(recipients > 0, readers >= recipients), True),
                        else_=False,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error reconciling read flags: {e}", exc_info=True)
            raise PersistenceError(f"Failed to reconcile read flags: {e}") from e

    def prune_read_receipts(self, cutoff: datetime, now: datetime) -> int:
        """Drop receipts read before ``cutoff`` from notifications that expired before ``now``.

        Read flags of the touched notifications are recomputed afterwards.

        Returns:
            Number of notifications whose receipts were pruned
        """
        try:
            stmt = (
                select(ReadReceiptModel.notification_id)
                .join(NotificationModel, NotificationModel.id == ReadReceiptModel.notification_id)
                .where(
                    ReadReceiptModel.read_at < _format_datetime(cutoff),
                    NotificationModel.expires_at.is_not(None),
                    NotificationModel.expires_at < _format_datetime(now),
                )
                .distinct()
            )
            notification_ids = list(self.session.execute(stmt).scalars().all())
            if not notification_ids:
                return 0

            self.session.execute(
                delete(ReadReceiptModel)
                .where(
                    ReadReceiptModel.notification_id.in_(notification_ids),
                    ReadReceiptModel.read_at < _format_datetime(cutoff),
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error(f"Error pruning old read receipts: {e}", exc_info=True)
            raise PersistenceError(f"Failed to prune read receipts: {e}") from e

        self.reconcile_read_flags(notification_ids)
        return len(notification_ids)

    # ------------------------------------------------------------------
    # Lifecycle advancement
    # ------------------------------------------------------------------

    def find_review_candidates(
        self, cutoff: datetime, limit: int, exclude_group_prefix: Optional[str] = None
    ) -> List[str]:
        """Active admin-managed ids created at or before ``cutoff`` with no reminder yet.

        ``exclude_group_prefix`` skips groups such as the reminders themselves.
        """
        group_filter = true()
        if exclude_group_prefix:
            group_filter = or_(
                NotificationModel.notification_group.is_(None),
                ~NotificationModel.notification_group.startswith(exclude_group_prefix, autoescape=True),
            )
        try:
            stmt = (
                select(NotificationModel.id)
                .where(
                    NotificationModel.admin_managed == true(),
                    NotificationModel.lifecycle_status == ACTIVE,
                    NotificationModel.reminder_sent_at.is_(None),
                    NotificationModel.created_at <= _format_datetime(cutoff),
                    group_filter,
                )
                .order_by(NotificationModel.created_at, NotificationModel.id)
                .limit(limit)
            )
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error finding review candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find review candidates: {e}") from e

    def mark_pending_review(self, notification_id: str, now: datetime) -> bool:
        """Move an active item to ``pending_review``. False if it no longer qualifies."""
        try:
            stmt = (
                update(NotificationModel)
                .where(
                    NotificationModel.id == notification_id,
                    NotificationModel.lifecycle_status == ACTIVE,
                    NotificationModel.reminder_sent_at.is_(None),
                )
                .values(lifecycle_status=PENDING_REVIEW, reminder_sent_at=_format_datetime(now))
                .execution_options(synchronize_session=False)
            )
            return (self.session.execute(stmt).rowcount or 0) == 1
        except SQLAlchemyError as e:
            logger.error(f"Error marking {notification_id} pending review: {e}", exc_info=True)
            raise PersistenceError(f"Failed to mark notification pending review: {e}") from e

    def find_extension_candidates(self, important_types: Sequence[str], limit: int) -> List[str]:
        """Pending-review admin-managed ids of important types that were never extended."""
        if not important_types:
            return []
        try:
            stmt = (
                select(NotificationModel.id)
                .where(
                    NotificationModel.admin_managed == true(),
                    NotificationModel.lifecycle_status == PENDING_REVIEW,
                    NotificationModel.extended_until.is_(None),
                    NotificationModel.type.in_(list(important_types)),
                )
                .order_by(NotificationModel.created_at, NotificationModel.id)
                .limit(limit)
            )
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error finding extension candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find extension candidates: {e}") from e

    def extend(
        self,
        notification_id: str,
        extended_until: datetime,
        history_entry: Dict[str, Any],
    ) -> Notification:
        """Set ``extended`` status and append ``history_entry`` to ``metadata.extensions``.

        Archived items stay archived.

        Raises:
            RecordNotFoundError: If the notification does not exist
            DataIntegrityError: If the notification is archived
        """
        model = self._get_model(notification_id)
        if model is None:
            raise RecordNotFoundError(f"Notification {notification_id} not found")
        if model.lifecycle_status == ARCHIVED:
            raise DataIntegrityError(f"Notification {notification_id} is archived and cannot be extended")

        try:
            metadata = dict(model.metadata_json or {})
            metadata["extensions"] = list(metadata.get("extensions", [])) + [history_entry]
            # Reassign so the JSON column is flagged dirty
            model.metadata_json = metadata
            model.lifecycle_status = EXTENDED
            model.extended_until = _format_datetime(extended_until)
            model.expires_at = _format_datetime(extended_until)
            self.session.flush()
            return model.to_domain()
        except SQLAlchemyError as e:
            logger.error(f"Error extending notification {notification_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to extend notification: {e}") from e

    # ------------------------------------------------------------------
    # Retention / cleanup
    # ------------------------------------------------------------------

    def _archive_filters(self, cutoff: datetime, excluded_types: Sequence[str], now: datetime):
        return (
            NotificationModel.admin_managed == true(),
            archive_eligible(now),
            NotificationModel.created_at < _format_datetime(cutoff),
            _type_filter(excluded_types),
        )

    def _delete_filters(
        self,
        cutoff: datetime,
        excluded_types: Sequence[str],
        now: datetime,
        include_unarchived: bool,
    ):
        status_filter = NotificationModel.lifecycle_status == ARCHIVED
        if include_unarchived:
            status_filter = or_(status_filter, archive_eligible(now))
        return (
            NotificationModel.admin_managed == true(),
            status_filter,
            NotificationModel.created_at < _format_datetime(cutoff),
            _type_filter(excluded_types),
        )

    def _read_delete_filters(self, cutoff: datetime, excluded_types: Sequence[str]):
        return (
            NotificationModel.admin_managed == true(),
            NotificationModel.lifecycle_status == ACTIVE,
            NotificationModel.is_read_by_all == true(),
            NotificationModel.created_at < _format_datetime(cutoff),
            _type_filter(excluded_types),
        )

    def _ids_where(self, filters, limit: int, order_by=None) -> List[str]:
        stmt = (
            select(NotificationModel.id)
            .where(*filters)
            .order_by(order_by if order_by is not None else NotificationModel.created_at, NotificationModel.id)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())

    def _count_where(self, filters) -> int:
        return self.session.execute(
            select(func.count()).select_from(NotificationModel).where(*filters)
        ).scalar_one()

    def archive_candidates(
        self, cutoff: datetime, excluded_types: Sequence[str], limit: int, now: datetime
    ) -> List[str]:
        try:
            return self._ids_where(self._archive_filters(cutoff, excluded_types, now), limit)
        except SQLAlchemyError as e:
            logger.error(f"Error finding archive candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find archive candidates: {e}") from e

    def count_archive_candidates(self, cutoff: datetime, excluded_types: Sequence[str], now: datetime) -> int:
        try:
            return self._count_where(self._archive_filters(cutoff, excluded_types, now))
        except SQLAlchemyError as e:
            logger.error(f"Error counting archive candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count archive candidates: {e}") from e

    def deletion_candidates(
        self,
        cutoff: datetime,
        excluded_types: Sequence[str],
        limit: int,
        now: datetime,
        include_unarchived: bool = False,
    ) -> List[str]:
        try:
            return self._ids_where(
                self._delete_filters(cutoff, excluded_types, now, include_unarchived), limit
            )
        except SQLAlchemyError as e:
            logger.error(f"Error finding deletion candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find deletion candidates: {e}") from e

    def count_deletion_candidates(
        self,
        cutoff: datetime,
        excluded_types: Sequence[str],
        now: datetime,
        include_unarchived: bool = False,
    ) -> int:
        try:
            return self._count_where(self._delete_filters(cutoff, excluded_types, now, include_unarchived))
        except SQLAlchemyError as e:
            logger.error(f"Error counting deletion candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count deletion candidates: {e}") from e

    def read_deletion_candidates(self, cutoff: datetime, excluded_types: Sequence[str], limit: int) -> List[str]:
        try:
            return self._ids_where(self._read_delete_filters(cutoff, excluded_types), limit)
        except SQLAlchemyError as e:
            logger.error(f"Error finding read deletion candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find read deletion candidates: {e}") from e

    def count_read_deletion_candidates(self, cutoff: datetime, excluded_types: Sequence[str]) -> int:
        try:
            return self._count_where(self._read_delete_filters(cutoff, excluded_types))
        except SQLAlchemyError as e:
            logger.error(f"Error counting read deletion candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count read deletion candidates: {e}") from e

    def count_archived(self) -> int:
        try:
            return self._count_where((NotificationModel.lifecycle_status == ARCHIVED,))
        except SQLAlchemyError as e:
            logger.error(f"Error counting archived notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count archived notifications: {e}") from e

    def archive_overflow_candidates(self, excluded_types: Sequence[str], limit: int) -> List[str]:
        """Oldest archived ids (by ``archived_at``), skipping excluded types."""
        try:
            filters = (
                NotificationModel.lifecycle_status == ARCHIVED,
                _type_filter(excluded_types),
            )
            return self._ids_where(filters, limit, order_by=NotificationModel.archived_at)
        except SQLAlchemyError as e:
            logger.error(f"Error finding archive overflow: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find archive overflow: {e}") from e

    def archive(self, notification_ids: Sequence[str], now: datetime, reason: str) -> int:
        """Archive ``id IN notification_ids``; already archived rows are left untouched."""
        if not notification_ids:
            return 0
        try:
            stmt = (
                update(NotificationModel)
                .where(
                    NotificationModel.id.in_(list(notification_ids)),
                    NotificationModel.lifecycle_status != ARCHIVED,
                )
                .values(
                    lifecycle_status=ARCHIVED,
                    archived_at=_format_datetime(now),
                    archived_reason=reason,
                )
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error archiving notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to archive notifications: {e}") from e

    def delete(self, notification_ids: Sequence[str]) -> int:
        """Delete ``id IN notification_ids``; recipient and receipt rows cascade."""
        if not notification_ids:
            return 0
        try:
            stmt = (
                delete(NotificationModel)
                .where(NotificationModel.id.in_(list(notification_ids)))
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete notifications: {e}") from e

    # ------------------------------------------------------------------
    # Admin selection
    # ------------------------------------------------------------------

    def find_ids(
        self,
        notification_ids: Optional[Sequence[str]] = None,
        types: Optional[Sequence[str]] = None,
        statuses: Optional[Sequence[str]] = None,
        groups: Optional[Sequence[str]] = None,
        priorities: Optional[Sequence[str]] = None,
        created_before: Optional[datetime] = None,
        admin_managed: Optional[bool] = None,
    ) -> List[str]:
        """Ids matching every supplied filter (None means "no filter")."""
        filters = []
        if notification_ids is not None:
            filters.append(NotificationModel.id.in_(list(notification_ids)))
        if types:
            filters.append(NotificationModel.type.in_([_value(t) for t in types]))
        if statuses:
            filters.append(NotificationModel.lifecycle_status.in_([_value(s) for s in statuses]))
        if groups:
            filters.append(NotificationModel.notification_group.in_(list(groups)))
        if priorities:
            filters.append(NotificationModel.priority.in_([_value(p) for p in priorities]))
        if created_before is not None:
            filters.append(NotificationModel.created_at < _format_datetime(created_before))
        if admin_managed is not None:
            filters.append(NotificationModel.admin_managed == (true() if admin_managed else false()))

        try:
            stmt = select(NotificationModel.id).where(*filters).order_by(NotificationModel.created_at)
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error selecting notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to select notifications: {e}") from e


def _apply_changes(model: Any, changes: Dict[str, Any], timestamp_fields: Iterable[str]) -> None:
    """Set attributes one by one so session change tracking records each field."""
    timestamp_fields = set(timestamp_fields)
    for name, value in changes.items():
        if not hasattr(model, name) or name in ("id", "created_at"):
            raise ValueError(f"Unknown or read-only field '{name}' for {type(model).__name__}")
        if name in timestamp_fields and isinstance(value, datetime):
            value = _format_datetime(value)
        setattr(model, name, _value(value))


class UserRepository:
    """Repository for upstream users."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, user: User) -> User:
        try:
            model = UserModel.from_domain(user)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()
        except IntegrityError as e:
            raise DataIntegrityError(f"Failed to insert user {user.id}: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error inserting user {user.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert user: {e}") from e

    def get(self, user_id: str) -> Optional[User]:
        try:
            model = self.session.get(UserModel, user_id)
            return model.to_domain() if model is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving user {user_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve user: {e}") from e

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        ids = list(user_ids)
        if not ids:
            return {}
        try:
            models = self.session.execute(select(UserModel).where(UserModel.id.in_(ids))).scalars().all()
            return {m.id: m.to_domain() for m in models}
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving users: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve users: {e}") from e

    def update(self, user_id: str, changes: Dict[str, Any], now: Optional[datetime] = None) -> User:
        """Apply ``changes`` to a user.

        Raises:
            RecordNotFoundError: If the user does not exist
        """
        model = self.session.get(UserModel, user_id)
        if model is None:
            raise RecordNotFoundError(f"User {user_id} not found")
        try:
            _apply_changes(model, changes, timestamp_fields=("updated_at",))
            if now is not None:
                model.updated_at = _format_datetime(now)
            self.session.flush()
            return model.to_domain()
        except SQLAlchemyError as e:
            logger.error(f"Error updating user {user_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update user: {e}") from e

    def delete(self, user_id: str) -> bool:
        model = self.session.get(UserModel, user_id)
        if model is None:
            return False
        try:
            self.session.delete(model)
            self.session.flush()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Error deleting user {user_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete user: {e}") from e

    def active_admin_ids(self) -> List[str]:
        """Ids of active admins and super admins, oldest account first."""
        try:
            stmt = (
                select(UserModel.id)
                .where(UserModel.role.in_(sorted(ADMIN_ROLES)), UserModel.status == UserStatus.ACTIVE.value)
                .order_by(UserModel.created_at, UserModel.id)
            )
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving active admins: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve active admins: {e}") from e

    def active_user_ids(self) -> List[str]:
        try:
            stmt = (
                select(UserModel.id)
                .where(UserModel.status == UserStatus.ACTIVE.value)
                .order_by(UserModel.created_at, UserModel.id)
            )
            return list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving active users: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve active users: {e}") from e


class QuotationRepository:
    """Repository for upstream quotations."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, quotation: Quotation) -> Quotation:
        try:
            model = QuotationModel.from_domain(quotation)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()
        except IntegrityError as e:
            raise DataIntegrityError(f"Failed to insert quotation {quotation.id}: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error inserting quotation {quotation.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert quotation: {e}") from e

    def get(self, quotation_id: str) -> Optional[Quotation]:
        model = self.session.get(QuotationModel, quotation_id)
        return model.to_domain() if model is not None else None

    def update(self, quotation_id: str, changes: Dict[str, Any], now: Optional[datetime] = None) -> Quotation:
        model = self.session.get(QuotationModel, quotation_id)
        if model is None:
            raise RecordNotFoundError(f"Quotation {quotation_id} not found")
        try:
            _apply_changes(model, changes, timestamp_fields=("valid_until", "updated_at"))
            if now is not None:
                model.updated_at = _format_datetime(now)
            self.session.flush()
            return model.to_domain()
        except SQLAlchemyError as e:
            logger.error(f"Error updating quotation {quotation_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update quotation: {e}") from e

    def delete(self, quotation_id: str) -> bool:
        model = self.session.get(QuotationModel, quotation_id)
        if model is None:
            return False
        self.session.delete(model)
        self.session.flush()
        return True

    def find_expired(self, now: datetime, limit: int = 500) -> List[Quotation]:
        """Active, unconverted quotations whose validity ended before ``now``."""
        try:
            stmt = (
                select(QuotationModel)
                .where(
                    QuotationModel.status == QuotationStatus.ACTIVE.value,
                    QuotationModel.converted == false(),
                    QuotationModel.valid_until.is_not(None),
                    QuotationModel.valid_until < _format_datetime(now),
                )
                .order_by(QuotationModel.valid_until)
                .limit(limit)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error finding expired quotations: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find expired quotations: {e}") from e


class ReceiptRepository:
    """Repository for upstream receipts."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, receipt: Receipt) -> Receipt:
        try:
            model = ReceiptModel.from_domain(receipt)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()
        except IntegrityError as e:
            raise DataIntegrityError(f"Failed to insert receipt {receipt.id}: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error inserting receipt {receipt.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert receipt: {e}") from e

    def get(self, receipt_id: str) -> Optional[Receipt]:
        model = self.session.get(ReceiptModel, receipt_id)
        return model.to_domain() if model is not None else None

    def update(self, receipt_id: str, changes: Dict[str, Any], now: Optional[datetime] = None) -> Receipt:
        model = self.session.get(ReceiptModel, receipt_id)
        if model is None:
            raise RecordNotFoundError(f"Receipt {receipt_id} not found")
        try:
            _apply_changes(model, changes, timestamp_fields=("due_date", "updated_at"))
            if now is not None:
                model.updated_at = _format_datetime(now)
            self.session.flush()
            return model.to_domain()
        except SQLAlchemyError as e:
            logger.error(f"Error updating receipt {receipt_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update receipt: {e}") from e

    def delete(self, receipt_id: str) -> bool:
        model = self.session.get(ReceiptModel, receipt_id)
        if model is None:
            return False
        self.session.delete(model)
        self.session.flush()
        return True

    def find_overdue(self, now: datetime, limit: int = 500) -> List[Receipt]:
        """Pending receipts whose due date passed before ``now``."""
        try:
            stmt = (
                select(ReceiptModel)
                .where(
                    ReceiptModel.payment_status == PaymentStatus.PENDING.value,
                    ReceiptModel.due_date.is_not(None),
                    ReceiptModel.due_date < _format_datetime(now),
                )
                .order_by(ReceiptModel.due_date)
                .limit(limit)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error finding overdue receipts: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find overdue receipts: {e}") from e


class SettingsRepository:
    """Repository for the single persisted retention settings record."""

    RECORD_ID = 1

    def __init__(self, session: Session):
        self.session = session

    def load(self) -> Optional[Dict[str, Any]]:
        """Return ``{"policy", "updated_at", "updated_by"}`` or None if never saved."""
        try:
            model = self.session.get(NotificationSettingsModel, self.RECORD_ID)
        except SQLAlchemyError as e:
            logger.error(f"Error loading notification settings: {e}", exc_info=True)
            raise PersistenceError(f"Failed to load notification settings: {e}") from e
        if model is None:
            return None
        return {
            "policy": dict(model.policy or {}),
            "updated_at": model.updated_at,
            "updated_by": model.updated_by,
        }

    def save(self, policy: Dict[str, Any], updated_by: Optional[str], now: datetime) -> None:
        try:
            model = self.session.get(NotificationSettingsModel, self.RECORD_ID)
            if model is None:
                model = NotificationSettingsModel(id=self.RECORD_ID)
                self.session.add(model)
            model.policy = dict(policy)
            model.updated_at = _format_datetime(now)
            model.updated_by = updated_by
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Error saving notification settings: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save notification settings: {e}") from e
