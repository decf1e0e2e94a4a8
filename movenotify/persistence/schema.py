"""Database schema definition and ORM models.

Timestamps are stored as fixed-width ISO 8601 UTC strings
(``YYYY-MM-DDTHH:MM:SS.ffffffZ``) so that string comparison in SQL is
chronological comparison.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship

from movenotify.domain.models import Notification, Quotation, ReadReceipt, Receipt, User

logger = logging.getLogger(__name__)

Base = declarative_base()

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class NotificationModel(Base):
    """ORM model for the notifications table."""

    __tablename__ = "notifications"

    id = Column(String(32), primary_key=True, nullable=False)
    type = Column(String(50), nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String(20), nullable=False, default="normal")
    action_url = Column(Text, nullable=True)
    action_text = Column(String(255), nullable=True)
    actor_id = Column(String(64), nullable=True)
    primary_recipient_id = Column(String(64), nullable=False)
    is_read_by_all = Column(Boolean, nullable=False, default=False)
    notification_group = Column(String(255), nullable=True)
    admin_managed = Column(Boolean, nullable=False, default=True)
    lifecycle_status = Column(String(20), nullable=False, default="active")

    created_at = Column(String(30), nullable=False)
    expires_at = Column(String(30), nullable=True)
    reminder_sent_at = Column(String(30), nullable=True)
    extended_until = Column(String(30), nullable=True)
    archived_at = Column(String(30), nullable=True)
    archived_reason = Column(String(100), nullable=True)

    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)

    recipients = relationship(
        "NotificationRecipientModel",
        order_by="NotificationRecipientModel.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )
    read_receipts = relationship(
        "ReadReceiptModel",
        order_by="ReadReceiptModel.read_at",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_notifications_lifecycle", "admin_managed", "lifecycle_status", "created_at"),
        Index("idx_notifications_read_flag", "is_read_by_all"),
        Index("idx_notifications_group", "notification_group"),
        Index("idx_notifications_type_created", "type", "created_at"),
        Index("idx_notifications_archived_at", "archived_at"),
    )

    def to_domain(self) -> Notification:
        """Convert ORM model to domain model."""
        return Notification(
            id=self.id,
            type=self.type,
            title=self.title,
            message=self.message,
            priority=self.priority,
            action_url=self.action_url,
            action_text=self.action_text,
            actor_id=self.actor_id,
            recipient_ids=[r.recipient_id for r in self.recipients],
            read_receipts=[
                ReadReceipt(recipient_id=r.recipient_id, read_at=_parse_datetime(r.read_at))
                for r in self.read_receipts
            ],
            is_read_by_all=bool(self.is_read_by_all),
            notification_group=self.notification_group,
            admin_managed=bool(self.admin_managed),
            lifecycle_status=self.lifecycle_status,
            created_at=_parse_datetime(self.created_at),
            expires_at=_parse_datetime(self.expires_at),
            reminder_sent_at=_parse_datetime(self.reminder_sent_at),
            extended_until=_parse_datetime(self.extended_until),
            archived_at=_parse_datetime(self.archived_at),
            archived_reason=self.archived_reason,
            metadata=dict(self.metadata_json or {}),
        )

    @classmethod
    def from_domain(cls, notification: Notification) -> "NotificationModel":
        """Create ORM model (with recipient and receipt rows) from a domain model."""
        model = cls(
            id=notification.id,
            type=notification.type,
            title=notification.title,
            message=notification.message,
            priority=notification.priority,
            action_url=notification.action_url,
            action_text=notification.action_text,
            actor_id=notification.actor_id,
            primary_recipient_id=notification.primary_recipient_id,
            is_read_by_all=notification.is_read_by_all,
            notification_group=notification.notification_group,
            admin_managed=notification.admin_managed,
            lifecycle_status=notification.lifecycle_status,
            created_at=_format_datetime(notification.created_at),
            expires_at=_format_datetime(notification.expires_at),
            reminder_sent_at=_format_datetime(notification.reminder_sent_at),
            extended_until=_format_datetime(notification.extended_until),
            archived_at=_format_datetime(notification.archived_at),
            archived_reason=notification.archived_reason,
            metadata_json=dict(notification.metadata),
        )
        model.recipients = [
            NotificationRecipientModel(recipient_id=recipient_id, position=position)
            for position, recipient_id in enumerate(notification.recipient_ids)
        ]
        model.read_receipts = [
            ReadReceiptModel(recipient_id=r.recipient_id, read_at=_format_datetime(r.read_at))
            for r in notification.read_receipts
        ]
        return model


class NotificationRecipientModel(Base):
    """One recipient of a notification; position preserves recipient order."""

    __tablename__ = "notification_recipients"

    notification_id = Column(
        String(32),
        ForeignKey("notifications.id", ondelete="CASCADE"),
        primary_key=True,
        nullable=False,
    )
    recipient_id = Column(String(64), primary_key=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_recipients_recipient", "recipient_id"),)


class ReadReceiptModel(Base):
    """At most one read receipt per (notification, recipient)."""

    __tablename__ = "notification_read_receipts"

    notification_id = Column(
        String(32),
        ForeignKey("notifications.id", ondelete="CASCADE"),
        primary_key=True,
        nullable=False,
    )
    recipient_id = Column(String(64), primary_key=True, nullable=False)
    read_at = Column(String(30), nullable=False)

    __table_args__ = (Index("idx_read_receipts_recipient", "recipient_id"),)


class UserModel(Base):
    """ORM model for upstream users."""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="staff")
    status = Column(String(20), nullable=False, default="active")
    profile_completed = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(String(30), nullable=False)
    updated_at = Column(String(30), nullable=True)

    __table_args__ = (Index("idx_users_role_status", "role", "status"),)

    def to_domain(self) -> User:
        return User(
            id=self.id,
            full_name=self.full_name,
            email=self.email,
            role=self.role,
            status=self.status,
            profile_completed=bool(self.profile_completed),
            created_by=self.created_by,
            created_at=_parse_datetime(self.created_at),
            updated_at=_parse_datetime(self.updated_at),
        )

    @classmethod
    def from_domain(cls, user: User) -> "UserModel":
        return cls(
            id=user.id,
            full_name=user.full_name,
            email=user.email,
            role=user.role,
            status=user.status,
            profile_completed=user.profile_completed,
            created_by=user.created_by,
            created_at=_format_datetime(user.created_at),
            updated_at=_format_datetime(user.updated_at),
        )


class QuotationModel(Base):
    """ORM model for upstream quotations."""

    __tablename__ = "quotations"

    id = Column(String(64), primary_key=True, nullable=False)
    quotation_number = Column(String(64), nullable=False, unique=True)
    customer_name = Column(String(255), nullable=False)
    total_amount = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False, default="active")
    converted = Column(Boolean, nullable=False, default=False)
    valid_until = Column(String(30), nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(String(30), nullable=False)
    updated_at = Column(String(30), nullable=True)

    __table_args__ = (Index("idx_quotations_validity", "status", "valid_until"),)

    def to_domain(self) -> Quotation:
        return Quotation(
            id=self.id,
            quotation_number=self.quotation_number,
            customer_name=self.customer_name,
            total_amount=self.total_amount,
            status=self.status,
            converted=bool(self.converted),
            valid_until=_parse_datetime(self.valid_until),
            created_by=self.created_by,
            created_at=_parse_datetime(self.created_at),
            updated_at=_parse_datetime(self.updated_at),
        )

    @classmethod
    def from_domain(cls, quotation: Quotation) -> "QuotationModel":
        return cls(
            id=quotation.id,
            quotation_number=quotation.quotation_number,
            customer_name=quotation.customer_name,
            total_amount=quotation.total_amount,
            status=quotation.status,
            converted=quotation.converted,
            valid_until=_format_datetime(quotation.valid_until),
            created_by=quotation.created_by,
            created_at=_format_datetime(quotation.created_at),
            updated_at=_format_datetime(quotation.updated_at),
        )


class ReceiptModel(Base):
    """ORM model for upstream receipts."""

    __tablename__ = "receipts"

    id = Column(String(64), primary_key=True, nullable=False)
    receipt_number = Column(String(64), nullable=False, unique=True)
    customer_name = Column(String(255), nullable=False)
    amount = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False, default="issued")
    payment_status = Column(String(20), nullable=False, default="pending")
    due_date = Column(String(30), nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(String(30), nullable=False)
    updated_at = Column(String(30), nullable=True)

    __table_args__ = (Index("idx_receipts_payment_due", "payment_status", "due_date"),)

    def to_domain(self) -> Receipt:
        return Receipt(
            id=self.id,
            receipt_number=self.receipt_number,
            customer_name=self.customer_name,
            amount=self.amount,
            status=self.status,
            payment_status=self.payment_status,
            due_date=_parse_datetime(self.due_date),
            created_by=self.created_by,
            created_at=_parse_datetime(self.created_at),
            updated_at=_parse_datetime(self.updated_at),
        )

    @classmethod
    def from_domain(cls, receipt: Receipt) -> "ReceiptModel":
        return cls(
            id=receipt.id,
            receipt_number=receipt.receipt_number,
            customer_name=receipt.customer_name,
            amount=receipt.amount,
            status=receipt.status,
            payment_status=receipt.payment_status,
            due_date=_format_datetime(receipt.due_date),
            created_by=receipt.created_by,
            created_at=_format_datetime(receipt.created_at),
            updated_at=_format_datetime(receipt.updated_at),
        )


class NotificationSettingsModel(Base):
    """Single-row table holding the persisted retention policy."""

    __tablename__ = "notification_settings"

    id = Column(Integer, primary_key=True, nullable=False, default=1)
    policy = Column(JSON, nullable=False)
    updated_at = Column(String(30), nullable=False)
    updated_by = Column(String(64), nullable=True)


# Maps ORM classes of watched upstream entities to their entity kind
WATCHED_MODELS = {
    UserModel: "user",
    QuotationModel: "quotation",
    ReceiptModel: "receipt",
}


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as a fixed-width ISO 8601 UTC string for storage."""
    if dt is None:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return dt.strftime(TIMESTAMP_FORMAT)


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO 8601 string back to a UTC datetime."""
    if not dt_str:
        return None

    dt_str = dt_str.rstrip("Z")
    try:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S")

    return dt.replace(tzinfo=timezone.utc)


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes if they don't exist (idempotent)."""
    logger.info("Creating database schema if not exists")

    try:
        Base.metadata.create_all(engine, checkfirst=True)
        tables = inspect(engine).get_table_names()
        logger.info(f"Database schema ready. Tables: {', '.join(tables)}")
    except Exception as e:
        logger.error(f"Failed to create database schema: {e}", exc_info=True)
        raise
