"""Core domain models.

This module defines the data structures used throughout the service:
- Notification / ReadReceipt: one logical notification fanned out to many
  recipients, each with independent read state
- User, Quotation, Receipt: the upstream entities whose changes produce
  notifications (only the fields the notification subsystem reads)
- ChangeEvent: a captured insert/update/delete of an upstream entity
- RetentionPolicy: the tunable rules shared by the lifecycle jobs
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from movenotify.utils.timestamps import ensure_utc, utc_now


class NotificationType(str, Enum):
    """Kinds of notification the service emits."""

    DOCUMENT_CREATED = "document_created"
    DOCUMENT_UPDATED = "document_updated"
    DOCUMENT_DELETED = "document_deleted"
    QUOTATION_EXPIRED = "quotation_expired"
    QUOTATION_CONVERTED = "quotation_converted"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_OVERDUE = "payment_overdue"
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_ROLE_CHANGED = "user_role_changed"
    USER_SUSPENDED = "user_suspended"
    USER_ACTIVATED = "user_activated"
    USER_DELETED = "user_deleted"
    PROFILE_INCOMPLETE = "profile_incomplete"
    SYSTEM_MAINTENANCE = "system_maintenance"
    BACKUP_COMPLETED = "backup_completed"
    SECURITY_ALERT = "security_alert"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class LifecycleStatus(str, Enum):
    """Retention lifecycle states. Row deletion is the terminal state."""

    ACTIVE = "active"
    PENDING_REVIEW = "pending_review"
    EXTENDED = "extended"
    ARCHIVED = "archived"


class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class QuotationStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CONVERTED = "converted"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class EntityKind(str, Enum):
    """Upstream collections watched for changes."""

    USER = "user"
    QUOTATION = "quotation"
    RECEIPT = "receipt"


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


ADMIN_ROLES = frozenset({UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value})

# Default time-to-live by priority when a notification is created without one
EXPIRY_BY_PRIORITY = {
    Priority.LOW.value: timedelta(days=7),
    Priority.NORMAL.value: timedelta(days=30),
    Priority.HIGH.value: timedelta(days=90),
    Priority.URGENT.value: timedelta(days=180),
}


def default_expiry(priority: str, created_at: Optional[datetime] = None) -> datetime:
    """Compute the default ``expires_at`` for a notification of ``priority``."""
    start = ensure_utc(created_at) if created_at is not None else utc_now()
    key = priority.value if isinstance(priority, Priority) else priority
    return start + EXPIRY_BY_PRIORITY.get(key, EXPIRY_BY_PRIORITY[Priority.NORMAL.value])


class ReadReceipt(BaseModel):
    """Marks that one recipient has read a notification."""

    recipient_id: str = Field(..., min_length=1)
    read_at: datetime

    @field_validator("read_at")
    @classmethod
    def normalize_read_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class Notification(BaseModel):
    """A single logical notification delivered to one or more recipients.

    Read state lives in ``read_receipts``; ``is_read_by_all`` is a cached
    summary of it that the read reconciliation job keeps accurate.
    """

    id: str = Field(..., min_length=1)
    type: NotificationType
    title: str
    message: str
    priority: Priority = Priority.NORMAL
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    actor_id: Optional[str] = None
    recipient_ids: List[str] = Field(..., min_length=1)
    read_receipts: List[ReadReceipt] = Field(default_factory=list)
    is_read_by_all: bool = False
    notification_group: Optional[str] = None
    admin_managed: bool = True
    lifecycle_status: LifecycleStatus = LifecycleStatus.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None
    extended_until: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    archived_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"use_enum_values": True, "validate_default": True}

    @field_validator("recipient_ids")
    @classmethod
    def dedupe_recipients(cls, v: List[str]) -> List[str]:
        """Drop duplicate recipients while keeping first-seen order."""
        seen = []
        for recipient_id in v:
            if not recipient_id or not str(recipient_id).strip():
                raise ValueError("Recipient ids cannot be empty")
            if recipient_id not in seen:
                seen.append(recipient_id)
        return seen

    @field_validator(
        "created_at", "expires_at", "reminder_sent_at", "extended_until", "archived_at"
    )
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_receipts(self):
        """Receipts must belong to recipients and be unique per recipient."""
        seen = set()
        for receipt in self.read_receipts:
            if receipt.recipient_id not in self.recipient_ids:
                raise ValueError(
                    f"Read receipt for non-recipient '{receipt.recipient_id}'"
                )
            if receipt.recipient_id in seen:
                raise ValueError(
                    f"Duplicate read receipt for recipient '{receipt.recipient_id}'"
                )
            seen.add(receipt.recipient_id)
        return self

    @property
    def primary_recipient_id(self) -> str:
        return self.recipient_ids[0]

    def is_read_by(self, recipient_id: str) -> bool:
        return any(r.recipient_id == recipient_id for r in self.read_receipts)

    def computed_read_by_all(self) -> bool:
        """Whether every recipient currently holds a read receipt."""
        readers = {r.recipient_id for r in self.read_receipts}
        return all(recipient_id in readers for recipient_id in self.recipient_ids)


class User(BaseModel):
    """Upstream user account (only what notifications need)."""

    id: str
    full_name: str
    email: str
    role: UserRole = UserRole.STAFF
    status: UserStatus = UserStatus.ACTIVE
    profile_completed: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    model_config = {"use_enum_values": True, "validate_default": True}

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value


class Quotation(BaseModel):
    """Upstream quotation document."""

    id: str
    quotation_number: str
    customer_name: str
    total_amount: float = 0.0
    status: QuotationStatus = QuotationStatus.ACTIVE
    converted: bool = False
    valid_until: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    model_config = {"use_enum_values": True, "validate_default": True}

    @field_validator("valid_until", "created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class Receipt(BaseModel):
    """Upstream payment receipt / invoice."""

    id: str
    receipt_number: str
    customer_name: str
    amount: float = 0.0
    status: str = "issued"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    due_date: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    model_config = {"use_enum_values": True, "validate_default": True}

    @field_validator("due_date", "created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class FieldChange(BaseModel):
    """One labelled field in the ``metadata.changes`` of an update notification."""

    field: str
    label: str
    value: Any = None


class ChangeEvent(BaseModel):
    """A captured change to an upstream entity.

    ``document`` is the state after the change (before it, for deletes);
    ``changes`` maps updated attribute names to their new values and
    ``previous`` to their old values.
    """

    entity: EntityKind
    operation: ChangeOperation
    entity_id: str
    document: Dict[str, Any] = Field(default_factory=dict)
    changes: Dict[str, Any] = Field(default_factory=dict)
    previous: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)

    model_config = {"use_enum_values": True, "validate_default": True}

    def changed(self, field: str) -> bool:
        return field in self.changes


class RetentionPolicy(BaseModel):
    """Retention rules read by the lifecycle, reconciliation and cleanup jobs.

    Jobs take one snapshot of the policy per run; an update made while a
    run is in progress applies from the next run.
    """

    min_age_for_archiving: int = Field(60, ge=1, description="Days before an item may be archived")
    min_age_for_deletion: int = Field(180, ge=1, description="Days before an archived item may be deleted")
    max_retention_days: int = Field(90, ge=1, description="Days before a fully read item may be deleted")
    archive_before_delete: bool = True
    preserve_important_notifications: bool = True
    important_notification_types: List[NotificationType] = Field(
        default_factory=lambda: [
            NotificationType.PAYMENT_OVERDUE,
            NotificationType.SECURITY_ALERT,
            NotificationType.SYSTEM_MAINTENANCE,
        ]
    )
    max_archive_size: int = Field(10000, ge=0)
    notification_batch_size: int = Field(100, ge=1, le=10000)
    enable_auto_cleanup: bool = True
    auto_delete_read_notifications: bool = False
    auto_extend_important: bool = True
    reminder_days_before_expiry: int = Field(1, ge=0)

    model_config = {"use_enum_values": True, "validate_default": True}

    @field_validator("important_notification_types")
    @classmethod
    def dedupe_types(cls, v: List[NotificationType]) -> List[NotificationType]:
        unique = []
        for item in v:
            if item not in unique:
                unique.append(item)
        return unique

    def is_important(self, notification_type: str) -> bool:
        return notification_type in self.important_notification_types

    def excluded_types(self) -> List[str]:
        """Types the age-based steps must skip under the current policy."""
        if not self.preserve_important_notifications:
            return []
        return list(self.important_notification_types)
