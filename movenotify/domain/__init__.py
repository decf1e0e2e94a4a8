"""Domain models shared by persistence, event capture and the jobs."""

from .models import (
    ChangeEvent,
    ChangeOperation,
    EntityKind,
    FieldChange,
    LifecycleStatus,
    Notification,
    NotificationType,
    PaymentStatus,
    Priority,
    Quotation,
    QuotationStatus,
    ReadReceipt,
    Receipt,
    RetentionPolicy,
    User,
    UserRole,
    UserStatus,
    default_expiry,
)
from .schemas import ENTITY_SCHEMAS, EntitySchema, get_entity_schema

__all__ = [
    "ChangeEvent",
    "ChangeOperation",
    "EntityKind",
    "FieldChange",
    "LifecycleStatus",
    "Notification",
    "NotificationType",
    "PaymentStatus",
    "Priority",
    "Quotation",
    "QuotationStatus",
    "ReadReceipt",
    "Receipt",
    "RetentionPolicy",
    "User",
    "UserRole",
    "UserStatus",
    "default_expiry",
    "ENTITY_SCHEMAS",
    "EntitySchema",
    "get_entity_schema",
]
