"""Notification creation, recipient views, admin operations and settings."""

from .admin import AdminNotificationService
from .exceptions import (
    NotAdminManagedError,
    NotificationError,
    NotificationNotFoundError,
    NotificationTemplateError,
    ValidationError,
)
from .models import BulkDeleteCriteria, BulkDeleteResult, Page, RecipientNotification
from .service import NotificationService
from .settings import SettingsStore
from .templates import CLEANUP_REPORT, LIFECYCLE_REMINDER, NotificationTemplates

__all__ = [
    "AdminNotificationService",
    "NotificationService",
    "SettingsStore",
    "NotificationTemplates",
    "LIFECYCLE_REMINDER",
    "CLEANUP_REPORT",
    "Page",
    "RecipientNotification",
    "BulkDeleteCriteria",
    "BulkDeleteResult",
    "NotificationError",
    "ValidationError",
    "NotificationNotFoundError",
    "NotAdminManagedError",
    "NotificationTemplateError",
]
