"""Exceptions raised by recipient and admin notification operations.

These map to client errors: the caller asked for something invalid or
something they are not allowed to see.
"""

from typing import List, Optional


class NotificationError(Exception):
    """Base exception for notification operations."""

    pass


class ValidationError(NotificationError):
    """Raised when a request is rejected before any write happens."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        detail = f"{message}: {'; '.join(self.errors)}" if self.errors else message
        super().__init__(detail)


class NotificationNotFoundError(NotificationError):
    """Raised when a notification does not exist or is not visible to the caller."""

    pass


class NotAdminManagedError(NotificationError):
    """Raised when a lifecycle operation targets a notification outside the lifecycle."""

    pass


class NotificationTemplateError(NotificationError):
    """Raised when a notification title or message cannot be rendered."""

    pass
