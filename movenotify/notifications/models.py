"""Result types returned by the notification services."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from movenotify.domain.models import LifecycleStatus, Notification, NotificationType, Priority

T = TypeVar("T")


@dataclass
class RecipientNotification:
    """A notification as seen by one recipient."""

    notification: Notification
    read: bool
    read_at: Optional[datetime] = None

    @classmethod
    def for_recipient(cls, notification: Notification, recipient_id: str) -> "RecipientNotification":
        receipt = next(
            (r for r in notification.read_receipts if r.recipient_id == recipient_id), None
        )
        return cls(
            notification=notification,
            read=receipt is not None,
            read_at=receipt.read_at if receipt else None,
        )


@dataclass
class Page(Generic[T]):
    """One page of results plus paging metadata."""

    items: List[T]
    page: int
    limit: int
    total: int
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages


class BulkDeleteCriteria(BaseModel):
    """Selection for an admin bulk delete. At least one criterion is required."""

    notification_ids: Optional[List[str]] = None
    types: Optional[List[NotificationType]] = None
    lifecycle_statuses: Optional[List[LifecycleStatus]] = None
    notification_groups: Optional[List[str]] = None
    priorities: Optional[List[Priority]] = None
    older_than_days: Optional[int] = Field(None, ge=1)

    model_config = {"use_enum_values": True, "extra": "forbid"}

    @field_validator("notification_ids", "notification_groups")
    @classmethod
    def drop_blank(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        return [item.strip() for item in v if item and item.strip()]

    def is_empty(self) -> bool:
        return not any(
            [
                self.notification_ids,
                self.types,
                self.lifecycle_statuses,
                self.notification_groups,
                self.priorities,
                self.older_than_days,
            ]
        )


@dataclass
class BulkDeleteResult:
    deleted: int
    matched: int
    skipped_not_admin_managed: int = 0
