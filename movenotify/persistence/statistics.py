"""Read-only aggregate queries for admin views, reports and health checks."""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import case, func, or_, select, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from movenotify.domain.models import LifecycleStatus, Notification

from .exceptions import PersistenceError
from .repositories import _value
from .schema import (
    NotificationModel,
    NotificationRecipientModel,
    ReadReceiptModel,
    _format_datetime,
    _parse_datetime,
)

logger = logging.getLogger(__name__)

# Rough per-row overheads used for the storage estimate
NOTIFICATION_ROW_BYTES = 256
RECIPIENT_ROW_BYTES = 64
RECEIPT_ROW_BYTES = 96

GROUPABLE_COLUMNS = {
    "notification_group": NotificationModel.notification_group,
    "type": NotificationModel.type,
    "lifecycle_status": NotificationModel.lifecycle_status,
}


class NotificationStatsRepository:
    """Aggregations over the notification store. Never writes."""

    def __init__(self, session: Session):
        self.session = session

    def _filters(
        self,
        types: Optional[Sequence[str]] = None,
        statuses: Optional[Sequence[str]] = None,
        priorities: Optional[Sequence[str]] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        admin_managed: Optional[bool] = None,
    ) -> List[Any]:
        filters = []
        if types:
            filters.append(NotificationModel.type.in_([_value(t) for t in types]))
        if statuses:
            filters.append(NotificationModel.lifecycle_status.in_([_value(s) for s in statuses]))
        if priorities:
            filters.append(NotificationModel.priority.in_([_value(p) for p in priorities]))
        if created_from is not None:
            filters.append(NotificationModel.created_at >= _format_datetime(created_from))
        if created_to is not None:
            filters.append(NotificationModel.created_at <= _format_datetime(created_to))
        if admin_managed is not None:
            filters.append(NotificationModel.admin_managed == admin_managed)
        return filters

    def group_summaries(
        self,
        group_by: str = "notification_group",
        sort: str = "newest",
        offset: int = 0,
        limit: int = 20,
        **filter_kwargs: Any,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """One row per distinct value of ``group_by``.

        Args:
            group_by: notification_group, type or lifecycle_status
            sort: newest, oldest or count
            **filter_kwargs: Forwarded to the row filters

        Returns:
            Tuple of (group rows, total number of groups)
        """
        column = GROUPABLE_COLUMNS.get(group_by)
        if column is None:
            raise ValueError(
                f"Cannot group by '{group_by}'. Choose one of: {', '.join(GROUPABLE_COLUMNS)}"
            )
        filters = self._filters(**filter_kwargs)

        total_col = func.count(NotificationModel.id).label("total")
        newest_col = func.max(NotificationModel.created_at).label("newest")
        oldest_col = func.min(NotificationModel.created_at).label("oldest")
        order = {
            "newest": newest_col.desc(),
            "oldest": oldest_col.asc(),
            "count": total_col.desc(),
        }.get(sort)
        if order is None:
            raise ValueError(f"Unknown sort '{sort}'. Choose newest, oldest or count")

        try:
            base = (
                select(
                    column.label("key"),
                    total_col,
                    func.sum(case((NotificationModel.is_read_by_all == true(), 1), else_=0)).label("read_by_all"),
                    func.sum(
                        case((NotificationModel.lifecycle_status == LifecycleStatus.PENDING_REVIEW.value, 1), else_=0)
                    ).label("pending_review"),
                    oldest_col,
                    newest_col,
                    func.max(NotificationModel.title).label("sample_title"),
                )
                .where(*filters)
                .group_by(column)
            )
            total_groups = self.session.execute(
                select(func.count()).select_from(base.subquery())
            ).scalar_one()
            rows = self.session.execute(base.order_by(order, column).offset(offset).limit(limit)).all()

            keys = [row.key for row in rows]
            types_by_key: Dict[Any, List[str]] = defaultdict(list)
            if keys:
                key_filter = column.in_([k for k in keys if k is not None])
                if None in keys:
                    key_filter = or_(key_filter, column.is_(None))
                pairs = self.session.execute(
                    select(column, NotificationModel.type)
                    .where(*filters, key_filter)
                    .distinct()
                    .order_by(NotificationModel.type)
                ).all()
                for key, notification_type in pairs:
                    types_by_key[key].append(notification_type)

            summaries = [
                {
                    "key": row.key,
                    "total": row.total,
                    "read_by_all": int(row.read_by_all or 0),
                    "unread": row.total - int(row.read_by_all or 0),
                    "pending_review": int(row.pending_review or 0),
                    "types": types_by_key.get(row.key, []),
                    "oldest": _parse_datetime(row.oldest),
                    "newest": _parse_datetime(row.newest),
                    "sample_title": row.sample_title,
                }
                for row in rows
            ]
            return summaries, total_groups
        except SQLAlchemyError as e:
            logger.error(f"Error summarising notifications by {group_by}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to summarise notifications: {e}") from e

    def overall_stats(self, now: datetime) -> Dict[str, Any]:
        """Totals by status, type and priority plus read and expiry counts."""
        try:
            total = self.session.execute(select(func.count(NotificationModel.id))).scalar_one()
            read_by_all = self.session.execute(
                select(func.count(NotificationModel.id)).where(NotificationModel.is_read_by_all == true())
            ).scalar_one()
            expired = self.session.execute(
                select(func.count(NotificationModel.id)).where(
                    NotificationModel.expires_at.is_not(None),
                    NotificationModel.expires_at <= _format_datetime(now),
                )
            ).scalar_one()
            return {
                "total": total,
                "read_by_all": read_by_all,
                "expired": expired,
                "by_status": self._count_by(NotificationModel.lifecycle_status),
                "by_type": self._count_by(NotificationModel.type),
                "by_priority": self._count_by(NotificationModel.priority),
            }
        except SQLAlchemyError as e:
            logger.error(f"Error computing notification stats: {e}", exc_info=True)
            raise PersistenceError(f"Failed to compute notification stats: {e}") from e

    def _count_by(self, column) -> Dict[str, int]:
        rows = self.session.execute(
            select(column, func.count(NotificationModel.id)).group_by(column)
        ).all()
        return {key: count for key, count in rows}

    def pending_review_page(
        self, offset: int = 0, limit: int = 20, oldest_first: bool = True
    ) -> Tuple[List[Notification], int]:
        try:
            filters = (
                NotificationModel.admin_managed == true(),
                NotificationModel.lifecycle_status == LifecycleStatus.PENDING_REVIEW.value,
            )
            total = self.session.execute(
                select(func.count(NotificationModel.id)).where(*filters)
            ).scalar_one()
            order = NotificationModel.created_at.asc() if oldest_first else NotificationModel.created_at.desc()
            models = self.session.execute(
                select(NotificationModel).where(*filters).order_by(order, NotificationModel.id).offset(offset).limit(limit)
            ).scalars().all()
            return [m.to_domain() for m in models], total
        except SQLAlchemyError as e:
            logger.error(f"Error listing pending review notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list pending review notifications: {e}") from e

    def pending_review_groups(self) -> List[Dict[str, Any]]:
        """Pending-review items grouped by notification group, oldest group first."""
        try:
            rows = self.session.execute(
                select(
                    NotificationModel.notification_group,
                    NotificationModel.type,
                    NotificationModel.created_at,
                ).where(
                    NotificationModel.admin_managed == true(),
                    NotificationModel.lifecycle_status == LifecycleStatus.PENDING_REVIEW.value,
                )
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Error grouping pending review notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to group pending review notifications: {e}") from e

        groups: Dict[Optional[str], Dict[str, Any]] = {}
        for group, notification_type, created_at in rows:
            entry = groups.setdefault(
                group, {"notification_group": group, "count": 0, "types": set(), "oldest": None, "newest": None}
            )
            created = _parse_datetime(created_at)
            entry["count"] += 1
            entry["types"].add(notification_type)
            entry["oldest"] = created if entry["oldest"] is None else min(entry["oldest"], created)
            entry["newest"] = created if entry["newest"] is None else max(entry["newest"], created)

        result = []
        for entry in groups.values():
            entry["types"] = sorted(entry["types"])
            result.append(entry)
        return sorted(result, key=lambda e: e["oldest"])

    def creation_rows(self, created_from: datetime, created_to: datetime) -> List[Tuple[str, str, str, bool, int]]:
        """``(day, type, priority, is_read_by_all, count)`` rows for analytics bucketing."""
        day = func.substr(NotificationModel.created_at, 1, 10)
        try:
            stmt = (
                select(
                    day.label("day"),
                    NotificationModel.type,
                    NotificationModel.priority,
                    NotificationModel.is_read_by_all,
                    func.count(NotificationModel.id),
                )
                .where(*self._filters(created_from=created_from, created_to=created_to))
                .group_by(day, NotificationModel.type, NotificationModel.priority, NotificationModel.is_read_by_all)
                .order_by(day)
            )
            return [
                (row[0], row[1], row[2], bool(row[3]), row[4])
                for row in self.session.execute(stmt).all()
            ]
        except SQLAlchemyError as e:
            logger.error(f"Error loading analytics rows: {e}", exc_info=True)
            raise PersistenceError(f"Failed to load analytics rows: {e}") from e

    def count_created_since(self, since: datetime) -> int:
        try:
            return self.session.execute(
                select(func.count(NotificationModel.id)).where(
                    NotificationModel.created_at >= _format_datetime(since)
                )
            ).scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Error counting recent notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count recent notifications: {e}") from e

    def storage_stats(self) -> Dict[str, Any]:
        """Row counts plus an approximate size of the notification store."""
        try:
            row = self.session.execute(
                select(
                    func.count(NotificationModel.id),
                    func.sum(case((NotificationModel.lifecycle_status == LifecycleStatus.ACTIVE.value, 1), else_=0)),
                    func.sum(case((NotificationModel.lifecycle_status == LifecycleStatus.ARCHIVED.value, 1), else_=0)),
                    func.sum(case((NotificationModel.is_read_by_all == true(), 1), else_=0)),
                    func.sum(func.length(NotificationModel.title) + func.length(NotificationModel.message)),
                    func.min(NotificationModel.created_at),
                    func.max(NotificationModel.created_at),
                )
            ).one()
            recipients = self.session.execute(
                select(func.count()).select_from(NotificationRecipientModel)
            ).scalar_one()
            receipts = self.session.execute(
                select(func.count()).select_from(ReadReceiptModel)
            ).scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Error computing storage statistics: {e}", exc_info=True)
            raise PersistenceError(f"Failed to compute storage statistics: {e}") from e

        total, active, archived, read, text_bytes, oldest, newest = row
        total = total or 0
        estimated_bytes = (
            int(text_bytes or 0)
            + total * NOTIFICATION_ROW_BYTES
            + recipients * RECIPIENT_ROW_BYTES
            + receipts * RECEIPT_ROW_BYTES
        )
        return {
            "total_notifications": total,
            "active_count": int(active or 0),
            "archived_count": int(archived or 0),
            "read_count": int(read or 0),
            "recipient_rows": recipients,
            "read_receipt_rows": receipts,
            "estimated_size_bytes": estimated_bytes,
            "estimated_size_mb": round(estimated_bytes / (1024 * 1024), 2),
            "read_percentage": round(int(read or 0) * 100 / total) if total else 0,
            "oldest_notification": _parse_datetime(oldest),
            "newest_notification": _parse_datetime(newest),
        }
