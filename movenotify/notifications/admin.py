"""Admin operations over admin-managed notifications.

Covers manual creation, grouped summaries, the pending-review queue,
bulk deletion, manual extension, retention settings, analytics, manual
job runs and the system health report.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from movenotify.domain.models import (
    LifecycleStatus,
    Notification,
    NotificationType,
    Priority,
    UserStatus,
)
from movenotify.logging import get_logger
from movenotify.persistence import (
    NotificationRepository,
    NotificationStatsRepository,
    UserRepository,
    get_session,
)
from movenotify.persistence.statistics import GROUPABLE_COLUMNS
from movenotify.utils.timestamps import days_ago, ensure_utc, format_timestamp, utc_now

from .exceptions import NotAdminManagedError, NotificationNotFoundError, ValidationError
from .models import BulkDeleteCriteria, BulkDeleteResult, Page
from .service import NotificationService, _check_paging
from .settings import SettingsStore

logger = get_logger(__name__, component="admin")

MAX_EXTEND_DAYS = 365
DEFAULT_ANALYTICS_DAYS = 30
ANALYTICS_BUCKETS = ("day", "week", "month")
SUMMARY_SORTS = ("newest", "oldest", "count")

# Health scoring thresholds
JOB_ERROR_RATE_LIMIT = 0.1
JOB_STALE_HOURS = 48
STORAGE_WARN_TOTAL = 50000
STORAGE_WARN_MB = 100
STORAGE_CRITICAL_TOTAL = 100000
STORAGE_CRITICAL_MB = 500
CREATION_RATE_PER_HOUR_LIMIT = 100
CREATION_24H_ALERT = 5000


def _bucket_key(day: str, bucket: str) -> str:
    if bucket == "day":
        return day
    if bucket == "month":
        return day[:7]
    year, week, _ = datetime.strptime(day, "%Y-%m-%d").isocalendar()
    return f"{year}-W{week:02d}"


def _health_level(score: int) -> str:
    if score >= 90:
        return "excellent"
    if score >= 75:
        return "good"
    if score >= 50:
        return "warning"
    return "critical"


class AdminNotificationService:
    """Admin-facing operations. Callers are assumed to be authorised admins."""

    def __init__(
        self,
        notification_service: NotificationService,
        settings: SettingsStore,
        scheduler=None,
        session_factory=get_session,
    ):
        self.notification_service = notification_service
        self.settings = settings
        self.scheduler = scheduler
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_notification(
        self,
        actor_id: str,
        recipient_ids: Iterable[str],
        notification_type: str,
        title: str,
        message: str,
        priority: str = Priority.NORMAL.value,
        action_url: Optional[str] = None,
        action_text: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        notification_group: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Notification:
        """Create one admin-managed notification for the given recipients.

        Raises:
            ValidationError: If any input is invalid; nothing is written
        """
        recipients = list(dict.fromkeys(r for r in (recipient_ids or []) if r))
        errors: List[str] = []
        if not recipients:
            errors.append("At least one recipient is required")
        if not title or not title.strip():
            errors.append("Title is required")
        if not message or not message.strip():
            errors.append("Message is required")
        if notification_type not in {t.value for t in NotificationType}:
            errors.append(f"Unknown notification type '{notification_type}'")
        if priority not in {p.value for p in Priority}:
            errors.append(f"Unknown priority '{priority}'")

        if recipients:
            with self.session_factory() as session:
                users = UserRepository(session).get_many(recipients)
            for recipient_id in recipients:
                user = users.get(recipient_id)
                if user is None:
                    errors.append(f"Recipient '{recipient_id}' does not exist")
                elif user.status != UserStatus.ACTIVE.value:
                    errors.append(f"Recipient '{recipient_id}' is not active")

        if errors:
            raise ValidationError("Invalid notification", errors)

        now = now or utc_now()
        group = notification_group or f"{notification_type}_admin_{now:%Y_%m_%d}_{int(now.timestamp() * 1000)}"
        notification = self.notification_service.fan_out(
            notification_type,
            recipients,
            title.strip(),
            message.strip(),
            priority=priority,
            actor_id=actor_id,
            action_url=action_url,
            action_text=action_text,
            notification_group=group,
            admin_managed=True,
            metadata={**(metadata or {}), "created_by_admin": actor_id},
            created_at=now,
        )
        logger.info(
            "Admin created notification",
            extra={
                "event": "admin.notification.created",
                "admin_id": actor_id,
                "notification_id": notification.id,
                "recipient_count": len(recipients),
            },
        )
        return notification

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def get_summary(
        self,
        group_by: str = "notification_group",
        sort: str = "newest",
        page: int = 1,
        limit: int = 20,
        types: Optional[List[str]] = None,
        statuses: Optional[List[str]] = None,
        priorities: Optional[List[str]] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Page[Dict[str, Any]]:
        """Admin-managed notifications grouped by ``group_by``, plus overall totals.

        Raises:
            ValidationError: On unknown grouping, sort or paging values
        """
        _check_paging(page, limit)
        errors = []
        if group_by not in GROUPABLE_COLUMNS:
            errors.append(f"group_by must be one of: {', '.join(GROUPABLE_COLUMNS)}")
        if sort not in SUMMARY_SORTS:
            errors.append(f"sort must be one of: {', '.join(SUMMARY_SORTS)}")
        if errors:
            raise ValidationError("Invalid summary request", errors)

        with self.session_factory() as session:
            stats = NotificationStatsRepository(session)
            rows, total_groups = stats.group_summaries(
                group_by=group_by,
                sort=sort,
                offset=(page - 1) * limit,
                limit=limit,
                types=types,
                statuses=statuses,
                priorities=priorities,
                created_from=created_from,
                created_to=created_to,
                admin_managed=True,
            )
            overall = stats.overall_stats(now or utc_now())

        return Page(items=rows, page=page, limit=limit, total=total_groups, extra={"overall": overall, "group_by": group_by})

    def list_pending_review(
        self,
        page: int = 1,
        limit: int = 20,
        sort_order: str = "oldest",
        now: Optional[datetime] = None,
    ) -> Page[Notification]:
        """The pending-review queue with the grouped lifecycle report attached."""
        _check_paging(page, limit)
        if sort_order not in ("oldest", "newest"):
            raise ValidationError("Invalid sort order", ["sort_order must be 'oldest' or 'newest'"])

        with self.session_factory() as session:
            items, total = NotificationStatsRepository(session).pending_review_page(
                offset=(page - 1) * limit, limit=limit, oldest_first=sort_order == "oldest"
            )

        report = self._job("lifecycle").get_pending_review_report(now) if self._has_job("lifecycle") else None
        return Page(items=items, page=page, limit=limit, total=total, extra={"report": report})

    # ------------------------------------------------------------------
    # Bulk delete and extension
    # ------------------------------------------------------------------

    def bulk_delete(
        self,
        confirm: bool,
        criteria: Union[BulkDeleteCriteria, Dict[str, Any], None] = None,
        admin_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BulkDeleteResult:
        """Delete admin-managed notifications matching ``criteria``.

        Items that match but are not admin managed are counted and left alone.

        Raises:
            ValidationError: Without confirmation or with empty/invalid criteria
        """
        if not confirm:
            raise ValidationError("Confirmation required for bulk deletion")

        if not isinstance(criteria, BulkDeleteCriteria):
            try:
                criteria = BulkDeleteCriteria.model_validate(criteria or {})
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid deletion criteria",
                    [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
                ) from e

        if criteria.is_empty():
            raise ValidationError("No valid deletion criteria provided")

        now = now or utc_now()
        selection = dict(
            notification_ids=criteria.notification_ids or None,
            types=criteria.types,
            statuses=criteria.lifecycle_statuses,
            groups=criteria.notification_groups,
            priorities=criteria.priorities,
            created_before=days_ago(criteria.older_than_days, now) if criteria.older_than_days else None,
        )

        with self.session_factory() as session:
            repo = NotificationRepository(session)
            matched = repo.find_ids(**selection)
            managed = repo.find_ids(admin_managed=True, **selection)
            deleted = repo.delete(managed)

        result = BulkDeleteResult(
            deleted=deleted,
            matched=len(matched),
            skipped_not_admin_managed=len(matched) - len(managed),
        )
        logger.info(
            f"Admin bulk deletion removed {deleted} notifications",
            extra={
                "event": "admin.bulk_delete",
                "admin_id": admin_id,
                "deleted": result.deleted,
                "matched": result.matched,
                "skipped": result.skipped_not_admin_managed,
                "criteria": criteria.model_dump(exclude_none=True),
            },
        )
        return result

    def extend(
        self,
        notification_id: str,
        extend_days: int = 30,
        reason: str = "",
        admin_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Notification:
        """Push a notification's expiry out by ``extend_days``.

        The new expiry counts from the current extension, else the current
        expiry, else now.

        Raises:
            ValidationError: If ``extend_days`` is out of range or the notification is archived
            NotificationNotFoundError: If the notification does not exist
            NotAdminManagedError: If it is outside the lifecycle
        """
        if not isinstance(extend_days, int) or not 1 <= extend_days <= MAX_EXTEND_DAYS:
            raise ValidationError("Invalid extension", [f"extend_days must be between 1 and {MAX_EXTEND_DAYS}"])

        now = now or utc_now()
        with self.session_factory() as session:
            repo = NotificationRepository(session)
            notification = repo.get(notification_id)
            if notification is None:
                raise NotificationNotFoundError(f"Notification {notification_id} not found")
            if not notification.admin_managed:
                raise NotAdminManagedError(f"Notification {notification_id} is not admin managed")
            if notification.lifecycle_status == LifecycleStatus.ARCHIVED.value:
                raise ValidationError(
                    "Invalid extension", [f"Notification {notification_id} is archived and cannot be extended"]
                )

            current = notification.extended_until or notification.expires_at or now
            until = ensure_utc(current) + timedelta(days=extend_days)
            entry = {
                "extended_at": format_timestamp(now),
                "extended_by": admin_id,
                "extend_days": extend_days,
                "reason": reason,
                "previous_expires_at": format_timestamp(current),
                "new_expires_at": format_timestamp(until),
            }
            extended = repo.extend(notification_id, until, entry)

        logger.info(
            f"Notification extended by {extend_days} days",
            extra={
                "event": "admin.notification.extended",
                "admin_id": admin_id,
                "notification_id": notification_id,
                "extended_until": format_timestamp(until),
                "reason": reason,
            },
        )
        return extended

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> Dict[str, Any]:
        return self.settings.describe()

    def update_settings(self, changes: Dict[str, Any], updated_by: Optional[str] = None) -> Dict[str, Any]:
        """Validate and persist a partial settings update. Applies from each job's next run."""
        self.settings.update(changes, updated_by=updated_by)
        return self.settings.describe()

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def get_analytics(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        bucket: str = "day",
    ) -> Dict[str, Any]:
        """Creation counts bucketed by day, ISO week or month, with type and priority breakdowns."""
        if bucket not in ANALYTICS_BUCKETS:
            raise ValidationError("Invalid analytics bucket", [f"bucket must be one of: {', '.join(ANALYTICS_BUCKETS)}"])

        date_to = ensure_utc(date_to) if date_to else utc_now()
        date_from = ensure_utc(date_from) if date_from else date_to - timedelta(days=DEFAULT_ANALYTICS_DAYS)
        if date_from > date_to:
            raise ValidationError("Invalid analytics period", ["date_from must not be after date_to"])

        with self.session_factory() as session:
            rows = NotificationStatsRepository(session).creation_rows(date_from, date_to)

        buckets: Dict[str, Dict[str, Any]] = {}
        by_type: Dict[str, int] = defaultdict(int)
        by_priority: Dict[str, int] = defaultdict(int)
        total = read = 0
        for day, notification_type, priority, is_read, count in rows:
            key = _bucket_key(day, bucket)
            entry = buckets.setdefault(
                key, {"bucket": key, "total": 0, "read": 0, "by_type": defaultdict(int), "by_priority": defaultdict(int)}
            )
            entry["total"] += count
            entry["by_type"][notification_type] += count
            entry["by_priority"][priority] += count
            by_type[notification_type] += count
            by_priority[priority] += count
            total += count
            if is_read:
                entry["read"] += count
                read += count

        series = []
        for key in sorted(buckets):
            entry = buckets[key]
            entry["by_type"] = dict(entry["by_type"])
            entry["by_priority"] = dict(entry["by_priority"])
            series.append(entry)

        return {
            "period": {"from": date_from, "to": date_to, "bucket": bucket},
            "buckets": series,
            "summary": {
                "total": total,
                "read": read,
                "read_percentage": round(read * 100 / total) if total else 0,
                "by_type": dict(by_type),
                "by_priority": dict(by_priority),
            },
        }

    # ------------------------------------------------------------------
    # Jobs and health
    # ------------------------------------------------------------------

    def _has_job(self, name: str) -> bool:
        return self.scheduler is not None and name in self.scheduler.jobs

    def _job(self, name: str):
        if self.scheduler is None:
            raise ValidationError("No job scheduler configured")
        return self.scheduler.get_job(name)

    def run_job(self, name: str, admin_id: Optional[str] = None):
        """Run a job now and return its result. Raises JobNotFoundError for unknown names."""
        logger.info(
            f"Manual {name} run requested",
            extra={"event": "admin.job.run_requested", "job": name, "admin_id": admin_id},
        )
        return self.scheduler.run_job(name)

    def preview_cleanup(self, now: Optional[datetime] = None):
        """What the next cleanup run would do, without changing anything."""
        return self._job("cleanup").preview(now)

    def cleanup_old_read_data(
        self, days_old: int = 90, admin_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Prune read receipts older than ``days_old`` days from expired notifications."""
        if isinstance(days_old, bool) or not isinstance(days_old, int) or days_old < 1:
            raise ValidationError("Invalid read data cleanup", ["days_old must be a positive integer"])

        cleaned = self._job("read_reconciliation").cleanup_old_read_data(days_old, now=now)
        logger.info(
            f"Old read data pruned from {cleaned} notifications",
            extra={"event": "admin.read_data.cleaned", "admin_id": admin_id, "days_old": days_old},
        )
        return {"cleaned_count": cleaned, "days_old": days_old}

    def get_system_health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Job health, storage estimate, a 0-100 score, alerts and recommendations."""
        now = now or utc_now()
        policy = self.settings.snapshot()

        job_stats: Dict[str, Dict[str, Any]] = {}
        scheduler_health = None
        if self.scheduler is not None:
            job_stats = {name: job.get_stats() for name, job in self.scheduler.jobs.items()}
            scheduler_health = self.scheduler.health_check(now)

        with self.session_factory() as session:
            stats = NotificationStatsRepository(session)
            storage = stats.storage_stats()
            created_24h = stats.count_created_since(now - timedelta(hours=24))

        score = 100
        issues: List[str] = []

        for name, job in job_stats.items():
            if job["error_rate"] > JOB_ERROR_RATE_LIMIT:
                score -= 10
                issues.append(f"{name}_error_rate")
            last_run = job.get("last_run")
            if last_run is None or now - last_run > timedelta(hours=JOB_STALE_HOURS):
                score -= 5
                issues.append(f"{name}_stale")

        total = storage["total_notifications"]
        size_mb = storage["estimated_size_mb"]
        read_pct = storage["read_percentage"]
        if total > STORAGE_WARN_TOTAL:
            score -= 10
            issues.append("high_volume")
        if size_mb > STORAGE_WARN_MB:
            score -= 10
            issues.append("large_storage")
        if total and read_pct < 70:
            score -= 5
            issues.append("low_read_rate")

        creation_rate = created_24h / 24
        if creation_rate > CREATION_RATE_PER_HOUR_LIMIT:
            score -= 15
            issues.append("high_creation_rate")

        if not policy.enable_auto_cleanup:
            score -= 10
            issues.append("auto_cleanup_disabled")
        if not policy.auto_delete_read_notifications and read_pct > 80:
            score -= 5
            issues.append("read_not_auto_deleted")

        score = max(0, score)

        alerts = []
        if total > STORAGE_CRITICAL_TOTAL or size_mb > STORAGE_CRITICAL_MB:
            alerts.append(
                {"level": "critical", "message": f"Notification store is very large ({total} items, ~{size_mb}MB)"}
            )
        if created_24h > CREATION_24H_ALERT:
            alerts.append({"level": "warning", "message": f"{created_24h} notifications created in the last 24 hours"})
        if total and read_pct < 50:
            alerts.append({"level": "warning", "message": f"Only {read_pct}% of notifications are read by all recipients"})
        for name, job in job_stats.items():
            if job["error_rate"] > JOB_ERROR_RATE_LIMIT:
                alerts.append({"level": "warning", "message": f"Job {name} is failing ({job['error_rate']:.0%} of runs)"})

        return {
            "generated_at": now,
            "health_score": {"score": score, "level": _health_level(score), "issues": issues},
            "scheduler": scheduler_health,
            "jobs": job_stats,
            "storage": storage,
            "performance": {
                "created_last_24h": created_24h,
                "creation_rate_per_hour": round(creation_rate, 2),
            },
            "alerts": alerts,
            "recommendations": _recommendations(issues),
        }


_RECOMMENDATIONS = {
    "high_volume": "Lower min_age_for_archiving or min_age_for_deletion to reduce the number of stored notifications.",
    "large_storage": "Reduce max_archive_size or enable auto_delete_read_notifications.",
    "low_read_rate": "Review notification targeting; many notifications are never read by all recipients.",
    "high_creation_rate": "Check event capture for noisy update notifications.",
    "auto_cleanup_disabled": "Enable enable_auto_cleanup so retention rules are applied.",
    "read_not_auto_deleted": "Enable auto_delete_read_notifications; most notifications are already read.",
}


def _recommendations(issues: List[str]) -> List[str]:
    recommendations = []
    for issue in issues:
        if issue.endswith("_error_rate"):
            text = f"Investigate recent failures of the {issue[: -len('_error_rate')]} job."
        elif issue.endswith("_stale"):
            text = f"The {issue[: -len('_stale')]} job has not run in the last {JOB_STALE_HOURS} hours; check the scheduler."
        else:
            text = _RECOMMENDATIONS.get(issue)
        if text and text not in recommendations:
            recommendations.append(text)
    return recommendations
