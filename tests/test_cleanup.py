"""Unit tests for the retention cleanup job."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from movenotify.jobs import CleanupJob
from movenotify.notifications import NotificationService
from movenotify.persistence import NotificationRepository, close_database, get_session, init_database
from tests.helpers import NOW, add_admins, load, load_all, make_notification, settings_store, store, store_aged


def make_job(**policy):
    return CleanupJob(settings_store(**policy), NotificationService())


def reports():
    with get_session() as session:
        repo = NotificationRepository(session)
        return repo.get_many(repo.find_ids(groups=[f"cleanup_report_{NOW:%Y_%m_%d}"]))


class TestCleanupJob:
    """Tests for archive, delete and cap steps."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_archives_items_past_archive_age(self):
        aged = store_aged(10, 40)
        young = store_aged(3, 20)
        job = make_job(min_age_for_archiving=35)

        result = job.run(now=NOW)

        assert result.archived == 10
        assert all(load(n.id).lifecycle_status == "archived" for n in aged)
        assert all(load(n.id).archived_reason == "auto_cleanup_age_based" for n in aged)
        assert all(load(n.id).lifecycle_status == "active" for n in young)

    def test_archived_items_are_not_rearchived(self):
        notification = store(make_notification(age_days=70))[0]
        job = make_job()

        job.run(now=NOW)
        second = job.run(now=NOW + timedelta(days=1))

        assert second.archived == 0
        assert load(notification.id).archived_at == NOW

    def test_deletes_archived_items_past_deletion_age(self):
        old = store(make_notification(age_days=200, lifecycle_status="archived", archived_at=NOW - timedelta(days=100)))[0]
        kept = store(make_notification(age_days=100, lifecycle_status="archived", archived_at=NOW))[0]

        result = make_job().run(now=NOW)

        assert result.deleted == 1
        assert load(old.id) is None
        assert load(kept.id) is not None

    def test_active_items_are_archived_not_deleted(self):
        active = store(make_notification(age_days=100))[0]

        result = make_job().run(now=NOW)

        assert result.archived == 1
        assert result.deleted == 0
        assert load(active.id).lifecycle_status == "archived"

    def test_item_past_both_ages_is_archived_then_deleted(self):
        active = store(make_notification(age_days=200))[0]

        result = make_job().run(now=NOW)

        assert result.archived == 1
        assert result.deleted == 1
        assert load(active.id) is None

    def test_direct_delete_without_archiving(self):
        active = store(make_notification(age_days=200))[0]

        result = make_job(archive_before_delete=False).run(now=NOW)

        assert result.archived == 0
        assert result.deleted == 1
        assert load(active.id) is None

    def test_important_types_are_preserved(self):
        important = store(
            make_notification("payment_overdue", age_days=400),
            make_notification("security_alert", age_days=400, lifecycle_status="archived", archived_at=NOW),
        )

        result = make_job(max_archive_size=0).run(now=NOW)

        assert result.changed is False
        assert all(load(n.id) is not None for n in important)
        assert load(important[0].id).lifecycle_status == "active"

    def test_important_types_processed_when_preservation_off(self):
        important = store(make_notification("payment_overdue", age_days=70))[0]

        make_job(preserve_important_notifications=False).run(now=NOW)

        assert load(important.id).lifecycle_status == "archived"

    def test_unmanaged_items_are_never_touched(self):
        unmanaged = store(make_notification(age_days=400, admin_managed=False))[0]

        make_job().run(now=NOW)

        assert load(unmanaged.id).lifecycle_status == "active"

    def test_read_deletion_only_when_enabled(self):
        read = store(make_notification(recipients=["a"], read_by=["a"], age_days=45))[0]

        assert make_job(min_age_for_archiving=60, max_retention_days=30).run(now=NOW).read_deleted == 0
        assert load(read.id) is not None

        result = make_job(
            min_age_for_archiving=60, max_retention_days=30, auto_delete_read_notifications=True
        ).run(now=NOW)

        assert result.read_deleted == 1
        assert load(read.id) is None

    def test_archive_cap_deletes_oldest_archived(self):
        archived = [
            make_notification(lifecycle_status="archived", archived_at=NOW - timedelta(days=10 - i), age_days=20)
            for i in range(5)
        ]
        store(*archived)

        result = make_job(max_archive_size=3).run(now=NOW)

        assert result.cap_deleted == 2
        remaining = {n.id for n in load_all() if n.lifecycle_status == "archived"}
        assert remaining == {n.id for n in archived[2:]}

    def test_batch_size_bounds_each_step(self):
        store_aged(7, 70)

        result = make_job(notification_batch_size=5).run(now=NOW)

        assert result.archived == 5

    def test_disabled_cleanup_writes_nothing(self):
        add_admins("admin1")
        notification = store(make_notification(age_days=400))[0]

        result = make_job(enable_auto_cleanup=False).run(now=NOW)

        assert result.disabled is True
        assert result.report_sent is False
        assert load(notification.id).lifecycle_status == "active"

    def test_report_sent_to_admins_when_something_changed(self):
        add_admins("admin1", "admin2")
        store_aged(3, 70)
        job = make_job()

        result = job.run(now=NOW)

        assert result.report_sent is True
        sent = reports()
        assert len(sent) == 1
        assert sent[0].title == "Notification Cleanup Report"
        assert sent[0].type == "system_maintenance"
        assert sorted(sent[0].recipient_ids) == ["admin1", "admin2"]
        assert sent[0].metadata["cleanup_stats"]["archived"] == 3
        assert job.get_stats()["totals"]["reports_sent"] == 1

    def test_no_report_when_nothing_changed(self):
        add_admins("admin1")

        result = make_job().run(now=NOW)

        assert result.report_sent is False
        assert reports() == []

    def test_report_failure_is_not_fatal(self):
        add_admins("admin1")
        store_aged(2, 70)
        service = MagicMock()
        service.fan_out_template.side_effect = RuntimeError("boom")
        job = CleanupJob(settings_store(), service)

        result = job.run(now=NOW)

        assert result.archived == 2
        assert result.report_sent is False
        assert job.stats.errors == 0

    def test_rules_recorded_on_result(self):
        result = make_job(min_age_for_archiving=35).run(now=NOW)

        assert result.rules["min_age_for_archiving"] == 35
        assert "payment_overdue" in result.rules["important_notification_types"]

    def test_skips_when_already_running(self):
        aged = store_aged(3, 70)
        job = make_job()
        job._run_lock.acquire()
        try:
            result = job.run(now=NOW)
        finally:
            job._run_lock.release()

        assert result.skipped is True
        assert result.archived == 0
        assert all(load(n.id).lifecycle_status == "active" for n in aged)
        assert job.stats.total_runs == 0
        assert job.stats.skipped_runs == 1


class TestCleanupPreview:
    """Tests for dry runs."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_dry_run_writes_nothing(self):
        add_admins("admin1")
        aged = store_aged(4, 70)
        job = make_job()

        result = job.run(now=NOW, dry_run=True)

        assert result.dry_run is True
        assert result.archived == 4
        assert all(load(n.id).lifecycle_status == "active" for n in aged)
        assert reports() == []
        assert job.stats.total_runs == 0
        assert job.stats.skipped_runs == 1

    def test_preview_counts_bound_the_real_run(self):
        store_aged(3, 70)
        store_aged(2, 200)
        store(make_notification(age_days=200, lifecycle_status="archived", archived_at=NOW))
        job = make_job(notification_batch_size=2)

        preview = job.preview(now=NOW)
        result = job.run(now=NOW)

        assert preview.archived >= result.archived
        assert preview.deleted >= result.deleted
        assert preview.read_deleted >= result.read_deleted
        assert preview.cap_deleted >= result.cap_deleted

    def test_preview_when_disabled(self):
        result = make_job(enable_auto_cleanup=False).preview(now=NOW)

        assert result.disabled is True
        assert result.archived == 0
