"""Unit tests for the read reconciliation job."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from movenotify.config.models import ReconciliationConfig
from movenotify.jobs import ReadReconciliationJob
from movenotify.notifications import NotificationService
from movenotify.persistence import close_database, init_database
from tests.helpers import NOW, load, make_notification, settings_store, store


def make_cleanup_job(running=False, last_run=None):
    cleanup = MagicMock()
    cleanup.name = "cleanup"
    cleanup.is_running = running
    cleanup.stats.last_run = last_run
    return cleanup


class TestReadReconciliation:
    """Tests for recomputing the cached read flag."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_flag_follows_receipts(self):
        """Recipients A and B, only A has read: the flag must be False until B reads."""
        notification = store(
            make_notification(recipients=["a", "b"], read_by=["a"], is_read_by_all=True)
        )[0]
        job = ReadReconciliationJob(settings_store())

        result = job.run(now=NOW)

        assert result.updated == 1
        assert result.batches == 1
        assert load(notification.id).is_read_by_all is False

        NotificationService().mark_read(notification.id, "b", now=NOW)

        result = job.run(now=NOW)

        assert load(notification.id).is_read_by_all is True
        assert result.updated == 0

    def test_no_mismatches(self):
        store(make_notification(recipients=["a"], read_by=["a"]), make_notification(recipients=["a"]))
        job = ReadReconciliationJob(settings_store())

        result = job.run(now=NOW)

        assert result.checked == 0
        assert result.updated == 0
        assert result.batches == 0
        assert result.skipped is False

    def test_batches_until_limit_then_reports_backlog(self):
        store(*(make_notification(recipients=["a"], read_by=["a"], is_read_by_all=False) for _ in range(5)))
        config = ReconciliationConfig(batch_size=2, max_batches_per_run=2)
        job = ReadReconciliationJob(settings_store(), config=config)

        result = job.run(now=NOW)

        assert result.batches == 2
        assert result.updated == 4
        assert result.remaining == 1

        result = job.run(now=NOW)
        assert result.updated == 1
        assert result.remaining == 0

    def test_skips_when_already_running(self):
        job = ReadReconciliationJob(settings_store())
        job._run_lock.acquire()
        try:
            result = job.run(now=NOW)
        finally:
            job._run_lock.release()

        assert result.skipped is True
        assert job.stats.skipped_runs == 1
        assert job.stats.total_runs == 0

    def test_inconsistency_report(self):
        store(
            make_notification(recipients=["a"], read_by=["a"], is_read_by_all=False, notification_group="g1"),
            make_notification(recipients=["a"], read_by=["a"], is_read_by_all=False, notification_group="g1"),
            make_notification(recipients=["a", "b"], read_by=["a"], is_read_by_all=True, notification_group="g2"),
        )
        job = ReadReconciliationJob(settings_store())

        report = job.get_inconsistency_report()

        assert report["total_inconsistent"] == 3
        assert [g["notification_group"] for g in report["groups"]] == ["g1", "g2"]
        assert report["groups"][0]["count"] == 2
        assert report["groups"][0]["types"] == ["user_created"]

    def test_cleanup_old_read_data(self):
        expired_old = make_notification(
            recipients=["a", "b"], read_by=["a", "b"], age_days=120, expires_at=NOW - timedelta(days=10)
        )
        live_old = make_notification(recipients=["a"], read_by=["a"], age_days=120, expires_at=NOW + timedelta(days=5))
        expired_recent = make_notification(
            recipients=["a"], read_by=["a"], age_days=30, expires_at=NOW - timedelta(days=1)
        )
        store(expired_old, live_old, expired_recent)
        job = ReadReconciliationJob(settings_store())

        cleaned = job.cleanup_old_read_data(90, now=NOW)

        assert cleaned == 1
        pruned = load(expired_old.id)
        assert pruned.read_receipts == []
        assert pruned.is_read_by_all is False
        assert [r.recipient_id for r in load(live_old.id).read_receipts] == ["a"]
        assert load(expired_recent.id).is_read_by_all is True
        assert job.cleanup_old_read_data(90, now=NOW) == 0


class TestCleanupTrigger:
    """Tests for bringing a cleanup run forward after reconciliation."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_triggers_when_read_deletion_enabled(self):
        launcher = MagicMock()
        cleanup = make_cleanup_job()
        job = ReadReconciliationJob(
            settings_store(auto_delete_read_notifications=True), cleanup_job=cleanup, launcher=launcher
        )

        result = job.run(now=NOW)

        assert result.cleanup_triggered is True
        launcher.assert_called_once_with(cleanup.run, "cleanup-triggered")

    @pytest.mark.parametrize(
        "policy,cleanup",
        [
            ({"auto_delete_read_notifications": False}, make_cleanup_job()),
            ({"auto_delete_read_notifications": True, "enable_auto_cleanup": False}, make_cleanup_job()),
            ({"auto_delete_read_notifications": True}, make_cleanup_job(running=True)),
            ({"auto_delete_read_notifications": True}, make_cleanup_job(last_run=NOW - timedelta(hours=1))),
        ],
        ids=["read_deletion_off", "cleanup_off", "cleanup_running", "ran_recently"],
    )
    def test_does_not_trigger(self, policy, cleanup):
        launcher = MagicMock()
        job = ReadReconciliationJob(settings_store(**policy), cleanup_job=cleanup, launcher=launcher)

        result = job.run(now=NOW)

        assert result.cleanup_triggered is False
        launcher.assert_not_called()

    def test_triggers_again_after_spacing(self):
        launcher = MagicMock()
        cleanup = make_cleanup_job(last_run=NOW - timedelta(hours=7))
        job = ReadReconciliationJob(
            settings_store(auto_delete_read_notifications=True), cleanup_job=cleanup, launcher=launcher
        )

        assert job.run(now=NOW).cleanup_triggered is True

    def test_without_cleanup_job(self):
        job = ReadReconciliationJob(settings_store(auto_delete_read_notifications=True))

        assert job.run(now=NOW).cleanup_triggered is False
