"""Unit tests for the lifecycle advancement job."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from movenotify.config.models import LifecycleConfig
from movenotify.jobs import LifecycleJob
from movenotify.jobs.lifecycle import AUTO_EXTEND_REASON, reminder_group
from movenotify.notifications import NotificationService
from movenotify.persistence import NotificationRepository, close_database, get_session, init_database
from tests.helpers import NOW, add_admins, load, make_notification, settings_store, store


def reminders():
    with get_session() as session:
        repo = NotificationRepository(session)
        return repo.get_many(repo.find_ids(groups=[reminder_group(NOW)]))


@pytest.fixture
def job():
    return LifecycleJob(settings_store(), NotificationService(), sleep=MagicMock())


class TestLifecycleJob:
    """Tests for moving aged notifications into review."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        add_admins("admin1", "admin2")
        yield
        close_database()

    def test_aged_notification_moves_to_review_with_one_reminder(self, job):
        notification = store(make_notification(age_days=31, title="New user registered"))[0]

        result = job.run(now=NOW)

        assert result.candidates == 1
        assert result.moved_to_pending == 1
        assert result.reminders_sent == 1

        loaded = load(notification.id)
        assert loaded.lifecycle_status == "pending_review"
        assert loaded.reminder_sent_at == NOW

        sent = reminders()
        assert len(sent) == 1
        assert sorted(sent[0].recipient_ids) == ["admin1", "admin2"]
        assert sent[0].type == "system_maintenance"
        assert sent[0].priority == "high"
        assert sent[0].metadata["original_notification_id"] == notification.id
        assert sent[0].metadata["age_days"] == 31

    def test_second_run_sends_no_new_reminder(self, job):
        store(make_notification(age_days=31))

        job.run(now=NOW)
        result = job.run(now=NOW + timedelta(days=1))

        assert result.candidates == 0
        assert result.reminders_sent == 0
        assert len(reminders()) == 1

    def test_young_and_unmanaged_notifications_are_left_alone(self, job):
        young = make_notification(age_days=29)
        unmanaged = make_notification(age_days=40, admin_managed=False)
        store(young, unmanaged)

        result = job.run(now=NOW)

        assert result.candidates == 0
        assert load(young.id).lifecycle_status == "active"
        assert load(unmanaged.id).lifecycle_status == "active"

    def test_important_type_is_auto_extended(self, job):
        notification = store(make_notification("payment_overdue", age_days=31))[0]

        result = job.run(now=NOW)

        assert result.extended == 1
        loaded = load(notification.id)
        assert loaded.lifecycle_status == "extended"
        assert loaded.extended_until == NOW + timedelta(days=30)
        assert loaded.expires_at == NOW + timedelta(days=30)
        assert loaded.metadata["extensions"][0]["reason"] == AUTO_EXTEND_REASON

    def test_auto_extension_can_be_disabled(self):
        job = LifecycleJob(settings_store(auto_extend_important=False), NotificationService(), sleep=MagicMock())
        notification = store(make_notification("payment_overdue", age_days=31))[0]

        result = job.run(now=NOW)

        assert result.extended == 0
        assert load(notification.id).lifecycle_status == "pending_review"

    def test_existing_pending_review_item_is_extended(self, job):
        notification = store(
            make_notification(
                "payment_overdue",
                age_days=40,
                lifecycle_status="pending_review",
                reminder_sent_at=NOW - timedelta(days=5),
            )
        )[0]

        result = job.run(now=NOW)

        assert result.candidates == 0
        assert result.extended == 1
        loaded = load(notification.id)
        assert loaded.lifecycle_status == "extended"
        assert loaded.extended_until == NOW + timedelta(days=30)
        assert reminders() == []

    def test_extension_catches_up_after_being_enabled(self):
        store(make_notification("payment_overdue", age_days=31))
        LifecycleJob(settings_store(auto_extend_important=False), NotificationService(), sleep=MagicMock()).run(now=NOW)

        job = LifecycleJob(settings_store(), NotificationService(), sleep=MagicMock())
        first = job.run(now=NOW + timedelta(days=1))
        second = job.run(now=NOW + timedelta(days=2))

        assert first.extended == 1
        assert second.extended == 0

    def test_pending_review_item_of_ordinary_type_is_not_extended(self, job):
        notification = store(
            make_notification("user_created", age_days=40, lifecycle_status="pending_review", reminder_sent_at=NOW)
        )[0]

        result = job.run(now=NOW)

        assert result.extended == 0
        assert load(notification.id).lifecycle_status == "pending_review"

    def test_failed_extension_is_retried_on_next_run(self, job):
        notification = store(make_notification("payment_overdue", age_days=31))[0]

        with patch.object(NotificationRepository, "extend", side_effect=RuntimeError("write failed")):
            failed = job.run(now=NOW)

        retried = job.run(now=NOW + timedelta(days=1))

        assert failed.extended == 0
        assert failed.item_errors == 1
        assert retried.extended == 1
        assert load(notification.id).lifecycle_status == "extended"

    def test_reminder_failure_does_not_undo_transition(self):
        service = MagicMock()
        service.fan_out_template.side_effect = RuntimeError("mail room on fire")
        job = LifecycleJob(settings_store(), service, sleep=MagicMock())
        notification = store(make_notification(age_days=31))[0]

        result = job.run(now=NOW)

        assert result.moved_to_pending == 1
        assert result.reminder_failures == 1
        assert load(notification.id).lifecycle_status == "pending_review"

    def test_pauses_between_batches(self):
        sleep = MagicMock()
        job = LifecycleJob(
            settings_store(),
            NotificationService(),
            config=LifecycleConfig(batch_size=2, batch_pause_seconds=0.5),
            sleep=sleep,
        )
        store(*(make_notification(age_days=31) for _ in range(5)))

        result = job.run(now=NOW)

        assert result.moved_to_pending == 5
        assert sleep.call_count == 2
        sleep.assert_called_with(0.5)

    def test_skips_when_already_running(self, job):
        store(make_notification(age_days=31))
        job._run_lock.acquire()
        try:
            result = job.run(now=NOW)
        finally:
            job._run_lock.release()

        assert result.skipped is True
        assert reminders() == []

    def test_pending_review_report(self, job):
        store(
            make_notification(age_days=40, notification_group="g_old", lifecycle_status="pending_review"),
            make_notification(age_days=31, notification_group="g_new", lifecycle_status="pending_review"),
            make_notification(age_days=31, notification_group="g_new", lifecycle_status="pending_review"),
        )

        report = job.get_pending_review_report(now=NOW)

        assert report["total_pending"] == 3
        assert report["group_count"] == 2
        assert report["urgent_group_count"] == 1
        assert report["urgent_groups"][0]["notification_group"] == "g_old"
        assert report["urgent_groups"][0]["age_days"] == 40

    def test_stats_track_runs(self, job):
        job.run(now=NOW)

        stats = job.get_stats()
        assert stats["total_runs"] == 1
        assert stats["errors"] == 0
        assert stats["last_success"] == NOW
        assert stats["is_running"] is False
