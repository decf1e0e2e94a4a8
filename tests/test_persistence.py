"""Unit tests for persistence layer."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from movenotify.persistence import (
    DatabaseConnectionError,
    DataIntegrityError,
    NotificationRepository,
    NotificationStatsRepository,
    QuotationRepository,
    ReceiptRepository,
    RecordNotFoundError,
    SettingsRepository,
    UserRepository,
    close_database,
    get_session,
    init_database,
    is_initialized,
)
from movenotify.persistence.database import _redact_url
from movenotify.persistence.schema import (
    NotificationRecipientModel,
    ReadReceiptModel,
    _format_datetime,
    _parse_datetime,
)
from movenotify.utils.timestamps import days_ago
from tests.helpers import (
    NOW,
    add_quotation,
    add_receipt,
    add_users,
    load,
    make_notification,
    make_user,
    store,
)


class TestDatabaseInitialization:
    """Tests for database initialization."""

    def test_init_database_creates_parent_directories(self, tmp_path):
        db_file = tmp_path / "subdir" / "nested" / "test.db"

        init_database(f"sqlite:///{db_file}")

        assert db_file.exists()
        assert is_initialized()
        close_database()
        assert not is_initialized()

    def test_init_database_in_memory(self):
        init_database("sqlite:///:memory:")

        with get_session() as session:
            assert session is not None

        close_database()

    def test_init_database_invalid_url_raises_error(self):
        with pytest.raises(DatabaseConnectionError):
            init_database("")

        with pytest.raises(DatabaseConnectionError):
            init_database(None)

    def test_get_session_before_init_raises(self):
        close_database()

        with pytest.raises(DatabaseConnectionError):
            with get_session():
                pass

    def test_schema_creation_is_idempotent(self, tmp_path):
        db_url = f"sqlite:///{tmp_path / 'test.db'}"

        init_database(db_url)
        close_database()
        init_database(db_url)

        with get_session() as session:
            assert UserRepository(session).active_user_ids() == []
        close_database()

    def test_close_database_twice(self):
        init_database("sqlite:///:memory:")
        close_database()
        close_database()

    def test_redact_url(self):
        assert _redact_url("postgresql://app:secret@db:5432/moves") == "postgresql://app:***@db:5432/moves"
        assert _redact_url("sqlite:///./data/notifications.db") == "sqlite:///./data/notifications.db"


class TestTimestampStorage:
    """Stored timestamps are fixed-width strings that sort chronologically."""

    def test_format_and_parse(self):
        stored = _format_datetime(NOW)

        assert stored == "2025-06-01T12:00:00.000000Z"
        assert _parse_datetime(stored) == NOW
        assert _parse_datetime("2025-06-01T12:00:00Z") == NOW
        assert _parse_datetime(None) is None

    def test_lexical_order_matches_time_order(self):
        earlier = _format_datetime(NOW - timedelta(microseconds=1))

        assert earlier < _format_datetime(NOW)


class TestSessionManagement:
    """Tests for session management."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        """Setup test database before each test."""
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_session_commits_on_success(self):
        with get_session() as session:
            UserRepository(session).add(make_user("u1"))

        with get_session() as session:
            assert UserRepository(session).get("u1") is not None

    def test_session_rolls_back_on_error(self):
        with pytest.raises(RuntimeError):
            with get_session() as session:
                UserRepository(session).add(make_user("u1"))
                raise RuntimeError("boom")

        with get_session() as session:
            assert UserRepository(session).get("u1") is None


class TestNotificationRepository:
    """Tests for notification storage and read state."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_add_and_get_round_trip(self):
        original = make_notification(recipients=["a", "b"], metadata={"entity_id": "u9"})
        store(original)

        loaded = load(original.id)

        assert loaded.recipient_ids == ["a", "b"]
        assert loaded.created_at == original.created_at
        assert loaded.expires_at == original.expires_at
        assert loaded.metadata == {"entity_id": "u9"}
        assert loaded.lifecycle_status == "active"

    def test_duplicate_id_raises_integrity_error(self):
        notification = make_notification()
        store(notification)

        with pytest.raises(DataIntegrityError):
            store(notification)

    def test_get_for_recipient_hides_from_others(self):
        notification = store(make_notification(recipients=["a"]))[0]

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.get_for_recipient(notification.id, "a") is not None
            assert repo.get_for_recipient(notification.id, "b") is None

    def test_list_for_recipient_filters_and_orders(self):
        older = make_notification(recipients=["a"], age_days=2)
        newer = make_notification(recipients=["a"], age_days=1, notification_type="payment_received")
        other = make_notification(recipients=["b"])
        archived = make_notification(recipients=["a"], lifecycle_status="archived")
        expired = make_notification(recipients=["a"], expires_at=NOW - timedelta(minutes=1))
        store(older, newer, other, archived, expired)

        with get_session() as session:
            repo = NotificationRepository(session)
            items, total = repo.list_for_recipient("a", NOW)
            typed, typed_total = repo.list_for_recipient("a", NOW, notification_type="payment_received")

        assert [n.id for n in items] == [newer.id, older.id]
        assert total == 2
        assert [n.id for n in typed] == [newer.id]
        assert typed_total == 1

    def test_list_for_recipient_read_filter(self):
        read = make_notification(recipients=["a", "b"], read_by=["a"])
        unread = make_notification(recipients=["a", "b"], read_by=["b"])
        store(read, unread)

        with get_session() as session:
            repo = NotificationRepository(session)
            read_items, _ = repo.list_for_recipient("a", NOW, read=True)
            unread_items, _ = repo.list_for_recipient("a", NOW, read=False)
            assert repo.count_unread("a", NOW) == 1

        assert [n.id for n in read_items] == [read.id]
        assert [n.id for n in unread_items] == [unread.id]

    def test_add_read_receipt_is_idempotent_and_updates_flag(self):
        notification = store(make_notification(recipients=["a", "b"]))[0]

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.add_read_receipt(notification.id, "a", NOW) is True
            assert repo.add_read_receipt(notification.id, "a", NOW) is False

        assert load(notification.id).is_read_by_all is False

        with get_session() as session:
            NotificationRepository(session).add_read_receipt(notification.id, "b", NOW)

        loaded = load(notification.id)
        assert loaded.is_read_by_all is True
        assert len(loaded.read_receipts) == 2

    def test_add_read_receipt_requires_recipient(self):
        notification = store(make_notification(recipients=["a"]))[0]

        with get_session() as session:
            with pytest.raises(RecordNotFoundError):
                NotificationRepository(session).add_read_receipt(notification.id, "z", NOW)

    def test_remove_read_receipt_clears_flag(self):
        notification = store(make_notification(recipients=["a"], read_by=["a"]))[0]

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.remove_read_receipt(notification.id, "a") is True
            assert repo.remove_read_receipt(notification.id, "a") is False

        loaded = load(notification.id)
        assert loaded.is_read_by_all is False
        assert loaded.read_receipts == []

    def test_exists_in_group(self):
        store(make_notification("payment_overdue", notification_group="payment_overdue_r1_2025_06_01"))

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.exists_in_group("payment_overdue_r1_2025_06_01")
            assert repo.exists_in_group("payment_overdue_r1_2025_06_01", "payment_overdue")
            assert not repo.exists_in_group("payment_overdue_r1_2025_06_01", "user_created")
            assert not repo.exists_in_group("payment_overdue_r1_2025_06_02")


class TestReadFlagReconciliation:
    """The cached read flag is recomputed from receipts in SQL."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_finds_both_directions_of_drift(self):
        stale_false = make_notification(recipients=["a", "b"], read_by=["a", "b"], is_read_by_all=False)
        stale_true = make_notification(recipients=["a", "b"], read_by=["a"], is_read_by_all=True)
        correct = make_notification(recipients=["a"], read_by=["a"])
        store(stale_false, stale_true, correct)

        with get_session() as session:
            repo = NotificationRepository(session)
            mismatched = repo.find_read_flag_mismatches(limit=10)
            assert repo.count_read_flag_mismatches() == 2
            assert sorted(mismatched) == sorted([stale_false.id, stale_true.id])
            assert repo.reconcile_read_flags(mismatched) == 2
            assert repo.count_read_flag_mismatches() == 0

        assert load(stale_false.id).is_read_by_all is True
        assert load(stale_true.id).is_read_by_all is False

    def test_receipts_of_removed_recipients_do_not_count(self):
        notification = store(make_notification(recipients=["a", "b"], read_by=["a", "b"]))[0]

        with get_session() as session:
            session.execute(
                NotificationRecipientModel.__table__.delete().where(
                    NotificationRecipientModel.notification_id == notification.id,
                    NotificationRecipientModel.recipient_id == "b",
                )
            )
            session.execute(
                NotificationRecipientModel.__table__.insert().values(
                    notification_id=notification.id, recipient_id="c", position=2
                )
            )

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.find_read_flag_mismatches(limit=10) == [notification.id]


class TestLifecycleQueries:
    """Candidate selection for lifecycle advancement and cleanup."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_review_candidates(self):
        due = make_notification(age_days=31)
        young = make_notification(age_days=10)
        reminded = make_notification(age_days=31, reminder_sent_at=NOW - timedelta(days=1))
        unmanaged = make_notification(age_days=31, admin_managed=False)
        reminder = make_notification("system_maintenance", age_days=31, notification_group="lifecycle_reminder_2025_05_01")
        store(due, young, reminded, unmanaged, reminder)

        with get_session() as session:
            ids = NotificationRepository(session).find_review_candidates(
                days_ago(30, NOW), limit=100, exclude_group_prefix="lifecycle_reminder_"
            )

        assert ids == [due.id]

    def test_mark_pending_review_only_once(self):
        notification = store(make_notification(age_days=31))[0]

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.mark_pending_review(notification.id, NOW) is True
            assert repo.mark_pending_review(notification.id, NOW) is False

        loaded = load(notification.id)
        assert loaded.lifecycle_status == "pending_review"
        assert loaded.reminder_sent_at == NOW

    def test_extend_appends_history(self):
        notification = store(make_notification())[0]
        until = NOW + timedelta(days=30)

        with get_session() as session:
            repo = NotificationRepository(session)
            repo.extend(notification.id, until, {"reason": "first"})
            extended = repo.extend(notification.id, until + timedelta(days=1), {"reason": "second"})

        assert extended.lifecycle_status == "extended"
        assert extended.extended_until == until + timedelta(days=1)
        assert extended.expires_at == until + timedelta(days=1)
        assert [e["reason"] for e in extended.metadata["extensions"]] == ["first", "second"]

    def test_extend_missing(self):
        with get_session() as session:
            with pytest.raises(RecordNotFoundError):
                NotificationRepository(session).extend("missing", NOW, {})

    def test_extend_refuses_archived(self):
        notification = store(make_notification(lifecycle_status="archived", archived_at=NOW))[0]

        with pytest.raises(DataIntegrityError):
            with get_session() as session:
                NotificationRepository(session).extend(notification.id, NOW + timedelta(days=5), {})

        assert load(notification.id).lifecycle_status == "archived"

    def test_find_extension_candidates(self):
        due = make_notification("payment_overdue", age_days=40, lifecycle_status="pending_review")
        ordinary = make_notification("user_created", age_days=40, lifecycle_status="pending_review")
        already = make_notification(
            "payment_overdue", age_days=40, lifecycle_status="pending_review", extended_until=NOW
        )
        active = make_notification("payment_overdue", age_days=40)
        unmanaged = make_notification(
            "payment_overdue", age_days=40, lifecycle_status="pending_review", admin_managed=False
        )
        store(due, ordinary, already, active, unmanaged)

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.find_extension_candidates(["payment_overdue"], limit=10) == [due.id]
            assert repo.find_extension_candidates([], limit=10) == []

    def test_archive_candidates_respect_age_type_and_status(self):
        old = make_notification(age_days=61)
        young = make_notification(age_days=59)
        important = make_notification("payment_overdue", age_days=61)
        extended_live = make_notification(age_days=61, lifecycle_status="extended", extended_until=NOW + timedelta(days=1))
        extended_done = make_notification(age_days=61, lifecycle_status="extended", extended_until=NOW - timedelta(days=1))
        pending = make_notification(age_days=61, lifecycle_status="pending_review")
        store(old, young, important, extended_live, extended_done, pending)

        with get_session() as session:
            repo = NotificationRepository(session)
            ids = repo.archive_candidates(days_ago(60, NOW), ["payment_overdue"], limit=100, now=NOW)
            count = repo.count_archive_candidates(days_ago(60, NOW), ["payment_overdue"], NOW)

        assert sorted(ids) == sorted([old.id, extended_done.id, pending.id])
        assert count == 3

    def test_archive_never_touches_archived_rows(self):
        notification = store(make_notification(age_days=100))[0]

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.archive([notification.id], NOW, "first") == 1
            assert repo.archive([notification.id], NOW + timedelta(days=1), "second") == 0

        loaded = load(notification.id)
        assert loaded.archived_reason == "first"
        assert loaded.archived_at == NOW

    def test_deletion_candidates(self):
        archived_old = make_notification(age_days=181, lifecycle_status="archived", archived_at=NOW)
        active_old = make_notification(age_days=181)
        archived_young = make_notification(age_days=100, lifecycle_status="archived", archived_at=NOW)
        store(archived_old, active_old, archived_young)

        with get_session() as session:
            repo = NotificationRepository(session)
            archived_only = repo.deletion_candidates(days_ago(180, NOW), [], limit=100, now=NOW)
            everything = repo.deletion_candidates(days_ago(180, NOW), [], limit=100, now=NOW, include_unarchived=True)

        assert archived_only == [archived_old.id]
        assert sorted(everything) == sorted([archived_old.id, active_old.id])

    def test_delete_cascades_to_recipients_and_receipts(self):
        notification = store(make_notification(recipients=["a", "b"], read_by=["a"]))[0]

        with get_session() as session:
            assert NotificationRepository(session).delete([notification.id]) == 1

        with get_session() as session:
            assert session.execute(select(NotificationRecipientModel)).first() is None
            assert session.execute(select(ReadReceiptModel)).first() is None

    def test_read_deletion_candidates(self):
        read_old = make_notification(recipients=["a"], read_by=["a"], age_days=91)
        unread_old = make_notification(recipients=["a"], age_days=91)
        read_young = make_notification(recipients=["a"], read_by=["a"], age_days=10)
        store(read_old, unread_old, read_young)

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.read_deletion_candidates(days_ago(90, NOW), [], limit=10) == [read_old.id]
            assert repo.count_read_deletion_candidates(days_ago(90, NOW), []) == 1

    def test_archive_overflow_oldest_archived_first(self):
        first = make_notification(lifecycle_status="archived", archived_at=NOW - timedelta(days=3))
        second = make_notification(lifecycle_status="archived", archived_at=NOW - timedelta(days=2))
        important = make_notification("security_alert", lifecycle_status="archived", archived_at=NOW - timedelta(days=5))
        store(first, second, important)

        with get_session() as session:
            repo = NotificationRepository(session)
            assert repo.count_archived() == 3
            assert repo.archive_overflow_candidates(["security_alert"], limit=1) == [first.id]

    def test_find_ids_filters(self):
        a = make_notification("user_created", priority="high", notification_group="g1", age_days=10)
        b = make_notification("user_created", admin_managed=False, notification_group="g1")
        c = make_notification("document_created", notification_group="g2")
        store(a, b, c)

        with get_session() as session:
            repo = NotificationRepository(session)
            assert sorted(repo.find_ids(groups=["g1"])) == sorted([a.id, b.id])
            assert repo.find_ids(groups=["g1"], admin_managed=True) == [a.id]
            assert repo.find_ids(priorities=["high"]) == [a.id]
            assert repo.find_ids(created_before=days_ago(5, NOW)) == [a.id]
            assert repo.find_ids(notification_ids=[c.id, "missing"]) == [c.id]


class TestUpstreamRepositories:
    """Tests for users, quotations, receipts and settings."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_admin_and_active_user_ids(self):
        add_users(
            make_user("admin1", role="admin"),
            make_user("super1", role="super_admin"),
            make_user("gone", role="admin", status="suspended"),
            make_user("staff1"),
        )

        with get_session() as session:
            repo = UserRepository(session)
            assert sorted(repo.active_admin_ids()) == ["admin1", "super1"]
            assert sorted(repo.active_user_ids()) == ["admin1", "staff1", "super1"]

    def test_user_update_and_delete(self):
        add_users(make_user("u1"))

        with get_session() as session:
            repo = UserRepository(session)
            updated = repo.update("u1", {"role": "manager"}, now=NOW)
            assert updated.role == "manager"
            assert updated.updated_at == NOW
            with pytest.raises(RecordNotFoundError):
                repo.update("missing", {"role": "manager"})
            with pytest.raises(ValueError):
                repo.update("u1", {"id": "other"})
            assert repo.delete("u1") is True
            assert repo.delete("u1") is False

    def test_find_expired_quotations(self):
        add_quotation("q1", valid_until=NOW - timedelta(days=1))
        add_quotation("q2", valid_until=NOW + timedelta(days=1))
        add_quotation("q3", valid_until=NOW - timedelta(days=1), converted=True)
        add_quotation("q4", valid_until=NOW - timedelta(days=1), status="expired")
        add_quotation("q5")

        with get_session() as session:
            assert [q.id for q in QuotationRepository(session).find_expired(NOW)] == ["q1"]

    def test_find_overdue_receipts(self):
        add_receipt("r1", due_date=NOW - timedelta(days=2))
        add_receipt("r2", due_date=NOW - timedelta(days=2), payment_status="paid")
        add_receipt("r3", due_date=NOW + timedelta(days=2))

        with get_session() as session:
            assert [r.id for r in ReceiptRepository(session).find_overdue(NOW)] == ["r1"]

    def test_settings_round_trip(self):
        with get_session() as session:
            repo = SettingsRepository(session)
            assert repo.load() is None
            repo.save({"max_archive_size": 5}, "admin1", NOW)
            repo.save({"max_archive_size": 7}, "admin2", NOW)

        with get_session() as session:
            record = SettingsRepository(session).load()

        assert record["policy"] == {"max_archive_size": 7}
        assert record["updated_by"] == "admin2"


class TestStatistics:
    """Read-only aggregates for admin views."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_group_summaries(self):
        store(
            make_notification(notification_group="g1", age_days=2, read_by=["u1"]),
            make_notification("document_created", notification_group="g1", age_days=1),
            make_notification(notification_group="g2", age_days=5, lifecycle_status="pending_review"),
        )

        with get_session() as session:
            rows, total = NotificationStatsRepository(session).group_summaries(sort="count")

        assert total == 2
        assert rows[0]["key"] == "g1"
        assert rows[0]["total"] == 2
        assert rows[0]["read_by_all"] == 1
        assert rows[0]["unread"] == 1
        assert rows[0]["types"] == ["document_created", "user_created"]
        assert rows[1]["pending_review"] == 1

    def test_group_summaries_rejects_unknown_column(self):
        with get_session() as session:
            with pytest.raises(ValueError):
                NotificationStatsRepository(session).group_summaries(group_by="title")

    def test_storage_stats(self):
        store(
            make_notification(recipients=["a", "b"], read_by=["a", "b"]),
            make_notification(lifecycle_status="archived"),
        )

        with get_session() as session:
            stats = NotificationStatsRepository(session).storage_stats()

        assert stats["total_notifications"] == 2
        assert stats["archived_count"] == 1
        assert stats["recipient_rows"] == 3
        assert stats["read_receipt_rows"] == 2
        assert stats["read_percentage"] == 50
        assert stats["estimated_size_bytes"] > 0

    def test_storage_stats_empty(self):
        with get_session() as session:
            stats = NotificationStatsRepository(session).storage_stats()

        assert stats["total_notifications"] == 0
        assert stats["read_percentage"] == 0

    def test_pending_review_groups(self):
        store(
            make_notification(notification_group="g1", age_days=40, lifecycle_status="pending_review"),
            make_notification(notification_group="g1", age_days=32, lifecycle_status="pending_review"),
            make_notification(notification_group="g2", age_days=31, lifecycle_status="pending_review"),
            make_notification(notification_group="g3", age_days=50),
        )

        with get_session() as session:
            groups = NotificationStatsRepository(session).pending_review_groups()

        assert [g["notification_group"] for g in groups] == ["g1", "g2"]
        assert groups[0]["count"] == 2
        assert groups[0]["oldest"] == NOW - timedelta(days=40)
