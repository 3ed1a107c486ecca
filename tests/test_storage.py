"""
Unit tests for storage layer.

Tests schema creation, ledger inserts, report-state transitions and
serializable transactions.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from usage_ledger.storage import repository
from usage_ledger.storage.db import get_connection, is_write_conflict
from usage_ledger.storage.models import CreditGrant, ReportState, Subscription, UsageRecord
from usage_ledger.storage.repository import LedgerRepository, from_db_time, initialize_schema, to_db_time

BASE = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _record(record_id, cost_usd, created_at, state=ReportState.PENDING, user_id="u1"):
    return UsageRecord(
        id=record_id,
        user_id=user_id,
        task_type="chat",
        credit_used_usd=0.0,
        cost_usd=cost_usd,
        created_at=created_at,
        report_state=state,
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify every ledger table is created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                tables = {row[0] for row in cursor.fetchall()}
            finally:
                conn.close()

            assert {
                "users", "credit_grants", "ai_call_records",
                "usage_records", "spending_limits", "subscriptions",
            } <= tables

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

    def test_negative_amounts_rejected(self):
        """The ledger tables refuse negative money."""
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = LedgerRepository(os.path.join(temp_dir, "test.db"))
            repo.initialize()
            with repo.connection() as conn:
                repository.upsert_user(conn, "u1")
                with pytest.raises(sqlite3.IntegrityError):
                    repository.insert_usage_record(conn, _record("r1", -1.0, BASE))


class TestTimestamps:
    """Test timestamp serialization."""

    def test_naive_times_are_treated_as_utc(self):
        naive = datetime(2025, 1, 1, 0, 0)
        assert from_db_time(to_db_time(naive)) == naive.replace(tzinfo=timezone.utc)

    def test_lexical_order_matches_time_order(self):
        earlier = datetime(2025, 1, 1, 23, 0, tzinfo=timezone(timedelta(hours=-5)))
        later = datetime(2025, 1, 2, 3, 0, tzinfo=timezone.utc)
        assert to_db_time(earlier) < to_db_time(later)


class TestLedgerQueries:
    """Test grant, usage and report-state queries."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repo = LedgerRepository(os.path.join(self.temp_dir, "test.db"))
        self.repo.initialize()
        with self.repo.connection() as conn:
            repository.upsert_user(conn, "u1", "u1@example.com", "User One")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_upsert_user_keeps_existing_fields(self):
        with self.repo.connection() as conn:
            repository.upsert_user(conn, "u1", None, "Renamed")
            user = repository.fetch_user(conn, "u1")
        assert user.email == "u1@example.com"
        assert user.name == "Renamed"
        assert user.customer_ref is None
        assert user.ai_message_count == 0

    def test_grants_are_returned_oldest_first(self):
        with self.repo.connection() as conn:
            for i, offset in enumerate([5, 1, 3]):
                repository.insert_credit_grant(conn, CreditGrant(
                    id=f"g{i}",
                    user_id="u1",
                    amount_usd=1.0,
                    type="promo",
                    created_at=BASE + timedelta(days=offset),
                ))
            grants = repository.fetch_credit_grants(conn, "u1")
        assert [g.id for g in grants] == ["g1", "g2", "g0"]

    def test_nearest_expiry_ignores_expired_and_open_grants(self):
        with self.repo.connection() as conn:
            repository.insert_credit_grant(conn, CreditGrant(
                id="expired", user_id="u1", amount_usd=1.0, type="promo",
                created_at=BASE, expires_at=BASE - timedelta(days=1)))
            repository.insert_credit_grant(conn, CreditGrant(
                id="open", user_id="u1", amount_usd=1.0, type="promo", created_at=BASE))
            repository.insert_credit_grant(conn, CreditGrant(
                id="soon", user_id="u1", amount_usd=1.0, type="promo",
                created_at=BASE, expires_at=BASE + timedelta(days=3)))
            nearest = repository.fetch_nearest_expiry(conn, "u1", BASE)
        assert nearest == BASE + timedelta(days=3)

    def test_pending_records_exclude_reported_and_free(self):
        with self.repo.connection() as conn:
            repository.insert_usage_record(conn, _record("old", 0.5, BASE - timedelta(hours=2)))
            repository.insert_usage_record(conn, _record("new", 0.5, BASE))
            repository.insert_usage_record(conn, _record("free", 0.0, BASE - timedelta(hours=3)))
            repository.insert_usage_record(
                conn, _record("done", 0.5, BASE - timedelta(hours=4), state=ReportState.REPORTED))
            pending = repository.fetch_pending_records(conn, BASE - timedelta(minutes=1), limit=10)
        assert [r.id for r in pending] == ["old"]

    def test_pending_records_respect_limit(self):
        with self.repo.connection() as conn:
            for i in range(5):
                repository.insert_usage_record(conn, _record(f"r{i}", 0.1, BASE + timedelta(seconds=i)))
            pending = repository.fetch_pending_records(conn, BASE + timedelta(hours=1), limit=2)
        assert [r.id for r in pending] == ["r0", "r1"]

    def test_mark_reported_only_moves_pending(self):
        with self.repo.connection() as conn:
            repository.insert_usage_record(conn, _record("r1", 0.5, BASE))
            assert repository.mark_reported(conn, ["r1"]) == 1
            assert repository.mark_reported(conn, ["r1"]) == 0
            assert repository.mark_reported(conn, []) == 0
            assert repository.fetch_usage_record(conn, "r1").report_state is ReportState.REPORTED

    def test_sum_cost_since_excludes_earlier_usage(self):
        with self.repo.connection() as conn:
            repository.insert_usage_record(conn, _record("before", 2.0, BASE - timedelta(days=1)))
            repository.insert_usage_record(conn, _record("after", 0.75, BASE))
            assert repository.sum_cost_since(conn, "u1", BASE) == pytest.approx(0.75)
            assert repository.sum_cost_since(conn, "nobody", BASE) == 0.0

    def test_spending_limit_roundtrip(self):
        with self.repo.connection() as conn:
            assert repository.fetch_spending_limit(conn, "u1") is None
            repository.upsert_spending_limit(conn, "u1", 10.0)
            repository.upsert_spending_limit(conn, "u1", 25.0)
            assert repository.fetch_spending_limit(conn, "u1") == 25.0
            repository.delete_spending_limit(conn, "u1")
            assert repository.fetch_spending_limit(conn, "u1") is None

    def test_only_active_subscriptions_with_period_are_returned(self):
        with self.repo.connection() as conn:
            repository.upsert_subscription(conn, Subscription(
                id="sub_cancel", user_id="u1", status="canceled", period_start=BASE))
            repository.upsert_subscription(conn, Subscription(
                id="sub_noperiod", user_id="u1", status="active"))
            assert repository.fetch_active_subscription(conn, "u1") is None

            repository.upsert_subscription(conn, Subscription(
                id="sub_trial", user_id="u1", status="trialing", period_start=BASE))
            subscription = repository.fetch_active_subscription(conn, "u1")
        assert subscription.id == "sub_trial"
        assert subscription.period_start == BASE


class TestTransactions:
    """Test serializable transactions and conflict classification."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repo = LedgerRepository(os.path.join(self.temp_dir, "test.db"), timeout=0.1)
        self.repo.initialize()

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_transaction_rolls_back_on_error(self):
        with pytest.raises(RuntimeError):
            with self.repo.transaction() as conn:
                repository.upsert_user(conn, "u1")
                raise RuntimeError("boom")
        with self.repo.connection() as conn:
            assert repository.fetch_user(conn, "u1") is None

    def test_competing_writer_is_a_write_conflict(self):
        with self.repo.transaction():
            with pytest.raises(sqlite3.OperationalError) as exc_info:
                with self.repo.transaction():
                    pass
        assert is_write_conflict(exc_info.value)

    def test_other_errors_are_not_conflicts(self):
        assert not is_write_conflict(sqlite3.IntegrityError("UNIQUE constraint failed"))
        assert not is_write_conflict(sqlite3.OperationalError("no such table: x"))
        assert is_write_conflict(sqlite3.OperationalError("database is locked"))
