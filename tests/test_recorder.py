"""
Tests for usage recording, the credit/billing split and transaction retry.
"""

import json
import sqlite3
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from usage_ledger.core.errors import LedgerWriteError
from usage_ledger.core.recorder import UsageRecorder
from usage_ledger.core.token_counter import TokenUsage
from usage_ledger.core.transactions import run_serializable
from usage_ledger.storage import repository
from usage_ledger.storage.models import ReportState

from conftest import add_subscription, add_user


def _fetch_call(ledger, call_id):
    with ledger.repo.connection() as conn:
        return conn.execute("SELECT * FROM ai_call_records WHERE id = ?", (call_id,)).fetchone()


class TestCostSplit:
    """Test how a charge is divided between credit and billing."""

    def test_credit_covers_full_cost(self, ledger):
        add_user(ledger, "u1")
        ledger.ledger.grant_credit("u1", 1.0, "promo")
        usage = TokenUsage(input_tokens=1000, output_tokens=1000)

        record = ledger.recorder.record_token_usage(
            "u1", "anthropic", "anthropic/claude-sonnet-4", "chat", usage)

        # 1000 * $3/M + 1000 * $15/M
        assert record.credit_used_usd == pytest.approx(0.018)
        assert record.cost_usd == 0.0
        assert record.report_state is ReportState.REPORTED
        assert ledger.ledger.balance("u1").available == pytest.approx(0.982)

    def test_subscriber_billed_for_remainder(self, ledger, clock):
        add_user(ledger, "u1")
        add_subscription(ledger, "u1", clock.now - timedelta(days=1))
        ledger.ledger.grant_credit("u1", 0.01, "promo")

        record = ledger.recorder.record_fixed_cost_usage("u1", "sandbox")

        assert record.credit_used_usd == pytest.approx(0.01)
        assert record.cost_usd == pytest.approx(0.04)
        assert record.report_state is ReportState.PENDING

    def test_credit_only_remainder_is_forgiven(self, ledger):
        add_user(ledger, "u1")
        ledger.ledger.grant_credit("u1", 0.01, "promo")

        record = ledger.recorder.record_fixed_cost_usage("u1", "sandbox")

        assert record.credit_used_usd == pytest.approx(0.01)
        assert record.cost_usd == 0.0
        assert ledger.ledger.balance("u1").available == 0.0

    def test_subscriber_without_credit_billed_in_full(self, ledger, clock):
        add_user(ledger, "u1")
        add_subscription(ledger, "u1", clock.now - timedelta(days=1))
        record = ledger.recorder.record_fixed_cost_usage("u1", "sandbox", 1.25)
        assert record.credit_used_usd == 0.0
        assert record.cost_usd == 1.25

    def test_split_never_exceeds_cost(self, ledger, clock):
        add_user(ledger, "u1")
        add_subscription(ledger, "u1", clock.now - timedelta(days=1))
        ledger.ledger.grant_credit("u1", 0.3, "promo")
        record = ledger.recorder.record_fixed_cost_usage("u1", "sandbox", 0.7)
        assert record.credit_used_usd + record.cost_usd == pytest.approx(0.7)


class TestRecordTokenUsage:
    """Test model-call recording."""

    def test_external_key_costs_nothing(self, ledger):
        add_user(ledger, "u1")
        ledger.ledger.grant_credit("u1", 1.0, "promo")
        usage = TokenUsage(input_tokens=500, output_tokens=500)

        record = ledger.recorder.record_token_usage(
            "u1", "openai", "openai/gpt-4.1", "chat", usage, is_external_key=True)

        assert record.credit_used_usd == 0.0
        assert record.cost_usd == 0.0
        assert ledger.ledger.balance("u1").available == 1.0
        call = _fetch_call(ledger, record.ai_call_id)
        assert call["using_own_key"] == 1
        assert call["cost_json"] is None

    def test_unpriced_model_recorded_at_zero_cost(self, ledger):
        add_user(ledger, "u1")
        usage = TokenUsage(input_tokens=10, output_tokens=10)

        record = ledger.recorder.record_token_usage("u1", "local", "my-local-model", "chat", usage)

        assert record.cost_usd == 0.0
        assert record.credit_used_usd == 0.0
        assert _fetch_call(ledger, record.ai_call_id)["model_id"] == "my-local-model"

    def test_call_details_and_message_count(self, ledger):
        add_user(ledger, "u1")
        ledger.ledger.grant_credit("u1", 1.0, "promo")
        usage = TokenUsage(input_tokens=1_000, output_tokens=200, cache_read_tokens=4_000)

        record = ledger.recorder.record_token_usage(
            "u1", "anthropic", "claude-haiku-4-5-20251001", "chat", usage, conversation_id="conv-1")

        call = _fetch_call(ledger, record.ai_call_id)
        assert call["conversation_id"] == "conv-1"
        assert call["total_tokens"] == 1_200
        assert json.loads(call["usage_json"])["cache_read"] == 4_000
        assert json.loads(call["cost_json"])["cache_read"] == pytest.approx(0.0004)
        with ledger.repo.connection() as conn:
            assert repository.fetch_user(conn, "u1").ai_message_count == 1

    def test_negative_fixed_cost_rejected(self, ledger):
        add_user(ledger, "u1")
        with pytest.raises(ValueError, match="cannot be negative"):
            ledger.recorder.record_fixed_cost_usage("u1", "sandbox", -0.5)


class TestReportHandoff:
    """Test that billed records go to the report queue after commit."""

    def test_billed_record_enqueued(self, ledger, clock):
        add_user(ledger, "u1")
        add_subscription(ledger, "u1", clock.now - timedelta(days=1))
        dispatcher = MagicMock()
        recorder = UsageRecorder(ledger.repo, ledger.ledger, dispatcher, clock=clock)

        record = recorder.record_fixed_cost_usage("u1", "sandbox")

        dispatcher.enqueue.assert_called_once_with(record)
        with ledger.repo.connection() as conn:
            # Committed before it was handed over
            assert repository.fetch_usage_record(conn, record.id) is not None

    def test_credit_paid_record_not_enqueued(self, ledger, clock):
        add_user(ledger, "u1")
        ledger.ledger.grant_credit("u1", 1.0, "promo")
        dispatcher = MagicMock()
        recorder = UsageRecorder(ledger.repo, ledger.ledger, dispatcher, clock=clock)

        recorder.record_fixed_cost_usage("u1", "sandbox")

        dispatcher.enqueue.assert_not_called()

    def test_closed_queue_does_not_fail_committed_charge(self, ledger, clock):
        """A charge already committed is returned even if it cannot be queued."""
        add_user(ledger, "u1")
        add_subscription(ledger, "u1", clock.now - timedelta(days=1))

        from usage_ledger.core.reporter import ReportDispatcher
        dispatcher = ReportDispatcher(ledger.reporter, max_workers=1)
        dispatcher.shutdown(wait=True)
        recorder = UsageRecorder(ledger.repo, ledger.ledger, dispatcher, clock=clock)

        record = recorder.record_fixed_cost_usage("u1", "sandbox", 1.0)

        assert record.cost_usd == 1.0
        with ledger.repo.connection() as conn:
            assert len(repository.fetch_usage_records(conn, "u1")) == 1
            assert repository.fetch_usage_record(conn, record.id).report_state is ReportState.PENDING

    def test_report_failure_does_not_affect_recording(self, ledger, clock):
        add_user(ledger, "u1")
        add_subscription(ledger, "u1", clock.now - timedelta(days=1))
        provider = ledger.provider
        provider.report_usage = MagicMock(side_effect=RuntimeError("provider down"))

        from usage_ledger.core.reporter import ReportDispatcher
        dispatcher = ReportDispatcher(ledger.reporter, max_workers=1)
        recorder = UsageRecorder(ledger.repo, ledger.ledger, dispatcher, clock=clock)

        record = recorder.record_fixed_cost_usage("u1", "sandbox")
        dispatcher.shutdown(wait=True)

        with ledger.repo.connection() as conn:
            assert repository.fetch_usage_record(conn, record.id).report_state is ReportState.PENDING


class TestConcurrency:
    """Test that concurrent charges never spend the same credit twice."""

    def test_parallel_charges_do_not_overspend(self, ledger):
        add_user(ledger, "u1")
        ledger.ledger.grant_credit("u1", 1.0, "promo")
        errors = []

        def charge():
            try:
                ledger.recorder.record_fixed_cost_usage("u1", "sandbox", 0.3)
            except LedgerWriteError as e:
                errors.append(e)

        threads = [threading.Thread(target=charge) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        balance = ledger.ledger.balance("u1")
        assert balance.total_used == pytest.approx(1.0)
        assert balance.available == pytest.approx(0.0)

    def test_parallel_subscriber_charges_bill_the_shortfall(self, ledger, clock):
        """Six charges of $0.50 against $2.51: at most five are fully credit-paid."""
        add_user(ledger, "u1")
        add_subscription(ledger, "u1", clock.now - timedelta(days=1))
        ledger.ledger.grant_credit("u1", 2.51, "promo")
        records = []
        lock = threading.Lock()

        def charge():
            record = ledger.recorder.record_fixed_cost_usage("u1", "sandbox", 0.5)
            with lock:
                records.append(record)

        threads = [threading.Thread(target=charge) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(records) == 6
        fully_credited = [r for r in records if r.credit_used_usd == pytest.approx(0.5)]
        billed = [r for r in records if r.cost_usd > 0]
        assert len(fully_credited) <= 5
        assert len(billed) == 6 - len(fully_credited)
        total_credit = sum(r.credit_used_usd for r in records)
        assert total_credit <= 2.51 + 1e-9
        assert total_credit + sum(r.cost_usd for r in records) == pytest.approx(3.0)
        assert ledger.ledger.balance("u1").available == pytest.approx(0.0)


class TestRunSerializable:
    """Test bounded retry of serializable transactions."""

    def test_conflict_is_retried(self, ledger):
        attempts = []

        def work(conn):
            attempts.append(1)
            if len(attempts) == 1:
                raise sqlite3.OperationalError("database is locked")
            return "done"

        assert run_serializable(ledger.repo, work, max_attempts=3) == "done"
        assert len(attempts) == 2

    def test_conflict_exhausts_attempts(self, ledger):
        work = MagicMock(side_effect=sqlite3.OperationalError("database is locked"))

        with pytest.raises(LedgerWriteError, match="after 3 attempts") as exc_info:
            run_serializable(ledger.repo, work, max_attempts=3)

        assert exc_info.value.attempts == 3
        assert work.call_count == 3

    def test_other_errors_are_not_retried(self, ledger):
        work = MagicMock(side_effect=sqlite3.IntegrityError("FOREIGN KEY constraint failed"))

        with pytest.raises(LedgerWriteError, match="Ledger write failed") as exc_info:
            run_serializable(ledger.repo, work)

        assert exc_info.value.attempts == 1
        assert work.call_count == 1

    def test_non_datastore_errors_propagate_unchanged(self, ledger):
        work = MagicMock(side_effect=KeyError("missing"))

        with pytest.raises(KeyError):
            run_serializable(ledger.repo, work)
        assert work.call_count == 1

    def test_failed_attempt_leaves_no_partial_writes(self, ledger):
        def work(conn):
            repository.upsert_user(conn, "ghost")
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(LedgerWriteError):
            run_serializable(ledger.repo, work, max_attempts=2)
        with ledger.repo.connection() as conn:
            assert repository.fetch_user(conn, "ghost") is None

    def test_recording_for_unknown_user_fails(self, ledger):
        with pytest.raises(LedgerWriteError):
            ledger.recorder.record_fixed_cost_usage("nobody", "sandbox", 1.0)
