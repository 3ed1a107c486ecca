"""
Usage recording.

Charges a completed model call or fixed-cost task to the ledger. The cost
is split between prepaid credit and metered billing inside one serializable
transaction, and the resulting record is handed to the report queue only
after commit.
"""

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from usage_ledger.config.loader import DatabaseConfig
from usage_ledger.storage import repository
from usage_ledger.storage.models import AiCallRecord, ReportState, UsageRecord
from usage_ledger.storage.repository import LedgerRepository, utcnow

from .ledger import CreditLedger
from .pricing import CostBreakdown, calculate_cost, fixed_cost_for, has_model_pricing
from .reporter import ReportDispatcher
from .token_counter import TokenUsage
from .transactions import run_serializable

logger = structlog.get_logger()


@dataclass(frozen=True)
class CostSplit:
    """How a charge is paid."""
    credit_used: float
    cost_usd: float


NO_CHARGE = CostSplit(credit_used=0.0, cost_usd=0.0)


def _json_or_none(details: dict) -> Optional[str]:
    """Serialize a breakdown only if it has a non-zero part besides the total."""
    parts = {k: v for k, v in details.items() if k != "total"}
    if any(v for v in parts.values()):
        return json.dumps(details)
    return None


class UsageRecorder:
    """Writes the authoritative usage record for each billable event."""

    def __init__(
        self,
        repo: LedgerRepository,
        ledger: CreditLedger,
        dispatcher: Optional[ReportDispatcher] = None,
        config: Optional[DatabaseConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.config = config or DatabaseConfig()
        self.clock = clock

    def split_cost(self, conn: sqlite3.Connection, user_id: str, full_cost: float) -> CostSplit:
        """Split a charge between credit and billing.

        Must run inside the recording transaction: the balance read here is
        protected by the transaction's write lock, so two concurrent charges
        can never both spend the same credit.

        Credit-only users are never billed beyond their credit; the
        remainder is forgiven.
        """
        balance = self.ledger.balance(user_id, conn=conn)
        credit_used = min(full_cost, balance.available)
        remainder = full_cost - credit_used

        if remainder > 0 and repository.fetch_active_subscription(conn, user_id) is None:
            return CostSplit(credit_used=credit_used, cost_usd=0.0)

        return CostSplit(credit_used=credit_used, cost_usd=remainder)

    def record_token_usage(
        self,
        user_id: str,
        provider: str,
        model_id: str,
        task_type: str,
        usage: TokenUsage,
        is_external_key: bool = False,
        conversation_id: Optional[str] = None,
    ) -> UsageRecord:
        """Record a model call and charge its cost.

        Unpriced models and calls on the user's own key cost nothing here
        but are still recorded.

        Raises:
            LedgerWriteError: If the record could not be committed
        """
        cost: Optional[CostBreakdown] = None
        if not is_external_key and has_model_pricing(model_id):
            cost = calculate_cost(model_id, usage)
        full_cost = float(cost.total) if cost is not None else 0.0

        def work(conn: sqlite3.Connection) -> UsageRecord:
            split = NO_CHARGE
            if not is_external_key and full_cost > 0:
                split = self.split_cost(conn, user_id, full_cost)

            now = self.clock()
            call = AiCallRecord(
                id=uuid.uuid4().hex,
                user_id=user_id,
                provider=provider,
                model_id=model_id,
                task_type=task_type,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                total_tokens=usage.total_tokens,
                usage_json=_json_or_none(usage.details()),
                cost_json=_json_or_none(cost.details()) if cost is not None else None,
                using_own_key=is_external_key,
                conversation_id=conversation_id,
                created_at=now,
            )
            repository.insert_ai_call(conn, call)
            repository.increment_message_count(conn, user_id)
            return self._insert_record(conn, user_id, task_type, split, now, ai_call_id=call.id)

        return self._commit(work)

    def record_fixed_cost_usage(
        self,
        user_id: str,
        task_type: str,
        cost_usd: Optional[float] = None,
    ) -> UsageRecord:
        """Record a fixed-cost task such as a sandbox session.

        Args:
            user_id: User to charge
            task_type: Task identifier, priced from the fixed-cost table
                when ``cost_usd`` is not given
            cost_usd: Explicit cost overriding the table

        Raises:
            LedgerWriteError: If the record could not be committed
        """
        full_cost = float(cost_usd if cost_usd is not None else fixed_cost_for(task_type))
        if full_cost < 0:
            raise ValueError("cost_usd cannot be negative")

        def work(conn: sqlite3.Connection) -> UsageRecord:
            split = self.split_cost(conn, user_id, full_cost) if full_cost > 0 else NO_CHARGE
            return self._insert_record(conn, user_id, task_type, split, self.clock())

        return self._commit(work)

    def _insert_record(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        task_type: str,
        split: CostSplit,
        now: datetime,
        ai_call_id: Optional[str] = None,
    ) -> UsageRecord:
        record = UsageRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            task_type=task_type,
            credit_used_usd=split.credit_used,
            cost_usd=split.cost_usd,
            created_at=now,
            report_state=ReportState.PENDING if split.cost_usd > 0 else ReportState.REPORTED,
            ai_call_id=ai_call_id,
        )
        repository.insert_usage_record(conn, record)
        return record

    def _commit(self, work: Callable[[sqlite3.Connection], UsageRecord]) -> UsageRecord:
        record = run_serializable(self.repo, work, self.config.transaction_max_attempts)
        logger.info(
            "usage_recorded",
            record_id=record.id,
            user_id=record.user_id,
            task_type=record.task_type,
            credit_used_usd=record.credit_used_usd,
            cost_usd=record.cost_usd,
        )
        if record.cost_usd > 0 and self.dispatcher is not None:
            # The charge is committed; the sweep picks up anything not queued.
            try:
                self.dispatcher.enqueue(record)
            except Exception:
                logger.exception("usage_report_enqueue_failed", record_id=record.id)
        return record
