"""
External usage reporting.

Delivers billed amounts to the metered-billing provider after the ledger
entry is committed. Delivery is best effort: failures are logged, the
record stays pending, and the reconciliation sweep retries it later.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog

from usage_ledger.config.loader import ReportingConfig
from usage_ledger.providers.base import MeteringProvider
from usage_ledger.storage import repository
from usage_ledger.storage.models import ReportState, UsageRecord
from usage_ledger.storage.repository import LedgerRepository

from .errors import MeteringProviderError

logger = structlog.get_logger()


def cost_to_units(cost_usd: float, units_per_usd: int) -> int:
    """Convert a USD amount to integer meter units, rounding half up."""
    units = (Decimal(str(cost_usd)) * units_per_usd).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(units)


class UsageReporter:
    """Submits one usage record to the provider and records the outcome."""

    def __init__(
        self,
        repo: LedgerRepository,
        provider: MeteringProvider,
        config: Optional[ReportingConfig] = None,
    ):
        self.repo = repo
        self.provider = provider
        self.config = config or ReportingConfig()

    def report(self, record: UsageRecord) -> bool:
        """Deliver a record's billed amount.

        The record id is the idempotency key, so a retry after a lost
        response never bills twice. A record already marked reported is
        skipped without calling the provider.

        Returns:
            True if the record is now reported

        Raises:
            MeteringProviderError: If the provider rejected the submission
        """
        with self.repo.connection() as conn:
            current = repository.fetch_usage_record(conn, record.id)
            if current is None:
                logger.warning("usage_record_missing", record_id=record.id)
                return False
            if current.report_state is ReportState.REPORTED:
                return True
            user = repository.fetch_user(conn, current.user_id)

        units = cost_to_units(current.cost_usd, self.config.cost_to_units)
        if units <= 0:
            # Below one meter unit: nothing the provider can bill.
            self._mark_reported(current.id)
            logger.info("usage_below_billable_unit", record_id=current.id, cost_usd=current.cost_usd)
            return True

        if user is None or not user.customer_ref:
            logger.warning("usage_report_no_customer", record_id=current.id, user_id=current.user_id)
            return False

        self.provider.report_usage(
            customer_ref=user.customer_ref,
            idempotency_key=current.id,
            units=units,
            timestamp=current.created_at,
        )
        self._mark_reported(current.id)
        logger.info("usage_reported", record_id=current.id, user_id=current.user_id, units=units)
        return True

    def try_report(self, record: UsageRecord) -> bool:
        """Like ``report`` but logs provider failures instead of raising."""
        try:
            return self.report(record)
        except MeteringProviderError as e:
            logger.warning("usage_report_failed", record_id=record.id, error=str(e))
            return False

    def _mark_reported(self, record_id: str) -> None:
        with self.repo.connection() as conn:
            repository.mark_reported(conn, [record_id])


class ReportDispatcher:
    """Background queue that reports committed records off the caller's path.

    ``enqueue`` returns immediately. Any failure inside the job is logged
    and never reaches the caller; the record stays pending for the sweep.
    """

    def __init__(self, reporter: UsageReporter, max_workers: int = 4):
        self.reporter = reporter
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="usage-report")

    def enqueue(self, record: UsageRecord) -> Future:
        return self._executor.submit(self._run, record)

    def _run(self, record: UsageRecord) -> bool:
        try:
            return self.reporter.try_report(record)
        except Exception:
            logger.exception("usage_report_job_crashed", record_id=record.id)
            return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
