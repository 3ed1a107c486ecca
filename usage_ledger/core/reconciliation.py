"""
Reconciliation sweep.

Periodic job that catches usage reports the inline reporter never
delivered.

Phases:
1. Expire - pending records older than the provider's event-age window can
   never be billed. They are marked reported and raise a revenue-loss alert.
2. Retry - a bounded batch of pending records is re-submitted in bounded
   parallel chunks; individual failures don't stop the batch.

Both phases are safe to run concurrently with another sweep: state changes
only apply to records still pending, and the provider drops repeated
idempotency keys.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import structlog

from usage_ledger.config.loader import ReportingConfig, SweepConfig
from usage_ledger.storage import repository
from usage_ledger.storage.models import UsageRecord
from usage_ledger.storage.repository import LedgerRepository, utcnow

from .reporter import UsageReporter

logger = structlog.get_logger()

LOSS_SAMPLE_SIZE = 5


@dataclass(frozen=True)
class SweepResult:
    """Counts from one sweep run."""
    expired: int
    attempted: int
    succeeded: int


AlertHook = Callable[[List[UsageRecord]], None]


class ReconciliationSweep:
    """Expires unreportable records and retries undelivered ones."""

    def __init__(
        self,
        repo: LedgerRepository,
        reporter: UsageReporter,
        config: Optional[SweepConfig] = None,
        reporting: Optional[ReportingConfig] = None,
        alert: Optional[AlertHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.reporter = reporter
        self.config = config or SweepConfig()
        self.reporting = reporting or ReportingConfig()
        self.alert = alert
        self.clock = clock

    def run(self) -> SweepResult:
        expired = self.expire_stale()
        attempted, succeeded = self.retry_pending()
        result = SweepResult(expired=expired, attempted=attempted, succeeded=succeeded)
        logger.info("reconciliation_sweep_finished", expired=expired,
                    attempted=attempted, succeeded=succeeded)
        return result

    def expire_stale(self) -> int:
        """Mark records past the provider's age window as reported.

        Every expired record is revenue that will never be billed, so this
        logs at critical level and calls the alert hook. Only records this
        run actually moved out of pending are alerted on, so a record is
        alerted exactly once even across overlapping sweeps.

        Returns:
            Number of records expired by this run
        """
        cutoff = self.clock() - timedelta(days=self.reporting.max_event_age_days)
        with self.repo.transaction() as conn:
            stale = repository.fetch_pending_records(conn, cutoff, self.config.batch_size)
            if not stale:
                return 0
            expired = repository.mark_reported(conn, [r.id for r in stale])

        logger.critical(
            "permanent_revenue_loss",
            count=expired,
            max_event_age_days=self.reporting.max_event_age_days,
            total_cost_usd=sum(r.cost_usd for r in stale),
            sample=[
                {"id": r.id, "user_id": r.user_id, "cost_usd": r.cost_usd}
                for r in stale[:LOSS_SAMPLE_SIZE]
            ],
        )
        if self.alert is not None:
            self.alert(stale)
        return expired

    def retry_pending(self) -> Tuple[int, int]:
        """Re-submit pending records old enough not to race the inline reporter.

        Returns:
            (attempted, succeeded)
        """
        created_before = self.clock() - timedelta(seconds=self.config.min_age_seconds)
        with self.repo.connection() as conn:
            pending = repository.fetch_pending_records(conn, created_before, self.config.batch_size)

        if not pending:
            return 0, 0

        succeeded = 0
        chunk_size = self.config.parallel_chunk
        with ThreadPoolExecutor(max_workers=chunk_size, thread_name_prefix="usage-sweep") as pool:
            for start in range(0, len(pending), chunk_size):
                if start and self.config.chunk_pause_seconds:
                    time.sleep(self.config.chunk_pause_seconds)
                chunk = pending[start:start + chunk_size]
                results = list(pool.map(self._retry_one, chunk))
                succeeded += sum(1 for ok in results if ok)

        return len(pending), succeeded

    def _retry_one(self, record: UsageRecord) -> bool:
        try:
            return self.reporter.try_report(record)
        except Exception:
            logger.exception("usage_report_retry_failed", record_id=record.id)
            return False

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        """Run the sweep on a fixed interval until ``stop`` is set."""
        stop = stop or threading.Event()
        while not stop.is_set():
            try:
                self.run()
            except Exception:
                logger.exception("reconciliation_sweep_failed")
            stop.wait(self.config.interval_seconds)
