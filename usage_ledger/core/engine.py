"""
Wiring for the usage accounting engine.

Builds every component from one configuration so callers get a consistent
set sharing the same datastore, provider and clock.
"""

from datetime import datetime
from typing import Callable, Optional

from usage_ledger.config.loader import BillingConfig, DEFAULT_CONFIG, get_stripe_secret_key
from usage_ledger.providers.base import MeteringProvider
from usage_ledger.storage.repository import LedgerRepository, utcnow

from .guardrails import SpendingLimitGuard
from .ledger import CreditLedger
from .reconciliation import AlertHook, ReconciliationSweep
from .recorder import UsageRecorder
from .reporter import ReportDispatcher, UsageReporter
from .spending_limit import SpendingLimits


class UsageLedger:
    """All ledger components, built together."""

    def __init__(
        self,
        config: BillingConfig = DEFAULT_CONFIG,
        provider: Optional[MeteringProvider] = None,
        db_path: Optional[str] = None,
        alert: Optional[AlertHook] = None,
        clock: Callable[[], datetime] = utcnow,
        dispatch_reports: bool = True,
    ):
        self.config = config
        self.provider = provider
        self.repo = LedgerRepository(
            db_path or config.database.path,
            timeout=config.database.transaction_timeout_seconds,
        )
        self.ledger = CreditLedger(self.repo, config.credits, clock=clock)
        self.limits = SpendingLimits(self.repo, self.ledger, config.limits, clock=clock)
        self.guard = SpendingLimitGuard(self.repo, self.ledger, self.limits, provider,
                                        config.limits, clock=clock)

        self.reporter: Optional[UsageReporter] = None
        self.dispatcher: Optional[ReportDispatcher] = None
        self.sweep: Optional[ReconciliationSweep] = None
        if provider is not None:
            self.reporter = UsageReporter(self.repo, provider, config.reporting)
            if dispatch_reports:
                self.dispatcher = ReportDispatcher(self.reporter, config.reporting.dispatch_workers)
            self.sweep = ReconciliationSweep(self.repo, self.reporter, config.sweep,
                                             config.reporting, alert=alert, clock=clock)

        self.recorder = UsageRecorder(self.repo, self.ledger, self.dispatcher,
                                      config.database, clock=clock)

    def initialize(self) -> None:
        self.repo.initialize()

    def close(self) -> None:
        """Wait for queued reports to finish."""
        if self.dispatcher is not None:
            self.dispatcher.shutdown(wait=True)

    def __enter__(self) -> "UsageLedger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def stripe_provider_from_env(config: BillingConfig = DEFAULT_CONFIG) -> Optional[MeteringProvider]:
    """Stripe provider if ``STRIPE_SECRET_KEY`` is set, else None."""
    api_key = get_stripe_secret_key()
    if not api_key:
        return None
    from usage_ledger.providers.stripe_metering import StripeMeteringProvider
    return StripeMeteringProvider(api_key, config.reporting.meter_event_name)
