"""
Spending limit configuration and period usage.

A user may set one monthly cap on billed spend. Subscription users measure
it from their billing-period start; credit-only users from the start of the
calendar month in UTC.
"""

import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from usage_ledger.config.loader import LimitConfig
from usage_ledger.storage import repository
from usage_ledger.storage.models import Subscription
from usage_ledger.storage.repository import LedgerRepository, utcnow

from .errors import SpendingLimitValidationError, UnknownUserError
from .ledger import CreditLedger


@dataclass(frozen=True)
class SubscriptionLimitInfo:
    """Spending-limit view for a user with an active subscription."""
    monthly_cap_usd: Optional[float]
    period_usage_usd: float
    period_start: datetime
    remaining_usd: Optional[float]

    mode = "subscription"


@dataclass(frozen=True)
class CreditLimitInfo:
    """Spending-limit view for a credit-only user."""
    available: float
    total_granted: float
    monthly_cap_usd: Optional[float]
    period_usage_usd: float
    period_start: datetime

    mode = "credit"


SpendingLimitInfo = Union[SubscriptionLimitInfo, CreditLimitInfo]


def month_start(now: datetime) -> datetime:
    """Midnight UTC on the first day of ``now``'s month."""
    now = now.astimezone(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def validate_cap(value: Optional[float], min_cap_usd: float) -> Optional[float]:
    """Validate a requested monthly cap. ``None`` clears the cap.

    Raises:
        SpendingLimitValidationError: If the value is not a finite number
            at or above the floor
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise SpendingLimitValidationError("monthly_cap_usd must be a finite number or None")
    if value < min_cap_usd:
        raise SpendingLimitValidationError(f"Spending limit must be at least ${min_cap_usd}")
    return float(value)


class SpendingLimits:
    """Reads and writes per-user spending caps and measures period usage."""

    def __init__(
        self,
        repo: LedgerRepository,
        ledger: CreditLedger,
        config: Optional[LimitConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.ledger = ledger
        self.config = config or LimitConfig()
        self.clock = clock

    def get_limit(self, user_id: str) -> Optional[float]:
        with self.repo.connection() as conn:
            return repository.fetch_spending_limit(conn, user_id)

    def update_limit(self, user_id: str, monthly_cap_usd: Optional[float]) -> Optional[float]:
        """Set or clear a user's monthly cap.

        Invalid values are rejected before anything is written.

        Returns:
            The stored cap, or None when cleared

        Raises:
            SpendingLimitValidationError: If the cap is invalid
            UnknownUserError: If a cap is set for an unregistered user
        """
        cap = validate_cap(monthly_cap_usd, self.config.min_cap_usd)
        with self.repo.connection() as conn:
            if cap is None:
                repository.delete_spending_limit(conn, user_id)
            else:
                if repository.fetch_user(conn, user_id) is None:
                    raise UnknownUserError(f"Unknown user: {user_id}")
                repository.upsert_spending_limit(conn, user_id, cap)
        return cap

    def active_subscription(
        self, user_id: str, conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Subscription]:
        if conn is not None:
            return repository.fetch_active_subscription(conn, user_id)
        with self.repo.connection() as own_conn:
            return repository.fetch_active_subscription(own_conn, user_id)

    def period_usage(self, user_id: str, period_start: datetime) -> float:
        """Billed amount since ``period_start``; credit-paid usage is excluded."""
        with self.repo.connection() as conn:
            return repository.sum_cost_since(conn, user_id, period_start)

    def info(self, user_id: str) -> SpendingLimitInfo:
        """Spending-limit view, shaped by whether the user is subscribed."""
        subscription = self.active_subscription(user_id)
        cap = self.get_limit(user_id)

        if subscription is not None:
            usage = self.period_usage(user_id, subscription.period_start)
            return SubscriptionLimitInfo(
                monthly_cap_usd=cap,
                period_usage_usd=usage,
                period_start=subscription.period_start,
                remaining_usd=max(0.0, cap - usage) if cap is not None else None,
            )

        start = month_start(self.clock())
        balance = self.ledger.balance(user_id)
        return CreditLimitInfo(
            available=balance.available,
            total_granted=balance.total_granted,
            monthly_cap_usd=cap,
            period_usage_usd=self.period_usage(user_id, start),
            period_start=start,
        )
