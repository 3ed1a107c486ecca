"""
Spending limit guard.

Decides, before a model call, whether a user may proceed.

Decision order:
1. External API key - the call costs this system nothing, always allowed
2. No billing customer - create one lazily; if that fails, fall back to a
   free message allowance instead of blocking
3. Active subscription - only the monthly spending cap applies
4. Credit only - the monthly cap, then the credit balance
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from usage_ledger.config.loader import LimitConfig
from usage_ledger.providers.base import MeteringProvider
from usage_ledger.storage import repository
from usage_ledger.storage.models import BillingCustomer
from usage_ledger.storage.repository import LedgerRepository, utcnow

from .errors import MeteringProviderError
from .ledger import CreditLedger
from .spending_limit import SpendingLimits, month_start

logger = structlog.get_logger()


class BlockReason(Enum):
    """Reason codes returned to callers so they can show the right message."""
    MESSAGE_LIMIT_REACHED = "MESSAGE_LIMIT_REACHED"
    CREDIT_EXHAUSTED = "CREDIT_EXHAUSTED"
    SPENDING_LIMIT_REACHED = "SPENDING_LIMIT_REACHED"


@dataclass(frozen=True)
class UsageCheck:
    """Outcome of a usage-limit check.

    ``current`` and ``limit`` carry the message count and allowance in
    degraded mode and are zero otherwise.
    """
    allowed: bool
    block_reason: Optional[BlockReason] = None
    current: int = 0
    limit: int = 0


ALLOWED = UsageCheck(allowed=True)


class UsageBlocked(Exception):
    """Raised by callers that turn a blocked check into an error."""
    def __init__(self, check: UsageCheck):
        reason = check.block_reason.value if check.block_reason else "BLOCKED"
        super().__init__(f"Usage blocked: {reason}")
        self.check = check
        self.reason = check.block_reason


class SpendingLimitGuard:
    """Pre-call usage check across the four user states."""

    def __init__(
        self,
        repo: LedgerRepository,
        ledger: CreditLedger,
        limits: SpendingLimits,
        provider: Optional[MeteringProvider] = None,
        config: Optional[LimitConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.ledger = ledger
        self.limits = limits
        self.provider = provider
        self.config = config or LimitConfig()
        self.clock = clock

    def check_usage_limit(self, user_id: str, is_external_key: bool = False) -> UsageCheck:
        """Decide whether the user may make a billable call.

        Args:
            user_id: User about to make the call
            is_external_key: The call runs on the user's own provider key

        Returns:
            UsageCheck with a block reason when not allowed
        """
        if is_external_key:
            return ALLOWED

        with self.repo.connection() as conn:
            user = repository.fetch_user(conn, user_id)
        if user is None:
            return UsageCheck(allowed=False, block_reason=BlockReason.MESSAGE_LIMIT_REACHED)

        if not user.customer_ref:
            customer_ref = self._ensure_customer(user)
            if customer_ref is None:
                return self._message_count_check(user)

        subscription = self.limits.active_subscription(user_id)
        cap = self.limits.get_limit(user_id)

        if subscription is not None:
            if cap is not None and self.limits.period_usage(user_id, subscription.period_start) >= cap:
                return UsageCheck(allowed=False, block_reason=BlockReason.SPENDING_LIMIT_REACHED)
            return ALLOWED

        if cap is not None:
            usage = self.limits.period_usage(user_id, month_start(self.clock()))
            if usage >= cap:
                return UsageCheck(allowed=False, block_reason=BlockReason.SPENDING_LIMIT_REACHED)

        if self.ledger.balance(user_id).available <= 0:
            return UsageCheck(allowed=False, block_reason=BlockReason.CREDIT_EXHAUSTED)

        return ALLOWED

    def _ensure_customer(self, user: BillingCustomer) -> Optional[str]:
        """Create the billing customer for users that predate billing.

        Returns None when no customer can be created, which puts the user
        in degraded mode for this check.
        """
        if self.provider is None or not user.email:
            return None
        try:
            customer_ref = self.provider.create_customer(user.id, user.email, user.name)
        except MeteringProviderError as e:
            logger.error("ensure_customer_failed", user_id=user.id, error=str(e))
            return None
        with self.repo.connection() as conn:
            repository.set_customer_ref(conn, user.id, customer_ref)
        return customer_ref

    def _message_count_check(self, user: BillingCustomer) -> UsageCheck:
        current = user.ai_message_count
        limit = self.config.free_message_limit
        if current < limit:
            return UsageCheck(allowed=True, current=current, limit=limit)
        return UsageCheck(
            allowed=False,
            block_reason=BlockReason.MESSAGE_LIMIT_REACHED,
            current=current,
            limit=limit,
        )
