"""
Credit ledger and balance derivation.

The balance is never stored. It is recomputed from the append-only grant
ledger and the total credit drawn by usage records, so it cannot drift from
its source of truth.
"""

import math
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

import structlog

from usage_ledger.config.loader import CreditConfig
from usage_ledger.storage import repository
from usage_ledger.storage.models import CreditGrant
from usage_ledger.storage.repository import LedgerRepository, utcnow

from .errors import CreditGrantValidationError, UnknownUserError

logger = structlog.get_logger()

WELCOME_CREDIT_TYPE = "welcome_credit"


@dataclass(frozen=True)
class CreditBalance:
    """Derived credit position for one user."""
    total_granted: float
    total_used: float
    available: float


@dataclass(frozen=True)
class BalanceSummary:
    """Balance as presented to the user."""
    available: float
    total_granted: float
    total_used: float
    nearest_expiry: Optional[datetime]
    welcomed: bool


def compute_balance(grants: Sequence[CreditGrant], total_used: float, now: datetime) -> CreditBalance:
    """Derive a balance from grants and total historical credit usage.

    Usage is assigned to grants oldest first, each absorbing up to its
    amount before the next is touched. After assignment, a grant adds its
    unconsumed remainder to ``available`` only while it has not expired;
    an expired remainder is forfeited even though it was never spent.

    Args:
        grants: Grants ordered by creation time, oldest first
        total_used: Sum of credit drawn by all usage records
        now: Reference time for expiry

    Returns:
        CreditBalance with ``available >= 0``
    """
    usage_to_consume = total_used
    total_granted = 0.0
    available = 0.0

    for grant in grants:
        total_granted += grant.amount_usd
        consumed = min(grant.amount_usd, usage_to_consume)
        usage_to_consume -= consumed

        if grant.is_active(now):
            available += grant.amount_usd - consumed

    return CreditBalance(
        total_granted=total_granted,
        total_used=total_used,
        available=max(available, 0.0),
    )


def _require_user(conn: sqlite3.Connection, user_id: str) -> None:
    if repository.fetch_user(conn, user_id) is None:
        raise UnknownUserError(f"Unknown user: {user_id}")


class CreditLedger:
    """Grants credit and answers balance queries for users."""

    def __init__(
        self,
        repo: LedgerRepository,
        config: Optional[CreditConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.config = config or CreditConfig()
        self.clock = clock

    def balance(self, user_id: str, conn: Optional[sqlite3.Connection] = None) -> CreditBalance:
        """Current credit balance.

        Pass the connection of an open transaction to read the balance under
        that transaction's lock; otherwise a fresh connection is used.
        """
        if conn is not None:
            return self._balance(conn, user_id)
        with self.repo.connection() as own_conn:
            return self._balance(own_conn, user_id)

    def _balance(self, conn: sqlite3.Connection, user_id: str) -> CreditBalance:
        grants = repository.fetch_credit_grants(conn, user_id)
        total_used = repository.sum_credit_used(conn, user_id)
        return compute_balance(grants, total_used, self.clock())

    def summary(self, user_id: str) -> BalanceSummary:
        """Balance with nearest expiry and welcome-credit status."""
        with self.repo.connection() as conn:
            balance = self._balance(conn, user_id)
            nearest = repository.fetch_nearest_expiry(conn, user_id, self.clock())
            welcomed = repository.has_grant_of_type(conn, user_id, WELCOME_CREDIT_TYPE)
        return BalanceSummary(
            available=balance.available,
            total_granted=balance.total_granted,
            total_used=balance.total_used,
            nearest_expiry=nearest,
            welcomed=welcomed,
        )

    def nearest_expiry(self, user_id: str) -> Optional[datetime]:
        with self.repo.connection() as conn:
            return repository.fetch_nearest_expiry(conn, user_id, self.clock())

    def has_welcome_credit(self, user_id: str) -> bool:
        with self.repo.connection() as conn:
            return repository.has_grant_of_type(conn, user_id, WELCOME_CREDIT_TYPE)

    def grant_credit(
        self,
        user_id: str,
        amount_usd: float,
        grant_type: str,
        description: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> CreditGrant:
        """Append a credit grant for a user.

        Raises:
            CreditGrantValidationError: If amount is not finite and positive
            UnknownUserError: If the user is not registered
        """
        if not isinstance(amount_usd, (int, float)) or not math.isfinite(amount_usd) or amount_usd <= 0:
            raise CreditGrantValidationError("Credit grant amount must be a finite number > 0")

        grant = CreditGrant(
            id=uuid.uuid4().hex,
            user_id=user_id,
            amount_usd=float(amount_usd),
            type=grant_type,
            description=description,
            created_at=self.clock(),
            expires_at=expires_at,
        )
        with self.repo.connection() as conn:
            _require_user(conn, user_id)
            repository.insert_credit_grant(conn, grant)
        logger.info("credit_granted", user_id=user_id, amount_usd=grant.amount_usd,
                    grant_type=grant_type, expires_at=expires_at)
        return grant

    def grant_signup_credits(self, user_id: str) -> Optional[CreditGrant]:
        """Grant the one-time welcome credit.

        Returns:
            The new grant, or None if credit is disabled or already granted

        Raises:
            UnknownUserError: If the user is not registered
        """
        if self.config.welcome_credit_usd <= 0:
            return None

        now = self.clock()
        grant = CreditGrant(
            id=uuid.uuid4().hex,
            user_id=user_id,
            amount_usd=self.config.welcome_credit_usd,
            type=WELCOME_CREDIT_TYPE,
            description="Welcome credit on signup",
            created_at=now,
            expires_at=now + timedelta(days=self.config.welcome_credit_expiry_days),
        )
        # Check and insert under one write lock so two signups can't both grant.
        with self.repo.transaction() as conn:
            _require_user(conn, user_id)
            if repository.has_grant_of_type(conn, user_id, WELCOME_CREDIT_TYPE):
                return None
            repository.insert_credit_grant(conn, grant)
        logger.info("welcome_credit_granted", user_id=user_id, amount_usd=grant.amount_usd)
        return grant
