"""
Data models for storage layer.

Defines the persisted ledger entities.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ReportState(Enum):
    """Delivery state of a usage record towards the metered-billing provider."""
    PENDING = "pending"
    REPORTED = "reported"


@dataclass(frozen=True)
class CreditGrant:
    """Prepaid, possibly expiring allotment of spend.

    Grants are append-only: once written they are never updated or deleted.
    Expiry only affects balance calculation, never the stored row.
    """
    id: str
    user_id: str
    amount_usd: float
    type: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    description: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        """Whether the grant's unconsumed remainder can still be spent."""
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class UsageRecord:
    """Authoritative record of one billable event.

    ``credit_used_usd`` is the part paid from prepaid credit, ``cost_usd``
    the part billed through the metered-billing provider. Only the report
    state ever changes after insertion.
    """
    id: str
    user_id: str
    task_type: str
    credit_used_usd: float
    cost_usd: float
    created_at: datetime
    report_state: ReportState
    ai_call_id: Optional[str] = None


@dataclass(frozen=True)
class AiCallRecord:
    """Call-detail record for a token-metered model call."""
    id: str
    user_id: str
    provider: str
    model_id: str
    task_type: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    using_own_key: bool
    created_at: datetime
    usage_json: Optional[str] = None
    cost_json: Optional[str] = None
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class SpendingLimitConfig:
    """Monthly cap for one user; no row means unlimited."""
    user_id: str
    monthly_cap_usd: float


@dataclass(frozen=True)
class BillingCustomer:
    """A user as seen by the ledger."""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    customer_ref: Optional[str] = None
    ai_message_count: int = 0


@dataclass(frozen=True)
class Subscription:
    """Metered subscription mirrored from the billing provider."""
    id: str
    user_id: str
    status: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
