"""
In-process metering provider.

Keeps meter events in memory and honours idempotency keys the way the
hosted provider does. Used for local runs, the demo and tests.
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from usage_ledger.core.errors import MeteringProviderError

from .base import MeteringProvider


@dataclass(frozen=True)
class MeterEvent:
    customer_ref: str
    idempotency_key: str
    units: int
    timestamp: datetime


class InMemoryMeteringProvider(MeteringProvider):
    """Metering provider backed by a dictionary.

    Events older than ``max_event_age_days`` are rejected, mirroring the
    hosted provider's age window.
    """

    def __init__(self, max_event_age_days: int = 35):
        self.max_event_age_days = max_event_age_days
        self.customers: Dict[str, str] = {}
        self.events: Dict[str, MeterEvent] = {}
        self.calls = 0
        self._lock = threading.Lock()

    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        with self._lock:
            if user_id not in self.customers:
                self.customers[user_id] = f"cus_{uuid.uuid4().hex[:14]}"
            return self.customers[user_id]

    def report_usage(
        self,
        customer_ref: str,
        idempotency_key: str,
        units: int,
        timestamp: datetime,
    ) -> None:
        age = datetime.now(timezone.utc) - timestamp
        if age > timedelta(days=self.max_event_age_days):
            raise MeteringProviderError(
                f"Meter event {idempotency_key} is older than {self.max_event_age_days} days"
            )
        with self._lock:
            self.calls += 1
            if idempotency_key in self.events:
                return
            self.events[idempotency_key] = MeterEvent(
                customer_ref=customer_ref,
                idempotency_key=idempotency_key,
                units=units,
                timestamp=timestamp,
            )

    def billed_units(self, customer_ref: Optional[str] = None) -> int:
        """Total units billed, optionally for one customer."""
        with self._lock:
            events: List[MeterEvent] = list(self.events.values())
        return sum(e.units for e in events if customer_ref is None or e.customer_ref == customer_ref)
