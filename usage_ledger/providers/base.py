"""
Metered-billing provider contract.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional


class MeteringProvider(ABC):
    """External service that bills metered usage.

    Implementations must guarantee that repeated calls with the same
    idempotency key bill at most once, and raise
    ``MeteringProviderError`` on any failure.
    """

    @abstractmethod
    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        """Create a billing customer and return its reference."""

    @abstractmethod
    def report_usage(
        self,
        customer_ref: str,
        idempotency_key: str,
        units: int,
        timestamp: datetime,
    ) -> None:
        """Submit consumed units for a customer at ``timestamp``."""
