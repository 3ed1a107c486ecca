"""
Stripe implementation of the metering provider.

Usage is sent as Stripe billing meter events; the event ``identifier`` is
the idempotency key, so Stripe drops repeated submissions.
"""

from datetime import datetime
from typing import Optional

import stripe
import structlog

from usage_ledger.core.errors import MeteringProviderError

from .base import MeteringProvider

logger = structlog.get_logger()


class StripeMeteringProvider(MeteringProvider):
    """Reports usage to a Stripe billing meter."""

    def __init__(self, api_key: str, meter_event_name: str):
        if not api_key:
            raise ValueError("Stripe API key is required")
        self.api_key = api_key
        self.meter_event_name = meter_event_name

    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                email=email,
                name=name,
                metadata={"userId": user_id, "customerType": "user"},
                idempotency_key=f"customer_{user_id}",
            )
        except stripe.StripeError as e:
            raise MeteringProviderError(f"Stripe customer creation failed: {e}") from e
        logger.info("stripe_customer_created", user_id=user_id, customer_ref=customer.id)
        return str(customer.id)

    def report_usage(
        self,
        customer_ref: str,
        idempotency_key: str,
        units: int,
        timestamp: datetime,
    ) -> None:
        try:
            stripe.billing.MeterEvent.create(
                api_key=self.api_key,
                event_name=self.meter_event_name,
                payload={
                    "stripe_customer_id": customer_ref,
                    "value": str(units),
                },
                identifier=idempotency_key,
                timestamp=int(timestamp.timestamp()),
            )
        except stripe.StripeError as e:
            raise MeteringProviderError(f"Stripe meter event failed: {e}") from e
