"""
Shared fixtures for ledger tests.
"""

import os
from datetime import datetime, timezone

import pytest

from usage_ledger.core.engine import UsageLedger
from usage_ledger.providers.memory import InMemoryMeteringProvider
from usage_ledger.storage import repository
from usage_ledger.storage.models import Subscription


class FixedClock:
    """Settable clock so expiry and period logic can be tested deterministically."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    path = os.path.join(str(tmp_path), "test.db")
    repository.initialize_schema(path)
    return path


@pytest.fixture
def clock():
    return FixedClock(datetime.now(timezone.utc))


@pytest.fixture
def provider():
    return InMemoryMeteringProvider()


@pytest.fixture
def ledger(db_path, clock, provider):
    """Ledger with the in-memory provider and no background dispatch."""
    built = UsageLedger(provider=provider, db_path=db_path, clock=clock, dispatch_reports=False)
    yield built
    built.close()


def add_user(ledger, user_id="user-1", customer_ref="cus_test", email="user@example.com",
             message_count=0):
    with ledger.repo.connection() as conn:
        repository.upsert_user(conn, user_id, email, "Test User")
        if customer_ref:
            repository.set_customer_ref(conn, user_id, customer_ref)
        for _ in range(message_count):
            repository.increment_message_count(conn, user_id)
    return user_id


def add_subscription(ledger, user_id, period_start, status="active"):
    with ledger.repo.connection() as conn:
        repository.upsert_subscription(conn, Subscription(
            id=f"sub_{user_id}",
            user_id=user_id,
            status=status,
            period_start=period_start,
        ))
