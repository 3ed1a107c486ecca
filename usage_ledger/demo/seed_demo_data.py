# usage_ledger/demo/seed_demo_data.py

from datetime import datetime, timezone

from usage_ledger.core.engine import UsageLedger
from usage_ledger.providers.memory import InMemoryMeteringProvider
from usage_ledger.storage import repository


class DemoClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


clock = DemoClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
ledger = UsageLedger(provider=InMemoryMeteringProvider(), clock=clock, dispatch_reports=False)
ledger.initialize()

with ledger.repo.connection() as conn:
    repository.upsert_user(conn, "demo-user", "demo@example.com", "Demo User")

ledger.ledger.grant_credit("demo-user", 5.0, "promo", "Grant A",
                           expires_at=datetime(2025, 3, 1, tzinfo=timezone.utc))

clock.now = datetime(2025, 1, 15, tzinfo=timezone.utc)
ledger.recorder.record_fixed_cost_usage("demo-user", "demo", cost_usd=2.0)

clock.now = datetime(2025, 2, 1, tzinfo=timezone.utc)
ledger.ledger.grant_credit("demo-user", 3.0, "promo", "Grant B")

clock.now = datetime(2025, 3, 2, tzinfo=timezone.utc)
balance = ledger.ledger.balance("demo-user")

print(f"Demo ledger seeded: available ${balance.available:.2f} "
      f"of ${balance.total_granted:.2f} granted (grant A expired)")
