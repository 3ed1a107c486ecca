"""
Repository pattern for data access.

Handles the ledger schema and every SQL statement. Query functions take an
open connection so they can run inside a caller's transaction.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, get_connection, serializable_transaction
from .models import (
    AiCallRecord,
    BillingCustomer,
    CreditGrant,
    ReportState,
    Subscription,
    UsageRecord,
)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Serialize a timestamp so that lexical order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class LedgerRepository:
    """Entry point to the ledger datastore.

    Holds the database location and hands out connections and serializable
    transactions. All reads and writes go through the module-level query
    functions below.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds a transaction waits for a competing writer
        """
        self.db_path = db_path
        self.timeout = timeout

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection for reads and single-statement writes."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serializable write transaction, committed when the block exits."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            with serializable_transaction(conn):
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        initialize_schema(self.db_path)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    ``credit_grants`` and ``usage_records`` are append-only ledgers. The
    only UPDATE ever issued against them is the report-state transition on
    ``usage_records``.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT,
                name TEXT,
                customer_ref TEXT,
                ai_message_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS credit_grants (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                amount_usd REAL NOT NULL CHECK (amount_usd > 0),
                type TEXT NOT NULL,
                description TEXT,
                created_at TEXT NOT NULL,
                expires_at TEXT
            );
            CREATE INDEX IF NOT EXISTS ix_credit_grants_user_created
                ON credit_grants (user_id, created_at);

            CREATE TABLE IF NOT EXISTS ai_call_records (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                provider TEXT NOT NULL,
                model_id TEXT NOT NULL,
                task_type TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                usage_json TEXT,
                cost_json TEXT,
                using_own_key INTEGER NOT NULL DEFAULT 0,
                conversation_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS usage_records (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                task_type TEXT NOT NULL,
                credit_used_usd REAL NOT NULL CHECK (credit_used_usd >= 0),
                cost_usd REAL NOT NULL CHECK (cost_usd >= 0),
                ai_call_id TEXT REFERENCES ai_call_records(id),
                report_state TEXT NOT NULL DEFAULT 'pending'
                    CHECK (report_state IN ('pending', 'reported')),
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_usage_records_user_created
                ON usage_records (user_id, created_at);
            CREATE INDEX IF NOT EXISTS ix_usage_records_report_state
                ON usage_records (report_state, created_at);

            CREATE TABLE IF NOT EXISTS spending_limits (
                user_id TEXT PRIMARY KEY REFERENCES users(id),
                monthly_cap_usd REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS subscriptions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                status TEXT NOT NULL,
                period_start TEXT,
                period_end TEXT
            );
            CREATE INDEX IF NOT EXISTS ix_subscriptions_user
                ON subscriptions (user_id);
        """)
    finally:
        conn.close()


# ── Users ──

def upsert_user(conn: sqlite3.Connection, user_id: str,
                email: Optional[str] = None, name: Optional[str] = None) -> None:
    conn.execute("""
        INSERT INTO users (id, email, name) VALUES (?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            email = COALESCE(excluded.email, users.email),
            name = COALESCE(excluded.name, users.name)
    """, (user_id, email, name))


def fetch_user(conn: sqlite3.Connection, user_id: str) -> Optional[BillingCustomer]:
    row = conn.execute(
        "SELECT id, email, name, customer_ref, ai_message_count FROM users WHERE id = ?",
        (user_id,),
    ).fetchone()
    if row is None:
        return None
    return BillingCustomer(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        customer_ref=row["customer_ref"],
        ai_message_count=row["ai_message_count"],
    )


def set_customer_ref(conn: sqlite3.Connection, user_id: str, customer_ref: str) -> None:
    conn.execute("UPDATE users SET customer_ref = ? WHERE id = ?", (customer_ref, user_id))


def increment_message_count(conn: sqlite3.Connection, user_id: str) -> None:
    conn.execute(
        "UPDATE users SET ai_message_count = ai_message_count + 1 WHERE id = ?",
        (user_id,),
    )


# ── Credit grants ──

def insert_credit_grant(conn: sqlite3.Connection, grant: CreditGrant) -> None:
    """Append a grant to the credit ledger."""
    conn.execute("""
        INSERT INTO credit_grants
        (id, user_id, amount_usd, type, description, created_at, expires_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        grant.id,
        grant.user_id,
        grant.amount_usd,
        grant.type,
        grant.description,
        to_db_time(grant.created_at),
        to_db_time(grant.expires_at) if grant.expires_at else None,
    ))


def fetch_credit_grants(conn: sqlite3.Connection, user_id: str) -> List[CreditGrant]:
    """All grants for a user, oldest first."""
    cursor = conn.execute("""
        SELECT id, user_id, amount_usd, type, description, created_at, expires_at
        FROM credit_grants
        WHERE user_id = ?
        ORDER BY created_at ASC, rowid ASC
    """, (user_id,))
    return [
        CreditGrant(
            id=row["id"],
            user_id=row["user_id"],
            amount_usd=row["amount_usd"],
            type=row["type"],
            description=row["description"],
            created_at=from_db_time(row["created_at"]),
            expires_at=from_db_time(row["expires_at"]),
        )
        for row in cursor.fetchall()
    ]


def has_grant_of_type(conn: sqlite3.Connection, user_id: str, grant_type: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM credit_grants WHERE user_id = ? AND type = ? LIMIT 1",
        (user_id, grant_type),
    ).fetchone()
    return row is not None


def fetch_nearest_expiry(conn: sqlite3.Connection, user_id: str, now: datetime) -> Optional[datetime]:
    row = conn.execute("""
        SELECT MIN(expires_at) FROM credit_grants
        WHERE user_id = ? AND expires_at IS NOT NULL AND expires_at > ?
    """, (user_id, to_db_time(now))).fetchone()
    return from_db_time(row[0])


# ── Usage records ──

def sum_credit_used(conn: sqlite3.Connection, user_id: str) -> float:
    row = conn.execute(
        "SELECT SUM(credit_used_usd) FROM usage_records WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    return float(row[0] or 0)


def sum_cost_since(conn: sqlite3.Connection, user_id: str, since: datetime) -> float:
    """Billed (post-credit) amount since a period start. Credit is excluded."""
    row = conn.execute(
        "SELECT SUM(cost_usd) FROM usage_records WHERE user_id = ? AND created_at >= ?",
        (user_id, to_db_time(since)),
    ).fetchone()
    return float(row[0] or 0)


def insert_ai_call(conn: sqlite3.Connection, record: AiCallRecord) -> None:
    conn.execute("""
        INSERT INTO ai_call_records
        (id, user_id, provider, model_id, task_type, input_tokens, output_tokens,
         total_tokens, usage_json, cost_json, using_own_key, conversation_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        record.id,
        record.user_id,
        record.provider,
        record.model_id,
        record.task_type,
        record.input_tokens,
        record.output_tokens,
        record.total_tokens,
        record.usage_json,
        record.cost_json,
        1 if record.using_own_key else 0,
        record.conversation_id,
        to_db_time(record.created_at),
    ))


def insert_usage_record(conn: sqlite3.Connection, record: UsageRecord) -> None:
    conn.execute("""
        INSERT INTO usage_records
        (id, user_id, task_type, credit_used_usd, cost_usd, ai_call_id, report_state, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        record.id,
        record.user_id,
        record.task_type,
        record.credit_used_usd,
        record.cost_usd,
        record.ai_call_id,
        record.report_state.value,
        to_db_time(record.created_at),
    ))


def _row_to_usage_record(row: sqlite3.Row) -> UsageRecord:
    return UsageRecord(
        id=row["id"],
        user_id=row["user_id"],
        task_type=row["task_type"],
        credit_used_usd=row["credit_used_usd"],
        cost_usd=row["cost_usd"],
        ai_call_id=row["ai_call_id"],
        report_state=ReportState(row["report_state"]),
        created_at=from_db_time(row["created_at"]),
    )


_USAGE_COLUMNS = "id, user_id, task_type, credit_used_usd, cost_usd, ai_call_id, report_state, created_at"


def fetch_usage_record(conn: sqlite3.Connection, record_id: str) -> Optional[UsageRecord]:
    row = conn.execute(
        f"SELECT {_USAGE_COLUMNS} FROM usage_records WHERE id = ?", (record_id,)
    ).fetchone()
    return _row_to_usage_record(row) if row else None


def fetch_usage_records(conn: sqlite3.Connection, user_id: str, limit: int = 100) -> List[UsageRecord]:
    """Most recent usage records for a user, newest first."""
    cursor = conn.execute(f"""
        SELECT {_USAGE_COLUMNS} FROM usage_records
        WHERE user_id = ?
        ORDER BY created_at DESC, rowid DESC
        LIMIT ?
    """, (user_id, limit))
    return [_row_to_usage_record(row) for row in cursor.fetchall()]


def fetch_pending_records(
    conn: sqlite3.Connection,
    created_before: datetime,
    limit: int,
) -> List[UsageRecord]:
    """Billable records still awaiting delivery, oldest first."""
    cursor = conn.execute(f"""
        SELECT {_USAGE_COLUMNS} FROM usage_records
        WHERE report_state = 'pending' AND cost_usd > 0 AND created_at < ?
        ORDER BY created_at ASC, rowid ASC
        LIMIT ?
    """, (to_db_time(created_before), limit))
    return [_row_to_usage_record(row) for row in cursor.fetchall()]


def mark_reported(conn: sqlite3.Connection, record_ids: Sequence[str]) -> int:
    """Move pending records to ``reported``.

    Records already reported are left untouched, so repeating the call is
    a no-op.

    Returns:
        Number of records that changed state
    """
    if not record_ids:
        return 0
    placeholders = ", ".join("?" for _ in record_ids)
    cursor = conn.execute(
        f"UPDATE usage_records SET report_state = 'reported' "
        f"WHERE report_state = 'pending' AND id IN ({placeholders})",
        list(record_ids),
    )
    return cursor.rowcount


# ── Spending limits ──

def fetch_spending_limit(conn: sqlite3.Connection, user_id: str) -> Optional[float]:
    row = conn.execute(
        "SELECT monthly_cap_usd FROM spending_limits WHERE user_id = ?", (user_id,)
    ).fetchone()
    return float(row[0]) if row else None


def upsert_spending_limit(conn: sqlite3.Connection, user_id: str, monthly_cap_usd: float) -> None:
    conn.execute("""
        INSERT INTO spending_limits (user_id, monthly_cap_usd) VALUES (?, ?)
        ON CONFLICT (user_id) DO UPDATE SET monthly_cap_usd = excluded.monthly_cap_usd
    """, (user_id, monthly_cap_usd))


def delete_spending_limit(conn: sqlite3.Connection, user_id: str) -> None:
    conn.execute("DELETE FROM spending_limits WHERE user_id = ?", (user_id,))


# ── Subscriptions ──

def upsert_subscription(conn: sqlite3.Connection, subscription: Subscription) -> None:
    conn.execute("""
        INSERT INTO subscriptions (id, user_id, status, period_start, period_end)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            status = excluded.status,
            period_start = excluded.period_start,
            period_end = excluded.period_end
    """, (
        subscription.id,
        subscription.user_id,
        subscription.status,
        to_db_time(subscription.period_start) if subscription.period_start else None,
        to_db_time(subscription.period_end) if subscription.period_end else None,
    ))


def fetch_active_subscription(conn: sqlite3.Connection, user_id: str) -> Optional[Subscription]:
    """The user's active subscription with a known billing period, if any."""
    placeholders = ", ".join("?" for _ in ACTIVE_SUBSCRIPTION_STATUSES)
    row = conn.execute(f"""
        SELECT id, user_id, status, period_start, period_end FROM subscriptions
        WHERE user_id = ? AND status IN ({placeholders}) AND period_start IS NOT NULL
        ORDER BY period_start DESC
        LIMIT 1
    """, (user_id, *ACTIVE_SUBSCRIPTION_STATUSES)).fetchone()
    if row is None:
        return None
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        status=row["status"],
        period_start=from_db_time(row["period_start"]),
        period_end=from_db_time(row["period_end"]),
    )
