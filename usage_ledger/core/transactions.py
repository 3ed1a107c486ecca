"""
Serializable transactions with bounded retry on write conflicts.
"""

import sqlite3
from typing import Callable, TypeVar

import structlog
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from usage_ledger.storage.db import is_write_conflict
from usage_ledger.storage.repository import LedgerRepository

from .errors import LedgerWriteError

logger = structlog.get_logger()

T = TypeVar("T")


def _log_conflict_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "ledger_write_conflict_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


def _run_in_transaction(repo: LedgerRepository, work: Callable[[sqlite3.Connection], T]) -> T:
    with repo.transaction() as conn:
        return work(conn)


def run_serializable(
    repo: LedgerRepository,
    work: Callable[[sqlite3.Connection], T],
    max_attempts: int = 3,
) -> T:
    """Run ``work`` in a serializable transaction, retrying write conflicts.

    The whole transaction, reads included, is re-run on each attempt. No
    backoff is applied: the connection's busy timeout already waits for the
    competing writer.

    Args:
        repo: Repository providing transactions
        work: Function executed with the transaction's connection
        max_attempts: Total attempts before a conflict becomes fatal

    Returns:
        Whatever ``work`` returns once committed

    Raises:
        LedgerWriteError: On a non-conflict datastore error, or when every
            attempt hit a write conflict
    """
    retrying = Retrying(
        retry=retry_if_exception(is_write_conflict),
        stop=stop_after_attempt(max_attempts),
        before_sleep=_log_conflict_retry,
        reraise=True,
    )
    try:
        return retrying(_run_in_transaction, repo, work)
    except sqlite3.Error as e:
        attempts = retrying.statistics.get("attempt_number", 1)
        if is_write_conflict(e):
            raise LedgerWriteError(
                f"Ledger write conflict persisted after {attempts} attempts",
                attempts=attempts,
            ) from e
        raise LedgerWriteError(f"Ledger write failed: {e}", attempts=attempts) from e
