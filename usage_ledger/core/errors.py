"""
Exception taxonomy for the usage ledger.

Validation errors are rejected before anything is persisted, ledger write
errors surface to the caller, and provider errors are caught by the
reporting path.
"""


class BillingError(Exception):
    """Base class for all ledger errors."""


class SpendingLimitValidationError(BillingError, ValueError):
    """Raised when a spending cap is not a finite value above the floor."""


class CreditGrantValidationError(BillingError, ValueError):
    """Raised when a credit grant amount is not a finite positive value."""


class UnknownModelError(BillingError, ValueError):
    """Raised when pricing is requested for a model without a pricing entry."""


class UnknownUserError(BillingError, ValueError):
    """Raised when a ledger write names a user the ledger has never seen."""


class LedgerWriteError(BillingError):
    """Raised when a usage record could not be committed.

    Either a write conflict persisted past the retry bound, or a
    non-retryable datastore error occurred.
    """

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class MeteringProviderError(BillingError):
    """Raised by a metered-billing provider when a call fails."""
