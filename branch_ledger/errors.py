"""
Ledger error taxonomy.

Every failure a caller can act on has its own exception class. Retryable
errors leave no partial state behind, so the same call may simply be repeated.
"""

from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidAmount(LedgerError):
    """Amount is zero, negative or otherwise unusable."""


class AccountNotFound(LedgerError):
    """Referenced account does not exist."""


class AccountInactive(LedgerError):
    """Account exists but is not ACTIVE."""


class InsufficientFunds(LedgerError):
    """Debit would take the balance below what the account must keep."""


class SameAccount(LedgerError):
    """Transfer source and destination are the same account."""


class IneligibleAccount(LedgerError):
    """Account may not hold a new Fixed Deposit."""


class InvalidTerm(LedgerError):
    """Fixed Deposit term is not one of the offered terms."""


class FDNotFound(LedgerError):
    """No Fixed Deposit (or no ACTIVE one, where required) with that id."""


class DuplicateIdentifier(LedgerError):
    """Generated identifier collided with an existing row."""

    retryable = True


class StorageTimeout(LedgerError):
    """A storage call or lock wait exceeded its time bound."""

    retryable = True


class ConcurrencyConflict(LedgerError):
    """Lock contention or serialization failure."""

    retryable = True


class IdempotencyConflict(ConcurrencyConflict):
    """Idempotency key already used for a different posting."""

    retryable = False


def retry_on_conflict(operation: Callable[[], T], attempts: int = 3,
                      on_retry: Optional[Callable[[LedgerError, int], None]] = None) -> T:
    """
    Run ``operation``, repeating it when it fails with a retryable error.

    Identifier sequences are re-read on every attempt because ids are minted
    inside the operation's own transaction.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except LedgerError as e:
            if not e.retryable or attempt == attempts:
                raise
            if on_retry:
                on_retry(e, attempt)
    raise AssertionError("unreachable")
