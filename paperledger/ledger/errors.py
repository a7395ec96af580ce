from __future__ import annotations

from decimal import Decimal


class LedgerError(RuntimeError):
    """Base error for ledger operations."""


class NoPriceAvailable(LedgerError):
    """Raised when no price can be resolved for the traded asset."""


class StorageUnavailable(LedgerError):
    """Raised when the persistence layer cannot be reached or fails mid-operation."""


class ConcurrentModification(LedgerError):
    """Raised when the balance changed between read and write; safe to retry from a fresh read."""


class _InsufficientBalance(LedgerError):
    def __init__(self, message: str, *, required: Decimal, available: Decimal) -> None:
        super().__init__(message)
        self.required = required
        self.available = available


class InsufficientFunds(_InsufficientBalance):
    """Raised when a BUY would take cash below zero."""


class InsufficientHoldings(_InsufficientBalance):
    """Raised when a SELL exceeds the held asset quantity."""
