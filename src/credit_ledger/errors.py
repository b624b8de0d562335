from __future__ import annotations

from decimal import Decimal


class CreditManagementError(Exception):
    """Base class for every error raised by the credit ledger."""


class PackageNotFound(CreditManagementError, LookupError):
    def __init__(self, package_id: str) -> None:
        super().__init__(f"credit package not found or inactive: {package_id}")
        self.package_id = package_id


class PackageInUse(CreditManagementError, ValueError):
    """Raised when deleting a package that purchase transactions still reference."""

    def __init__(self, package_id: str, references: int) -> None:
        super().__init__(
            f"credit package {package_id} is referenced by {references} "
            "purchase transaction(s); deactivate it instead"
        )
        self.package_id = package_id
        self.references = references


class InvalidAmount(CreditManagementError, ValueError):
    pass


class InsufficientCredits(CreditManagementError, ValueError):
    def __init__(self, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"insufficient credits: requested {requested}, available {available}"
        )
        self.requested = requested
        self.available = available


class InvalidAdjustment(CreditManagementError, ValueError):
    def __init__(self, amount: Decimal, available: Decimal) -> None:
        super().__init__(
            f"adjustment of {amount} would drive available credits "
            f"({available}) negative"
        )
        self.amount = amount
        self.available = available


class TransientError(CreditManagementError):
    """
    Persistence failure outside the caller's control (lock timeout, write
    conflict, lost connection).

    `retryable` is True when the unit of work is known to have rolled back,
    so running it again is safe. The accounting engine does that itself a
    bounded number of times. When False (e.g. an unknown commit result) the
    outcome is undetermined and callers must deduplicate purchases
    themselves (e.g. by payment transaction id).
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
