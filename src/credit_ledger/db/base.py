from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Iterable, List, Optional, Tuple

from ..models.ledger import LedgerEntry
from ..models.package import CreditPackage
from ..models.summary import UserCreditSummary
from ..models.transaction import PurchaseTransaction


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, ...) implement these
    methods. Every multi-step mutation runs inside `transaction()`, and
    `get_credit_summary(..., for_update=True)` grants the caller exclusive
    use of that user's summary until the transaction ends. Lock order is
    always summary first, then ledger entries.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic unit of work.

        Commits on success and rolls back every write on any exception,
        cancellation included. Nested calls join the outer transaction.
        Persistence failures surface as `TransientError`.
        """
        yield

    # Package catalog
    @abstractmethod
    async def add_package(self, package: CreditPackage) -> CreditPackage: ...

    @abstractmethod
    async def get_package(self, package_id: str) -> Optional[CreditPackage]: ...

    @abstractmethod
    async def update_package(self, package: CreditPackage) -> CreditPackage: ...

    @abstractmethod
    async def delete_package(self, package_id: str) -> None: ...

    @abstractmethod
    async def list_packages(self, active_only: bool = True) -> Iterable[CreditPackage]:
        """Packages ordered by price ascending."""
        ...

    # Purchase transactions
    @abstractmethod
    async def add_purchase_transaction(
        self, tx: PurchaseTransaction
    ) -> PurchaseTransaction: ...

    @abstractmethod
    async def get_purchase_transaction(
        self, transaction_id: str
    ) -> Optional[PurchaseTransaction]: ...

    @abstractmethod
    async def count_package_transactions(self, package_id: str) -> int: ...

    @abstractmethod
    async def list_purchase_transactions(
        self, user_id: str, offset: int, limit: int
    ) -> Tuple[List[PurchaseTransaction], int]:
        """One page of a user's purchases, newest first, plus the total count."""
        ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def update_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """Persist the mutable fields (`credit`, `is_expired`) of an entry."""
        ...

    @abstractmethod
    async def get_ledger_entry(self, entry_id: str) -> Optional[LedgerEntry]: ...

    @abstractmethod
    async def get_consumable_entries(self, user_id: str) -> List[LedgerEntry]:
        """
        Non-expired PURCHASE entries with remaining capacity, in FIFO order
        (see `fifo_sort_key`).
        """
        ...

    @abstractmethod
    async def get_entries_due_for_expiry(self, as_of: datetime) -> List[LedgerEntry]:
        """Entries with `is_expired = False` and `expires_at <= as_of`."""
        ...

    @abstractmethod
    async def list_ledger_entries(
        self, user_id: str, offset: int, limit: int
    ) -> Tuple[List[LedgerEntry], int]:
        """One page of a user's ledger, newest first, plus the total count."""
        ...

    @abstractmethod
    async def sum_expiring_credits(self, user_id: str, until: datetime) -> Decimal:
        """Remaining capacity of non-expired PURCHASE entries expiring by `until`."""
        ...

    # Balance summary
    @abstractmethod
    async def get_credit_summary(
        self, user_id: str, for_update: bool = False
    ) -> Optional[UserCreditSummary]:
        """
        Load a user's summary. With `for_update=True` (only valid inside
        `transaction()`), block until the user's exclusive lock is held; the
        lock is kept even when no summary exists yet, so a lazy creation is
        covered too.
        """
        ...

    @abstractmethod
    async def save_credit_summary(
        self, summary: UserCreditSummary
    ) -> UserCreditSummary: ...
