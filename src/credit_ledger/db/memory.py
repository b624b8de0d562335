from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .base import BaseDBManager
from ..amounts import ZERO
from ..errors import TransientError
from ..models.ledger import LedgerEntry, LedgerEntryType, fifo_sort_key
from ..models.package import CreditPackage
from ..models.summary import UserCreditSummary
from ..models.transaction import PurchaseTransaction


@dataclass
class _UnitOfWork:
    undo: List[Callable[[], None]] = field(default_factory=list)
    locked_users: Set[str] = field(default_factory=set)
    locks: List[asyncio.Lock] = field(default_factory=list)


_current_uow: ContextVar[Optional[_UnitOfWork]] = ContextVar(
    "credit_ledger_memory_uow", default=None
)


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Transactions keep an undo journal and replay it on failure, and
    `for_update` reads take a per-user `asyncio.Lock`, so the atomicity and
    per-user serialization guarantees hold within one event loop.
    One lock is kept per user ever seen and never evicted, which is fine
    for tests and short-lived local runs only.
    """

    def __init__(self, lock_timeout: Optional[float] = None) -> None:
        self._packages: Dict[str, CreditPackage] = {}
        self._transactions: Dict[str, PurchaseTransaction] = {}
        self._ledger: Dict[str, LedgerEntry] = {}
        self._summaries: Dict[str, UserCreditSummary] = {}
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock_timeout = lock_timeout
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _current_uow.get() is not None:
            # Join the enclosing unit of work.
            yield
            return

        uow = _UnitOfWork()
        token = _current_uow.set(uow)
        try:
            yield
        except BaseException:
            for undo in reversed(uow.undo):
                undo()
            raise
        finally:
            _current_uow.reset(token)
            for lock in reversed(uow.locks):
                lock.release()

    def _journal(self, store: Dict, key: str) -> None:
        """Remember the current value of ``store[key]`` for rollback."""
        uow = _current_uow.get()
        if uow is None:
            return
        if key in store:
            previous = store[key]
            uow.undo.append(lambda: store.__setitem__(key, previous))
        else:
            uow.undo.append(lambda: store.pop(key, None))

    def _put(self, store: Dict, key: str, value) -> None:
        self._journal(store, key)
        store[key] = value.model_copy(deep=True)

    async def _lock_user(self, user_id: str) -> None:
        uow = _current_uow.get()
        if uow is None:
            raise RuntimeError("for_update reads require an active transaction")
        if user_id in uow.locked_users:
            return
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"timed out waiting for credit lock of user {user_id}") from exc
        uow.locked_users.add(user_id)
        uow.locks.append(lock)

    # Package catalog
    async def add_package(self, package: CreditPackage) -> CreditPackage:
        if package.id is None:
            package.id = self._next_id()
        self._put(self._packages, package.id, package)
        return package

    async def get_package(self, package_id: str) -> Optional[CreditPackage]:
        package = self._packages.get(package_id)
        return package.model_copy(deep=True) if package else None

    async def update_package(self, package: CreditPackage) -> CreditPackage:
        if package.id is None:
            raise ValueError("Package must have id to be updated")
        self._put(self._packages, package.id, package)
        return package

    async def delete_package(self, package_id: str) -> None:
        self._journal(self._packages, package_id)
        self._packages.pop(package_id, None)

    async def list_packages(self, active_only: bool = True) -> Iterable[CreditPackage]:
        packages = [
            p.model_copy(deep=True)
            for p in self._packages.values()
            if p.is_active or not active_only
        ]
        return sorted(packages, key=lambda p: p.price)

    # Purchase transactions
    async def add_purchase_transaction(
        self, tx: PurchaseTransaction
    ) -> PurchaseTransaction:
        if tx.id is None:
            tx.id = self._next_id()
        self._put(self._transactions, tx.id, tx)
        return tx

    async def get_purchase_transaction(
        self, transaction_id: str
    ) -> Optional[PurchaseTransaction]:
        tx = self._transactions.get(transaction_id)
        return tx.model_copy(deep=True) if tx else None

    async def count_package_transactions(self, package_id: str) -> int:
        return sum(1 for t in self._transactions.values() if t.package_id == package_id)

    async def list_purchase_transactions(
        self, user_id: str, offset: int, limit: int
    ) -> Tuple[List[PurchaseTransaction], int]:
        user_txs = [t for t in self._transactions.values() if t.user_id == user_id]
        return self._newest_first(user_txs, lambda t: t.purchase_date, offset, limit)

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._put(self._ledger, entry.id, entry)
        return entry

    async def update_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None or entry.id not in self._ledger:
            raise ValueError("LedgerEntry must exist to be updated")
        stored = self._ledger[entry.id].model_copy(
            update={"credit": entry.credit, "is_expired": entry.is_expired}
        )
        self._put(self._ledger, entry.id, stored)
        return entry

    async def get_ledger_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        entry = self._ledger.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def get_consumable_entries(self, user_id: str) -> List[LedgerEntry]:
        entries = [
            e.model_copy(deep=True)
            for e in self._ledger.values()
            if e.user_id == user_id
            and e.type == LedgerEntryType.PURCHASE
            and not e.is_expired
            and e.remaining > 0
        ]
        # Dict order is insertion order, so the stable sort breaks exact ties.
        return sorted(entries, key=fifo_sort_key)

    async def get_entries_due_for_expiry(self, as_of: datetime) -> List[LedgerEntry]:
        due = [
            e.model_copy(deep=True)
            for e in self._ledger.values()
            if not e.is_expired and e.expires_at is not None and e.expires_at <= as_of
        ]
        return sorted(due, key=lambda e: e.expires_at)

    async def list_ledger_entries(
        self, user_id: str, offset: int, limit: int
    ) -> Tuple[List[LedgerEntry], int]:
        entries = [e for e in self._ledger.values() if e.user_id == user_id]
        return self._newest_first(entries, lambda e: e.created_at, offset, limit)

    async def sum_expiring_credits(self, user_id: str, until: datetime) -> Decimal:
        total = ZERO
        for e in self._ledger.values():
            if (
                e.user_id == user_id
                and e.type == LedgerEntryType.PURCHASE
                and not e.is_expired
                and e.expires_at is not None
                and e.expires_at <= until
                and e.remaining > 0
            ):
                total += e.remaining
        return total

    # Balance summary
    async def get_credit_summary(
        self, user_id: str, for_update: bool = False
    ) -> Optional[UserCreditSummary]:
        if for_update:
            await self._lock_user(user_id)
        summary = self._summaries.get(user_id)
        return summary.model_copy(deep=True) if summary else None

    async def save_credit_summary(
        self, summary: UserCreditSummary
    ) -> UserCreditSummary:
        self._put(self._summaries, summary.user_id, summary)
        return summary

    @staticmethod
    def _newest_first(items, sort_key, offset: int, limit: int):
        ordered = [
            item
            for _, item in sorted(
                enumerate(items),
                key=lambda pair: (sort_key(pair[1]), pair[0]),
                reverse=True,
            )
        ]
        page = [item.model_copy(deep=True) for item in ordered[offset : offset + limit]]
        return page, len(ordered)
