from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import TransientError
from credit_ledger.logging.audit_logger import AuditLogger
from credit_ledger.models.ledger import LedgerEntry, LedgerEntryType
from credit_ledger.models.package import CreditPackage
from credit_ledger.services.accounting_service import AccountingEngine
from credit_ledger.services.catalog_service import PackageCatalog
from credit_ledger.services.expiration_service import ExpirationSweeper


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingCommitDBManager(InMemoryDBManager):
    """Rolls back every unit of work at commit time while `fail_commit` is set."""

    fail_commit = False

    @asynccontextmanager
    async def transaction(self):
        async with super().transaction():
            yield
            if self.fail_commit:
                raise TransientError("commit failed", retryable=False)


@dataclass
class Stack:
    db: InMemoryDBManager
    audit: AuditLogger
    clock: FakeClock
    catalog: PackageCatalog
    engine: AccountingEngine
    sweeper: ExpirationSweeper

    async def package(self, credits: int = 100, validity_days: int = 90, price: str = "10", **kwargs) -> CreditPackage:
        return await self.catalog.create_package(
            CreditPackage(
                name=kwargs.pop("name", f"{credits} pack"),
                credits=credits,
                price=Decimal(price),
                validity_days=validity_days,
                **kwargs,
            )
        )

    async def ledger(self, user_id: str) -> List[LedgerEntry]:
        entries, _ = await self.db.list_ledger_entries(user_id, offset=0, limit=10_000)
        return entries

    async def purchase_entry(self, user_id: str, transaction_id: str) -> LedgerEntry:
        for entry in await self.ledger(user_id):
            if entry.type == LedgerEntryType.PURCHASE and entry.reference_id == transaction_id:
                return entry
        raise AssertionError(f"no purchase entry for transaction {transaction_id}")

    async def assert_consistent(self, user_id: str) -> None:
        summary = await self.db.get_credit_summary(user_id)
        assert summary is not None
        assert summary.total_credits == (
            summary.used_credits + summary.available_credits + summary.expired_credits
        )
        for entry in await self.ledger(user_id):
            if entry.type == LedgerEntryType.PURCHASE:
                assert 0 <= entry.credit <= entry.debit
        assert await self.engine.reconcile(user_id)


def build_stack(tmp_path, db: InMemoryDBManager | None = None, **engine_kwargs) -> Stack:
    db = db or InMemoryDBManager()
    clock = FakeClock()
    audit = AuditLogger(file_path=tmp_path / "audit.log")
    return Stack(
        db=db,
        audit=audit,
        clock=clock,
        catalog=PackageCatalog(db=db, audit=audit, cache=InMemoryAsyncCache(), clock=clock),
        engine=AccountingEngine(db=db, audit=audit, clock=clock, **engine_kwargs),
        sweeper=ExpirationSweeper(db=db, audit=audit, clock=clock),
    )


@pytest.fixture
def stack(tmp_path) -> Stack:
    return build_stack(tmp_path)
