from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..amounts import ZERO, positive_credits, to_credits
from ..clock import Clock, utcnow
from ..config import settings
from ..db.base import BaseDBManager
from ..errors import (
    InsufficientCredits,
    InvalidAdjustment,
    InvalidAmount,
    PackageNotFound,
    TransientError,
)
from ..logging.audit_logger import AuditLogger
from ..models.base import Page, PageMeta
from ..models.ledger import LedgerEntry, LedgerEntryType
from ..models.results import AdjustmentResult, PurchaseResult
from ..models.summary import CreditBalance, UserCreditSummary
from ..models.transaction import PurchaseTransaction, TransactionStatus

MAX_PAGE_SIZE = 100

T = TypeVar("T")

logger = logging.getLogger(__name__)


class AccountingEngine:
    """
    High-level credit accounting service.

    Sole writer of the credit ledger and the per-user credit summary. Every
    mutating method is one atomic unit of work that starts by locking the
    user's summary, so operations for the same user never interleave while
    different users proceed in parallel.

    A unit of work that fails with a retryable `TransientError` (lock
    timeout, write conflict) has been rolled back and is run again, up to
    `transient_retries` more times. Audit events for an operation are
    written only after its unit of work has committed.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        clock: Clock = utcnow,
        expiring_soon_days: int = settings.EXPIRING_SOON_DAYS,
        allow_negative_adjustments: bool = settings.ALLOW_NEGATIVE_ADJUSTMENTS,
        transient_retries: int = settings.TRANSIENT_RETRIES,
        retry_backoff_seconds: float = settings.TRANSIENT_RETRY_BACKOFF_SECONDS,
    ) -> None:
        self._db = db
        self._audit = audit
        self._clock = clock
        self._expiring_soon_days = expiring_soon_days
        self._allow_negative_adjustments = allow_negative_adjustments
        self._transient_retries = transient_retries
        self._retry_backoff_seconds = retry_backoff_seconds

    async def purchase(
        self,
        user_id: str,
        package_id: str,
        payment_method: str | None = None,
        payment_transaction_id: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> PurchaseResult:
        result = await self._with_retries(
            lambda: self._purchase(
                user_id,
                package_id,
                payment_method,
                payment_transaction_id,
                metadata,
                correlation_id,
            )
        )

        await self._audit.log_transaction(
            user_id=user_id,
            message="Credits purchased",
            details={
                "package_id": package_id,
                "transaction_id": result.transaction.id,
                "credits": str(to_credits(result.credits_added)),
                "new_balance": str(result.new_balance),
                "expires_at": result.expires_at.isoformat(),
                "payment_transaction_id": payment_transaction_id,
            },
            correlation_id=correlation_id,
        )
        return result

    async def _purchase(
        self,
        user_id: str,
        package_id: str,
        payment_method: str | None,
        payment_transaction_id: str | None,
        metadata: Optional[Dict[str, Any]],
        correlation_id: str | None,
    ) -> PurchaseResult:
        async with self._db.transaction():
            summary = await self._lock_summary(user_id)

            package = await self._db.get_package(package_id)
            if package is None or not package.is_active:
                await self._audit.log_error(
                    message="Purchase of unknown or inactive package",
                    details={"package_id": package_id},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise PackageNotFound(package_id)

            now = self._clock()
            expires_at = now + timedelta(days=package.validity_days)
            credits = to_credits(package.credits)

            tx = PurchaseTransaction(
                user_id=user_id,
                package_id=package_id,
                package_name=package.name,
                credits_purchased=package.credits,
                amount=package.price,
                status=TransactionStatus.COMPLETED,
                payment_method=payment_method or "manual",
                payment_transaction_id=payment_transaction_id,
                purchase_date=now,
                expires_at=expires_at,
                metadata=dict(metadata or {}),
            )
            tx = await self._db.add_purchase_transaction(tx)

            new_balance = summary.available_credits + credits
            await self._db.add_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    type=LedgerEntryType.PURCHASE,
                    debit=credits,
                    credit=ZERO,
                    balance=new_balance,
                    description=f"Purchased {package.name} package",
                    metadata={
                        "package_id": package_id,
                        "package_name": package.name,
                        "transaction_id": tx.id,
                    },
                    reference_id=tx.id,
                    created_at=now,
                    expires_at=expires_at,
                )
            )

            summary.total_credits += credits
            summary.available_credits = new_balance
            await self._save_summary(summary)

        return PurchaseResult(
            transaction=tx,
            credits_added=package.credits,
            new_balance=new_balance,
            expires_at=expires_at,
        )

    async def deduct(
        self,
        user_id: str,
        amount: Any,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> LedgerEntry:
        """
        Consume credits, soonest-to-expire purchases first.

        Raises InsufficientCredits (and writes nothing) when the available
        balance does not cover `amount`.
        """
        amount = positive_credits(amount)
        usage = await self._with_retries(
            lambda: self._deduct(user_id, amount, description, metadata, correlation_id)
        )

        await self._audit.log_transaction(
            user_id=user_id,
            message="Credits deducted",
            details={
                "amount": str(amount),
                "new_balance": str(usage.balance),
                "description": description or "",
                "used_ledger_ids": usage.metadata["used_ledger_ids"],
            },
            correlation_id=correlation_id,
        )
        return usage

    async def _deduct(
        self,
        user_id: str,
        amount: Decimal,
        description: str,
        metadata: Optional[Dict[str, Any]],
        correlation_id: str | None,
    ) -> LedgerEntry:
        async with self._db.transaction():
            summary = await self._db.get_credit_summary(user_id, for_update=True)
            available = summary.available_credits if summary else ZERO
            if summary is None or available < amount:
                await self._audit.log_error(
                    message="Insufficient credits for deduction",
                    details={"requested": str(amount), "available": str(available)},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientCredits(requested=amount, available=available)

            allocations = await self._consume_fifo(user_id, amount)
            from_purchases = sum(allocations.values(), ZERO)

            usage_metadata: Dict[str, Any] = dict(metadata or {})
            usage_metadata["used_ledger_ids"] = list(allocations)
            usage_metadata["allocations"] = {k: str(v) for k, v in allocations.items()}
            if from_purchases < amount:
                # Covered by positive admin adjustments, which carry no entry capacity.
                usage_metadata["adjustment_credits"] = str(amount - from_purchases)

            new_balance = summary.available_credits - amount
            usage = await self._db.add_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    type=LedgerEntryType.USAGE,
                    debit=ZERO,
                    credit=amount,
                    balance=new_balance,
                    description=description,
                    metadata=usage_metadata,
                    created_at=self._clock(),
                )
            )

            summary.used_credits += amount
            summary.available_credits = new_balance
            await self._save_summary(summary)

        return usage

    async def _consume_fifo(self, user_id: str, amount: Decimal) -> Dict[str, Decimal]:
        """
        Increment `credit` on purchase entries until `amount` is allocated.
        Returns entry id -> credits taken from it, in consumption order.
        """
        owed = amount
        allocations: Dict[str, Decimal] = {}
        for entry in await self._db.get_consumable_entries(user_id):
            if owed <= 0:
                break
            take = min(entry.remaining, owed)
            if take <= 0:
                continue
            entry.credit += take
            await self._db.update_ledger_entry(entry)
            allocations[entry.id or ""] = take
            owed -= take
        return allocations

    async def adjust(
        self,
        user_id: str,
        amount: Any,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> AdjustmentResult:
        """
        Administrative correction applied straight to the summary.

        Positive amounts grant credits, negative ones remove them; both move
        `total_credits` so the summary stays balanced. Unlike deductions,
        adjustments do not touch purchase entries.
        """
        amount = to_credits(amount)
        if amount == 0:
            raise InvalidAmount("adjustment amount must be nonzero")

        result = await self._with_retries(
            lambda: self._adjust(user_id, amount, description, metadata, correlation_id)
        )

        await self._audit.log_transaction(
            user_id=user_id,
            message="Credits adjusted",
            details={
                "amount": str(amount),
                "new_balance": str(result.new_balance),
                "description": description or "",
            },
            correlation_id=correlation_id,
        )
        return result

    async def _adjust(
        self,
        user_id: str,
        amount: Decimal,
        description: str,
        metadata: Optional[Dict[str, Any]],
        correlation_id: str | None,
    ) -> AdjustmentResult:
        async with self._db.transaction():
            summary = await self._lock_summary(user_id)
            new_balance = summary.available_credits + amount
            if new_balance < 0 and not self._allow_negative_adjustments:
                await self._audit.log_error(
                    message="Adjustment rejected: negative balance",
                    details={
                        "amount": str(amount),
                        "available": str(summary.available_credits),
                    },
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise InvalidAdjustment(amount=amount, available=summary.available_credits)

            entry = await self._db.add_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    type=LedgerEntryType.ADMIN_ADJUSTMENT,
                    debit=max(amount, ZERO),
                    credit=max(-amount, ZERO),
                    balance=new_balance,
                    description=description,
                    metadata=dict(metadata or {}),
                    created_at=self._clock(),
                )
            )

            summary.total_credits += amount
            summary.available_credits = new_balance
            await self._save_summary(summary)

        return AdjustmentResult(adjustment=amount, new_balance=new_balance, entry=entry)

    async def _with_retries(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a unit of work, re-running it after retryable transient failures."""
        attempt = 0
        while True:
            try:
                return await operation()
            except TransientError as exc:
                if not exc.retryable or attempt >= self._transient_retries:
                    raise
                attempt += 1
                logger.info(
                    "Retrying credit operation after transient failure (attempt %d/%d): %s",
                    attempt,
                    self._transient_retries,
                    exc,
                )
                await asyncio.sleep(self._retry_backoff_seconds * attempt)

    async def get_balance(self, user_id: str) -> CreditBalance:
        summary = await self._db.get_credit_summary(user_id)
        if summary is None:
            return CreditBalance(user_id=user_id)

        until = self._clock() + timedelta(days=self._expiring_soon_days)
        expiring_soon = await self._db.sum_expiring_credits(user_id, until)
        return CreditBalance(
            user_id=user_id,
            total=summary.total_credits,
            used=summary.used_credits,
            available=summary.available_credits,
            expired=summary.expired_credits,
            expiring_soon=expiring_soon,
        )

    async def list_ledger(
        self, user_id: str, page: int = 1, limit: int = 10
    ) -> Page[LedgerEntry]:
        self._check_page(page, limit)
        items, total = await self._db.list_ledger_entries(
            user_id, offset=(page - 1) * limit, limit=limit
        )
        return Page[LedgerEntry](data=items, meta=PageMeta.build(page, limit, total))

    async def list_transactions(
        self, user_id: str, page: int = 1, limit: int = 10
    ) -> Page[PurchaseTransaction]:
        self._check_page(page, limit)
        items, total = await self._db.list_purchase_transactions(
            user_id, offset=(page - 1) * limit, limit=limit
        )
        return Page[PurchaseTransaction](data=items, meta=PageMeta.build(page, limit, total))

    async def reconcile(self, user_id: str) -> bool:
        """
        Check the cached summary against totals recomputed from the ledger.
        Mismatches are reported to the audit log.
        """
        entries: List[LedgerEntry] = []
        offset = 0
        while True:
            batch, total = await self._db.list_ledger_entries(
                user_id, offset=offset, limit=MAX_PAGE_SIZE
            )
            entries.extend(batch)
            offset += len(batch)
            if not batch or offset >= total:
                break

        expected = summary_from_entries(user_id, entries)
        actual = await self._db.get_credit_summary(user_id) or UserCreditSummary(user_id=user_id)
        fields = ("total_credits", "used_credits", "available_credits", "expired_credits")
        mismatched = {
            name: {"ledger": str(getattr(expected, name)), "summary": str(getattr(actual, name))}
            for name in fields
            if getattr(expected, name) != getattr(actual, name)
        }
        if mismatched or not actual.is_balanced():
            await self._audit.log_error(
                message="Credit summary does not reconcile with ledger",
                details={"mismatched": mismatched, "balanced": actual.is_balanced()},
                user_id=user_id,
            )
            return False
        return True

    async def _lock_summary(self, user_id: str) -> UserCreditSummary:
        """Lock the user's summary, creating an all-zero one on first use."""
        summary = await self._db.get_credit_summary(user_id, for_update=True)
        if summary is None:
            summary = UserCreditSummary(user_id=user_id, last_updated=self._clock())
        return summary

    async def _save_summary(self, summary: UserCreditSummary) -> None:
        summary.last_updated = self._clock()
        await self._db.save_credit_summary(summary)

    @staticmethod
    def _check_page(page: int, limit: int) -> None:
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


def summary_from_entries(user_id: str, entries: List[LedgerEntry]) -> UserCreditSummary:
    """
    Rebuild a user's summary from the ledger alone.

    Used to reconcile the denormalized summary against its source of truth.
    """
    summary = UserCreditSummary(user_id=user_id)
    for entry in entries:
        if entry.type == LedgerEntryType.PURCHASE:
            summary.total_credits += entry.debit
        elif entry.type == LedgerEntryType.USAGE:
            summary.used_credits += entry.credit
        elif entry.type == LedgerEntryType.EXPIRATION:
            summary.expired_credits += entry.credit
        elif entry.type == LedgerEntryType.ADMIN_ADJUSTMENT:
            summary.total_credits += entry.debit - entry.credit
    summary.available_credits = (
        summary.total_credits - summary.used_credits - summary.expired_credits
    )
    return summary
