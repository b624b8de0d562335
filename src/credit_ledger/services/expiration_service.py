from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional, Tuple

from ..amounts import ZERO
from ..clock import Clock, utcnow
from ..db.base import BaseDBManager
from ..logging.audit_logger import AuditLogger
from ..models.ledger import LedgerEntry, LedgerEntryType
from ..models.results import SweepReport


logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """
    Retires the unused remainder of purchases whose expiry has passed.

    Typically invoked by a scheduler (daily). Each entry is retired in its
    own transaction, so a sweep that fails halfway leaves processed entries
    retired and the rest untouched for the next run.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self._audit = audit
        self._clock = clock
        self._running = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    async def run_expiration_sweep(self, as_of: Optional[datetime] = None) -> SweepReport:
        """
        Expire every unexpired entry with `expires_at <= as_of` (default: now).

        Never raises: per-entry failures are logged and left for the next run.
        A call made while another sweep is in progress is skipped.
        """
        as_of = as_of or self._clock()
        report = SweepReport(started_at=as_of)

        if self._running.locked():
            logger.info("Credit expiration sweep already running; skipping")
            report.skipped = True
            return report

        async with self._running:
            try:
                due = await self._db.get_entries_due_for_expiry(as_of)
            except Exception:
                logger.exception("Credit expiration sweep could not load due entries")
                report.finished_at = self._clock()
                return report

            report.candidates = len(due)
            for entry in due:
                try:
                    handled, expiration = await self._retire_entry(entry, as_of)
                except Exception:
                    logger.exception(
                        "Failed to expire ledger entry %s", entry.id,
                        extra={"user_id": entry.user_id},
                    )
                    report.failed_entries.append(entry.id or "")
                    continue
                if not handled:
                    continue
                report.retired_entries += 1
                if expiration is not None:
                    report.retired_credits += expiration.credit
                    await self._log_expiration(entry, expiration, as_of)

            report.finished_at = self._clock()

        if report.candidates:
            await self._audit.log_system(
                message="Credit expiration sweep completed",
                details={
                    "as_of": as_of.isoformat(),
                    "candidates": report.candidates,
                    "retired_entries": report.retired_entries,
                    "retired_credits": str(report.retired_credits),
                    "failed_entries": report.failed_entries,
                },
            )
        return report

    async def _retire_entry(
        self, stale: LedgerEntry, as_of: datetime
    ) -> Tuple[bool, Optional[LedgerEntry]]:
        """
        Retire one entry in its own unit of work.

        Returns ``(handled, expiration)``: ``handled`` is False when the entry
        was already expired elsewhere; ``expiration`` is the EXPIRATION entry
        written, or None when no credits were left to retire.
        """
        async with self._db.transaction():
            # Summary lock first, then re-read the entry: a deduction may have
            # consumed it since the candidate list was loaded.
            summary = await self._db.get_credit_summary(stale.user_id, for_update=True)
            entry = await self._db.get_ledger_entry(stale.id or "")
            if entry is None or entry.is_expired:
                return False, None

            remaining = entry.remaining
            if remaining <= 0:
                entry.is_expired = True
                await self._db.update_ledger_entry(entry)
                return True, None

            if summary is None:
                logger.warning(
                    "No credit summary for user %s; marking entry %s expired",
                    entry.user_id,
                    entry.id,
                )
                entry.is_expired = True
                await self._db.update_ledger_entry(entry)
                return True, None

            # Negative adjustments can leave the summary below the purchase pool.
            retired = min(remaining, max(summary.available_credits, ZERO))
            if retired < remaining:
                logger.warning(
                    "Capping expiry of entry %s at available balance %s (remaining %s)",
                    entry.id,
                    summary.available_credits,
                    remaining,
                )
            if retired <= 0:
                entry.is_expired = True
                await self._db.update_ledger_entry(entry)
                return True, None

            new_balance = summary.available_credits - retired
            expiration = await self._db.add_ledger_entry(
                LedgerEntry(
                    user_id=entry.user_id,
                    type=LedgerEntryType.EXPIRATION,
                    debit=ZERO,
                    credit=retired,
                    balance=new_balance,
                    description="Credits expired",
                    metadata={"expired_ledger_id": entry.id},
                    reference_id=entry.id,
                    created_at=self._clock(),
                )
            )

            summary.expired_credits += retired
            summary.available_credits = new_balance
            summary.last_updated = self._clock()
            await self._db.save_credit_summary(summary)

            entry.is_expired = True
            await self._db.update_ledger_entry(entry)

        return True, expiration

    async def _log_expiration(
        self, entry: LedgerEntry, expiration: LedgerEntry, as_of: datetime
    ) -> None:
        await self._audit.log_transaction(
            user_id=entry.user_id,
            message="Credits expired",
            details={
                "ledger_entry_id": entry.id,
                "expiration_entry_id": expiration.id,
                "expired": str(expiration.credit),
                "new_balance": str(expiration.balance),
                "expires_at": entry.expires_at.isoformat() if entry.expires_at else None,
                "as_of": as_of.isoformat(),
            },
        )
