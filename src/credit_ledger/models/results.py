from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from ..amounts import ZERO
from .ledger import LedgerEntry
from .transaction import PurchaseTransaction


class PurchaseResult(BaseModel):
    transaction: PurchaseTransaction
    credits_added: int
    new_balance: Decimal
    expires_at: datetime


class AdjustmentResult(BaseModel):
    adjustment: Decimal
    new_balance: Decimal
    entry: LedgerEntry


class SweepReport(BaseModel):
    started_at: datetime
    candidates: int = 0
    retired_entries: int = 0
    retired_credits: Decimal = ZERO
    failed_entries: List[str] = Field(default_factory=list)
    skipped: bool = False
    finished_at: Optional[datetime] = None
