from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from ..amounts import ZERO
from ..clock import utcnow
from .base import DBSerializableModel


class UserCreditSummary(DBSerializableModel):
    """
    Denormalized per-user totals kept in step with the ledger.

    Invariant: ``total_credits == used_credits + available_credits + expired_credits``.
    """

    collection_name: ClassVar[str] = "user_credit_summary"
    primary_key: ClassVar[Optional[str]] = "user_id"

    user_id: str
    total_credits: Decimal = ZERO
    used_credits: Decimal = ZERO
    available_credits: Decimal = ZERO
    expired_credits: Decimal = ZERO
    last_updated: datetime = Field(default_factory=utcnow)

    def is_balanced(self) -> bool:
        return self.total_credits == (
            self.used_credits + self.available_credits + self.expired_credits
        )


class CreditBalance(BaseModel):
    user_id: str
    total: Decimal = ZERO
    used: Decimal = ZERO
    available: Decimal = ZERO
    expired: Decimal = ZERO
    expiring_soon: Decimal = ZERO
