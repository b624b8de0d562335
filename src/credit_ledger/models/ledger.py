from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

from pydantic import Field

from ..amounts import ZERO
from ..clock import utcnow
from .base import DBSerializableModel


class LedgerEntryType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    EXPIRATION = "expiration"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class LedgerEntry(DBSerializableModel):
    """
    Signed credit movement for one user.

    ``debit`` counts credits added and ``credit`` credits removed. On a
    PURCHASE entry ``credit`` grows as the purchase is consumed, so
    ``debit - credit`` is the capacity still available from it.
    """

    collection_name: ClassVar[str] = "credit_ledger"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("user_id", "expires_at"),
        ("expires_at",),
        ("user_id", "created_at"),
    )

    id: Optional[str] = Field(default=None)
    user_id: str
    type: LedgerEntryType
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    balance: Decimal = Field(description="Available balance right after this entry.")
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    reference_id: Optional[str] = Field(
        default=None,
        description="Purchase transaction or ledger entry this entry relates to.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    is_expired: bool = False

    @property
    def remaining(self) -> Decimal:
        return self.debit - self.credit


def fifo_sort_key(entry: LedgerEntry) -> Tuple[bool, datetime, datetime]:
    """Soonest-to-expire first, then oldest; entries without expiry go last."""
    expires_at = entry.expires_at or entry.created_at
    return (entry.expires_at is None, expires_at, entry.created_at)
