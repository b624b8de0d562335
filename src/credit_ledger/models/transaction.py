from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from ..clock import utcnow
from .base import DBSerializableModel


class TransactionStatus(str, Enum):
    COMPLETED = "completed"


class PurchaseTransaction(DBSerializableModel):
    """
    Append-only receipt of a credit package purchase.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("user_id", "purchase_date"),
        ("package_id",),
        ("payment_transaction_id",),
    )

    id: Optional[str] = Field(default=None)
    user_id: str
    package_id: str
    package_name: Optional[str] = None
    credits_purchased: int
    amount: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    payment_method: Optional[str] = None
    payment_transaction_id: Optional[str] = Field(
        default=None,
        description="Opaque payment gateway reference, passed through untouched.",
    )
    purchase_date: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
