from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class CreditPackageRequest(BaseModel):
    name: str
    credits: int
    price: Decimal
    validity_days: Optional[int] = None
    description: Optional[str] = None
    is_active: bool = True


class PurchaseRequest(BaseModel):
    package_id: str
    payment_method: Optional[str] = None
    payment_transaction_id: Optional[str] = None


class DeductCreditsRequest(BaseModel):
    amount: Decimal
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AdjustCreditsRequest(BaseModel):
    amount: Decimal
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
