from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from ..clock import utcnow
from ..config import settings
from .base import DBSerializableModel


class CreditPackage(DBSerializableModel):
    """
    Purchasable bundle of credits.

    Purchases snapshot ``credits`` and ``price``, so edits only affect
    future purchases.
    """

    collection_name: ClassVar[str] = "credit_packages"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (("is_active", "price"),)

    id: Optional[str] = Field(default=None)
    name: str = Field(min_length=1)
    credits: int = Field(ge=1, description="Credits granted by one purchase.")
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    validity_days: int = Field(
        default_factory=lambda: settings.DEFAULT_VALIDITY_DAYS,
        ge=1,
        description="Number of days before purchased credits expire.",
    )
    is_active: bool = True
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditPackageUpdate(BaseModel):
    """Partial update; unset fields are left untouched."""

    name: Optional[str] = Field(default=None, min_length=1)
    credits: Optional[int] = Field(default=None, ge=1)
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    validity_days: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    description: Optional[str] = None
