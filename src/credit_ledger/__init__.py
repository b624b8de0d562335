"""
Credit ledger: expiring, purchasable credits with FIFO consumption.
"""

from .errors import (
    CreditManagementError,
    InsufficientCredits,
    InvalidAdjustment,
    InvalidAmount,
    PackageInUse,
    PackageNotFound,
    TransientError,
)
from .services.accounting_service import AccountingEngine
from .services.catalog_service import PackageCatalog
from .services.expiration_service import ExpirationSweeper

__version__ = "0.1.0"

__all__ = [
    "AccountingEngine",
    "CreditManagementError",
    "ExpirationSweeper",
    "InsufficientCredits",
    "InvalidAdjustment",
    "InvalidAmount",
    "PackageCatalog",
    "PackageInUse",
    "PackageNotFound",
    "TransientError",
]
