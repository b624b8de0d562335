from .base import DBSerializableModel, Page, PageMeta
from .ledger import LedgerEntry, LedgerEntryType
from .package import CreditPackage, CreditPackageUpdate
from .results import AdjustmentResult, PurchaseResult, SweepReport
from .summary import CreditBalance, UserCreditSummary
from .transaction import PurchaseTransaction, TransactionStatus

__all__ = [
    "AdjustmentResult",
    "CreditBalance",
    "CreditPackage",
    "CreditPackageUpdate",
    "DBSerializableModel",
    "LedgerEntry",
    "LedgerEntryType",
    "Page",
    "PageMeta",
    "PurchaseResult",
    "PurchaseTransaction",
    "SweepReport",
    "TransactionStatus",
    "UserCreditSummary",
]
