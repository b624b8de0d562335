from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..cache.memory import InMemoryAsyncCache
from ..config import Settings, settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..errors import (
    CreditManagementError,
    InsufficientCredits,
    PackageInUse,
    PackageNotFound,
    TransientError,
)
from ..logging.audit_logger import AuditLogger
from ..models.api_models import (
    AdjustCreditsRequest,
    CreditPackageRequest,
    DeductCreditsRequest,
    PurchaseRequest,
)
from ..models.base import Page
from ..models.ledger import LedgerEntry
from ..models.package import CreditPackage, CreditPackageUpdate
from ..models.results import AdjustmentResult, PurchaseResult, SweepReport
from ..models.summary import CreditBalance
from ..models.transaction import PurchaseTransaction
from ..services.accounting_service import MAX_PAGE_SIZE, AccountingEngine
from ..services.catalog_service import PackageCatalog
from ..services.expiration_service import ExpirationSweeper


router = APIRouter(prefix="/credits", tags=["credits"])


@dataclass
class CreditServices:
    db: BaseDBManager
    audit: AuditLogger
    catalog: PackageCatalog
    engine: AccountingEngine
    sweeper: ExpirationSweeper


def _create_db_manager(cfg: Settings = settings) -> BaseDBManager:
    if cfg.MONGO_URI:
        return MongoDBManager.from_client_uri(cfg.MONGO_URI, cfg.MONGO_DB)
    return InMemoryDBManager(lock_timeout=cfg.LOCK_TIMEOUT_SECONDS)


def build_services(
    db: Optional[BaseDBManager] = None,
    audit_log_path: Optional[Path] = None,
    cfg: Settings = settings,
) -> CreditServices:
    db = db or _create_db_manager(cfg)
    audit = AuditLogger(file_path=audit_log_path or Path(cfg.AUDIT_LOG_PATH))
    return CreditServices(
        db=db,
        audit=audit,
        catalog=PackageCatalog(
            db=db,
            audit=audit,
            cache=InMemoryAsyncCache(),
            cache_ttl_seconds=cfg.PACKAGE_CACHE_TTL_SECONDS,
        ),
        engine=AccountingEngine(
            db=db,
            audit=audit,
            expiring_soon_days=cfg.EXPIRING_SOON_DAYS,
            allow_negative_adjustments=cfg.ALLOW_NEGATIVE_ADJUSTMENTS,
            transient_retries=cfg.TRANSIENT_RETRIES,
            retry_backoff_seconds=cfg.TRANSIENT_RETRY_BACKOFF_SECONDS,
        ),
        sweeper=ExpirationSweeper(db=db, audit=audit),
    )


@lru_cache(maxsize=1)
def get_services() -> CreditServices:
    return build_services()


def _http_error(exc: CreditManagementError) -> HTTPException:
    if isinstance(exc, PackageNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, PackageInUse):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, InsufficientCredits):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(exc, TransientError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(
        status_code=code,
        detail={"code": type(exc).__name__, "message": str(exc)},
    )


# Package catalog
@router.post("/packages", response_model=CreditPackage, status_code=status.HTTP_201_CREATED)
async def create_package(
    payload: CreditPackageRequest,
    services: CreditServices = Depends(get_services),
) -> CreditPackage:
    data = payload.model_dump(exclude_none=True)
    try:
        package = CreditPackage(**data)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc
    return await services.catalog.create_package(package)


@router.get("/packages", response_model=List[CreditPackage])
async def list_packages(
    include_inactive: bool = False,
    services: CreditServices = Depends(get_services),
) -> List[CreditPackage]:
    if include_inactive:
        return list(await services.catalog.list_packages())
    return list(await services.catalog.list_active_packages())


@router.get("/packages/{package_id}", response_model=CreditPackage)
async def get_package(
    package_id: str, services: CreditServices = Depends(get_services)
) -> CreditPackage:
    try:
        return await services.catalog.get_package(package_id)
    except CreditManagementError as exc:
        raise _http_error(exc) from exc


@router.patch("/packages/{package_id}", response_model=CreditPackage)
async def update_package(
    package_id: str,
    payload: CreditPackageUpdate,
    services: CreditServices = Depends(get_services),
) -> CreditPackage:
    try:
        return await services.catalog.update_package(package_id, payload)
    except CreditManagementError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc


@router.delete("/packages/{package_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_package(
    package_id: str, services: CreditServices = Depends(get_services)
) -> None:
    try:
        await services.catalog.delete_package(package_id)
    except CreditManagementError as exc:
        raise _http_error(exc) from exc


# Per-user accounting; the caller has already authenticated `user_id`.
@router.post("/users/{user_id}/purchase", response_model=PurchaseResult)
async def purchase(
    user_id: str,
    payload: PurchaseRequest,
    services: CreditServices = Depends(get_services),
) -> PurchaseResult:
    try:
        return await services.engine.purchase(
            user_id=user_id,
            package_id=payload.package_id,
            payment_method=payload.payment_method,
            payment_transaction_id=payload.payment_transaction_id,
        )
    except CreditManagementError as exc:
        raise _http_error(exc) from exc


@router.post("/users/{user_id}/deduct", response_model=CreditBalance)
async def deduct(
    user_id: str,
    payload: DeductCreditsRequest,
    services: CreditServices = Depends(get_services),
) -> CreditBalance:
    try:
        await services.engine.deduct(
            user_id=user_id,
            amount=payload.amount,
            description=payload.description,
            metadata=payload.metadata,
        )
    except CreditManagementError as exc:
        raise _http_error(exc) from exc
    return await services.engine.get_balance(user_id)


@router.post("/users/{user_id}/adjust", response_model=AdjustmentResult)
async def adjust(
    user_id: str,
    payload: AdjustCreditsRequest,
    services: CreditServices = Depends(get_services),
) -> AdjustmentResult:
    try:
        return await services.engine.adjust(
            user_id=user_id,
            amount=payload.amount,
            description=payload.description,
            metadata=payload.metadata,
        )
    except CreditManagementError as exc:
        raise _http_error(exc) from exc


@router.get("/users/{user_id}/balance", response_model=CreditBalance)
async def get_balance(
    user_id: str, services: CreditServices = Depends(get_services)
) -> CreditBalance:
    return await services.engine.get_balance(user_id)


@router.get("/users/{user_id}/ledger", response_model=Page[LedgerEntry])
async def list_ledger(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    services: CreditServices = Depends(get_services),
) -> Page[LedgerEntry]:
    return await services.engine.list_ledger(user_id, page=page, limit=limit)


@router.get("/users/{user_id}/transactions", response_model=Page[PurchaseTransaction])
async def list_transactions(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    services: CreditServices = Depends(get_services),
) -> Page[PurchaseTransaction]:
    return await services.engine.list_transactions(user_id, page=page, limit=limit)


@router.post("/expiration/sweep", response_model=SweepReport)
async def run_expiration_sweep(
    services: CreditServices = Depends(get_services),
) -> SweepReport:
    return await services.sweeper.run_expiration_sweep()
