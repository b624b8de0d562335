from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Union

from ..cache.base import AsyncCacheBackend
from ..clock import Clock, utcnow
from ..config import settings
from ..db.base import BaseDBManager
from ..errors import PackageInUse, PackageNotFound
from ..logging.audit_logger import AuditLogger
from ..models.package import CreditPackage, CreditPackageUpdate


class PackageCatalog:
    """
    Credit package management: admin CRUD plus cached lookups.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        cache: Optional[AsyncCacheBackend] = None,
        clock: Clock = utcnow,
        cache_ttl_seconds: int = settings.PACKAGE_CACHE_TTL_SECONDS,
    ) -> None:
        self._db = db
        self._audit = audit
        self._cache = cache
        self._clock = clock
        self._cache_ttl_seconds = cache_ttl_seconds

    async def create_package(self, package: CreditPackage) -> CreditPackage:
        # Re-validate: model_copy() and attribute assignment bypass field constraints.
        package = CreditPackage.model_validate(package.model_dump())
        now = self._clock()
        package.created_at = now
        package.updated_at = now
        package = await self._db.add_package(package)

        await self._audit.log_system(
            message="Credit package created",
            details={
                "package_id": package.id,
                "name": package.name,
                "credits": package.credits,
                "price": str(package.price),
                "validity_days": package.validity_days,
            },
        )
        return package

    async def list_active_packages(self) -> Iterable[CreditPackage]:
        return await self._db.list_packages(active_only=True)

    async def list_packages(self) -> Iterable[CreditPackage]:
        return await self._db.list_packages(active_only=False)

    async def get_package(self, package_id: str) -> CreditPackage:
        cache_key = self._package_cache_key(package_id)
        if self._cache:
            cached = await self._cache.get(cache_key)
            if isinstance(cached, CreditPackage):
                return cached.model_copy(deep=True)

        package = await self._db.get_package(package_id)
        if package is None:
            raise PackageNotFound(package_id)
        if self._cache:
            await self._cache.set(
                cache_key, package.model_copy(deep=True), ttl_seconds=self._cache_ttl_seconds
            )
        return package

    async def update_package(
        self,
        package_id: str,
        changes: Union[CreditPackageUpdate, Mapping[str, Any]],
    ) -> CreditPackage:
        if not isinstance(changes, CreditPackageUpdate):
            changes = CreditPackageUpdate.model_validate(dict(changes))

        current = await self._db.get_package(package_id)
        if current is None:
            raise PackageNotFound(package_id)

        update = changes.model_dump(exclude_unset=True)
        package = CreditPackage.model_validate(
            {**current.model_dump(), **update, "updated_at": self._clock()}
        )
        package = await self._db.update_package(package)
        await self._invalidate_package_cache(package_id)

        await self._audit.log_system(
            message="Credit package updated",
            details={"package_id": package_id, "changes": sorted(update)},
        )
        return package

    async def delete_package(self, package_id: str) -> None:
        async with self._db.transaction():
            if await self._db.get_package(package_id) is None:
                raise PackageNotFound(package_id)
            references = await self._db.count_package_transactions(package_id)
            if references:
                raise PackageInUse(package_id, references)
            await self._db.delete_package(package_id)
        await self._invalidate_package_cache(package_id)

        await self._audit.log_system(
            message="Credit package deleted",
            details={"package_id": package_id},
        )

    @staticmethod
    def _package_cache_key(package_id: str) -> str:
        return f"credit:package:{package_id}"

    async def _invalidate_package_cache(self, package_id: str) -> None:
        if self._cache:
            await self._cache.delete(self._package_cache_key(package_id))
