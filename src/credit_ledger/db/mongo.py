from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout, PyMongoError

from .base import BaseDBManager
from ..amounts import ZERO
from ..errors import TransientError
from ..models.base import DBSerializableModel
from ..models.ledger import LedgerEntry, LedgerEntryType, fifo_sort_key
from ..models.package import CreditPackage
from ..models.summary import UserCreditSummary
from ..models.transaction import PurchaseTransaction


TModel = TypeVar("TModel", bound=DBSerializableModel)

MODELS: Tuple[Type[DBSerializableModel], ...] = (
    CreditPackage,
    PurchaseTransaction,
    LedgerEntry,
    UserCreditSummary,
)

_current_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "credit_ledger_mongo_session", default=None
)


class DecimalCodec(TypeCodec):
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value: Decimal) -> Decimal128:
        return Decimal128(value)

    def transform_bson(self, value: Decimal128) -> Decimal:
        return value.to_decimal()


CODEC_OPTIONS = CodecOptions(
    type_registry=TypeRegistry([DecimalCodec()]),
    tz_aware=True,
    tzinfo=timezone.utc,
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics. Summaries are keyed by `user_id`.

    `transaction()` opens a client session with a multi-document
    transaction (requires a replica set). Every call made inside it uses
    that session. A `for_update` summary read stamps a lock token on the
    summary document, which holds its write lock until commit or abort;
    competing writers fail with a write conflict, surfaced as a retryable
    `TransientError` that the accounting engine answers by re-running the
    unit of work.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._client = database.client
        self._db = database.with_options(codec_options=CODEC_OPTIONS)

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        for model in MODELS:
            col = self._db[model.collection_name]
            for index in model.indexes:
                await col.create_index([(name, ASCENDING) for name in index])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _current_session.get() is not None:
            yield
            return

        try:
            async with await self._client.start_session() as session:
                token = _current_session.set(session)
                try:
                    async with session.start_transaction():
                        yield
                finally:
                    _current_session.reset(token)
        except DuplicateKeyError as exc:
            # Two first writes for one user raced to create the summary.
            raise TransientError(str(exc)) from exc
        except PyMongoError as exc:
            if exc.has_error_label("TransientTransactionError"):
                raise TransientError(str(exc)) from exc
            if exc.has_error_label("UnknownTransactionCommitResult") or isinstance(
                exc, (ConnectionFailure, ExecutionTimeout)
            ):
                raise TransientError(str(exc), retryable=False) from exc
            raise

    @staticmethod
    def _session() -> Optional[AsyncIOMotorClientSession]:
        return _current_session.get()

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data and "id" in model_cls.model_fields:
            data["id"] = str(data["_id"])
        return model_cls.model_validate(data)

    async def _page(
        self,
        model_cls: Type[TModel],
        query: Dict[str, Any],
        sort: List[Tuple[str, int]],
        offset: int,
        limit: int,
    ) -> Tuple[List[TModel], int]:
        col = self._db[model_cls.collection_name]
        total = await col.count_documents(query, session=self._session())
        cursor = col.find(query, session=self._session()).sort(sort).skip(offset).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._decode(model_cls, d) for d in docs], total  # type: ignore[misc]

    # Package catalog
    async def add_package(self, package: CreditPackage) -> CreditPackage:
        col = self._db[CreditPackage.collection_name]
        data = self._prepare_insert(package)
        await col.insert_one(data, session=self._session())
        return package

    async def get_package(self, package_id: str) -> Optional[CreditPackage]:
        col = self._db[CreditPackage.collection_name]
        doc = await col.find_one({"_id": package_id}, session=self._session())
        return self._decode(CreditPackage, doc)

    async def update_package(self, package: CreditPackage) -> CreditPackage:
        col = self._db[CreditPackage.collection_name]
        data = self._prepare_update(package)
        await col.replace_one({"_id": data["_id"]}, data, upsert=False, session=self._session())
        return package

    async def delete_package(self, package_id: str) -> None:
        col = self._db[CreditPackage.collection_name]
        await col.delete_one({"_id": package_id}, session=self._session())

    async def list_packages(self, active_only: bool = True) -> Iterable[CreditPackage]:
        col = self._db[CreditPackage.collection_name]
        query: Dict[str, Any] = {"is_active": True} if active_only else {}
        cursor = col.find(query, session=self._session()).sort("price", ASCENDING)
        docs = await cursor.to_list(length=None)
        return [self._decode(CreditPackage, d) for d in docs]  # type: ignore[misc]

    # Purchase transactions
    async def add_purchase_transaction(
        self, tx: PurchaseTransaction
    ) -> PurchaseTransaction:
        col = self._db[PurchaseTransaction.collection_name]
        data = self._prepare_insert(tx)
        await col.insert_one(data, session=self._session())
        return tx

    async def get_purchase_transaction(
        self, transaction_id: str
    ) -> Optional[PurchaseTransaction]:
        col = self._db[PurchaseTransaction.collection_name]
        doc = await col.find_one({"_id": transaction_id}, session=self._session())
        return self._decode(PurchaseTransaction, doc)

    async def count_package_transactions(self, package_id: str) -> int:
        col = self._db[PurchaseTransaction.collection_name]
        return await col.count_documents({"package_id": package_id}, session=self._session())

    async def list_purchase_transactions(
        self, user_id: str, offset: int, limit: int
    ) -> Tuple[List[PurchaseTransaction], int]:
        return await self._page(
            PurchaseTransaction,
            {"user_id": user_id},
            [("purchase_date", -1), ("_id", -1)],
            offset,
            limit,
        )

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        await col.insert_one(data, session=self._session())
        return entry

    async def update_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if not entry.id:
            raise ValueError("LedgerEntry must have id to be updated")
        col = self._db[LedgerEntry.collection_name]
        await col.update_one(
            {"_id": entry.id},
            {"$set": {"credit": entry.credit, "is_expired": entry.is_expired}},
            session=self._session(),
        )
        return entry

    async def get_ledger_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        doc = await col.find_one({"_id": entry_id}, session=self._session())
        return self._decode(LedgerEntry, doc)

    async def get_consumable_entries(self, user_id: str) -> List[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        cursor = col.find(
            {
                "user_id": user_id,
                "type": LedgerEntryType.PURCHASE.value,
                "is_expired": False,
                "$expr": {"$gt": ["$debit", "$credit"]},
            },
            session=self._session(),
        ).sort([("expires_at", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)])
        docs = await cursor.to_list(length=None)
        entries = [self._decode(LedgerEntry, d) for d in docs]
        # Mongo sorts missing expiries first; re-sort so they go last.
        return sorted(entries, key=fifo_sort_key)  # type: ignore[arg-type]

    async def get_entries_due_for_expiry(self, as_of: datetime) -> List[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        cursor = col.find(
            {"is_expired": False, "expires_at": {"$ne": None, "$lte": as_of}},
            session=self._session(),
        ).sort("expires_at", ASCENDING)
        docs = await cursor.to_list(length=None)
        return [self._decode(LedgerEntry, d) for d in docs]  # type: ignore[misc]

    async def list_ledger_entries(
        self, user_id: str, offset: int, limit: int
    ) -> Tuple[List[LedgerEntry], int]:
        return await self._page(
            LedgerEntry,
            {"user_id": user_id},
            [("created_at", -1), ("_id", -1)],
            offset,
            limit,
        )

    async def sum_expiring_credits(self, user_id: str, until: datetime) -> Decimal:
        col = self._db[LedgerEntry.collection_name]
        pipeline = [
            {
                "$match": {
                    "user_id": user_id,
                    "type": LedgerEntryType.PURCHASE.value,
                    "is_expired": False,
                    "expires_at": {"$ne": None, "$lte": until},
                    "$expr": {"$gt": ["$debit", "$credit"]},
                }
            },
            {"$group": {"_id": None, "total": {"$sum": {"$subtract": ["$debit", "$credit"]}}}},
        ]
        cursor = col.aggregate(pipeline, session=self._session())
        rows = await cursor.to_list(length=1)
        if not rows:
            return ZERO
        total = rows[0]["total"]
        return total if isinstance(total, Decimal) else Decimal(str(total))

    # Balance summary
    async def get_credit_summary(
        self, user_id: str, for_update: bool = False
    ) -> Optional[UserCreditSummary]:
        col = self._db[UserCreditSummary.collection_name]
        if not for_update:
            doc = await col.find_one({"_id": user_id}, session=self._session())
            return self._decode(UserCreditSummary, doc)

        session = self._session()
        if session is None:
            raise RuntimeError("for_update reads require an active transaction")
        # Writing the lock token takes the document's write lock for the rest
        # of the transaction. Upserting covers users without a summary yet;
        # BEFORE returns None for them, matching the non-locking read.
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {
                "$set": {"lock_token": uuid4().hex},
                "$setOnInsert": UserCreditSummary(user_id=user_id).serialize_for_db(),
            },
            upsert=True,
            return_document=ReturnDocument.BEFORE,
            session=session,
        )
        return self._decode(UserCreditSummary, doc)

    async def save_credit_summary(
        self, summary: UserCreditSummary
    ) -> UserCreditSummary:
        col = self._db[UserCreditSummary.collection_name]
        data = summary.serialize_for_db()
        data["_id"] = summary.user_id
        await col.replace_one({"_id": summary.user_id}, data, upsert=True, session=self._session())
        return summary
