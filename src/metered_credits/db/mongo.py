from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..exceptions import ConcurrentUpdateError, TransactionFailureError
from ..models.account import UserCreditAccount
from ..models.base import DBSerializableModel, VersionedModel
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.rate_limit import RateLimitCounter


TModel = TypeVar("TModel", bound=DBSerializableModel)
TVersioned = TypeVar("TVersioned", bound=VersionedModel)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    Every mutation rewrites a single document, and single-document writes
    are atomic in MongoDB, so `transaction()` opens no session. Isolation
    comes from the conditional `replace_one` on `version`: a writer that
    read a stale document matches nothing and gets `ConcurrentUpdateError`.

    Driver errors are surfaced as `TransactionFailureError`.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        await self._db[RateLimitCounter.collection_name].create_index("reset_time")
        await self._db[LedgerEntry.collection_name].create_index(
            [("user_id", 1), ("created_at", -1)]
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        try:
            yield
        except PyMongoError as exc:
            raise TransactionFailureError(str(exc)) from exc

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
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    async def _insert_versioned(self, model: TVersioned) -> TVersioned:
        col = self._db[model.collection_name]
        try:
            await col.insert_one(self._prepare_insert(model))
        except DuplicateKeyError as exc:
            raise ConcurrentUpdateError(f"{model.collection_name}/{model.id} already exists") from exc
        return model

    async def _replace_versioned(self, model: TVersioned) -> TVersioned:
        col = self._db[model.collection_name]
        expected = model.version
        model.version = expected + 1
        data = model.serialize_for_db()
        data["_id"] = model.id
        result = await col.replace_one({"_id": model.id, "version": expected}, data)
        if result.matched_count == 0:
            model.version = expected
            raise ConcurrentUpdateError(
                f"{model.collection_name}/{model.id} changed concurrently"
            )
        return model

    # Accounts
    async def add_account(self, account: UserCreditAccount) -> UserCreditAccount:
        return await self._insert_versioned(account)

    async def get_account(self, user_id: str) -> Optional[UserCreditAccount]:
        col = self._db[UserCreditAccount.collection_name]
        doc = await col.find_one({"_id": user_id})
        return self._decode(UserCreditAccount, doc)

    async def update_account(self, account: UserCreditAccount) -> UserCreditAccount:
        return await self._replace_versioned(account)

    # Rate limit counters
    async def add_rate_limit_counter(self, counter: RateLimitCounter) -> RateLimitCounter:
        return await self._insert_versioned(counter)

    async def get_rate_limit_counter(self, key: str) -> Optional[RateLimitCounter]:
        col = self._db[RateLimitCounter.collection_name]
        doc = await col.find_one({"_id": key})
        return self._decode(RateLimitCounter, doc)

    async def update_rate_limit_counter(self, counter: RateLimitCounter) -> RateLimitCounter:
        return await self._replace_versioned(counter)

    async def delete_rate_limit_counter(self, key: str) -> None:
        col = self._db[RateLimitCounter.collection_name]
        await col.delete_one({"_id": key})

    async def delete_expired_rate_limit_counters(self, now_ms: int) -> int:
        col = self._db[RateLimitCounter.collection_name]
        result = await col.delete_many({"reset_time": {"$lt": now_ms}})
        return result.deleted_count

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        data = self._prepare_insert(notification)
        await col.insert_one(data)
        return notification

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        await col.insert_one(data)
        return entry
