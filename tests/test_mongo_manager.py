from __future__ import annotations

from types import SimpleNamespace

import pytest
from pymongo.errors import AutoReconnect, DuplicateKeyError

from metered_credits.db.mongo import MongoDBManager
from metered_credits.exceptions import ConcurrentUpdateError, TransactionFailureError
from metered_credits.models.account import UserCreditAccount
from metered_credits.models.rate_limit import RateLimitCounter


class _FakeCollection:
    """Just enough of a motor collection for single-document writes."""

    def __init__(self) -> None:
        self.docs = {}

    async def insert_one(self, doc):
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("duplicate _id")
        self.docs[doc["_id"]] = dict(doc)

    async def find_one(self, query):
        doc = self.docs.get(query["_id"])
        return dict(doc) if doc is not None else None

    async def replace_one(self, query, doc):
        stored = self.docs.get(query["_id"])
        if stored is None or stored.get("version", 0) != query["version"]:
            return SimpleNamespace(matched_count=0)
        self.docs[query["_id"]] = dict(doc)
        return SimpleNamespace(matched_count=1)

    async def delete_one(self, query):
        self.docs.pop(query["_id"], None)

    async def delete_many(self, query):
        limit = query["reset_time"]["$lt"]
        expired = [k for k, d in self.docs.items() if d["reset_time"] < limit]
        for key in expired:
            del self.docs[key]
        return SimpleNamespace(deleted_count=len(expired))


class _FakeDatabase(dict):
    def __getitem__(self, name):
        return self.setdefault(name, _FakeCollection())


@pytest.mark.asyncio
async def test_versioned_replace_rejects_stale_writes():
    db = MongoDBManager(_FakeDatabase())
    await db.add_account(UserCreditAccount(id="user-1", available_credits=10))

    first = await db.get_account("user-1")
    second = await db.get_account("user-1")

    first.available_credits = 5
    await db.update_account(first)
    assert first.version == 1

    second.available_credits = 0
    with pytest.raises(ConcurrentUpdateError):
        await db.update_account(second)
    assert second.version == 0

    stored = await db.get_account("user-1")
    assert stored.available_credits == 5
    assert stored.version == 1


@pytest.mark.asyncio
async def test_duplicate_insert_is_a_conflict():
    db = MongoDBManager(_FakeDatabase())
    await db.add_account(UserCreditAccount(id="user-1"))

    with pytest.raises(ConcurrentUpdateError):
        await db.add_account(UserCreditAccount(id="user-1"))


@pytest.mark.asyncio
async def test_expired_counters_are_deleted():
    db = MongoDBManager(_FakeDatabase())
    for key, reset_time in (("a", 100), ("b", 300)):
        await db.add_rate_limit_counter(
            RateLimitCounter(id=f"user-1:{key}", user_id="user-1", action=key, reset_time=reset_time)
        )

    assert await db.delete_expired_rate_limit_counters(200) == 1
    assert await db.get_rate_limit_counter("user-1:a") is None
    assert (await db.get_rate_limit_counter("user-1:b")).reset_time == 300


@pytest.mark.asyncio
async def test_driver_errors_surface_as_transaction_failures():
    db = MongoDBManager(_FakeDatabase())

    with pytest.raises(TransactionFailureError):
        async with db.transaction():
            raise AutoReconnect("primary stepped down")
