from __future__ import annotations

import pytest

from metered_credits.cache.memory import InMemoryAsyncCache
from metered_credits.config import CreditSettings
from metered_credits.db.memory import InMemoryDBManager
from metered_credits.exceptions import ConcurrentUpdateError, TransactionFailureError
from metered_credits.logging.ledger_logger import LedgerLogger
from metered_credits.models.notification import NotificationType
from metered_credits.notifications.queue import InMemoryNotificationQueue
from metered_credits.services.credit_ledger import CreditLedger
from metered_credits.services.notification_service import NotificationService
from metered_credits.utils.retry import retry_on_conflict


@pytest.mark.asyncio
async def test_cache_entries_expire():
    now = [100.0]
    cache = InMemoryAsyncCache(clock=lambda: now[0])

    await cache.set("a", {"v": 1}, ttl_seconds=10)
    await cache.set("b", "forever")
    assert await cache.get("a") == {"v": 1}

    now[0] += 10
    assert await cache.get("a") is None
    assert await cache.get("b") == "forever"

    await cache.delete("b")
    assert await cache.get("b") is None


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("CREDIT_TOKENS_PER_CREDIT", "500")
    monkeypatch.setenv("CREDIT_RATE_LIMITS__CHAT_MESSAGE__MAX_REQUESTS", "20")
    monkeypatch.setenv("CREDIT_RATE_LIMITS__CHAT_MESSAGE__WINDOW_MS", "1000")

    settings = CreditSettings()

    assert settings.tokens_per_credit == 500
    assert settings.rate_limits["chat_message"].max_requests == 20
    assert settings.mongo_uri is None


@pytest.mark.asyncio
async def test_retry_gives_up_with_transaction_failure():
    calls = []

    async def always_conflicts():
        calls.append(1)
        raise ConcurrentUpdateError("stale")

    with pytest.raises(TransactionFailureError, match="after 3 attempts"):
        await retry_on_conflict(
            always_conflicts, max_attempts=3, base_delay=0, operation_name="top-up"
        )
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_low_credit_notification_threshold(tmp_path):
    db = InMemoryDBManager()
    ledger = CreditLedger(
        db=db,
        ledger_logger=LedgerLogger(db=db, file_path=tmp_path / "ledger.log"),
        settings=CreditSettings(),
    )
    queue = InMemoryNotificationQueue()
    notifications = NotificationService(
        db=db, queue=queue, credit_ledger=ledger, low_credit_threshold=10
    )
    await ledger.provision_account("rich", initial_credits=11)
    await ledger.provision_account("poor", initial_credits=10)

    assert not await notifications.notify_low_credits("rich")
    assert await notifications.notify_low_credits("poor")
    assert not await notifications.notify_low_credits("ghost")

    events = queue.drain()
    assert len(events) == 1
    assert events[0].user_id == "poor"
    assert events[0].notification_type == NotificationType.LOW_CREDITS
    assert db._notifications[0].notification_type == NotificationType.LOW_CREDITS
