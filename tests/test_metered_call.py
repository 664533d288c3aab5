from __future__ import annotations

import asyncio

import pytest

from metered_credits.config import CreditSettings
from metered_credits.db.memory import InMemoryDBManager
from metered_credits.exceptions import (
    CreditConfirmationFailedError,
    InsufficientCreditsError,
    RateLimitExceededError,
    TransactionFailureError,
    UserNotFoundError,
)
from metered_credits.logging.ledger_logger import LedgerLogger
from metered_credits.models.notification import NotificationType
from metered_credits.models.rate_limit import RateLimitPolicy
from metered_credits.models.reservation import ReservationStatus
from metered_credits.notifications.queue import InMemoryNotificationQueue
from metered_credits.services.credit_ledger import CreditLedger
from metered_credits.services.metered_call import MeteredCallGuard
from metered_credits.services.notification_service import NotificationService
from metered_credits.services.rate_limiter import RateLimiter
from metered_credits.services.reservation_manager import ReservationManager


def _build(tmp_path, db=None, rate_limits=None):
    db = db or InMemoryDBManager()
    settings = CreditSettings(
        transaction_retry_delay_seconds=0, rate_limits=rate_limits or {}
    )
    ledger = CreditLedger(
        db=db,
        ledger_logger=LedgerLogger(db=db, file_path=tmp_path / "ledger.log"),
        settings=settings,
    )
    queue = InMemoryNotificationQueue()
    notifications = NotificationService(
        db=db, queue=queue, credit_ledger=ledger, low_credit_threshold=10
    )
    reservations = ReservationManager(ledger, notifications=notifications)
    guard = MeteredCallGuard(
        ledger,
        reservations,
        rate_limiter=RateLimiter(db, settings=settings),
        notifications=notifications,
    )
    return db, ledger, guard, queue


def _open_reservations(account):
    return [r for r in account.reservations.values() if r.is_open]


@pytest.mark.asyncio
async def test_successful_call_confirms_actual_usage(tmp_path):
    db, ledger, guard, queue = _build(tmp_path)
    await ledger.provision_account("user-1", initial_credits=100)

    async def call():
        return {"usage": 3000}

    result = await guard.run(
        "user-1",
        "chat-session",
        call,
        estimated_tokens=20000,
        usage_tokens=lambda value: value["usage"],
    )

    assert result.confirmed
    assert result.value == {"usage": 3000}
    assert result.credits_deducted == 3
    assert result.remaining_credits == 97
    account = await db.get_account("user-1")
    assert account.reservations[result.reservation_id].status == ReservationStatus.CONFIRMED
    assert queue.drain() == []


@pytest.mark.asyncio
async def test_failing_call_releases_and_reraises(tmp_path):
    db, ledger, guard, _ = _build(tmp_path)
    await ledger.provision_account("user-1", initial_credits=100)

    async def call():
        raise RuntimeError("provider exploded")

    with pytest.raises(RuntimeError, match="provider exploded"):
        await guard.run(
            "user-1", "chat-session", call, estimated_tokens=5000, usage_tokens=lambda v: v
        )

    account = await db.get_account("user-1")
    assert account.available_credits == 100
    assert account.reserved_credits == 0
    assert _open_reservations(account) == []


@pytest.mark.asyncio
async def test_timed_out_call_releases(tmp_path):
    db, ledger, guard, _ = _build(tmp_path)
    await ledger.provision_account("user-1", initial_credits=100)

    async def call():
        await asyncio.sleep(10)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            guard.run(
                "user-1", "chat-session", call, estimated_tokens=5000, usage_tokens=lambda v: 0
            ),
            timeout=0.05,
        )
    # Let the shielded release finish.
    await asyncio.sleep(0.05)

    account = await db.get_account("user-1")
    assert account.available_credits == 100
    assert _open_reservations(account) == []


@pytest.mark.asyncio
async def test_missing_usage_only_releases(tmp_path):
    db, ledger, guard, _ = _build(tmp_path)
    await ledger.provision_account("user-1", initial_credits=100)

    async def call():
        return {}

    result = await guard.run(
        "user-1",
        "chat-session",
        call,
        estimated_tokens=5000,
        usage_tokens=lambda value: value["usage"],
    )

    assert not result.confirmed
    assert result.credits_deducted == 0
    assert result.remaining_credits == 100
    account = await db.get_account("user-1")
    assert account.reservations[result.reservation_id].status == ReservationStatus.RELEASED


@pytest.mark.asyncio
async def test_reservation_rejections_raise(tmp_path):
    _, ledger, guard, _ = _build(tmp_path)
    await ledger.provision_account("user-1", initial_credits=2)
    called = []

    async def call():
        called.append(True)
        return 0

    with pytest.raises(InsufficientCreditsError) as excinfo:
        await guard.run(
            "user-1", "chat-session", call, estimated_tokens=5000, usage_tokens=lambda v: v
        )
    assert excinfo.value.required == 5
    assert excinfo.value.available == 2

    with pytest.raises(UserNotFoundError):
        await guard.run(
            "ghost", "chat-session", call, estimated_tokens=1, usage_tokens=lambda v: v
        )
    assert called == []


@pytest.mark.asyncio
async def test_rate_limit_checked_before_reserving(tmp_path):
    db, ledger, guard, _ = _build(
        tmp_path,
        rate_limits={"chat_message": RateLimitPolicy(max_requests=1, window_ms=60_000)},
    )
    await ledger.provision_account("user-1", initial_credits=100)

    async def call():
        return 1000

    await guard.run(
        "user-1", "chat-session", call,
        estimated_tokens=1000, usage_tokens=lambda v: v, rate_limit_action="chat_message",
    )
    with pytest.raises(RateLimitExceededError) as excinfo:
        await guard.run(
            "user-1", "chat-session", call,
            estimated_tokens=1000, usage_tokens=lambda v: v, rate_limit_action="chat_message",
        )
    assert excinfo.value.retry_after_seconds == 60

    account = await db.get_account("user-1")
    assert len(account.reservations) == 1


@pytest.mark.asyncio
async def test_low_balance_notification_after_confirm(tmp_path):
    _, ledger, guard, queue = _build(tmp_path)
    await ledger.provision_account("user-1", initial_credits=12)

    async def call():
        return 4000

    await guard.run(
        "user-1", "chat-session", call, estimated_tokens=4000, usage_tokens=lambda v: v
    )

    events = queue.drain()
    assert len(events) == 1
    assert events[0].notification_type == NotificationType.LOW_CREDITS
    assert events[0].payload["available_credits"] == 8


class _FailingWritesDB(InMemoryDBManager):
    def __init__(self) -> None:
        super().__init__()
        self.failures = 0

    async def update_account(self, account):
        if self.failures > 0:
            self.failures -= 1
            raise TransactionFailureError("store unavailable")
        return await super().update_account(account)


@pytest.mark.asyncio
async def test_failed_confirmation_raises_after_release(tmp_path):
    db = _FailingWritesDB()
    _, ledger, guard, _ = _build(tmp_path, db=db)
    await ledger.provision_account("user-1", initial_credits=100)

    async def call():
        db.failures = 1
        return 3000

    with pytest.raises(CreditConfirmationFailedError) as excinfo:
        await guard.run(
            "user-1", "chat-session", call, estimated_tokens=20000, usage_tokens=lambda v: v
        )

    account = await db.get_account("user-1")
    assert account.reservations[excinfo.value.reservation_id].status == ReservationStatus.RELEASED
    assert account.available_credits == 100


@pytest.mark.asyncio
async def test_store_outage_on_reserve_raises_transaction_failure(tmp_path):
    db = _FailingWritesDB()
    _, ledger, guard, _ = _build(tmp_path, db=db)
    await ledger.provision_account("user-1", initial_credits=100)
    db.failures = 1

    async def call():
        return 0

    with pytest.raises(TransactionFailureError):
        await guard.run(
            "user-1", "chat-session", call, estimated_tokens=10, usage_tokens=lambda v: v
        )


class _StallingWritesDB(InMemoryDBManager):
    """Holds the next account write until `resume` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.stall_next = False
        self.stalled = asyncio.Event()
        self.resume = asyncio.Event()

    async def update_account(self, account):
        if self.stall_next:
            self.stall_next = False
            self.stalled.set()
            await self.resume.wait()
        return await super().update_account(account)


async def _settled(db, user_id):
    for _ in range(100):
        account = await db.get_account(user_id)
        if account.reservations and not _open_reservations(account):
            return account
        await asyncio.sleep(0.01)
    return account


@pytest.mark.asyncio
async def test_cancelled_during_confirm_still_charges_usage(tmp_path):
    db = _StallingWritesDB()
    _, ledger, guard, _ = _build(tmp_path, db=db)
    await ledger.provision_account("user-1", initial_credits=100)

    async def call():
        db.stall_next = True
        return 3000

    task = asyncio.ensure_future(
        guard.run(
            "user-1", "chat-session", call, estimated_tokens=20000, usage_tokens=lambda v: v
        )
    )
    await db.stalled.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    db.resume.set()

    account = await _settled(db, "user-1")
    assert _open_reservations(account) == []
    assert account.reserved_credits == 0
    assert account.available_credits == 97
    [reservation] = account.reservations.values()
    assert reservation.status == ReservationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_cancelled_during_reserve_releases_the_hold(tmp_path):
    db = _StallingWritesDB()
    _, ledger, guard, _ = _build(tmp_path, db=db)
    await ledger.provision_account("user-1", initial_credits=100)
    called = []

    async def call():
        called.append(True)
        return 3000

    db.stall_next = True
    task = asyncio.ensure_future(
        guard.run(
            "user-1", "chat-session", call, estimated_tokens=20000, usage_tokens=lambda v: v
        )
    )
    await db.stalled.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    db.resume.set()

    account = await _settled(db, "user-1")
    assert called == []
    assert account.available_credits == 100
    assert account.reserved_credits == 0
    [reservation] = account.reservations.values()
    assert reservation.status == ReservationStatus.RELEASED
