from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from .base import BaseDBManager
from ..exceptions import ConcurrentUpdateError
from ..models.account import UserCreditAccount
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.rate_limit import RateLimitCounter


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for multi-instance deployments, but honours the same
    versioning contract as the real backends.

    Documents are copied on the way in and out, so a transaction that raises
    before `update_*` leaves the stored state untouched.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, UserCreditAccount] = {}
        self._rate_limits: Dict[str, RateLimitCounter] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            yield

    # Accounts
    async def add_account(self, account: UserCreditAccount) -> UserCreditAccount:
        if account.id in self._accounts:
            raise ConcurrentUpdateError(f"account {account.id} already exists")
        self._accounts[account.id] = account.model_copy(deep=True)
        return account

    async def get_account(self, user_id: str) -> Optional[UserCreditAccount]:
        account = self._accounts.get(user_id)
        return account.model_copy(deep=True) if account is not None else None

    async def update_account(self, account: UserCreditAccount) -> UserCreditAccount:
        stored = self._accounts.get(account.id)
        if stored is None or stored.version != account.version:
            raise ConcurrentUpdateError(f"account {account.id} changed concurrently")
        account.version += 1
        self._accounts[account.id] = account.model_copy(deep=True)
        return account

    # Rate limit counters
    async def add_rate_limit_counter(self, counter: RateLimitCounter) -> RateLimitCounter:
        if counter.id in self._rate_limits:
            raise ConcurrentUpdateError(f"counter {counter.id} already exists")
        self._rate_limits[counter.id] = counter.model_copy()
        return counter

    async def get_rate_limit_counter(self, key: str) -> Optional[RateLimitCounter]:
        counter = self._rate_limits.get(key)
        return counter.model_copy() if counter is not None else None

    async def update_rate_limit_counter(self, counter: RateLimitCounter) -> RateLimitCounter:
        stored = self._rate_limits.get(counter.id)
        if stored is None or stored.version != counter.version:
            raise ConcurrentUpdateError(f"counter {counter.id} changed concurrently")
        counter.version += 1
        self._rate_limits[counter.id] = counter.model_copy()
        return counter

    async def delete_rate_limit_counter(self, key: str) -> None:
        self._rate_limits.pop(key, None)

    async def delete_expired_rate_limit_counters(self, now_ms: int) -> int:
        expired = [k for k, c in self._rate_limits.items() if c.reset_time < now_ms]
        for key in expired:
            del self._rate_limits[key]
        return len(expired)

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification)
        return notification

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry
