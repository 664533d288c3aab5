from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from ..models.account import UserCreditAccount
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.rate_limit import RateLimitCounter


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Every ledger, reservation and rate-limit mutation touches exactly one
    document. Writes of versioned documents are optimistic: `update_*`
    rejects a document whose `version` no longer matches the stored one by
    raising `ConcurrentUpdateError`, and bumps `version` on success. Inserts
    of an already existing key raise the same error. Callers re-read and
    re-apply (see `utils.retry.retry_on_conflict`).
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Scope of one read-modify-write cycle on a single document.
        Nothing written inside the scope may survive an exception.
        """
        yield

    async def ensure_indexes(self) -> None:
        """Create backend indexes; a no-op for stores that need none."""

    # Accounts
    @abstractmethod
    async def add_account(self, account: UserCreditAccount) -> UserCreditAccount: ...

    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[UserCreditAccount]: ...

    @abstractmethod
    async def update_account(self, account: UserCreditAccount) -> UserCreditAccount: ...

    # Rate limit counters
    @abstractmethod
    async def add_rate_limit_counter(self, counter: RateLimitCounter) -> RateLimitCounter: ...

    @abstractmethod
    async def get_rate_limit_counter(self, key: str) -> Optional[RateLimitCounter]: ...

    @abstractmethod
    async def update_rate_limit_counter(self, counter: RateLimitCounter) -> RateLimitCounter: ...

    @abstractmethod
    async def delete_rate_limit_counter(self, key: str) -> None: ...

    @abstractmethod
    async def delete_expired_rate_limit_counters(self, now_ms: int) -> int:
        """Delete every counter whose window ended before `now_ms`; return how many."""
        ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
