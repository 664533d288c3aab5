from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..models.account import CreditBalance


logger = logging.getLogger(__name__)


class AsyncCacheBackend(ABC):
    """
    Minimal async key/value cache with optional TTL.
    Concrete implementations could use Redis, Memcached, etc.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class BalanceCache:
    """
    Advisory copies of account balance projections.

    Only pre-flight checks read from here; every balance-changing operation
    reads the account itself. Cache faults are logged and treated as misses.
    """

    def __init__(self, backend: AsyncCacheBackend, ttl_seconds: int) -> None:
        self._backend = backend
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def key_for(user_id: str) -> str:
        return f"credit:user:{user_id}:info"

    async def get(self, user_id: str) -> Optional[CreditBalance]:
        key = self.key_for(user_id)
        try:
            cached = await self._backend.get(key)
            if not isinstance(cached, dict):
                return None
            return CreditBalance.model_validate(cached)
        except ValueError:
            await self.invalidate(user_id)
        except Exception:
            logger.warning("Balance cache read failed for user %s", user_id, exc_info=True)
        return None

    async def put(self, balance: CreditBalance) -> None:
        try:
            await self._backend.set(
                self.key_for(balance.user_id),
                balance.model_dump(),
                ttl_seconds=self._ttl_seconds,
            )
        except Exception:
            logger.warning("Failed to cache balance for user %s", balance.user_id, exc_info=True)

    async def invalidate(self, user_id: str) -> None:
        try:
            await self._backend.delete(self.key_for(user_id))
        except Exception:
            logger.warning("Failed to drop cached balance for user %s", user_id, exc_info=True)
