from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from ..config import CreditSettings, get_settings
from ..db.base import BaseDBManager
from ..models.rate_limit import RateLimitCounter, RateLimitPolicy
from ..models.results import OperationResult, RateLimitResult, SweepResult
from ..utils.retry import retry_on_conflict


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """
    Fixed-window request limiter keyed by (user_id, action).

    Counters live in the shared store, never in process memory, so every
    instance of a deployment sees the same windows. A store fault fails
    open: the ledger, not this limiter, is what guards spending.
    """

    def __init__(
        self,
        db: BaseDBManager,
        settings: Optional[CreditSettings] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._clock = clock

    def policy_for(self, action: str, policy: Optional[RateLimitPolicy] = None) -> RateLimitPolicy:
        if policy is not None:
            return policy
        return self._settings.rate_limits.get(action, self._settings.default_rate_limit)

    async def check_and_increment(
        self,
        user_id: str,
        action: str,
        policy: Optional[RateLimitPolicy] = None,
    ) -> RateLimitResult:
        policy = self.policy_for(action, policy)
        key = RateLimitCounter.key_for(user_id, action)

        async def attempt() -> RateLimitResult:
            now = self._clock()
            async with self._db.transaction():
                counter = await self._db.get_rate_limit_counter(key)

                if counter is None or now > counter.reset_time:
                    reset_time = now + policy.window_ms
                    if counter is None:
                        await self._db.add_rate_limit_counter(
                            RateLimitCounter(
                                id=key,
                                user_id=user_id,
                                action=action,
                                count=1,
                                reset_time=reset_time,
                            )
                        )
                    else:
                        counter.count = 1
                        counter.reset_time = reset_time
                        counter.updated_at = datetime.utcnow()
                        await self._db.update_rate_limit_counter(counter)
                    return RateLimitResult(
                        allowed=True,
                        remaining=policy.max_requests - 1,
                        reset_time=reset_time,
                    )

                if counter.count >= policy.max_requests:
                    retry_after = max(1, -(-(counter.reset_time - now) // 1000))
                    return RateLimitResult(
                        allowed=False,
                        remaining=0,
                        reset_time=counter.reset_time,
                        error=(
                            f"Rate limit exceeded. Maximum {policy.max_requests} {action} "
                            f"requests per {policy.window_ms // 1000} seconds. "
                            f"Try again in {retry_after} seconds."
                        ),
                        retry_after_seconds=retry_after,
                    )

                previous = counter.count
                counter.count = previous + 1
                counter.updated_at = datetime.utcnow()
                await self._db.update_rate_limit_counter(counter)
                return RateLimitResult(
                    allowed=True,
                    remaining=policy.max_requests - previous - 1,
                    reset_time=counter.reset_time,
                )

        try:
            return await retry_on_conflict(
                attempt,
                max_attempts=self._settings.transaction_max_attempts,
                base_delay=self._settings.transaction_retry_delay_seconds,
                operation_name="rate_limit_check",
            )
        except Exception:
            logger.exception(
                "Rate limit check failed; allowing request",
                extra={"user_id": user_id, "action": action},
            )
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests,
                reset_time=self._clock() + policy.window_ms,
            )

    async def reset(self, user_id: str, action: str) -> OperationResult:
        try:
            await self._db.delete_rate_limit_counter(RateLimitCounter.key_for(user_id, action))
        except Exception:
            logger.exception(
                "Rate limit reset failed", extra={"user_id": user_id, "action": action}
            )
            return OperationResult(success=False, message="Failed to reset rate limit")
        return OperationResult(
            success=True,
            message=f"Rate limit reset for user {user_id} and action {action}",
        )

    async def status(
        self,
        user_id: str,
        action: str,
        policy: Optional[RateLimitPolicy] = None,
    ) -> RateLimitResult:
        """Current window projection; never mutates the counter."""
        policy = self.policy_for(action, policy)
        now = self._clock()
        try:
            counter = await self._db.get_rate_limit_counter(
                RateLimitCounter.key_for(user_id, action)
            )
        except Exception:
            logger.exception(
                "Rate limit status failed", extra={"user_id": user_id, "action": action}
            )
            counter = None

        if counter is None or now > counter.reset_time:
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests,
                reset_time=now + policy.window_ms,
            )

        remaining = max(0, policy.max_requests - counter.count)
        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            reset_time=counter.reset_time,
        )

    async def sweep_expired(self) -> SweepResult:
        """Delete counters whose window has ended. Run from a scheduler."""
        try:
            cleaned = await self._db.delete_expired_rate_limit_counters(self._clock())
        except Exception:
            logger.exception("Rate limit cleanup failed")
            return SweepResult(
                success=False, message="Failed to clean up expired rate limits"
            )
        if cleaned == 0:
            return SweepResult(success=True, message="No expired rate limits found")
        return SweepResult(
            success=True,
            cleaned_count=cleaned,
            message=f"Cleaned up {cleaned} expired rate limit records",
        )
