from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, Set, TypeVar

from ..exceptions import (
    CreditConfirmationFailedError,
    ErrorCode,
    InsufficientCreditsError,
    RateLimitExceededError,
    TransactionFailureError,
    UserNotFoundError,
)
from ..models.results import CreditOperationResult
from ..models.transaction import ChatSpendMetadata
from .credit_ledger import CreditLedger
from .notification_service import NotificationService
from .rate_limiter import RateLimiter
from .reservation_manager import ReservationManager, new_reservation_id


T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class MeteredCallResult(Generic[T]):
    value: T
    reservation_id: str
    confirmed: bool
    credits_deducted: int = 0
    remaining_credits: Optional[int] = None


class MeteredCallGuard:
    """
    Wraps one metered external call in rate limit -> reserve -> call ->
    confirm/release.

    Every successful reservation is resolved before `run` returns or
    raises: a failed, timed out or cancelled call releases it, and so does
    a result without a readable usage count.

    Unlike the ledger services, `run` raises domain exceptions:
    `RateLimitExceededError`, `InsufficientCreditsError`,
    `UserNotFoundError`, `TransactionFailureError` and
    `CreditConfirmationFailedError`; exceptions from `call` propagate
    unchanged.
    """

    def __init__(
        self,
        credit_ledger: CreditLedger,
        reservations: ReservationManager,
        rate_limiter: Optional[RateLimiter] = None,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self._credit_ledger = credit_ledger
        self._reservations = reservations
        self._rate_limiter = rate_limiter
        self._notifications = notifications
        self._background: Set["asyncio.Task[CreditOperationResult]"] = set()

    async def run(
        self,
        user_id: str,
        operation: str,
        call: Callable[[], Awaitable[T]],
        *,
        estimated_tokens: int,
        usage_tokens: Callable[[T], Optional[int]],
        rate_limit_action: Optional[str] = None,
        metadata: Optional[ChatSpendMetadata] = None,
    ) -> MeteredCallResult[T]:
        if rate_limit_action is not None and self._rate_limiter is not None:
            limit = await self._rate_limiter.check_and_increment(user_id, rate_limit_action)
            if not limit.allowed:
                raise RateLimitExceededError(
                    limit.error or "Rate limit exceeded", limit.retry_after_seconds
                )

        estimate = max(1, self._credit_ledger.tokens_to_credits(estimated_tokens))
        reservation_id = new_reservation_id()
        reserve = asyncio.ensure_future(
            self._reservations.reserve(
                user_id,
                estimate,
                operation,
                reservation_id,
                {"estimated_tokens": estimated_tokens},
            )
        )
        try:
            reserved = await asyncio.shield(reserve)
        except asyncio.CancelledError:
            # The reserve keeps running; return its hold once it lands.
            reserve.add_done_callback(
                lambda done: self._release_abandoned(done, user_id, reservation_id)
            )
            raise
        if not reserved.success:
            raise self._reservation_error(reserved, user_id, estimate)

        try:
            value = await call()
        except BaseException:
            await self._release(user_id, reservation_id, "call-failed")
            raise

        try:
            tokens = usage_tokens(value)
        except Exception as exc:
            logger.warning(
                "Could not read usage from metered call result: %s",
                exc,
                extra={"user_id": user_id, "reservation_id": reservation_id},
            )
            tokens = None

        if tokens is None:
            released = await self._release(user_id, reservation_id, "usage-unavailable")
            return MeteredCallResult(
                value=value,
                reservation_id=reservation_id,
                confirmed=False,
                remaining_credits=released.remaining_credits,
            )

        # Shielded: once usage is known the confirm runs to completion, and a
        # failed confirm releases the hold itself.
        confirmed = await asyncio.shield(
            self._reservations.confirm(user_id, reservation_id, tokens, operation, metadata)
        )
        if not confirmed.success:
            raise CreditConfirmationFailedError(reservation_id)

        if self._notifications is not None:
            try:
                await self._notifications.notify_low_credits(user_id)
            except Exception:
                logger.exception("Low credit notification failed", extra={"user_id": user_id})

        return MeteredCallResult(
            value=value,
            reservation_id=reservation_id,
            confirmed=True,
            credits_deducted=confirmed.credits_deducted or 0,
            remaining_credits=confirmed.remaining_credits,
        )

    async def _release(
        self, user_id: str, reservation_id: str, reason: str
    ) -> CreditOperationResult:
        # Shielded so a cancelled caller still returns the hold.
        result = await asyncio.shield(
            self._reservations.release(user_id, reservation_id, reason)
        )
        if not result.success:
            logger.error(
                "Failed to release reservation %s for user %s: %s",
                reservation_id,
                user_id,
                result.message,
            )
        return result

    def _release_abandoned(
        self, reserve: "asyncio.Future[CreditOperationResult]", user_id: str, reservation_id: str
    ) -> None:
        if reserve.cancelled() or reserve.exception() is not None:
            return
        if not reserve.result().success:
            return
        task = asyncio.ensure_future(self._release(user_id, reservation_id, "caller-cancelled"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _reservation_error(
        result: CreditOperationResult, user_id: str, requested: int
    ) -> Exception:
        if result.error_code == ErrorCode.INSUFFICIENT_CREDITS:
            return InsufficientCreditsError(requested, result.remaining_credits or 0)
        if result.error_code == ErrorCode.USER_NOT_FOUND:
            return UserNotFoundError(user_id)
        return TransactionFailureError(result.message)
