"""Async retry helpers for optimistic store transactions."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..exceptions import ConcurrentUpdateError, TransactionFailureError

T = TypeVar("T")
AsyncFactory = Callable[[], Awaitable[T]]

logger = logging.getLogger(__name__)


async def retry_on_conflict(
    operation: AsyncFactory[T],
    *,
    max_attempts: int = 5,
    base_delay: float = 0.05,
    operation_name: str = "operation",
) -> T:
    """
    Re-run `operation` with linear backoff while it loses a version race.

    Only `ConcurrentUpdateError` is retried; any other exception propagates
    on the first attempt. Exhausting the attempts raises
    `TransactionFailureError`.
    """

    attempt = 1
    while True:
        try:
            return await operation()
        except ConcurrentUpdateError as exc:
            if attempt >= max_attempts:
                raise TransactionFailureError(
                    f"{operation_name} failed after {max_attempts} attempts"
                ) from exc
            delay = base_delay * attempt
            logger.warning(
                "Retrying %s after concurrent update (attempt %d/%d, delay %.3fs)",
                operation_name,
                attempt,
                max_attempts,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1
