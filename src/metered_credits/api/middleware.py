"""
FastAPI/Starlette middleware that meters a route through `MeteredCallGuard`.

Flow:
  1. Before request: check the rate limit and reserve credits for the
     estimated tokens (from header or default).
  2. Request is executed.
  3. After response: read actual usage from the response body (e.g.
     usage.total_tokens) and confirm the reservation against it. Without a
     readable usage count, or on a failed request, the reservation is only
     released.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Sequence, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..exceptions import (
    CreditConfirmationFailedError,
    InsufficientCreditsError,
    RateLimitExceededError,
    TransactionFailureError,
    UserNotFoundError,
)
from ..models.transaction import ChatSpendMetadata
from ..services.metered_call import MeteredCallGuard


logger = logging.getLogger(__name__)

_BufferedResponse = Tuple[Response, Optional[bytes]]


def _get_nested(data: Any, key_path: str) -> Optional[Any]:
    """Get a value using dot-notation key path, e.g. 'usage.total_tokens'."""
    keys = key_path.strip().split(".")
    current: Any = data
    for k in keys:
        if not isinstance(current, dict) or k not in current:
            return None
        current = current[k]
    return current


def _error(status_code: int, detail: str, code: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "code": code},
        headers=headers,
    )


class CreditDeductionMiddleware(BaseHTTPMiddleware):
    """
    Meters matching routes: reserve before the request, confirm the actual
    usage read from the JSON response.

    - Rejections map to 429 (rate limit), 402 (insufficient credits) and
      404 (unknown account).
    - A failed confirmation answers 500 with a generic message; the
      reservation has already been released and the event is on the ledger.
    - Store outages answer 503.
    """

    def __init__(
        self,
        app: Any,
        guard: MeteredCallGuard,
        *,
        path_prefix: str = "/api",
        user_id_header: str = "X-User-Id",
        estimated_tokens_header: str = "X-Estimated-Tokens",
        default_estimated_tokens: int = 1000,
        response_usage_key: str = "usage.total_tokens",
        operation: str = "chat-session",
        rate_limit_action: Optional[str] = "chat_message",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.guard = guard
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.estimated_tokens_header = estimated_tokens_header
        self.default_estimated_tokens = default_estimated_tokens
        self.response_usage_key = response_usage_key
        self.operation = operation
        self.rate_limit_action = rate_limit_action
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _estimated_tokens(self, request: Request) -> int:
        try:
            estimated_str = request.headers.get(
                self.estimated_tokens_header,
                str(self.default_estimated_tokens),
            )
            return max(1, int(estimated_str))
        except ValueError:
            return self.default_estimated_tokens

    def _usage_tokens(self, buffered: _BufferedResponse) -> Optional[int]:
        response, body = buffered
        if response.status_code >= 400 or not body:
            return None
        try:
            raw = _get_nested(json.loads(body), self.response_usage_key)
            return None if raw is None else max(0, int(raw))
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            logger.warning("Credit middleware: could not read usage from response: %s", e)
            return None

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing user identification (e.g. X-User-Id header)."},
            )

        async def call() -> _BufferedResponse:
            response = await call_next(request)
            body_bytes = getattr(response, "body", None)
            if body_bytes is None and hasattr(response, "body_iterator"):
                body_bytes = b"".join([chunk async for chunk in response.body_iterator])
            return response, body_bytes

        try:
            metered = await self.guard.run(
                user_id,
                self.operation,
                call,
                estimated_tokens=self._estimated_tokens(request),
                usage_tokens=self._usage_tokens,
                rate_limit_action=self.rate_limit_action,
                metadata=ChatSpendMetadata(
                    session_id=request.headers.get("X-Session-Id"),
                    conversation_id=request.headers.get("X-Conversation-Id"),
                ),
            )
        except RateLimitExceededError as exc:
            headers = None
            if exc.retry_after_seconds is not None:
                headers = {"Retry-After": str(exc.retry_after_seconds)}
            return _error(429, str(exc), exc.code.value, headers)
        except InsufficientCreditsError as exc:
            return _error(402, "Insufficient credits for this request.", exc.code.value)
        except UserNotFoundError as exc:
            return _error(404, str(exc), exc.code.value)
        except CreditConfirmationFailedError as exc:
            return _error(500, str(exc), exc.code.value)
        except TransactionFailureError as exc:
            logger.warning(
                "Credit middleware: ledger unavailable: %s",
                exc,
                extra={"path": request.url.path, "user_id": user_id},
            )
            return _error(503, "Credit service temporarily unavailable.", exc.code.value)

        response, body_bytes = metered.value
        if body_bytes is None:
            return response

        headers = dict(response.headers)
        headers.pop("content-length", None)
        if metered.confirmed:
            headers["X-Credits-Deducted"] = str(metered.credits_deducted)
        if metered.remaining_credits is not None:
            headers["X-Credits-Remaining"] = str(metered.remaining_credits)
        return Response(
            content=body_bytes,
            status_code=response.status_code,
            headers=headers,
            media_type=getattr(response, "media_type", "application/json"),
        )
