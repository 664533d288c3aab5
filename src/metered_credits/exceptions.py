"""Domain-specific exceptions and the error codes they map to."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    TRANSACTION_FAILURE = "TRANSACTION_FAILURE"
    RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
    RESERVATION_ALREADY_RESOLVED = "RESERVATION_ALREADY_RESOLVED"
    DUPLICATE_RESERVATION = "DUPLICATE_RESERVATION"
    CREDIT_CONFIRMATION_FAILED = "CREDIT_CONFIRMATION_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


CONFIRMATION_FAILED_MESSAGE = "A processing error occurred. Please contact support."


class CreditError(Exception):
    code: ErrorCode = ErrorCode.TRANSACTION_FAILURE


class UserNotFoundError(CreditError):
    code = ErrorCode.USER_NOT_FOUND

    def __init__(self, user_id: str) -> None:
        super().__init__("User not found")
        self.user_id = user_id


class InsufficientCreditsError(CreditError):
    code = ErrorCode.INSUFFICIENT_CREDITS

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}"
        )
        self.required = required
        self.available = available


class InvalidAmountError(CreditError):
    code = ErrorCode.INVALID_AMOUNT


class TransactionFailureError(CreditError):
    code = ErrorCode.TRANSACTION_FAILURE


class ConcurrentUpdateError(TransactionFailureError):
    """A write carried a stale document version; re-read and re-apply."""


class ReservationNotFoundError(CreditError):
    code = ErrorCode.RESERVATION_NOT_FOUND

    def __init__(self, reservation_id: str) -> None:
        super().__init__("Reservation not found")
        self.reservation_id = reservation_id


class ReservationAlreadyResolvedError(CreditError):
    code = ErrorCode.RESERVATION_ALREADY_RESOLVED

    def __init__(self, reservation_id: str, status: str) -> None:
        super().__init__(f"Reservation already {status}")
        self.reservation_id = reservation_id
        self.status = status


class DuplicateReservationError(CreditError):
    code = ErrorCode.DUPLICATE_RESERVATION

    def __init__(self, reservation_id: str) -> None:
        super().__init__("Reservation id already used")
        self.reservation_id = reservation_id


class CreditConfirmationFailedError(CreditError):
    code = ErrorCode.CREDIT_CONFIRMATION_FAILED

    def __init__(self, reservation_id: str, released: Optional[bool] = None) -> None:
        super().__init__(CONFIRMATION_FAILED_MESSAGE)
        self.reservation_id = reservation_id
        self.released = released


class RateLimitExceededError(CreditError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds
