from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from ..exceptions import CreditError, ErrorCode
from .account import CreditBalance
from .transaction import CreditTransaction


class OperationResult(BaseModel):
    success: bool
    message: str
    error_code: Optional[ErrorCode] = None


class CreditOperationResult(OperationResult):
    """Uniform result of every balance-changing ledger/reservation call."""

    remaining_credits: Optional[int] = None
    credits_deducted: Optional[int] = None

    @classmethod
    def failure(
        cls, exc: CreditError, remaining_credits: Optional[int] = None
    ) -> "CreditOperationResult":
        return cls(
            success=False,
            message=str(exc),
            error_code=exc.code,
            remaining_credits=remaining_credits,
        )


class CreditCheckResult(BaseModel):
    has_enough: bool
    available: int
    message: Optional[str] = None


class CreditBalanceResult(OperationResult):
    balance: Optional[CreditBalance] = None


class CreditHistoryResult(OperationResult):
    history: List[CreditTransaction] = Field(default_factory=list)


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_time: int = Field(description="Epoch milliseconds at which the window resets.")
    error: Optional[str] = None
    retry_after_seconds: Optional[int] = None


class SweepResult(OperationResult):
    cleaned_count: int = 0
