from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .account import CreditBalance


class ProvisionAccountRequest(BaseModel):
    initial_credits: Optional[int] = Field(default=None, ge=0)


class AddCreditsRequest(BaseModel):
    user_id: str
    amount: int
    operation: str = "admin-top-up"
    note: Optional[str] = None


class DeductCreditsRequest(BaseModel):
    user_id: str
    amount: int
    operation: str


class CreditOperationResponse(BaseModel):
    user_id: str
    message: str
    remaining_credits: Optional[int] = None
    credits_deducted: Optional[int] = None


class CreditBalanceResponse(BaseModel):
    user_id: str
    balance: CreditBalance


class CreditCheckResponse(BaseModel):
    user_id: str
    required: int
    has_enough: bool
    available: int
    message: Optional[str] = None


class ReserveCreditsRequest(BaseModel):
    user_id: str
    amount: int
    operation: str
    # Becomes a key in the reservation map; Mongo keys cannot hold "." or "$".
    reservation_id: Optional[str] = Field(default=None, min_length=1, pattern=r"^[^.$]+$")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReservationResponse(BaseModel):
    user_id: str
    reservation_id: str
    message: str
    remaining_credits: Optional[int] = None


class ConfirmReservationRequest(BaseModel):
    user_id: str
    actual_tokens: int = Field(ge=0)
    operation: str
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None


class ReleaseReservationRequest(BaseModel):
    user_id: str
    reason: Optional[str] = None


class RateLimitStatusResponse(BaseModel):
    user_id: str
    action: str
    allowed: bool
    remaining: int
    reset_time: int


class SweepResponse(BaseModel):
    cleaned_count: int
    message: str
