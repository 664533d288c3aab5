from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import VersionedModel
from .reservation import ReservationRecord, ReservationStatus
from .transaction import CreditTransaction


class SubscriptionPlanName(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionInfo(BaseModel):
    plan: SubscriptionPlanName = SubscriptionPlanName.FREE
    credits_per_month: int = 0
    expires_at: Optional[datetime] = None


class AccountLimits(BaseModel):
    daily_requests: int = 50
    max_tokens_per_request: int = 2000
    max_concurrent_sessions: int = 3


class UserCreditAccount(VersionedModel):
    """
    Per-user credit account; the single document every ledger, reservation
    and history operation reads and writes.

    `subscription`, `limits` and `is_blocked` belong to billing/admin
    collaborators and are never changed by this package.
    """

    collection_name: ClassVar[str] = "credit_accounts"

    id: str = Field(description="User id; also the document key.")
    available_credits: int = Field(default=0, ge=0)
    reserved_credits: int = Field(default=0, ge=0)
    used_credits: int = Field(default=0, ge=0)
    debt_credits: int = Field(
        default=0,
        ge=0,
        description="Overage a confirmation could not collect; settled by later grants.",
    )
    credit_history: List[CreditTransaction] = Field(default_factory=list)
    reservations: Dict[str, ReservationRecord] = Field(default_factory=dict)
    subscription: SubscriptionInfo = Field(default_factory=SubscriptionInfo)
    limits: AccountLimits = Field(default_factory=AccountLimits)
    is_blocked: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def open_reserved_total(self) -> int:
        return sum(
            r.amount
            for r in self.reservations.values()
            if r.status == ReservationStatus.OPEN
        )

    def to_balance(self) -> "CreditBalance":
        return CreditBalance(
            user_id=self.id,
            available=self.available_credits,
            reserved=self.reserved_credits,
            used=self.used_credits,
            debt=self.debt_credits,
        )


class CreditBalance(BaseModel):
    """Point-in-time balance projection of an account."""

    user_id: str
    available: int
    reserved: int
    used: int
    debt: int = 0
