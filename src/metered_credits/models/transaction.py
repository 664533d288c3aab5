from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field


class TransactionOperation(str, Enum):
    """Well-known operation tags; callers may still pass free-form tags."""

    FREE_TIER_GRANT = "free-tier-grant"
    CREDIT_PURCHASE = "credit-purchase"
    ADMIN_TOP_UP = "admin-top-up"
    TOKENS_USED = "tokens-used"
    CHAT_SESSION = "chat-session"
    RESERVATION_RELEASE = "reservation-release"


class ChatSpendMetadata(BaseModel):
    kind: Literal["chat_spend"] = "chat_spend"
    tokens_used: int = 0
    cost: int = 0
    reservation_id: Optional[str] = None
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    app_token: Optional[str] = None
    estimated_tokens: Optional[int] = None
    uncollected_credits: int = Field(
        default=0,
        description="Part of the cost that could not be drawn from the balance.",
    )


class PurchaseMetadata(BaseModel):
    kind: Literal["purchase"] = "purchase"
    payment_id: Optional[str] = None
    amount_paid: Optional[float] = None
    currency: Optional[str] = None


class GrantMetadata(BaseModel):
    kind: Literal["grant"] = "grant"
    granted_by: Optional[str] = None
    note: Optional[str] = None


class ReservationReleaseMetadata(BaseModel):
    kind: Literal["reservation_release"] = "reservation_release"
    reservation_id: str
    released_credits: int
    reason: str


TransactionMetadata = Annotated[
    Union[
        ChatSpendMetadata,
        PurchaseMetadata,
        GrantMetadata,
        ReservationReleaseMetadata,
    ],
    Field(discriminator="kind"),
]


class CreditTransaction(BaseModel):
    """
    One entry of an account's append-only credit history.

    `amount` is signed: negative for spends, positive for grants and zero
    for audit-only entries such as reservation releases.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    amount: int
    operation: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    metadata: Optional[TransactionMetadata] = None
