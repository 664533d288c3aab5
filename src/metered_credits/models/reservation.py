from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ReservationStatus(str, Enum):
    OPEN = "open"
    CONFIRMED = "confirmed"
    RELEASED = "released"


class ReservationRecord(BaseModel):
    """
    Credits held for a pending metered call but not yet consumed.

    Stored inside the owning account document, keyed by `id`. A record
    leaves OPEN exactly once and is kept afterwards so that a repeated
    confirm/release can be recognised and rejected.
    """

    id: str
    amount: int
    operation: str
    status: ReservationStatus = ReservationStatus.OPEN
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == ReservationStatus.OPEN
