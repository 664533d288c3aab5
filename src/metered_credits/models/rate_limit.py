from __future__ import annotations

from datetime import datetime
from typing import ClassVar
from urllib.parse import quote

from pydantic import BaseModel, Field

from .base import VersionedModel


class RateLimitPolicy(BaseModel):
    max_requests: int = Field(ge=1)
    window_ms: int = Field(ge=1, description="Fixed window length in milliseconds.")


class RateLimitCounter(VersionedModel):
    """
    Fixed-window request counter for a single (user, action) pair.
    """

    collection_name: ClassVar[str] = "credit_rate_limits"

    id: str
    user_id: str
    action: str
    count: int = 0
    reset_time: int = Field(description="Epoch milliseconds at which the window ends.")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @staticmethod
    def key_for(user_id: str, action: str) -> str:
        # Both parts are escaped so ":" inside an id cannot collide keys.
        return f"{quote(user_id, safe='')}:{quote(action, safe='')}"
