"""Runtime configuration based on environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.rate_limit import RateLimitPolicy


def _default_rate_limits() -> Dict[str, RateLimitPolicy]:
    return {
        "chat_message": RateLimitPolicy(max_requests=10, window_ms=60_000),
        "file_upload": RateLimitPolicy(max_requests=5, window_ms=300_000),
        "credit_purchase": RateLimitPolicy(max_requests=3, window_ms=3_600_000),
    }


class CreditSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CREDIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    mongo_uri: Optional[str] = Field(
        default=None,
        description="MongoDB URI; the in-memory store is used when unset.",
    )
    mongo_db: str = "credit_management"

    tokens_per_credit: int = Field(default=1000, ge=1)
    free_tier_credits: int = Field(default=100, ge=0)
    low_credit_threshold: int = Field(default=10, ge=0)

    ledger_log_path: Path = Path("logs/credit_ledger.log")

    transaction_max_attempts: int = Field(default=5, ge=1, le=50)
    transaction_retry_delay_seconds: float = Field(default=0.05, ge=0)
    balance_cache_ttl_seconds: int = Field(default=300, ge=1)

    rate_limits: Dict[str, RateLimitPolicy] = Field(default_factory=_default_rate_limits)
    default_rate_limit: RateLimitPolicy = Field(
        default_factory=lambda: RateLimitPolicy(max_requests=10, window_ms=60_000),
        description="Policy for actions without an entry in `rate_limits`.",
    )


@lru_cache
def get_settings() -> CreditSettings:
    return CreditSettings()
