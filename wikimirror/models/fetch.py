"""Result and statistics models for the rate-limit-safe fetcher."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FetchOutcome(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Terminal outcome of one protected fetch."""

    ACCEPT_NEW = "accept_new"      # Caller should write the fetched data
    USE_EXISTING = "use_existing"  # Caller keeps what it already has
    FAILED = "failed"              # Nothing usable; caller leaves the page pending


class FetchReason(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Machine-readable reason codes, logged with every outcome."""

    UNCHANGED = "unchanged"
    COMPLETE = "complete"
    ACCEPTABLE_DIFFERENCE = "acceptable_difference"
    FUZZY_DATA_NATURE = "fuzzy_data_nature"
    EMPTY_RESPONSE = "empty_response"
    SIGNIFICANT_UNDERCOUNT = "significant_undercount"
    LARGE_DISCREPANCY = "large_discrepancy"
    RATE_LIMIT_PROTECTION = "rate_limit_protection"
    FETCH_FAILED = "fetch_failed"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"


class QualityVerdict(BaseModel):
    """Assessment of one fetched payload against the expected size."""

    model_config = ConfigDict(frozen=True)

    acceptable: bool
    should_retry: bool
    reason: FetchReason
    actual: int
    expected: int


class FetchResult(BaseModel):
    """What the fetcher hands back to a pipeline stage."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    outcome: FetchOutcome
    reason: FetchReason
    data: Any = Field(default=None, description="Fetched items; None unless ACCEPT_NEW.")
    is_complete: bool = False
    attempts: int = 0

    @property
    def use_existing(self) -> bool:
        return self.outcome is FetchOutcome.USE_EXISTING

    @property
    def accepted(self) -> bool:
        return self.outcome is FetchOutcome.ACCEPT_NEW


class RateLimitBudget(BaseModel):
    """Rate-limit quota reported alongside an upstream response."""

    model_config = ConfigDict(frozen=True)

    cost: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None


class FetcherStats(BaseModel):
    """Counters owned by one fetcher instance."""

    requests: int = 0
    requests_with_rate_limit: int = 0
    data_protection_activated: int = 0
    successful_retries: int = 0
    failed_after_retries: int = 0
    skipped_unchanged: int = 0
