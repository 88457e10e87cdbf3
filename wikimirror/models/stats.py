"""Derived aggregate models produced by the aggregation engine.

These are materialized views: every run rebuilds them wholesale from the
current versions and attributions, so none of them is ever merged into.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CategoryStats(BaseModel):
    """One user's totals within one tag-derived category."""

    model_config = ConfigDict(frozen=True)

    user_key: str
    category: str
    page_count: int = 0
    rating: int = 0
    rank: int | None = Field(default=None, description="None when rating <= 0.")


class UserStats(BaseModel):
    """Per-user aggregate over every current, non-deleted attributed version."""

    model_config = ConfigDict(frozen=True)

    user_key: str
    display_name: str | None = None
    overall_rating: int = 0
    overall_rank: int | None = None
    page_count: int = 0
    mean_rating: float = 0.0
    votes_cast_up: int = 0
    votes_cast_down: int = 0
    votes_received_up: int = 0
    votes_received_down: int = 0
    categories: dict[str, CategoryStats] = Field(default_factory=dict)


class PageStats(BaseModel):
    """Live vote statistics for one page's current version."""

    model_config = ConfigDict(frozen=True)

    url: str
    upvotes: int = 0
    downvotes: int = 0
    reconciled_rating: int = 0
    like_ratio: float = 0.0
    wilson95: float = 0.0
    controversy: float = 0.0


class SeriesStats(BaseModel):
    """Occupancy of one numbering series (one 1000-number block)."""

    model_config = ConfigDict(frozen=True)

    series_number: int
    used_slots: int
    total_slots: int
    usage_percentage: float
    is_open: bool
    milestone_url: str | None = None


class AnalysisWatermark(BaseModel):
    """Resumable marker for a batch task (task name -> last run, cursor)."""

    model_config = ConfigDict(frozen=True)

    task: str
    last_run_at: datetime
    cursor_ts: datetime | None = None
    upserted: int = 0


class AggregationReport(BaseModel):
    """Summary returned by one aggregation run."""

    model_config = ConfigDict(frozen=True)

    users: int = 0
    pages: int = 0
    series: int = 0
    started_at: datetime
    finished_at: datetime
