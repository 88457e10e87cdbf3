"""Checkpoint payload models, one tagged variant per crawl kind.

Each payload carries a ``kind`` discriminator and an explicit
``schema_version``.  On load the file checkpoint provider validates the raw
JSON against :data:`CHECKPOINT_ADAPTER`; a slot that fails validation (wrong
kind, missing fields, wrong types, a newer schema than this code knows) is
treated as corrupt and skipped.

Set- and map-valued fields are serialized by pydantic to JSON arrays and
objects and rehydrated to ``set`` / ``dict`` on validation, so
``load(save(x)) == x`` holds for them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from wikimirror.models.page import VoteRecord, utc_now

CHECKPOINT_SCHEMA_VERSION = 1


class CheckpointKind(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Crawl kinds that persist resumable progress."""

    PAGE_LISTING = "page_listing"    # Discovery: listing cursor
    VOTE_PROGRESS = "vote_progress"  # Reconciliation: per-page vote cursors


class _CheckpointBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: int = Field(default=CHECKPOINT_SCHEMA_VERSION)
    saved_at: datetime = Field(default_factory=utc_now)

    @field_validator("schema_version")
    @classmethod
    def _known_schema(cls, value: int) -> int:
        if value < 1 or value > CHECKPOINT_SCHEMA_VERSION:
            raise ValueError(f"unsupported checkpoint schema_version {value}")
        return value


class PageListingCheckpoint(_CheckpointBase):
    """Discovery progress through the paginated page listing."""

    kind: Literal["page_listing"] = "page_listing"
    run_id: str = Field(description="Identifies one full scan; staging belongs to it.")
    cursor: str | None = Field(
        default=None, description="End cursor of the last fully staged batch."
    )
    pages_scanned: int = Field(default=0, ge=0)
    batches: int = Field(default=0, ge=0)
    seen_urls: set[str] = Field(default_factory=set)
    is_complete: bool = False


class PartialVoteProgress(BaseModel):
    """Votes accumulated so far for one page whose pagination is unfinished."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cursor: str | None = None
    votes: list[VoteRecord] = Field(default_factory=list)


class VoteProgressCheckpoint(_CheckpointBase):
    """Reconciliation progress through per-page vote histories."""

    kind: Literal["vote_progress"] = "vote_progress"
    completed_pages: set[str] = Field(default_factory=set)
    partial: dict[str, PartialVoteProgress] = Field(default_factory=dict)


Checkpoint = Annotated[
    Union[PageListingCheckpoint, VoteProgressCheckpoint],  # noqa: UP007
    Field(discriminator="kind"),
]

CHECKPOINT_ADAPTER: TypeAdapter[Checkpoint] = TypeAdapter(Checkpoint)

CHECKPOINT_MODELS: dict[CheckpointKind, type[_CheckpointBase]] = {
    CheckpointKind.PAGE_LISTING: PageListingCheckpoint,
    CheckpointKind.VOTE_PROGRESS: VoteProgressCheckpoint,
}
