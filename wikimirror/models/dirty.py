"""Dirty-page work-queue state machine.

Each page in the queue is in exactly one :class:`DirtyState`.  The legal
moves between states are listed in :data:`LEGAL_TRANSITIONS`; the SQLite
dirty queue rejects anything else with ``InvalidTransitionError``, so no
call site can skip a phase or complete a page it never claimed.

    CLEAN ──drift──▶ NEEDS_B ──claim──▶ IN_B ──done──▶ CLEAN
                        ▲                 │
                        └────release──────┤
                                          └──needs deep pass──▶ NEEDS_C
    NEEDS_C ──claim──▶ IN_C ──done──▶ CLEAN
       ▲                 │
       └────release──────┘

Discovery may re-queue a page from any state into NEEDS_B (new drift
always needs a fresh content fetch first).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DirtyState(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Queue state of a single page."""

    CLEAN = "clean"      # Nothing pending
    NEEDS_B = "needsB"   # Waiting for a content fetch
    IN_B = "inB"         # Claimed by a content worker
    NEEDS_C = "needsC"   # Waiting for deep reconciliation
    IN_C = "inC"         # Claimed by a reconciliation worker


LEGAL_TRANSITIONS: dict[DirtyState, frozenset[DirtyState]] = {
    DirtyState.CLEAN: frozenset({DirtyState.NEEDS_B, DirtyState.NEEDS_C}),
    DirtyState.NEEDS_B: frozenset({DirtyState.NEEDS_B, DirtyState.IN_B}),
    DirtyState.IN_B: frozenset({DirtyState.CLEAN, DirtyState.NEEDS_B, DirtyState.NEEDS_C}),
    DirtyState.NEEDS_C: frozenset({DirtyState.NEEDS_B, DirtyState.NEEDS_C, DirtyState.IN_C}),
    DirtyState.IN_C: frozenset({DirtyState.CLEAN, DirtyState.NEEDS_B, DirtyState.NEEDS_C}),
}

# States a claim moves out of, keyed by the phase doing the claiming.
CLAIMABLE: dict[str, tuple[DirtyState, DirtyState]] = {
    "B": (DirtyState.NEEDS_B, DirtyState.IN_B),
    "C": (DirtyState.NEEDS_C, DirtyState.IN_C),
}


def is_legal(from_state: DirtyState, to_state: DirtyState) -> bool:
    return to_state in LEGAL_TRANSITIONS.get(from_state, frozenset())


class DirtyReason(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Machine-readable reasons a page entered the queue."""

    NEW_PAGE = "new_page"
    TITLE_CHANGED = "title_changed"
    TAGS_CHANGED = "tags_changed"
    CATEGORY_CHANGED = "category_changed"
    RATING_CHANGED = "rating_changed"
    VOTE_COUNT_CHANGED = "vote_count_changed"
    REVISION_COUNT_CHANGED = "revision_count_changed"
    ATTRIBUTION_COUNT_CHANGED = "attribution_count_changed"
    UNDELETED = "undeleted"
    INCOMPLETE_VOTES = "incomplete_votes"
    INCOMPLETE_REVISIONS = "incomplete_revisions"
    COUNT_MISMATCH = "count_mismatch"
    BOUNDARY_IRREGULAR = "boundary_irregular"
    DATA_PROTECTED = "data_protected"
    MANUAL = "manual"


class DirtyPage(BaseModel):
    """One row of the dirty-page queue."""

    model_config = ConfigDict(frozen=True)

    url: str
    state: DirtyState
    reasons: list[str] = Field(default_factory=list)
    attempts: int = Field(default=0, description="Claims taken on this page so far.")
    last_error: str | None = None
    claimed_at: datetime | None = None
    phase_b_done_at: datetime | None = None
    phase_c_done_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def needs_phase_b(self) -> bool:
        return self.state in (DirtyState.NEEDS_B, DirtyState.IN_B)

    @property
    def needs_phase_c(self) -> bool:
        return self.state in (DirtyState.NEEDS_C, DirtyState.IN_C)
