"""Sync run state models.

A sync run walks the phases in a fixed order.  Like the rest of the models
these are frozen; the orchestrator advances a run by producing new copies
with ``model_copy(update={...})``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from wikimirror.models.page import utc_now


# ---------------------------------------------------------------------------
# SyncPhase -- order of the one-directional data flow.
# ---------------------------------------------------------------------------
class SyncPhase(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Phases of a sync run.

        DISCOVERY → CONTENT → RECONCILIATION → AGGREGATION → DONE
    """

    DISCOVERY = "DISCOVERY"            # Phase A: listing scan, dirty detection
    CONTENT = "CONTENT"                # Phase B: full fetch of dirty pages
    RECONCILIATION = "RECONCILIATION"  # Phase C: full-history pagination
    AGGREGATION = "AGGREGATION"        # Ratings, rankings, site statistics
    DONE = "DONE"


PHASE_ORDER: tuple[SyncPhase, ...] = (
    SyncPhase.DISCOVERY,
    SyncPhase.CONTENT,
    SyncPhase.RECONCILIATION,
    SyncPhase.AGGREGATION,
)


class PhaseReport(BaseModel):
    """Counters reported by one phase."""

    model_config = ConfigDict(frozen=True)

    phase: SyncPhase
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    details: dict[str, int] = Field(default_factory=dict)


class SyncRunState(BaseModel):
    """Snapshot of a sync run.

    Immutable -- the orchestrator creates a new state after every phase.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    current_phase: SyncPhase = SyncPhase.DISCOVERY
    reports: list[PhaseReport] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def failed(self) -> bool:
        return bool(self.errors)
