"""wikimirror domain models -- re-exports all public model classes.

The models are organized across seven submodules by domain concern:
    - page.py        -- Upstream records (pages, votes, revisions, attributions)
                       and local temporal versions
    - checkpoint.py  -- Tagged checkpoint payloads, one per crawl kind
    - dirty.py       -- Dirty-page queue states and legal transitions
    - fetch.py       -- Rate-limit-safe fetcher outcomes and counters
    - integrity.py   -- Version-boundary defects and repair plans
    - stats.py       -- Derived user/page/series aggregates and watermarks
    - sync.py        -- Sync run phases and state

If you add a new model class, remember to add it to ``__all__`` too.
"""

from __future__ import annotations

from wikimirror.models.checkpoint import (
    CHECKPOINT_SCHEMA_VERSION,
    CheckpointKind,
    PageListingCheckpoint,
    PartialVoteProgress,
    VoteProgressCheckpoint,
)
from wikimirror.models.dirty import DirtyPage, DirtyReason, DirtyState
from wikimirror.models.fetch import (
    FetcherStats,
    FetchOutcome,
    FetchReason,
    FetchResult,
    QualityVerdict,
    RateLimitBudget,
)
from wikimirror.models.integrity import (
    BoundaryDefect,
    BoundaryFix,
    DefectKind,
    IntegrityReport,
    RepairResult,
    VersionBounds,
)
from wikimirror.models.page import (
    AttributionRecord,
    PageDetail,
    PageListing,
    PageNode,
    PageSnapshot,
    PageVersion,
    RevisionRecord,
    RevisionWindow,
    VoteRecord,
    VoteWindow,
)
from wikimirror.models.stats import (
    AggregationReport,
    AnalysisWatermark,
    CategoryStats,
    PageStats,
    SeriesStats,
    UserStats,
)
from wikimirror.models.sync import PhaseReport, SyncPhase, SyncRunState

__all__ = [
    "CHECKPOINT_SCHEMA_VERSION",
    "AggregationReport",
    "AnalysisWatermark",
    "AttributionRecord",
    "BoundaryDefect",
    "BoundaryFix",
    "CategoryStats",
    "CheckpointKind",
    "DefectKind",
    "DirtyPage",
    "DirtyReason",
    "DirtyState",
    "FetchOutcome",
    "FetchReason",
    "FetchResult",
    "FetcherStats",
    "IntegrityReport",
    "PageDetail",
    "PageListing",
    "PageListingCheckpoint",
    "PageNode",
    "PageSnapshot",
    "PageStats",
    "PageVersion",
    "PartialVoteProgress",
    "PhaseReport",
    "QualityVerdict",
    "RateLimitBudget",
    "RepairResult",
    "RevisionRecord",
    "RevisionWindow",
    "SeriesStats",
    "SyncPhase",
    "SyncRunState",
    "UserStats",
    "VersionBounds",
    "VoteProgressCheckpoint",
    "VoteRecord",
    "VoteWindow",
]
