"""Phase A: discovery scan of the upstream page listing.

Pages through the listing window by window, stages each window's
lightweight metadata, registers newly seen pages and queues every page
whose metadata drifted from its current version.  A page-listing
checkpoint is written after every staged window so an interrupted scan
resumes at the next cursor.  Only a scan that reached the end of the
listing may conclude that a locally known page was deleted upstream.
"""

from __future__ import annotations

import uuid
from typing import Awaitable, Callable

from wikimirror.interfaces.checkpoint_provider import ICheckpointProvider
from wikimirror.interfaces.wiki_source_provider import IWikiSourceProvider
from wikimirror.models.checkpoint import CheckpointKind, PageListingCheckpoint
from wikimirror.models.dirty import DirtyReason
from wikimirror.models.page import PageNode, PageVersion, utc_now
from wikimirror.models.sync import PhaseReport, SyncPhase
from wikimirror.providers.mirror.sqlite_dirty_queue import SQLiteDirtyQueue
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.providers.wiki_source.cost_estimator import estimate_page_cost
from wikimirror.services.rate_limit_safe_fetcher import RateLimitSafeFetcher
from wikimirror.services.versioning import VersionManager
from wikimirror.utils.errors import WikiMirrorError
from wikimirror.utils.logging import get_logger

ProgressCallback = Callable[[int, int | None], Awaitable[None]]


def _null_or_zero(value: int | None) -> bool:
    return value is None or value == 0


def detect_drift(node: PageNode, current: PageVersion | None) -> list[str]:
    """Reasons *node* differs from the stored current version (empty when clean)."""
    if current is None:
        return [DirtyReason.NEW_PAGE.value]

    stored = current.snapshot
    if stored.is_deleted:
        return [DirtyReason.UNDELETED.value]

    reasons: list[str] = []
    if node.title != stored.title:
        reasons.append(DirtyReason.TITLE_CHANGED.value)
    if sorted(node.tags) != sorted(stored.tags):
        reasons.append(DirtyReason.TAGS_CHANGED.value)
    if node.category != stored.category:
        reasons.append(DirtyReason.CATEGORY_CHANGED.value)

    # A counter that is null-or-zero on both sides is not drift.
    if not (_null_or_zero(node.rating) and _null_or_zero(stored.rating)):
        if node.rating != stored.rating:
            reasons.append(DirtyReason.RATING_CHANGED.value)
    if not (_null_or_zero(node.vote_count) and _null_or_zero(stored.vote_count)):
        if node.vote_count != stored.vote_count:
            reasons.append(DirtyReason.VOTE_COUNT_CHANGED.value)

    if node.revision_count is not None and node.revision_count != stored.revision_count:
        reasons.append(DirtyReason.REVISION_COUNT_CHANGED.value)
    if node.attribution_count is not None and node.attribution_count != (stored.attribution_count or 0):
        reasons.append(DirtyReason.ATTRIBUTION_COUNT_CHANGED.value)
    return reasons


class DiscoveryService:
    """Runs the discovery scan (Phase A).

    Parameters
    ----------
    provider:
        Upstream wiki source.
    fetcher:
        Shared rate-limit-safe fetcher; every listing request goes through it.
    store:
        Mirror store (staging, pages, versions).
    queue:
        Dirty-page queue.
    checkpoints:
        Checkpoint store for the ``page_listing`` kind.
    page_batch_size:
        Listing window size.
    max_first:
        Vote/revision window size used for cost estimates.
    """

    def __init__(
        self,
        provider: IWikiSourceProvider,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
        checkpoints: ICheckpointProvider,
        page_batch_size: int = 100,
        max_first: int = 100,
    ) -> None:
        self._provider = provider
        self._fetcher = fetcher
        self._store = store
        self._queue = queue
        self._checkpoints = checkpoints
        self._batch_size = page_batch_size
        self._max_first = max_first
        self._versions = VersionManager(store)
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, resume: bool = True, on_progress: ProgressCallback | None = None) -> PhaseReport:
        """Scan the full listing, resuming from the newest checkpoint if asked."""
        checkpoint = self._load_checkpoint() if resume else None
        if checkpoint is None:
            checkpoint = PageListingCheckpoint(run_id=uuid.uuid4().hex)
            await self._store.clear_staging()
            self._logger.info("discovery_scan_started", run_id=checkpoint.run_id)
        else:
            self._logger.info(
                "discovery_scan_resumed",
                run_id=checkpoint.run_id,
                cursor=checkpoint.cursor,
                pages_scanned=checkpoint.pages_scanned,
            )

        total = await self._count_pages()
        current_versions = await self._store.get_current_versions(include_content=False)
        details = {"new": 0, "dirty": 0, "deleted": 0, "batches": 0}

        cursor = checkpoint.cursor
        while True:
            listing = await self._fetcher.call(
                lambda after=cursor: self._provider.fetch_page_listing(self._batch_size, after),
                label="page_listing",
            )
            await self._stage_window(listing.nodes, checkpoint.run_id, current_versions, details)

            details["batches"] += 1
            checkpoint = checkpoint.model_copy(
                update={
                    "cursor": listing.end_cursor,
                    "pages_scanned": checkpoint.pages_scanned + len(listing.nodes),
                    "batches": checkpoint.batches + 1,
                    "seen_urls": checkpoint.seen_urls | {n.url for n in listing.nodes},
                    "saved_at": utc_now(),
                }
            )
            self._checkpoints.save(checkpoint)
            if on_progress is not None:
                await on_progress(len(checkpoint.seen_urls), total)

            if not listing.has_next_page or not listing.end_cursor:
                break
            cursor = listing.end_cursor

        checkpoint = checkpoint.model_copy(update={"is_complete": True, "saved_at": utc_now()})
        self._checkpoints.save(checkpoint)

        details["deleted"] = await self._reconcile_deletions()
        self._logger.info(
            "discovery_scan_complete",
            run_id=checkpoint.run_id,
            pages=len(checkpoint.seen_urls),
            **details,
        )
        return PhaseReport(
            phase=SyncPhase.DISCOVERY,
            processed=len(checkpoint.seen_urls),
            succeeded=len(checkpoint.seen_urls),
            details=details,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _load_checkpoint(self) -> PageListingCheckpoint | None:
        checkpoint = self._checkpoints.load(CheckpointKind.PAGE_LISTING)
        if checkpoint is None or checkpoint.is_complete:
            return None
        return checkpoint

    async def _count_pages(self) -> int | None:
        try:
            return await self._fetcher.call(self._provider.count_pages, label="count_pages")
        except WikiMirrorError as exc:
            # Only used for progress display.
            self._logger.warning("discovery_count_failed", error=str(exc))
            return None

    async def _stage_window(
        self,
        nodes: list[PageNode],
        run_id: str,
        current_versions: dict[str, PageVersion],
        details: dict[str, int],
    ) -> None:
        costs = {
            n.url: estimate_page_cost(n, revision_limit=self._max_first, vote_limit=self._max_first)
            for n in nodes
        }
        await self._store.stage_pages(nodes, run_id, costs)
        await self._store.upsert_pages([(n.url, n.wikidot_id) for n in nodes])

        for node in nodes:
            reasons = detect_drift(node, current_versions.get(node.url))
            if not reasons:
                continue
            if DirtyReason.NEW_PAGE.value in reasons:
                details["new"] += 1
            details["dirty"] += 1
            await self._queue.mark_dirty(node.url, reasons)
            self._logger.debug("discovery_page_dirty", url=node.url, reasons=reasons)

    async def _reconcile_deletions(self) -> int:
        """Mark pages absent from a completed scan as deleted."""
        missing = await self._store.urls_missing_from_staging()
        deleted = 0
        observed_at = utc_now()
        for url in missing:
            if await self._versions.mark_deleted(url, observed_at) is not None:
                deleted += 1
        if deleted:
            self._logger.info("discovery_pages_deleted", count=deleted)
        return deleted
