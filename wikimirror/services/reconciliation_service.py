"""Phase C: deep reconciliation from full vote and revision history.

Pages reach ``NEEDS_C`` when the content stage saw truncated history
windows, counts that disagree with the upstream counters, or irregular
version boundaries.  This stage paginates the complete vote history (and,
independently, the revision history) for each such page.

Vote pagination runs inside :meth:`RateLimitSafeFetcher.fetch`, so a
throttled or partial history never replaces what is already stored.  After
every vote window a vote-progress checkpoint records the page's cursor and
the votes accumulated so far; an interrupted run resumes mid-page.

Boundary defects are only reported here.  Correcting them is the job of
the out-of-band boundary repair.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from wikimirror.interfaces.checkpoint_provider import ICheckpointProvider
from wikimirror.interfaces.wiki_source_provider import IWikiSourceProvider
from wikimirror.models.checkpoint import (
    CheckpointKind,
    PartialVoteProgress,
    VoteProgressCheckpoint,
)
from wikimirror.models.dirty import DirtyPage, DirtyReason, DirtyState
from wikimirror.models.fetch import FetchOutcome, FetchReason
from wikimirror.models.page import PageVersion, VoteRecord, utc_now
from wikimirror.models.sync import PhaseReport, SyncPhase
from wikimirror.providers.mirror.sqlite_dirty_queue import SQLiteDirtyQueue, format_phase_c_error
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.services.content_service import counts_mismatch
from wikimirror.services.integrity_service import find_defects
from wikimirror.services.rate_limit_safe_fetcher import RateLimitSafeFetcher
from wikimirror.services.vote_reconciliation import live_vote_count
from wikimirror.utils.errors import PipelineError, WikiMirrorError
from wikimirror.utils.logging import get_logger

ProgressCallback = Callable[[int, int | None], Awaitable[None]]


class ReconciliationService:
    """Runs the reconciliation stage (Phase C).

    Parameters
    ----------
    provider:
        Upstream wiki source.
    fetcher:
        Shared rate-limit-safe fetcher.
    store, queue:
        Mirror store and dirty queue.
    checkpoints:
        Checkpoint store for the ``vote_progress`` kind.
    max_first:
        Vote/revision window size.
    boundary_tolerance:
        Seconds of boundary skew tolerated before a defect is reported.
    """

    def __init__(
        self,
        provider: IWikiSourceProvider,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
        checkpoints: ICheckpointProvider,
        max_first: int = 100,
        boundary_tolerance: float = 2.0,
    ) -> None:
        self._provider = provider
        self._fetcher = fetcher
        self._store = store
        self._queue = queue
        self._checkpoints = checkpoints
        self._max_first = max_first
        self._boundary_tolerance = boundary_tolerance
        self._progress = VoteProgressCheckpoint()
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, limit: int | None = None, on_progress: ProgressCallback | None = None) -> PhaseReport:
        """Reconcile every page currently waiting in ``NEEDS_C``."""
        await self._queue.release_stale_claims()
        waiting = await self._queue.list_by_state(DirtyState.NEEDS_C, limit=limit)
        self._progress = self._load_progress(waiting)

        total = len(waiting)
        self._logger.info("reconciliation_stage_started", pages=total)

        succeeded = failed = skipped = 0
        details = {"votes_added": 0, "revisions_added": 0, "protected": 0, "boundary_defects": 0}
        for index, page in enumerate(waiting, start=1):
            outcome = await self.process_page(page.url, details)
            if outcome is None:
                skipped += 1
            elif outcome:
                succeeded += 1
            else:
                failed += 1
            if on_progress is not None:
                await on_progress(index, total)

        if failed == 0:
            # Pass finished: the next pass starts from a clean slate.
            self._progress = VoteProgressCheckpoint()
            self._checkpoints.save(self._progress)

        report = PhaseReport(
            phase=SyncPhase.RECONCILIATION,
            processed=total,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            details=details,
        )
        self._logger.info(
            "reconciliation_stage_complete",
            processed=total,
            succeeded=succeeded,
            failed=failed,
            **details,
        )
        return report

    async def process_page(self, url: str, details: dict[str, int] | None = None) -> bool | None:
        """Claim and reconcile one page.

        Returns ``None`` if the page was not waiting (no-op), ``True`` on
        success and ``False`` when it was released: after an error, or
        because data protection kept its stored votes without a full fetch.
        """
        details = details if details is not None else {}
        claimed = await self._queue.claim_url(url, "C")
        if claimed is None:
            return None

        try:
            protected = await self._reconcile(url, details)
        except WikiMirrorError as exc:
            self._logger.warning(
                "reconciliation_page_failed",
                url=url,
                attempt=claimed.attempts,
                reason=type(exc).__name__,
                error=str(exc),
            )
            await self._queue.release(url, str(exc), reason=format_phase_c_error())
            return False

        if protected is not None:
            self._logger.warning(
                "reconciliation_page_deferred",
                url=url,
                attempt=claimed.attempts,
                reason=protected.value,
            )
            await self._queue.release(
                url, f"vote history kept: {protected.value}", reason=DirtyReason.DATA_PROTECTED.value
            )
            return False

        await self._queue.complete_c(url)
        self._forget(url)
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _load_progress(self, waiting: list[DirtyPage]) -> VoteProgressCheckpoint:
        """Load the vote-progress checkpoint, dropping entries it no longer covers.

        A page whose content stage finished after the checkpoint was last
        saved was re-queued with fresh counters; its old progress is stale.
        """
        loaded = self._checkpoints.load(CheckpointKind.VOTE_PROGRESS)
        if loaded is None:
            return VoteProgressCheckpoint()

        stale = {
            page.url
            for page in waiting
            if page.phase_b_done_at is not None and page.phase_b_done_at > loaded.saved_at
        }
        if stale:
            loaded = loaded.model_copy(
                update={
                    "completed_pages": loaded.completed_pages - stale,
                    "partial": {k: v for k, v in loaded.partial.items() if k not in stale},
                }
            )
        self._logger.info(
            "reconciliation_resumed",
            completed=len(loaded.completed_pages),
            partial=len(loaded.partial),
            discarded=len(stale),
        )
        return loaded

    async def _reconcile(self, url: str, details: dict[str, int]) -> FetchReason | None:
        """Reconcile one claimed page; return the protection reason if votes were kept."""
        current = await self._store.get_current_version(url)
        if current is None:
            self._logger.info("reconciliation_no_version", url=url)
            return None

        protected: FetchReason | None = None
        if url not in self._progress.completed_pages:
            protected = await self._reconcile_votes(url, current, details)
            if protected is None:
                self._mark_completed(url)
        await self._reconcile_revisions(url, current, details)

        thresholds = self._fetcher.thresholds
        live = live_vote_count(await self._store.list_votes(current.page_id))
        if counts_mismatch(live, current.snapshot.vote_count, thresholds):
            self._logger.warning(
                "reconciliation_vote_count_mismatch",
                url=url,
                stored_live=live,
                upstream=current.snapshot.vote_count,
                reason=DirtyReason.COUNT_MISMATCH.value,
            )

        defects = find_defects(await self._store.list_versions(url), self._boundary_tolerance)
        if defects:
            details["boundary_defects"] = details.get("boundary_defects", 0) + len(defects)
            self._logger.warning(
                "reconciliation_boundary_irregular",
                url=url,
                defects=[d.kind.value for d in defects],
                reason=DirtyReason.BOUNDARY_IRREGULAR.value,
            )
        return protected

    async def _reconcile_votes(
        self, url: str, current: PageVersion, details: dict[str, int]
    ) -> FetchReason | None:
        stored = await self._store.list_votes(current.page_id)
        existing = live_vote_count(stored)
        expected = current.snapshot.vote_count or 0

        result = await self._fetcher.fetch(
            lambda: self._paginate_votes(url),
            expected_size=expected,
            existing_size=existing,
            key=url,
            size_of=live_vote_count,
        )

        if result.outcome is FetchOutcome.FAILED:
            raise PipelineError(f"vote history for {url}: {result.reason.value}")
        if result.outcome is FetchOutcome.USE_EXISTING:
            self._logger.info("reconciliation_votes_kept", url=url, reason=result.reason.value)
            if result.reason is FetchReason.UNCHANGED:
                return None
            details["protected"] = details.get("protected", 0) + 1
            return result.reason

        added = await self._store.insert_votes(current.page_id, current.id, result.data)
        await self._store.upsert_users(
            list({v.voter_key: (v.voter_key, v.voter_name, v.wikidot_id) for v in result.data}.values())
        )
        details["votes_added"] = details.get("votes_added", 0) + added
        self._logger.info(
            "reconciliation_votes_written",
            url=url,
            fetched=len(result.data),
            added=added,
            complete=result.is_complete,
            reason=result.reason.value,
        )
        return None

    async def _paginate_votes(self, url: str) -> list[VoteRecord]:
        progress = self._progress.partial.get(url) or PartialVoteProgress()
        cursor = progress.cursor
        votes = list(progress.votes)
        while True:
            window = await self._provider.fetch_votes(url, self._max_first, cursor)
            votes.extend(window.votes)
            if not window.has_next_page or not window.end_cursor:
                return votes
            cursor = window.end_cursor
            self._save_partial(url, cursor, votes)

    async def _reconcile_revisions(self, url: str, current: PageVersion, details: dict[str, int]) -> None:
        expected = current.snapshot.revision_count or 0
        stored = await self._store.count_revisions(current.page_id)
        if stored >= expected:
            return

        cursor: str | None = None
        added = 0
        while True:
            window = await self._fetcher.call(
                lambda after=cursor: self._provider.fetch_revisions(url, self._max_first, after),
                label=f"{url}#revisions",
            )
            added += await self._store.insert_revisions(current.page_id, current.id, window.revisions)
            if not window.has_next_page or not window.end_cursor:
                break
            cursor = window.end_cursor
        details["revisions_added"] = details.get("revisions_added", 0) + added
        self._logger.info("reconciliation_revisions_written", url=url, added=added, expected=expected)

    def _save_partial(self, url: str, cursor: str, votes: list[VoteRecord]) -> None:
        partial = dict(self._progress.partial)
        partial[url] = PartialVoteProgress(cursor=cursor, votes=votes)
        self._progress = self._progress.model_copy(update={"partial": partial, "saved_at": utc_now()})
        self._checkpoints.save(self._progress)

    def _mark_completed(self, url: str) -> None:
        partial = {k: v for k, v in self._progress.partial.items() if k != url}
        self._progress = self._progress.model_copy(
            update={
                "completed_pages": self._progress.completed_pages | {url},
                "partial": partial,
                "saved_at": utc_now(),
            }
        )
        self._checkpoints.save(self._progress)

    def _forget(self, url: str) -> None:
        if url not in self._progress.completed_pages and url not in self._progress.partial:
            return
        self._progress = self._progress.model_copy(
            update={
                "completed_pages": self._progress.completed_pages - {url},
                "partial": {k: v for k, v in self._progress.partial.items() if k != url},
                "saved_at": utc_now(),
            }
        )
        self._checkpoints.save(self._progress)
