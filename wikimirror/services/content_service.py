"""Phase B: full content fetch for dirty pages.

For every page waiting in ``NEEDS_B`` the stage claims the page, fetches
its detail (content, attributions, first vote and revision windows),
applies the snapshot to the temporal version history, appends the vote and
revision observations, and then decides whether the page needs the deeper
reconciliation pass.

Every write is idempotent (attributions are replaced per version, votes
and revisions are insert-or-ignore), so a page that crashed mid-way and is
processed again ends in the same state with no duplicate rows.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from wikimirror.interfaces.wiki_source_provider import IWikiSourceProvider
from wikimirror.models.dirty import DirtyReason, DirtyState
from wikimirror.models.page import PageDetail, PageSnapshot, PageVersion, utc_now
from wikimirror.models.sync import PhaseReport, SyncPhase
from wikimirror.providers.mirror.sqlite_dirty_queue import SQLiteDirtyQueue
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.services.integrity_service import find_defects
from wikimirror.services.rate_limit_safe_fetcher import QualityThresholds, RateLimitSafeFetcher
from wikimirror.services.versioning import VersionManager
from wikimirror.services.vote_reconciliation import live_vote_count
from wikimirror.utils.concurrency import bounded_map
from wikimirror.utils.errors import WikiMirrorError
from wikimirror.utils.logging import get_logger

ProgressCallback = Callable[[int, int | None], Awaitable[None]]


def counts_mismatch(actual: int, expected: int | None, thresholds: QualityThresholds) -> bool:
    """True when *actual* is outside both the absolute and relative tolerance of *expected*."""
    if expected is None or expected <= 0:
        return False
    difference = abs(expected - actual)
    return difference > thresholds.absolute and difference / expected > thresholds.relative


class ContentService:
    """Runs the content stage (Phase B).

    Parameters
    ----------
    provider:
        Upstream wiki source.
    fetcher:
        Shared rate-limit-safe fetcher.
    store, queue:
        Mirror store and dirty queue.
    max_first:
        Size of the first vote/revision window requested with the detail.
    concurrency_limit:
        Pages processed at once.
    boundary_tolerance:
        Seconds of boundary skew tolerated before a page is flagged for
        reconciliation.
    """

    def __init__(
        self,
        provider: IWikiSourceProvider,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
        max_first: int = 100,
        concurrency_limit: int = 1,
        boundary_tolerance: float = 2.0,
    ) -> None:
        self._provider = provider
        self._fetcher = fetcher
        self._store = store
        self._queue = queue
        self._max_first = max_first
        self._concurrency_limit = concurrency_limit
        self._boundary_tolerance = boundary_tolerance
        self._versions = VersionManager(store)
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, limit: int | None = None, on_progress: ProgressCallback | None = None) -> PhaseReport:
        """Process every page currently waiting for a content fetch.

        Pages released after a failure during this run are left for the
        next run rather than retried in a loop.
        """
        await self._queue.release_stale_claims()
        waiting = await self._queue.list_by_state(DirtyState.NEEDS_B, limit=limit)
        urls = [page.url for page in waiting]
        total = len(urls)
        self._logger.info("content_stage_started", pages=total)

        done = 0
        details = {"deleted": 0, "needs_c": 0, "new_versions": 0}

        async def _worker(url: str) -> str | None:
            nonlocal done
            outcome = await self.process_page(url)
            done += 1
            if on_progress is not None:
                await on_progress(done, total)
            return outcome

        results, failures = await bounded_map(
            _worker,
            urls,
            limit=self._concurrency_limit,
            logger=self._logger,
            error_event="content_page_crashed",
        )
        failed = len(failures) + sum(1 for r in results if r == "failed")
        skipped = sum(1 for r in results if r is None)
        for outcome in results:
            if outcome in details:
                details[outcome] += 1

        report = PhaseReport(
            phase=SyncPhase.CONTENT,
            processed=total,
            succeeded=total - failed - skipped,
            failed=failed,
            skipped=skipped,
            details=details,
        )
        self._logger.info(
            "content_stage_complete",
            processed=report.processed,
            succeeded=report.succeeded,
            failed=report.failed,
            **details,
        )
        return report

    async def process_page(self, url: str) -> str | None:
        """Claim and process one page.

        Returns ``None`` when the page was not waiting for a content fetch
        (already done: a no-op), ``"failed"`` when it was released, or a
        short outcome tag otherwise.
        """
        claimed = await self._queue.claim_url(url, "B")
        if claimed is None:
            self._logger.debug("content_page_not_claimable", url=url)
            return None

        try:
            return await self._process_claimed(url)
        except WikiMirrorError as exc:
            self._logger.warning(
                "content_page_failed",
                url=url,
                attempt=claimed.attempts,
                reason=type(exc).__name__,
                error=str(exc),
            )
            await self._queue.release(url, str(exc))
            return "failed"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _process_claimed(self, url: str) -> str:
        detail = await self._fetcher.call(
            lambda: self._provider.fetch_page_detail(
                url, votes_first=self._max_first, revisions_first=self._max_first
            ),
            label=url,
        )
        observed_at = utc_now()

        if detail is None:
            deleted = await self._versions.mark_deleted(url, observed_at)
            await self._queue.complete_b(url)
            self._logger.info("content_page_missing_upstream", url=url, new_version=deleted is not None)
            return "deleted"

        snapshot = PageSnapshot.from_detail(detail)
        version, created = await self._versions.apply_snapshot(
            url, snapshot, observed_at, wikidot_id=detail.node.wikidot_id
        )
        await self._write_history(version, detail)

        reasons = await self._reconciliation_reasons(url, version, detail)
        await self._queue.complete_b(url, reasons)
        self._logger.info(
            "content_page_done",
            url=url,
            version_id=version.id,
            new_version=created,
            votes=len(detail.votes.votes),
            revisions=len(detail.revisions.revisions),
            needs_c=reasons,
        )
        if reasons:
            return "needs_c"
        return "new_versions" if created else "updated"

    async def _write_history(self, version: PageVersion, detail: PageDetail) -> None:
        users: dict[str, tuple[str, str | None, int | None]] = {}
        for a in detail.attributions:
            users[a.user_key] = (a.user_key, a.user_name, a.wikidot_id)
        for v in detail.votes.votes:
            users.setdefault(v.voter_key, (v.voter_key, v.voter_name, v.wikidot_id))
        for r in detail.revisions.revisions:
            if r.user_key:
                users.setdefault(r.user_key, (r.user_key, r.user_name, None))
        await self._store.upsert_users(list(users.values()))

        await self._store.replace_attributions(version.id, detail.attributions)
        await self._store.insert_votes(version.page_id, version.id, detail.votes.votes)
        await self._store.insert_revisions(version.page_id, version.id, detail.revisions.revisions)

    async def _reconciliation_reasons(self, url: str, version: PageVersion, detail: PageDetail) -> list[str]:
        reasons: list[str] = []
        votes, revisions = detail.votes, detail.revisions

        votes_truncated = votes.has_next_page and len(votes.votes) >= self._max_first
        revisions_truncated = revisions.has_next_page and len(revisions.revisions) >= self._max_first
        if votes_truncated:
            reasons.append(DirtyReason.INCOMPLETE_VOTES.value)
        if revisions_truncated:
            reasons.append(DirtyReason.INCOMPLETE_REVISIONS.value)

        if not votes_truncated and not revisions_truncated:
            thresholds = self._fetcher.thresholds
            stored_votes = await self._store.list_votes(version.page_id)
            stored_revisions = await self._store.count_revisions(version.page_id)
            if counts_mismatch(live_vote_count(stored_votes), detail.node.vote_count, thresholds) or counts_mismatch(
                stored_revisions, detail.node.revision_count, thresholds
            ):
                reasons.append(DirtyReason.COUNT_MISMATCH.value)

        if find_defects(await self._store.list_versions(url), self._boundary_tolerance):
            reasons.append(DirtyReason.BOUNDARY_IRREGULAR.value)
        return reasons
