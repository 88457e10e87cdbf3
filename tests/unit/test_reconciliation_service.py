"""Unit tests for ReconciliationService (Phase C).

Pages are seeded through the content stage so they reach ``needsC`` with
real stored votes and revisions; the upstream provider is mocked.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from wikimirror.models.checkpoint import CheckpointKind, PartialVoteProgress, VoteProgressCheckpoint
from wikimirror.models.dirty import DirtyReason, DirtyState
from wikimirror.models.page import PageDetail, RevisionWindow, VoteRecord, VoteWindow
from wikimirror.providers.checkpoint.file_checkpoint_provider import FileCheckpointProvider
from wikimirror.providers.mirror.sqlite_dirty_queue import SQLiteDirtyQueue
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.services.content_service import ContentService
from wikimirror.services.rate_limit_safe_fetcher import RateLimitSafeFetcher
from wikimirror.services.reconciliation_service import ReconciliationService
from wikimirror.utils.errors import RateLimitError, UpstreamQueryError

from conftest import make_detail, make_node, make_revision, make_vote


def _votes(count: int, start: int = 1) -> list[VoteRecord]:
    return [make_vote(str(i), 1, minutes=i) for i in range(start, start + count)]


def _truncated(slug: str, vote_count: int) -> PageDetail:
    """Detail whose vote window is full and has more behind it."""
    node = make_node(slug, vote_count=vote_count, rating=vote_count)
    return make_detail(node, _votes(5), [make_revision(1), make_revision(2, minutes=5)], votes_have_next=True)


async def _seed(
    provider: AsyncMock,
    fetcher: RateLimitSafeFetcher,
    store: SQLiteMirrorStore,
    queue: SQLiteDirtyQueue,
    detail: PageDetail,
) -> str:
    """Run *detail* through the content stage and return its URL, now waiting in needsC."""
    url = detail.node.url
    provider.fetch_page_detail.return_value = detail
    await queue.mark_dirty(url, [DirtyReason.NEW_PAGE.value])
    await ContentService(provider=provider, fetcher=fetcher, store=store, queue=queue, max_first=5).process_page(url)
    assert (await queue.get(url)).state is DirtyState.NEEDS_C
    return url


@pytest.fixture
def service(
    mock_provider: AsyncMock,
    fetcher: RateLimitSafeFetcher,
    store: SQLiteMirrorStore,
    queue: SQLiteDirtyQueue,
    checkpoints: FileCheckpointProvider,
) -> ReconciliationService:
    return ReconciliationService(
        provider=mock_provider,
        fetcher=fetcher,
        store=store,
        queue=queue,
        checkpoints=checkpoints,
        max_first=5,
    )


# ======================================================================
# Vote pagination
# ======================================================================


class TestVotePagination:
    @pytest.mark.asyncio
    async def test_full_history_is_written_and_page_cleaned(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
        checkpoints: FileCheckpointProvider,
    ) -> None:
        url = await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-001", 12))
        mock_provider.fetch_votes.side_effect = [
            VoteWindow(votes=_votes(5), has_next_page=True, end_cursor="v1"),
            VoteWindow(votes=_votes(5, start=6), has_next_page=True, end_cursor="v2"),
            VoteWindow(votes=_votes(2, start=11), has_next_page=False),
        ]

        report = await service.run()

        assert report.succeeded == 1
        assert report.details["votes_added"] == 7
        assert [call.args[2] for call in mock_provider.fetch_votes.await_args_list] == [None, "v1", "v2"]
        assert (await store.counts())["votes"] == 12
        assert (await queue.get(url)).state is DirtyState.CLEAN
        progress = checkpoints.load(CheckpointKind.VOTE_PROGRESS)
        assert progress.completed_pages == set()
        assert progress.partial == {}

    @pytest.mark.asyncio
    async def test_resumes_mid_page_from_saved_cursor(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
        checkpoints: FileCheckpointProvider,
    ) -> None:
        url = await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-001", 12))
        checkpoints.save(VoteProgressCheckpoint(partial={url: PartialVoteProgress(cursor="v2", votes=_votes(10))}))
        mock_provider.fetch_votes.side_effect = [VoteWindow(votes=_votes(2, start=11), has_next_page=False)]

        report = await service.run()

        assert report.succeeded == 1
        mock_provider.fetch_votes.assert_awaited_once_with(url, 5, "v2")
        assert report.details["votes_added"] == 7
        assert (await store.counts())["votes"] == 12

    @pytest.mark.asyncio
    async def test_page_completed_in_checkpoint_skips_votes(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
        checkpoints: FileCheckpointProvider,
    ) -> None:
        url = await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-001", 12))
        checkpoints.save(VoteProgressCheckpoint(completed_pages={url}))

        report = await service.run()

        assert report.succeeded == 1
        mock_provider.fetch_votes.assert_not_awaited()
        assert (await queue.get(url)).state is DirtyState.CLEAN


# ======================================================================
# Data protection and failures
# ======================================================================


class TestProtectionAndFailure:
    @pytest.mark.asyncio
    async def test_rate_limited_history_keeps_stored_votes(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
        checkpoints: FileCheckpointProvider,
    ) -> None:
        url = await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-001", 12))
        mock_provider.fetch_votes.side_effect = RateLimitError("slow down", retry_after=1.0)

        report = await service.run()

        assert report.failed == 1
        assert report.details["protected"] == 1
        assert mock_provider.fetch_votes.await_count == 3
        assert (await store.counts())["votes"] == 5
        page = await queue.get(url)
        assert page.state is DirtyState.NEEDS_C
        assert DirtyReason.DATA_PROTECTED.value in page.reasons
        assert "rate_limit_protection" in page.last_error
        progress = checkpoints.load(CheckpointKind.VOTE_PROGRESS)
        assert progress is None or url not in progress.completed_pages

    @pytest.mark.asyncio
    async def test_protected_page_is_fetched_again_next_run(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
    ) -> None:
        url = await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-001", 12))
        mock_provider.fetch_votes.side_effect = RateLimitError("slow down", retry_after=1.0)
        await service.run()

        mock_provider.fetch_votes.side_effect = [VoteWindow(votes=_votes(12))]
        report = await service.run()

        assert report.succeeded == 1
        assert (await store.counts())["votes"] == 12
        assert (await queue.get(url)).state is DirtyState.CLEAN

    @pytest.mark.asyncio
    async def test_failure_without_stored_votes_releases_with_error_tag(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
    ) -> None:
        node = make_node("scp-cn-002", vote_count=12, rating=12)
        detail = make_detail(node, [], [make_revision(1), make_revision(2)])
        url = await _seed(mock_provider, fetcher, store, queue, detail)
        mock_provider.fetch_votes.side_effect = UpstreamQueryError("bad cursor")

        report = await service.run()

        assert report.failed == 1
        page = await queue.get(url)
        assert page.state is DirtyState.NEEDS_C
        assert any(reason.startswith("phase_c_error:") for reason in page.reasons)
        assert "fetch_failed" in page.last_error
        assert (await store.counts())["votes"] == 0

    @pytest.mark.asyncio
    async def test_page_not_waiting_is_skipped(self, service: ReconciliationService) -> None:
        assert await service.process_page("http://scp-wiki-cn.wikidot.com/unknown") is None


# ======================================================================
# Revision back-fill
# ======================================================================


class TestRevisionBackfill:
    @pytest.mark.asyncio
    async def test_missing_revisions_are_paginated_in(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
    ) -> None:
        node = make_node("scp-cn-003", vote_count=3, revision_count=7)
        revisions = [make_revision(i, minutes=i) for i in range(1, 6)]
        detail = make_detail(node, _votes(3), revisions, revisions_have_next=True)
        url = await _seed(mock_provider, fetcher, store, queue, detail)
        mock_provider.fetch_revisions.side_effect = [
            RevisionWindow(revisions=revisions, has_next_page=True, end_cursor="r2"),
            RevisionWindow(revisions=[make_revision(6, minutes=6), make_revision(7, minutes=7)]),
        ]

        report = await service.run()

        assert report.succeeded == 1
        assert report.details["revisions_added"] == 2
        assert mock_provider.fetch_revisions.await_args_list[1].args == (url, 5, "r2")
        assert (await store.counts())["revisions"] == 7
        # Stored votes already match the counter.
        mock_provider.fetch_votes.assert_not_awaited()


# ======================================================================
# Checkpoint scope across passes
# ======================================================================


class TestCheckpointScope:
    @pytest.mark.asyncio
    async def test_requeued_page_is_fetched_after_a_failed_pass(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
    ) -> None:
        first = await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-001", 12))
        second = await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-002", 12))
        upstream = {first: 12}

        def _fetch_votes(url: str, first_n: int, after: str | None = None) -> VoteWindow:
            if url == second:
                raise UpstreamQueryError("broken window")
            return VoteWindow(votes=_votes(upstream[url]))

        mock_provider.fetch_votes.side_effect = _fetch_votes
        report = await service.run()
        assert (report.succeeded, report.failed) == (1, 1)

        # New upstream votes on the first page send it back through both stages.
        upstream[first] = 40
        await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-001", 40))
        mock_provider.fetch_votes.reset_mock()

        await service.run()

        assert first in [call.args[0] for call in mock_provider.fetch_votes.await_args_list]
        current = await store.get_current_version(first)
        assert len(await store.list_votes(current.page_id)) == 40

    @pytest.mark.asyncio
    async def test_progress_older_than_content_fetch_is_discarded(
        self,
        service: ReconciliationService,
        mock_provider: AsyncMock,
        fetcher: RateLimitSafeFetcher,
        store: SQLiteMirrorStore,
        queue: SQLiteDirtyQueue,
        checkpoints: FileCheckpointProvider,
    ) -> None:
        url = "http://scp-wiki-cn.wikidot.com/scp-cn-001"
        checkpoints.save(
            VoteProgressCheckpoint(
                completed_pages={url},
                partial={url: PartialVoteProgress(cursor="stale", votes=_votes(3))},
            )
        )
        await _seed(mock_provider, fetcher, store, queue, _truncated("scp-cn-001", 12))
        mock_provider.fetch_votes.side_effect = [VoteWindow(votes=_votes(12))]

        report = await service.run()

        assert report.succeeded == 1
        mock_provider.fetch_votes.assert_awaited_once_with(url, 5, None)
        assert (await store.counts())["votes"] == 12
