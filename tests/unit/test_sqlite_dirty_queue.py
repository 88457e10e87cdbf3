"""Unit tests for SQLiteDirtyQueue.

Covers enqueueing with reason merging, claims, completion, release after
failure and the legal-transition table, against a temporary SQLite file.
"""

from __future__ import annotations

import pytest

from wikimirror.models.dirty import CLAIMABLE, LEGAL_TRANSITIONS, DirtyReason, DirtyState, is_legal
from wikimirror.providers.mirror.sqlite_dirty_queue import SQLiteDirtyQueue, format_phase_c_error
from wikimirror.utils.errors import InvalidTransitionError

URL = "http://scp-wiki-cn.wikidot.com/scp-cn-001"
OTHER = "http://scp-wiki-cn.wikidot.com/scp-cn-002"


# ======================================================================
# Transition table
# ======================================================================


class TestTransitionTable:
    def test_every_state_has_an_entry(self) -> None:
        assert set(LEGAL_TRANSITIONS) == set(DirtyState)

    def test_claims_are_legal(self) -> None:
        for waiting, claimed in CLAIMABLE.values():
            assert is_legal(waiting, claimed)

    def test_clean_cannot_jump_to_claimed(self) -> None:
        assert not is_legal(DirtyState.CLEAN, DirtyState.IN_B)
        assert not is_legal(DirtyState.CLEAN, DirtyState.IN_C)

    def test_claimed_page_cannot_be_reclaimed_for_other_phase(self) -> None:
        assert not is_legal(DirtyState.IN_B, DirtyState.IN_C)


# ======================================================================
# Enqueue
# ======================================================================


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_mark_dirty_creates_needs_b(self, queue: SQLiteDirtyQueue) -> None:
        page = await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])

        assert page.state is DirtyState.NEEDS_B
        assert page.reasons == [DirtyReason.NEW_PAGE.value]
        assert page.attempts == 0

    @pytest.mark.asyncio
    async def test_mark_dirty_merges_reasons(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.TITLE_CHANGED.value])
        page = await queue.mark_dirty(URL, [DirtyReason.TAGS_CHANGED.value, DirtyReason.TITLE_CHANGED.value])

        assert page.state is DirtyState.NEEDS_B
        assert sorted(page.reasons) == sorted([DirtyReason.TITLE_CHANGED.value, DirtyReason.TAGS_CHANGED.value])

    @pytest.mark.asyncio
    async def test_schedule_reconciliation_defers_to_pending_fetch(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        page = await queue.schedule_reconciliation(URL, [DirtyReason.MANUAL.value])

        assert page.state is DirtyState.NEEDS_B

    @pytest.mark.asyncio
    async def test_schedule_reconciliation_from_clean(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        await queue.complete_b(URL)

        page = await queue.schedule_reconciliation(URL, [DirtyReason.MANUAL.value])
        assert page.state is DirtyState.NEEDS_C


# ======================================================================
# Claims and completion
# ======================================================================


class TestClaims:
    @pytest.mark.asyncio
    async def test_claim_url_moves_to_in_b(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        page = await queue.claim_url(URL, "B")

        assert page is not None
        assert page.state is DirtyState.IN_B
        assert page.attempts == 1
        assert page.claimed_at is not None

    @pytest.mark.asyncio
    async def test_claim_url_ignores_other_phase(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        assert await queue.claim_url(URL, "C") is None

    @pytest.mark.asyncio
    async def test_claim_url_missing_page(self, queue: SQLiteDirtyQueue) -> None:
        assert await queue.claim_url(URL, "B") is None

    @pytest.mark.asyncio
    async def test_second_claim_returns_none(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        assert await queue.claim_url(URL, "B") is None

    @pytest.mark.asyncio
    async def test_claim_takes_oldest_waiting(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.mark_dirty(OTHER, [DirtyReason.NEW_PAGE.value])

        first = await queue.claim("B")
        second = await queue.claim("B")

        assert {first.url, second.url} == {URL, OTHER}
        assert await queue.claim("B") is None

    @pytest.mark.asyncio
    async def test_complete_b_clean(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        page = await queue.complete_b(URL)

        assert page.state is DirtyState.CLEAN
        assert page.reasons == []
        assert page.phase_b_done_at is not None

    @pytest.mark.asyncio
    async def test_complete_b_needs_c(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        page = await queue.complete_b(URL, [DirtyReason.INCOMPLETE_VOTES.value])

        assert page.state is DirtyState.NEEDS_C
        assert page.reasons == [DirtyReason.INCOMPLETE_VOTES.value]

    @pytest.mark.asyncio
    async def test_complete_c(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        await queue.complete_b(URL, [DirtyReason.INCOMPLETE_VOTES.value])
        await queue.claim_url(URL, "C")
        page = await queue.complete_c(URL)

        assert page.state is DirtyState.CLEAN
        assert page.phase_c_done_at is not None

    @pytest.mark.asyncio
    async def test_complete_without_claim_is_illegal(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        with pytest.raises(InvalidTransitionError):
            await queue.complete_b(URL)

    @pytest.mark.asyncio
    async def test_complete_c_from_in_b_is_illegal(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        with pytest.raises(InvalidTransitionError):
            await queue.complete_c(URL)


# ======================================================================
# Release
# ======================================================================


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_returns_to_waiting(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        page = await queue.release(URL, "boom")

        assert page.state is DirtyState.NEEDS_B
        assert page.last_error == "boom"
        assert page.attempts == 1

    @pytest.mark.asyncio
    async def test_release_truncates_error_and_adds_reason(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        await queue.complete_b(URL, [DirtyReason.INCOMPLETE_VOTES.value])
        await queue.claim_url(URL, "C")

        tag = format_phase_c_error()
        page = await queue.release(URL, "x" * 2000, reason=tag)

        assert page.state is DirtyState.NEEDS_C
        assert len(page.last_error) == 500
        assert tag in page.reasons
        assert DirtyReason.INCOMPLETE_VOTES.value in page.reasons

    @pytest.mark.asyncio
    async def test_release_unclaimed_is_illegal(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        with pytest.raises(InvalidTransitionError):
            await queue.release(URL, "boom")

    @pytest.mark.asyncio
    async def test_release_stale_claims(self, queue: SQLiteDirtyQueue) -> None:
        await queue.mark_dirty(URL, [DirtyReason.NEW_PAGE.value])
        await queue.mark_dirty(OTHER, [DirtyReason.NEW_PAGE.value])
        await queue.claim_url(URL, "B")
        await queue.claim_url(OTHER, "B")
        await queue.complete_b(OTHER, [DirtyReason.INCOMPLETE_VOTES.value])
        await queue.claim_url(OTHER, "C")

        assert await queue.release_stale_claims() == 2
        counts = await queue.counts_by_state()
        assert counts[DirtyState.NEEDS_B.value] == 1
        assert counts[DirtyState.NEEDS_C.value] == 1
        assert counts[DirtyState.IN_B.value] == 0
        assert await queue.pending_count("B") == 1


class TestFormatPhaseCError:
    def test_tag_prefix(self) -> None:
        assert format_phase_c_error().startswith("phase_c_error:")
