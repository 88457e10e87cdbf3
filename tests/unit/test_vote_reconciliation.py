"""Unit tests for live-vote reconciliation over append-only vote history."""

from __future__ import annotations

import itertools

from wikimirror.services.vote_reconciliation import (
    latest_votes,
    latest_votes_by_page,
    live_vote_count,
    reconciled_rating,
    vote_counts,
)

from conftest import make_vote


class TestReconciledRating:
    def test_retraction_after_flip_is_zero(self) -> None:
        history = [make_vote("1", 1, 1), make_vote("1", -1, 2), make_vote("1", 0, 3)]
        assert reconciled_rating(history) == 0

    def test_revote_after_retraction_counts(self) -> None:
        history = [make_vote("1", 1, 1), make_vote("1", 0, 2), make_vote("1", 1, 3)]
        assert reconciled_rating(history) == 1

    def test_independent_voters_sum(self) -> None:
        history = [make_vote("1", 1), make_vote("2", 1), make_vote("3", -1)]
        assert reconciled_rating(history) == 1

    def test_result_is_order_independent(self) -> None:
        history = [
            make_vote("1", 1, 1),
            make_vote("1", -1, 5),
            make_vote("2", -1, 2),
            make_vote("2", 1, 3),
            make_vote("3", 0, 4),
        ]
        results = {reconciled_rating(list(p)) for p in itertools.permutations(history)}
        assert results == {0}

    def test_same_timestamp_tie_is_deterministic(self) -> None:
        first = [make_vote("1", -1, 1), make_vote("1", 1, 1)]
        assert reconciled_rating(first) == reconciled_rating(list(reversed(first))) == 1

    def test_empty_history(self) -> None:
        assert reconciled_rating([]) == 0


class TestCounts:
    def test_vote_counts_use_live_votes_only(self) -> None:
        history = [
            make_vote("1", 1, 1),
            make_vote("1", -1, 2),
            make_vote("2", 1, 1),
            make_vote("3", 1, 1),
            make_vote("3", 0, 2),
        ]
        assert vote_counts(history) == (1, 1)
        assert live_vote_count(history) == 2

    def test_latest_votes_keeps_one_per_voter(self) -> None:
        history = [make_vote("1", 1, 1), make_vote("1", -1, 2)]
        latest = latest_votes(history)
        assert list(latest) == ["1"]
        assert latest["1"].direction == -1

    def test_latest_votes_by_page_separates_pages(self) -> None:
        rows = [(1, make_vote("1", 1, 1)), (2, make_vote("1", -1, 1)), (1, make_vote("1", 0, 2))]
        latest = latest_votes_by_page(rows)
        assert latest[(1, "1")].direction == 0
        assert latest[(2, "1")].direction == -1
