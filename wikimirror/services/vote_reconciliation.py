"""Vote reconciliation over append-only vote history.

A voter may vote on the same page many times; only the chronologically
last observation per (voter, page) is live, and a live direction of 0 means
the vote was retracted.  The reconciled rating is the signed sum of live
directions.  When two observations share a timestamp the larger
``(timestamp, direction)`` pair wins, so the result never depends on the
order the history was read in.
"""

from __future__ import annotations

from typing import Hashable, Iterable, TypeVar

from wikimirror.models.page import VoteRecord

_K = TypeVar("_K", bound=Hashable)


def _newer(candidate: VoteRecord, current: VoteRecord) -> bool:
    return (candidate.timestamp, candidate.direction) > (current.timestamp, current.direction)


def latest_votes(votes: Iterable[VoteRecord]) -> dict[str, VoteRecord]:
    """Live vote per voter for a single page's history."""
    latest: dict[str, VoteRecord] = {}
    for vote in votes:
        current = latest.get(vote.voter_key)
        if current is None or _newer(vote, current):
            latest[vote.voter_key] = vote
    return latest


def latest_votes_by_page(rows: Iterable[tuple[_K, VoteRecord]]) -> dict[tuple[_K, str], VoteRecord]:
    """Live vote per ``(page, voter)`` across many pages' histories."""
    latest: dict[tuple[_K, str], VoteRecord] = {}
    for page_key, vote in rows:
        key = (page_key, vote.voter_key)
        current = latest.get(key)
        if current is None or _newer(vote, current):
            latest[key] = vote
    return latest


def vote_counts(votes: Iterable[VoteRecord]) -> tuple[int, int]:
    """``(upvotes, downvotes)`` among live votes."""
    up = down = 0
    for vote in latest_votes(votes).values():
        if vote.direction > 0:
            up += 1
        elif vote.direction < 0:
            down += 1
    return up, down


def reconciled_rating(votes: Iterable[VoteRecord]) -> int:
    """Signed sum of live vote directions."""
    return sum(v.direction for v in latest_votes(votes).values())


def live_vote_count(votes: Iterable[VoteRecord]) -> int:
    """Number of voters whose live vote is non-zero."""
    return sum(1 for v in latest_votes(votes).values() if v.direction != 0)
