"""Upstream query-cost estimation.

The upstream charges rate-limit points per field and per connection edge.
Discovery stores an estimate per staged page so the content stage can size
its batches against the remaining budget.
"""

from __future__ import annotations

from wikimirror.models.page import PageNode

# Points charged by the upstream per field / per connection edge.
RATE_LIMIT_COSTS: dict[str, int] = {
    "page": 1,
    "attributions": 10,
    "alternate_titles": 1,
    "children": 10,
    "parent": 1,
    "source": 1,
    "text_content": 1,
    "revision_edge": 5,
    "vote_edge": 3,
}

# Padding added to reported counters, which lag the real history.
MIN_FACTOR = 5


def estimate_page_cost(
    node: PageNode,
    revision_limit: int,
    vote_limit: int,
    include_content: bool = True,
    include_children: bool = False,
) -> int:
    """Estimate the points a full content fetch of *node* will cost."""
    costs = RATE_LIMIT_COSTS
    cost = costs["page"] + costs["attributions"] + costs["alternate_titles"] + costs["parent"]
    if include_children:
        cost += costs["children"]
    if include_content:
        cost += costs["source"] + costs["text_content"]

    revisions = min(max(0, node.revision_count or 0) + MIN_FACTOR, revision_limit)
    votes = min(max(0, node.vote_count or 0) + MIN_FACTOR, vote_limit)
    cost += revisions * costs["revision_edge"]
    cost += votes * costs["vote_edge"]
    return cost


def estimate_batch_cost(costs: list[int | None]) -> int:
    return sum(c or 0 for c in costs)
