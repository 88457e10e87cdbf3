"""Vote-based scoring math used by the aggregation engine.

Three per-page scores are derived from the live (upvotes, downvotes) pair:

1. **like_ratio** -- plain share of upvotes among up+down votes.
2. **wilson_lower_bound** -- lower bound of the Wilson score interval for
   the true upvote proportion.  Used for ranking pages with few votes
   fairly against pages with many.
3. **controversy_score** -- rewards near-even splits at high vote volume:
   ``min/max * ln(total + 1)``.

All functions are pure and return ``0.0`` for pages with no votes.
"""

import math

# 95% two-sided normal quantile.
WILSON_Z_95 = 1.96


def like_ratio(upvotes: int, downvotes: int) -> float:
    """Return ``upvotes / (upvotes + downvotes)``, or 0.0 when there are no votes."""
    total = upvotes + downvotes
    if total <= 0:
        return 0.0
    return upvotes / total


def wilson_lower_bound(upvotes: int, downvotes: int, z: float = WILSON_Z_95) -> float:
    """Compute the Wilson score interval lower bound.

    Args:
        upvotes: Number of live +1 votes.
        downvotes: Number of live -1 votes.
        z: Normal quantile for the desired confidence (1.96 for 95%).

    Returns:
        Lower bound in [0.0, 1.0]; 0.0 when there are no votes.
    """
    n = upvotes + downvotes
    if n <= 0:
        return 0.0

    p = upvotes / n
    z2 = z * z
    numerator = (p + z2 / (2 * n)) - (z / (2 * n)) * math.sqrt(4 * n * p * (1 - p) + z2)
    denominator = 1 + z2 / n
    return max(0.0, min(1.0, numerator / denominator))


def controversy_score(upvotes: int, downvotes: int) -> float:
    """Rare-vote ratio weighted by the log of total votes.

    Returns 0.0 when there are no votes or when one side is empty.
    """
    total = upvotes + downvotes
    high = max(upvotes, downvotes)
    if total <= 0 or high <= 0:
        return 0.0
    return (min(upvotes, downvotes) / high) * math.log(total + 1)
