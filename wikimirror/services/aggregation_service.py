"""Rating/ranking aggregation engine.

A batch job re-run after every sync pass.  It recomputes everything from
the current versions, their attributions and the full vote history, then
replaces the derived tables wholesale:

- **user stats** -- per user, the summed rating of every current,
  non-deleted, rated version they are attributed on, overall and per
  tag-derived category, with deterministic ranks; plus votes cast and
  received (live votes only).
- **page stats** -- live up/down votes, like ratio, Wilson lower bound and
  controversy per page.
- **series stats** -- occupancy of each 1000-number block of the
  ``scp-cn-NNN`` numbering scheme.

Nothing is merged incrementally, so two runs over unchanged data produce
identical output, and concurrent runs resolve last-writer-wins.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from wikimirror.models.page import utc_now
from wikimirror.models.stats import (
    AggregationReport,
    AnalysisWatermark,
    CategoryStats,
    PageStats,
    SeriesStats,
    UserStats,
)
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.services.vote_reconciliation import latest_votes_by_page
from wikimirror.utils.confidence import controversy_score, like_ratio, wilson_lower_bound
from wikimirror.utils.logging import get_logger

AGGREGATION_TASK = "rating_aggregation"

ORIGINAL_TAG = "原创"
FRAGMENT_TAG = "段落"
TRANSLATION_EXCLUDED_TAGS = frozenset({"作者", "掩盖页", "段落", "补充材料"})
SPECIAL_CATEGORIES = frozenset({"log-of-anomalous-items-cn", "short-stories"})
PENDING_DELETION_TAGS = frozenset({"待删除", "待刪除"})

# category -> tag required alongside 原创
ORIGINAL_CATEGORY_TAGS: dict[str, str] = {
    "scp": "scp",
    "goi": "goi格式",
    "story": "故事",
    "wanderers": "wanderers",
    "art": "艺术作品",
}

CATEGORIES: tuple[str, ...] = ("overall", "scp", "translation", "goi", "story", "wanderers", "art")

_SERIES_URL_RE = re.compile(r"/scp-cn-(\d{3,4})$")
_SERIES_ONE_SLOTS = 998
_SERIES_SLOTS = 1000


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------


def categories_for(tags: list[str], category: str | None) -> list[str]:
    """Tag-derived categories a page counts toward (``overall`` always included)."""
    tag_set = set(tags)
    result = ["overall"]
    if ORIGINAL_TAG in tag_set:
        for name, tag in ORIGINAL_CATEGORY_TAGS.items():
            if tag in tag_set:
                result.append(name)
    elif not (tag_set & TRANSLATION_EXCLUDED_TAGS) and category not in SPECIAL_CATEGORIES:
        result.append("translation")
    return result


def counts_toward_mean(url: str, tags: list[str]) -> bool:
    """Whether a page enters a user's mean rating."""
    if tags:
        return FRAGMENT_TAG not in tags
    path = url.rsplit("/", 1)[-1]
    return any(path.startswith(f"{c}:") for c in SPECIAL_CATEGORIES)


def rank_users(ratings: dict[str, int]) -> dict[str, int]:
    """Rank by rating descending, then user key ascending; non-positive ratings get no rank."""
    ordered = sorted((key for key, rating in ratings.items() if rating > 0), key=lambda k: (-ratings[k], k))
    return {key: position for position, key in enumerate(ordered, start=1)}


def series_number_of(url: str) -> int | None:
    """The ``scp-cn`` number in *url*, or ``None``."""
    match = _SERIES_URL_RE.search(url)
    return int(match.group(1)) if match else None


def series_of(number: int) -> int | None:
    if number < 2:
        return None
    if number < 1000:
        return 1
    return number // 1000 + 1


def compute_series_stats(numbers: dict[int, str]) -> list[SeriesStats]:
    """Occupancy per series from ``{number: url}`` of qualifying pages.

    Series 1 spans 2-999 (998 slots) and is always open.  Series *k* >= 2
    spans ``(k-1)*1000`` to ``(k-1)*1000 + 999`` and is open once its
    milestone page ``(k-1)*1000`` exists.
    """
    used: dict[int, set[int]] = defaultdict(set)
    for number in numbers:
        series = series_of(number)
        if series is not None:
            used[series].add(number)

    result: list[SeriesStats] = []
    for series in sorted(used):
        total = _SERIES_ONE_SLOTS if series == 1 else _SERIES_SLOTS
        milestone = (series - 1) * 1000
        milestone_url = numbers.get(milestone) if series > 1 else None
        result.append(
            SeriesStats(
                series_number=series,
                used_slots=len(used[series]),
                total_slots=total,
                usage_percentage=round(len(used[series]) / total * 100, 2),
                is_open=series == 1 or milestone_url is not None,
                milestone_url=milestone_url,
            )
        )
    return result


@dataclass
class _UserAccumulator:
    display_name: str | None = None
    pages: set[int] = field(default_factory=set)
    mean_sum: int = 0
    mean_pages: int = 0
    category_rating: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    category_pages: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    cast_up: int = 0
    cast_down: int = 0
    received_up: int = 0
    received_down: int = 0


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AggregationService:
    """Recomputes user, page and series statistics from the mirror."""

    def __init__(self, store: SQLiteMirrorStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    async def run(self) -> AggregationReport:
        started_at = utc_now()
        versions = await self._store.current_versions_for_stats()
        attributions = await self._store.current_attributions()
        votes = await self._store.iter_all_votes()
        names = await self._store.user_names()

        live_pages = {v["page_id"]: v for v in versions if not v["is_deleted"]}
        latest = latest_votes_by_page(votes)

        page_stats = self._page_stats(live_pages, latest)
        user_stats = self._user_stats(live_pages, attributions, latest, names)
        series_stats = self._series_stats(live_pages)

        await self._store.replace_page_stats(page_stats)
        await self._store.replace_user_stats(user_stats)
        await self._store.replace_series_stats(series_stats)

        finished_at = utc_now()
        await self._store.set_watermark(
            AnalysisWatermark(
                task=AGGREGATION_TASK,
                last_run_at=finished_at,
                cursor_ts=started_at,
                upserted=len(user_stats) + len(page_stats) + len(series_stats),
            )
        )
        self._logger.info(
            "aggregation_complete",
            users=len(user_stats),
            pages=len(page_stats),
            series=len(series_stats),
            elapsed_s=round((finished_at - started_at).total_seconds(), 3),
        )
        return AggregationReport(
            users=len(user_stats),
            pages=len(page_stats),
            series=len(series_stats),
            started_at=started_at,
            finished_at=finished_at,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _page_stats(
        live_pages: dict[int, dict[str, Any]],
        latest: dict[tuple[int, str], Any],
    ) -> list[tuple[int, PageStats]]:
        up: dict[int, int] = defaultdict(int)
        down: dict[int, int] = defaultdict(int)
        for (page_id, _), vote in latest.items():
            if vote.direction > 0:
                up[page_id] += 1
            elif vote.direction < 0:
                down[page_id] += 1

        stats: list[tuple[int, PageStats]] = []
        for page_id in sorted(live_pages):
            u, d = up[page_id], down[page_id]
            stats.append(
                (
                    page_id,
                    PageStats(
                        url=live_pages[page_id]["url"],
                        upvotes=u,
                        downvotes=d,
                        reconciled_rating=u - d,
                        like_ratio=like_ratio(u, d),
                        wilson95=wilson_lower_bound(u, d),
                        controversy=controversy_score(u, d),
                    ),
                )
            )
        return stats

    @staticmethod
    def _user_stats(
        live_pages: dict[int, dict[str, Any]],
        attributions: list[dict[str, Any]],
        latest: dict[tuple[int, str], Any],
        names: dict[str, str | None],
    ) -> list[UserStats]:
        users: dict[str, _UserAccumulator] = defaultdict(_UserAccumulator)
        page_authors: dict[int, set[str]] = defaultdict(set)

        for row in attributions:
            page_id = row["page_id"]
            page = live_pages.get(page_id)
            if page is None or page["rating"] is None:
                continue
            user_key = row["user_key"]
            acc = users[user_key]
            acc.display_name = row.get("display_name") or names.get(user_key)
            if page_id in acc.pages:
                # Several roles on one page still credit it once.
                continue
            acc.pages.add(page_id)
            page_authors[page_id].add(user_key)

            rating = page["rating"]
            for name in categories_for(page["tags"], page["category"]):
                acc.category_rating[name] += rating
                acc.category_pages[name] += 1
            if counts_toward_mean(page["url"], page["tags"]):
                acc.mean_sum += rating
                acc.mean_pages += 1

        for (page_id, voter_key), vote in latest.items():
            if vote.direction == 0:
                continue
            voter = users[voter_key]
            if vote.direction > 0:
                voter.cast_up += 1
            else:
                voter.cast_down += 1
            if page_id not in live_pages:
                continue
            for author in page_authors.get(page_id, ()):
                if vote.direction > 0:
                    users[author].received_up += 1
                else:
                    users[author].received_down += 1

        ranks = {
            name: rank_users({key: acc.category_rating.get(name, 0) for key, acc in users.items()})
            for name in CATEGORIES
        }

        result: list[UserStats] = []
        for user_key in sorted(users):
            acc = users[user_key]
            categories = {
                name: CategoryStats(
                    user_key=user_key,
                    category=name,
                    page_count=acc.category_pages[name],
                    rating=acc.category_rating[name],
                    rank=ranks[name].get(user_key),
                )
                for name in CATEGORIES
                if name in acc.category_pages
            }
            result.append(
                UserStats(
                    user_key=user_key,
                    display_name=acc.display_name or names.get(user_key),
                    overall_rating=acc.category_rating.get("overall", 0),
                    overall_rank=ranks["overall"].get(user_key),
                    page_count=len(acc.pages),
                    mean_rating=round(acc.mean_sum / acc.mean_pages, 4) if acc.mean_pages else 0.0,
                    votes_cast_up=acc.cast_up,
                    votes_cast_down=acc.cast_down,
                    votes_received_up=acc.received_up,
                    votes_received_down=acc.received_down,
                    categories=categories,
                )
            )
        return result

    @staticmethod
    def _series_stats(live_pages: dict[int, dict[str, Any]]) -> list[SeriesStats]:
        numbers: dict[int, str] = {}
        for page in live_pages.values():
            tags = set(page["tags"])
            if ORIGINAL_TAG not in tags or tags & PENDING_DELETION_TAGS:
                continue
            number = series_number_of(page["url"])
            if number is not None:
                numbers.setdefault(number, page["url"])
        return compute_series_stats(numbers)
