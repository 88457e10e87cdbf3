"""Unit tests for the pure rating, ranking and series rules."""

from __future__ import annotations

from wikimirror.services.aggregation_service import (
    categories_for,
    compute_series_stats,
    counts_toward_mean,
    rank_users,
    series_number_of,
    series_of,
)

SITE = "http://scp-wiki-cn.wikidot.com"


# ======================================================================
# Categories
# ======================================================================


class TestCategories:
    def test_original_scp(self) -> None:
        assert categories_for(["原创", "scp"], "_default") == ["overall", "scp"]

    def test_original_with_several_category_tags(self) -> None:
        result = categories_for(["原创", "故事", "艺术作品"], "_default")
        assert result == ["overall", "story", "art"]

    def test_translation(self) -> None:
        assert categories_for(["scp", "keter"], "_default") == ["overall", "translation"]

    def test_excluded_tags_are_not_translation(self) -> None:
        assert categories_for(["段落"], "_default") == ["overall"]
        assert categories_for(["作者"], "_default") == ["overall"]

    def test_special_category_is_not_translation(self) -> None:
        assert categories_for([], "short-stories") == ["overall"]


class TestCountsTowardMean:
    def test_tagged_page_counts(self) -> None:
        assert counts_toward_mean(f"{SITE}/scp-cn-001", ["scp", "原创"]) is True

    def test_fragment_is_excluded(self) -> None:
        assert counts_toward_mean(f"{SITE}/frag", ["段落", "原创"]) is False

    def test_untagged_page_excluded(self) -> None:
        assert counts_toward_mean(f"{SITE}/sandbox", []) is False

    def test_untagged_special_category_counts(self) -> None:
        assert counts_toward_mean(f"{SITE}/short-stories:tale", []) is True
        assert counts_toward_mean(f"{SITE}/log-of-anomalous-items-cn:x", []) is True


# ======================================================================
# Ranking
# ======================================================================


class TestRankUsers:
    def test_descending_rating_then_key(self) -> None:
        ranks = rank_users({"b": 10, "a": 10, "c": 30, "d": 5})
        assert ranks == {"c": 1, "a": 2, "b": 3, "d": 4}

    def test_non_positive_ratings_unranked(self) -> None:
        ranks = rank_users({"a": 0, "b": -4, "c": 1})
        assert ranks == {"c": 1}

    def test_deterministic(self) -> None:
        ratings = {f"user{i}": i % 7 for i in range(50)}
        assert rank_users(ratings) == rank_users(dict(reversed(list(ratings.items()))))


# ======================================================================
# Series
# ======================================================================


class TestSeries:
    def test_series_number_from_url(self) -> None:
        assert series_number_of(f"{SITE}/scp-cn-042") == 42
        assert series_number_of(f"{SITE}/scp-cn-2999") == 2999
        assert series_number_of(f"{SITE}/scp-cn-042-j") is None
        assert series_number_of(f"{SITE}/scp-042") is None

    def test_series_boundaries(self) -> None:
        assert series_of(1) is None
        assert series_of(2) == 1
        assert series_of(999) == 1
        assert series_of(1000) == 2
        assert series_of(1999) == 2
        assert series_of(2000) == 3

    def test_usage_percentage(self) -> None:
        numbers = {n: f"{SITE}/scp-cn-{n:03d}" for n in range(2, 952)}
        (series_one,) = compute_series_stats(numbers)

        assert series_one.series_number == 1
        assert series_one.used_slots == 950
        assert series_one.total_slots == 998
        assert series_one.usage_percentage == 95.19

    def test_series_one_always_open(self) -> None:
        (series_one,) = compute_series_stats({5: f"{SITE}/scp-cn-005"})
        assert series_one.is_open is True
        assert series_one.milestone_url is None

    def test_later_series_opens_with_milestone(self) -> None:
        stats = compute_series_stats(
            {
                1500: f"{SITE}/scp-cn-1500",
                2000: f"{SITE}/scp-cn-2000",
                2001: f"{SITE}/scp-cn-2001",
            }
        )
        by_number = {s.series_number: s for s in stats}

        assert by_number[2].is_open is False
        assert by_number[2].total_slots == 1000
        assert by_number[3].is_open is True
        assert by_number[3].milestone_url == f"{SITE}/scp-cn-2000"
        assert by_number[3].used_slots == 2
