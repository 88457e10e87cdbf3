"""Shared pytest fixtures for the wikimirror test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from wikimirror.config.settings import Settings
from wikimirror.interfaces.wiki_source_provider import IWikiSourceProvider
from wikimirror.models.page import (
    AttributionRecord,
    PageDetail,
    PageListing,
    PageNode,
    RevisionRecord,
    RevisionWindow,
    VoteRecord,
    VoteWindow,
)
from wikimirror.providers.checkpoint.file_checkpoint_provider import FileCheckpointProvider
from wikimirror.providers.mirror.sqlite_dirty_queue import SQLiteDirtyQueue
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.services.rate_limit_safe_fetcher import RateLimitSafeFetcher

SITE = "http://scp-wiki-cn.wikidot.com"
BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)  # noqa: UP017


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


def make_node(slug: str = "scp-cn-001", **overrides: Any) -> PageNode:
    """Build a PageNode for ``<SITE>/<slug>`` with sensible defaults."""
    fields: dict[str, Any] = {
        "url": f"{SITE}/{slug}",
        "wikidot_id": None,
        "title": slug.upper(),
        "rating": 10,
        "vote_count": 3,
        "revision_count": 2,
        "comment_count": 0,
        "tags": ["scp", "原创"],
        "category": "_default",
        "attribution_count": 1,
    }
    fields.update(overrides)
    return PageNode(**fields)


def make_vote(voter: str, direction: int, minutes: int = 0, name: str | None = None) -> VoteRecord:
    return VoteRecord(
        voter_key=voter,
        voter_name=name or f"user-{voter}",
        wikidot_id=int(voter) if voter.isdigit() else None,
        direction=direction,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
    )


def make_revision(revision_id: int, minutes: int = 0, user: str = "100") -> RevisionRecord:
    return RevisionRecord(
        revision_id=revision_id,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        type="source",
        user_key=user,
        user_name=f"user-{user}",
    )


def make_detail(
    node: PageNode,
    votes: list[VoteRecord] | None = None,
    revisions: list[RevisionRecord] | None = None,
    authors: list[str] | None = None,
    source: str = "page source",
    votes_have_next: bool = False,
    revisions_have_next: bool = False,
) -> PageDetail:
    """Build a PageDetail whose counters agree with the given history."""
    authors = authors if authors is not None else ["100"]
    attributions = [
        AttributionRecord(role="AUTHOR", user_key=key, user_name=f"user-{key}", wikidot_id=int(key), order_index=i)
        for i, key in enumerate(authors)
    ]
    return PageDetail(
        node=node,
        source=source,
        text_content=source,
        attributions=attributions,
        votes=VoteWindow(
            votes=votes or [],
            has_next_page=votes_have_next,
            end_cursor="v-next" if votes_have_next else None,
        ),
        revisions=RevisionWindow(
            revisions=revisions or [],
            has_next_page=revisions_have_next,
            end_cursor="r-next" if revisions_have_next else None,
        ),
    )


# ---------------------------------------------------------------------------
# Configuration and collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing every path into a temporary directory."""
    return Settings(
        db_path=str(tmp_path / "mirror.db"),
        checkpoint_dir=str(tmp_path / "checkpoints"),
        request_delay=0.0,
        max_attempts=3,
        page_batch_size=2,
        max_first=5,
    )


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Awaitable sleep replacement that records requested delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def fetcher(settings: Settings, no_sleep: AsyncMock) -> RateLimitSafeFetcher:
    return RateLimitSafeFetcher.from_settings(settings, sleep=no_sleep)


@pytest.fixture
def checkpoints(tmp_path: Path) -> FileCheckpointProvider:
    return FileCheckpointProvider(tmp_path / "checkpoints")


@pytest.fixture
def mock_provider() -> AsyncMock:
    """Upstream provider with an empty listing and no pages."""
    provider = AsyncMock(spec=IWikiSourceProvider)
    provider.count_pages.return_value = 0
    provider.fetch_page_listing.return_value = PageListing()
    provider.fetch_page_detail.return_value = None
    provider.fetch_votes.return_value = VoteWindow()
    provider.fetch_revisions.return_value = RevisionWindow()
    provider.get_provider_name = MagicMock(return_value="mock_source")
    provider.last_budget = None
    return provider


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> SQLiteMirrorStore:
    mirror = SQLiteMirrorStore(db_path=str(tmp_path / "mirror.db"))
    await mirror.initialize()
    return mirror


@pytest_asyncio.fixture
async def queue(tmp_path: Path) -> SQLiteDirtyQueue:
    dirty = SQLiteDirtyQueue(db_path=str(tmp_path / "mirror.db"))
    await dirty.initialize()
    return dirty
