"""Pydantic v2 models for upstream wiki data and local page versions.

All models use frozen config (immutable).  Upstream payloads are parsed
through the ``from_graphql`` classmethods, which tolerate missing or null
fields the way the upstream's fuzzy counters require: a counter the API did
not report stays ``None`` rather than being coerced to 0.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ANON_PREFIX = "anon:"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an upstream ISO-8601 string (``Z`` suffix allowed) to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)  # noqa: UP017
    return parsed.astimezone(timezone.utc)  # noqa: UP017


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _user_identity(user: dict[str, Any] | None, fallback_id: Any = None) -> tuple[str | None, str | None, int | None]:
    """Return ``(user_key, display_name, wikidot_id)`` for an upstream user reference.

    Registered users are keyed by wikidot id.  Unregistered names get an
    ``anon:<display name>`` key so they still group per person.
    """
    user = user or {}
    nested = user.get("wikidotUser") or {}
    wikidot_id = _as_int(user.get("wikidotId")) or _as_int(nested.get("wikidotId")) or _as_int(fallback_id)
    name = user.get("displayName") or nested.get("displayName")
    if wikidot_id is not None:
        return str(wikidot_id), name, wikidot_id
    if name:
        return f"{ANON_PREFIX}{name}", name, None
    return None, None, None


# ---------------------------------------------------------------------------
# Upstream records
# ---------------------------------------------------------------------------


class PageNode(BaseModel):
    """Lightweight page metadata as returned by the paginated page listing."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(description="Canonical page URL; the stable page identity.")
    wikidot_id: int | None = Field(default=None, description="Upstream numeric page id.")
    title: str | None = Field(default=None)
    rating: int | None = Field(default=None, description="Upstream displayed rating.")
    vote_count: int | None = Field(default=None)
    revision_count: int | None = Field(default=None)
    comment_count: int | None = Field(default=None)
    tags: list[str] = Field(default_factory=list)
    category: str | None = Field(default=None)
    parent_url: str | None = Field(default=None)
    attribution_count: int | None = Field(
        default=None, description="Number of attributions listed, None when absent."
    )
    created_at: datetime | None = Field(default=None)

    @classmethod
    def from_graphql(cls, node: dict[str, Any]) -> PageNode:
        attributions = node.get("attributions")
        parent = node.get("parent") or {}
        return cls(
            url=node["url"],
            wikidot_id=_as_int(node.get("wikidotId")),
            title=node.get("title"),
            rating=_as_int(node.get("rating")),
            vote_count=_as_int(node.get("voteCount")),
            revision_count=_as_int(node.get("revisionCount")),
            comment_count=_as_int(node.get("commentCount")),
            tags=sorted({t for t in (node.get("tags") or []) if t}),
            category=node.get("category"),
            parent_url=parent.get("url"),
            attribution_count=len(attributions) if isinstance(attributions, list) else None,
            created_at=parse_timestamp(node.get("createdAt")),
        )


class PageListing(BaseModel):
    """One window of the page listing."""

    model_config = ConfigDict(frozen=True)

    nodes: list[PageNode] = Field(default_factory=list)
    has_next_page: bool = False
    end_cursor: str | None = None


class AttributionRecord(BaseModel):
    """A user credited on a page version (author, submitter, translator, ...)."""

    model_config = ConfigDict(frozen=True)

    role: str = Field(description="Upstream attribution type, e.g. AUTHOR, SUBMITTER.")
    user_key: str
    user_name: str | None = None
    wikidot_id: int | None = None
    order_index: int = 0
    date: datetime | None = None

    @classmethod
    def from_graphql(cls, item: dict[str, Any], index: int = 0) -> AttributionRecord | None:
        user_key, name, wikidot_id = _user_identity(item.get("user"))
        if user_key is None:
            return None
        order = _as_int(item.get("order"))
        return cls(
            role=str(item.get("type") or "AUTHOR").upper(),
            user_key=user_key,
            user_name=name,
            wikidot_id=wikidot_id,
            order_index=order if order is not None else index,
            date=parse_timestamp(item.get("date")),
        )


class VoteRecord(BaseModel):
    """One observation of a user voting on a page.

    Vote history is append-only: the same voter may appear many times with
    different timestamps.  Only the latest per (voter, page) is live.
    """

    model_config = ConfigDict(frozen=True)

    voter_key: str
    voter_name: str | None = None
    wikidot_id: int | None = None
    direction: int = Field(description="+1, 0 (retracted) or -1.")
    timestamp: datetime

    @classmethod
    def from_graphql(cls, node: dict[str, Any]) -> VoteRecord | None:
        timestamp = parse_timestamp(node.get("timestamp"))
        if timestamp is None:
            return None
        user_key, name, wikidot_id = _user_identity(node.get("user"), node.get("userWikidotId"))
        if user_key is None and node.get("anonKey"):
            user_key = f"{ANON_PREFIX}{node['anonKey']}"
        if user_key is None:
            return None
        direction = _as_int(node.get("direction")) or 0
        return cls(
            voter_key=user_key,
            voter_name=name,
            wikidot_id=wikidot_id,
            direction=max(-1, min(1, direction)),
            timestamp=timestamp,
        )


class RevisionRecord(BaseModel):
    """An edit-history entry."""

    model_config = ConfigDict(frozen=True)

    revision_id: int
    timestamp: datetime
    type: str | None = None
    user_key: str | None = None
    user_name: str | None = None
    comment: str | None = None

    @classmethod
    def from_graphql(cls, node: dict[str, Any]) -> RevisionRecord | None:
        revision_id = _as_int(node.get("wikidotId"))
        timestamp = parse_timestamp(node.get("timestamp"))
        if revision_id is None or timestamp is None:
            return None
        user_key, name, _ = _user_identity(node.get("user"))
        return cls(
            revision_id=revision_id,
            timestamp=timestamp,
            type=node.get("type"),
            user_key=user_key,
            user_name=name,
            comment=node.get("comment"),
        )


class VoteWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    votes: list[VoteRecord] = Field(default_factory=list)
    has_next_page: bool = False
    end_cursor: str | None = None


class RevisionWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    revisions: list[RevisionRecord] = Field(default_factory=list)
    has_next_page: bool = False
    end_cursor: str | None = None


class PageDetail(BaseModel):
    """Full page data fetched by the content stage."""

    model_config = ConfigDict(frozen=True)

    node: PageNode
    source: str | None = None
    text_content: str | None = None
    alternate_titles: list[str] = Field(default_factory=list)
    attributions: list[AttributionRecord] = Field(default_factory=list)
    votes: VoteWindow = Field(default_factory=VoteWindow)
    revisions: RevisionWindow = Field(default_factory=RevisionWindow)

    @classmethod
    def from_graphql(cls, node: dict[str, Any]) -> PageDetail:
        attributions: list[AttributionRecord] = []
        for index, item in enumerate(node.get("attributions") or []):
            record = AttributionRecord.from_graphql(item or {}, index=index)
            if record is not None:
                attributions.append(record)

        return cls(
            node=PageNode.from_graphql(node),
            source=node.get("source"),
            text_content=node.get("textContent"),
            alternate_titles=[
                entry["title"].strip()
                for entry in (node.get("alternateTitles") or [])
                if isinstance(entry, dict) and (entry.get("title") or "").strip()
            ],
            attributions=attributions,
            votes=parse_vote_window(node.get("fuzzyVoteRecords")),
            revisions=parse_revision_window(node.get("revisions")),
        )


def _page_info(connection: dict[str, Any]) -> tuple[bool, str | None]:
    info = connection.get("pageInfo") or {}
    return bool(info.get("hasNextPage")), info.get("endCursor")


def parse_vote_window(connection: dict[str, Any] | None) -> VoteWindow:
    connection = connection or {}
    votes = [
        vote
        for edge in connection.get("edges") or []
        if (vote := VoteRecord.from_graphql((edge or {}).get("node") or {})) is not None
    ]
    has_next, cursor = _page_info(connection)
    return VoteWindow(votes=votes, has_next_page=has_next, end_cursor=cursor)


def parse_revision_window(connection: dict[str, Any] | None) -> RevisionWindow:
    connection = connection or {}
    revisions = [
        rev
        for edge in connection.get("edges") or []
        if (rev := RevisionRecord.from_graphql((edge or {}).get("node") or {})) is not None
    ]
    has_next, cursor = _page_info(connection)
    return RevisionWindow(revisions=revisions, has_next_page=has_next, end_cursor=cursor)


# ---------------------------------------------------------------------------
# Local mirror records
# ---------------------------------------------------------------------------


class PageSnapshot(BaseModel):
    """The observable state of a page at one moment.

    Built from a content-stage fetch (or from staging for deletions) and
    compared against the open version to decide whether to supersede it.
    """

    model_config = ConfigDict(frozen=True)

    title: str | None = None
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    source: str | None = None
    text_content: str | None = None
    alternate_title: str | None = None
    rating: int | None = None
    vote_count: int | None = None
    revision_count: int | None = None
    comment_count: int | None = None
    attribution_count: int | None = None
    is_deleted: bool = False

    @classmethod
    def from_detail(cls, detail: PageDetail) -> PageSnapshot:
        node = detail.node
        return cls(
            title=node.title,
            category=node.category,
            tags=list(node.tags),
            source=detail.source,
            text_content=detail.text_content,
            alternate_title=detail.alternate_titles[0] if detail.alternate_titles else None,
            rating=node.rating,
            vote_count=node.vote_count,
            revision_count=node.revision_count,
            comment_count=node.comment_count,
            attribution_count=(
                node.attribution_count if node.attribution_count is not None else len(detail.attributions)
            ),
        )


class PageVersion(BaseModel):
    """A stored temporal version: valid over ``[valid_from, valid_to)``."""

    model_config = ConfigDict(frozen=True)

    id: int
    page_id: int
    url: str
    valid_from: datetime
    valid_to: datetime | None = Field(
        default=None, description="None while this is the page's current version."
    )
    snapshot: PageSnapshot

    @property
    def is_current(self) -> bool:
        return self.valid_to is None
