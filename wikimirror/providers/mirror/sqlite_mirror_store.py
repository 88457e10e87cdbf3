"""SQLite-backed mirror of the upstream wiki.

Persists pages, temporal page versions, attributions, votes, revisions,
the discovery staging table, derived statistics and per-task watermarks to
a local SQLite database (default ``data/mirror.db``).  Uses ``aiosqlite``
for async I/O; every public method opens its own connection, and every
multi-statement write commits as one transaction.

Temporal model: a page owns an ordered sequence of versions valid over
``[valid_from, valid_to)``.  A partial unique index allows at most one
open (``valid_to IS NULL``) version per page.  Superseding closes the
current version and opens the next one at the same instant, so adjacent
versions stay contiguous.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from wikimirror.models.integrity import VersionBounds
from wikimirror.models.page import (
    AttributionRecord,
    PageNode,
    PageSnapshot,
    PageVersion,
    RevisionRecord,
    VoteRecord,
    utc_now,
)
from wikimirror.models.stats import (
    AnalysisWatermark,
    CategoryStats,
    PageStats,
    SeriesStats,
    UserStats,
)
from wikimirror.providers.mirror.sql_codec import decode_tags, decode_ts, encode_tags, encode_ts
from wikimirror.utils.errors import IntegrityError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/mirror.db")

_CREATE_PAGES_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS pages (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    url            TEXT    NOT NULL UNIQUE,
    wikidot_id     INTEGER,
    first_seen_at  TEXT    NOT NULL,
    last_seen_at   TEXT    NOT NULL
);
"""

_CREATE_VERSIONS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS page_versions (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    page_id            INTEGER NOT NULL REFERENCES pages(id),
    valid_from         TEXT    NOT NULL,
    valid_to           TEXT,
    title              TEXT,
    category           TEXT,
    tags               TEXT    NOT NULL DEFAULT '[]',
    source             TEXT,
    text_content       TEXT,
    alternate_title    TEXT,
    rating             INTEGER,
    vote_count         INTEGER,
    revision_count     INTEGER,
    comment_count      INTEGER,
    attribution_count  INTEGER,
    is_deleted         INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_USERS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS users (
    user_key       TEXT PRIMARY KEY,
    display_name   TEXT,
    wikidot_id     INTEGER,
    first_seen_at  TEXT NOT NULL
);
"""

_CREATE_ATTRIBUTIONS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS attributions (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    version_id   INTEGER NOT NULL REFERENCES page_versions(id),
    user_key     TEXT    NOT NULL,
    role         TEXT    NOT NULL,
    order_index  INTEGER NOT NULL DEFAULT 0,
    date         TEXT,
    UNIQUE (version_id, user_key, role)
);
"""

_CREATE_VOTES_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS votes (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    page_id     INTEGER NOT NULL REFERENCES pages(id),
    version_id  INTEGER NOT NULL REFERENCES page_versions(id),
    voter_key   TEXT    NOT NULL,
    direction   INTEGER NOT NULL,
    timestamp   TEXT    NOT NULL,
    UNIQUE (page_id, voter_key, timestamp)
);
"""

_CREATE_REVISIONS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS revisions (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    page_id      INTEGER NOT NULL REFERENCES pages(id),
    version_id   INTEGER NOT NULL REFERENCES page_versions(id),
    revision_id  INTEGER NOT NULL,
    timestamp    TEXT    NOT NULL,
    type         TEXT,
    user_key     TEXT,
    comment      TEXT,
    UNIQUE (page_id, revision_id)
);
"""

_CREATE_STAGING_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS page_meta_staging (
    url                TEXT PRIMARY KEY,
    run_id             TEXT NOT NULL,
    wikidot_id         INTEGER,
    title              TEXT,
    rating             INTEGER,
    vote_count         INTEGER,
    revision_count     INTEGER,
    comment_count      INTEGER,
    tags               TEXT NOT NULL DEFAULT '[]',
    category           TEXT,
    parent_url         TEXT,
    attribution_count  INTEGER,
    estimated_cost     INTEGER,
    staged_at          TEXT NOT NULL
);
"""

_CREATE_USER_STATS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS user_stats (
    user_key             TEXT PRIMARY KEY,
    display_name         TEXT,
    overall_rating       INTEGER NOT NULL,
    overall_rank         INTEGER,
    page_count           INTEGER NOT NULL,
    mean_rating          REAL    NOT NULL,
    votes_cast_up        INTEGER NOT NULL,
    votes_cast_down      INTEGER NOT NULL,
    votes_received_up    INTEGER NOT NULL,
    votes_received_down  INTEGER NOT NULL,
    updated_at           TEXT    NOT NULL
);
"""

_CREATE_USER_CATEGORY_STATS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS user_category_stats (
    user_key    TEXT    NOT NULL,
    category    TEXT    NOT NULL,
    page_count  INTEGER NOT NULL,
    rating      INTEGER NOT NULL,
    rank        INTEGER,
    PRIMARY KEY (user_key, category)
);
"""

_CREATE_PAGE_STATS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS page_stats (
    page_id            INTEGER PRIMARY KEY REFERENCES pages(id),
    url                TEXT    NOT NULL,
    upvotes            INTEGER NOT NULL,
    downvotes          INTEGER NOT NULL,
    reconciled_rating  INTEGER NOT NULL,
    like_ratio         REAL    NOT NULL,
    wilson95           REAL    NOT NULL,
    controversy        REAL    NOT NULL,
    updated_at         TEXT    NOT NULL
);
"""

_CREATE_SERIES_STATS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS series_stats (
    series_number     INTEGER PRIMARY KEY,
    used_slots        INTEGER NOT NULL,
    total_slots       INTEGER NOT NULL,
    usage_percentage  REAL    NOT NULL,
    is_open           INTEGER NOT NULL,
    milestone_url     TEXT,
    updated_at        TEXT    NOT NULL
);
"""

_CREATE_WATERMARKS_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS analysis_watermarks (
    task         TEXT PRIMARY KEY,
    last_run_at  TEXT NOT NULL,
    cursor_ts    TEXT,
    upserted     INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_TABLES_SQL = [
    _CREATE_PAGES_TABLE_SQL,
    _CREATE_VERSIONS_TABLE_SQL,
    _CREATE_USERS_TABLE_SQL,
    _CREATE_ATTRIBUTIONS_TABLE_SQL,
    _CREATE_VOTES_TABLE_SQL,
    _CREATE_REVISIONS_TABLE_SQL,
    _CREATE_STAGING_TABLE_SQL,
    _CREATE_USER_STATS_TABLE_SQL,
    _CREATE_USER_CATEGORY_STATS_TABLE_SQL,
    _CREATE_PAGE_STATS_TABLE_SQL,
    _CREATE_SERIES_STATS_TABLE_SQL,
    _CREATE_WATERMARKS_TABLE_SQL,
]

_CREATE_INDICES_SQL = [
    # At most one open version per page.
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_page_versions_open ON page_versions(page_id) WHERE valid_to IS NULL;",
    "CREATE INDEX IF NOT EXISTS idx_page_versions_page ON page_versions(page_id, valid_from);",
    "CREATE INDEX IF NOT EXISTS idx_attributions_version ON attributions(version_id);",
    "CREATE INDEX IF NOT EXISTS idx_attributions_user ON attributions(user_key);",
    "CREATE INDEX IF NOT EXISTS idx_votes_page_voter ON votes(page_id, voter_key, timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_votes_voter ON votes(voter_key);",
    "CREATE INDEX IF NOT EXISTS idx_revisions_page ON revisions(page_id);",
]

_VERSION_COLUMNS = """\
v.id, v.page_id, p.url, v.valid_from, v.valid_to, v.title, v.category, v.tags,
v.source, v.text_content, v.alternate_title, v.rating, v.vote_count,
v.revision_count, v.comment_count, v.attribution_count, v.is_deleted"""

_VERSION_COLUMNS_NO_CONTENT = """\
v.id, v.page_id, p.url, v.valid_from, v.valid_to, v.title, v.category, v.tags,
NULL AS source, NULL AS text_content, v.alternate_title, v.rating, v.vote_count,
v.revision_count, v.comment_count, v.attribution_count, v.is_deleted"""

_SELECT_CURRENT_VERSION_SQL = f"""\
SELECT {_VERSION_COLUMNS}
FROM page_versions v JOIN pages p ON p.id = v.page_id
WHERE p.url = ? AND v.valid_to IS NULL;
"""

_SELECT_VERSIONS_FOR_URL_SQL = f"""\
SELECT {_VERSION_COLUMNS}
FROM page_versions v JOIN pages p ON p.id = v.page_id
WHERE p.url = ?
ORDER BY v.valid_from, v.id;
"""

_UPSERT_PAGE_SQL = """\
INSERT INTO pages (url, wikidot_id, first_seen_at, last_seen_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(url) DO UPDATE SET
    wikidot_id = COALESCE(excluded.wikidot_id, pages.wikidot_id),
    last_seen_at = excluded.last_seen_at;
"""

_INSERT_VERSION_SQL = """\
INSERT INTO page_versions (
    page_id, valid_from, valid_to, title, category, tags, source, text_content,
    alternate_title, rating, vote_count, revision_count, comment_count,
    attribution_count, is_deleted
) VALUES (?, ?, NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_UPDATE_COUNTERS_SQL = """\
UPDATE page_versions
SET rating = ?, vote_count = ?, revision_count = ?, comment_count = ?,
    attribution_count = ?, alternate_title = COALESCE(?, alternate_title)
WHERE id = ? AND valid_to IS NULL;
"""

_UPSERT_STAGING_SQL = """\
INSERT INTO page_meta_staging (
    url, run_id, wikidot_id, title, rating, vote_count, revision_count,
    comment_count, tags, category, parent_url, attribution_count,
    estimated_cost, staged_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(url) DO UPDATE SET
    run_id = excluded.run_id,
    wikidot_id = excluded.wikidot_id,
    title = excluded.title,
    rating = excluded.rating,
    vote_count = excluded.vote_count,
    revision_count = excluded.revision_count,
    comment_count = excluded.comment_count,
    tags = excluded.tags,
    category = excluded.category,
    parent_url = excluded.parent_url,
    attribution_count = excluded.attribution_count,
    estimated_cost = excluded.estimated_cost,
    staged_at = excluded.staged_at;
"""

_UPSERT_USER_SQL = """\
INSERT INTO users (user_key, display_name, wikidot_id, first_seen_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(user_key) DO UPDATE SET
    display_name = COALESCE(excluded.display_name, users.display_name),
    wikidot_id = COALESCE(excluded.wikidot_id, users.wikidot_id);
"""

_INSERT_VOTE_SQL = """\
INSERT OR IGNORE INTO votes (page_id, version_id, voter_key, direction, timestamp)
VALUES (?, ?, ?, ?, ?);
"""

_INSERT_REVISION_SQL = """\
INSERT OR IGNORE INTO revisions (page_id, version_id, revision_id, timestamp, type, user_key, comment)
VALUES (?, ?, ?, ?, ?, ?, ?);
"""

_SELECT_MISSING_FROM_STAGING_SQL = """\
SELECT p.url
FROM pages p JOIN page_versions v ON v.page_id = p.id AND v.valid_to IS NULL
WHERE v.is_deleted = 0
  AND NOT EXISTS (SELECT 1 FROM page_meta_staging s WHERE s.url = p.url)
ORDER BY p.url;
"""

_SELECT_CURRENT_FOR_STATS_SQL = """\
SELECT v.id AS version_id, v.page_id, p.url, v.rating, v.tags, v.category, v.is_deleted
FROM page_versions v JOIN pages p ON p.id = v.page_id
WHERE v.valid_to IS NULL;
"""

_SELECT_CURRENT_ATTRIBUTIONS_SQL = """\
SELECT a.version_id, v.page_id, a.user_key, a.role, u.display_name
FROM attributions a
JOIN page_versions v ON v.id = a.version_id AND v.valid_to IS NULL
LEFT JOIN users u ON u.user_key = a.user_key
ORDER BY a.version_id, a.order_index;
"""

_SELECT_VERSION_BOUNDS_SQL = """\
SELECT v.id, v.page_id, p.url, v.valid_from, v.valid_to
FROM page_versions v JOIN pages p ON p.id = v.page_id
ORDER BY v.page_id, v.valid_from, v.id;
"""

_UPSERT_WATERMARK_SQL = """\
INSERT INTO analysis_watermarks (task, last_run_at, cursor_ts, upserted)
VALUES (?, ?, ?, ?)
ON CONFLICT(task) DO UPDATE SET
    last_run_at = excluded.last_run_at,
    cursor_ts = excluded.cursor_ts,
    upserted = excluded.upserted;
"""


def _row_to_version(row: aiosqlite.Row) -> PageVersion:
    return PageVersion(
        id=row["id"],
        page_id=row["page_id"],
        url=row["url"],
        valid_from=decode_ts(row["valid_from"]),
        valid_to=decode_ts(row["valid_to"]),
        snapshot=PageSnapshot(
            title=row["title"],
            category=row["category"],
            tags=decode_tags(row["tags"]),
            source=row["source"],
            text_content=row["text_content"],
            alternate_title=row["alternate_title"],
            rating=row["rating"],
            vote_count=row["vote_count"],
            revision_count=row["revision_count"],
            comment_count=row["comment_count"],
            attribution_count=row["attribution_count"],
            is_deleted=bool(row["is_deleted"]),
        ),
    )


def _snapshot_params(snapshot: PageSnapshot) -> tuple[Any, ...]:
    return (
        snapshot.title,
        snapshot.category,
        encode_tags(snapshot.tags),
        snapshot.source,
        snapshot.text_content,
        snapshot.alternate_title,
        snapshot.rating,
        snapshot.vote_count,
        snapshot.revision_count,
        snapshot.comment_count,
        snapshot.attribution_count,
        1 if snapshot.is_deleted else 0,
    )


class SQLiteMirrorStore:
    """SQLite persistence for the temporally versioned mirror."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(str(self._db_path))

    async def initialize(self) -> None:
        """Create all mirror tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            for table_sql in _CREATE_TABLES_SQL:
                await db.execute(table_sql)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("mirror_db_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Discovery staging
    # ------------------------------------------------------------------

    async def clear_staging(self) -> None:
        async with self._connect() as db:
            await db.execute("DELETE FROM page_meta_staging;")
            await db.commit()

    async def stage_pages(
        self,
        nodes: list[PageNode],
        run_id: str,
        costs: dict[str, int] | None = None,
    ) -> int:
        """Upsert one listing window into staging.  Returns rows written."""
        costs = costs or {}
        staged_at = encode_ts(utc_now())
        params = [
            (
                n.url,
                run_id,
                n.wikidot_id,
                n.title,
                n.rating,
                n.vote_count,
                n.revision_count,
                n.comment_count,
                encode_tags(n.tags),
                n.category,
                n.parent_url,
                n.attribution_count,
                costs.get(n.url),
                staged_at,
            )
            for n in nodes
        ]
        async with self._connect() as db:
            await db.executemany(_UPSERT_STAGING_SQL, params)
            await db.commit()
        return len(params)

    async def list_staged(self) -> list[PageNode]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM page_meta_staging ORDER BY url;")
            rows = await cursor.fetchall()
        return [
            PageNode(
                url=row["url"],
                wikidot_id=row["wikidot_id"],
                title=row["title"],
                rating=row["rating"],
                vote_count=row["vote_count"],
                revision_count=row["revision_count"],
                comment_count=row["comment_count"],
                tags=decode_tags(row["tags"]),
                category=row["category"],
                parent_url=row["parent_url"],
                attribution_count=row["attribution_count"],
            )
            for row in rows
        ]

    async def staged_estimated_cost(self, urls: list[str]) -> dict[str, int]:
        if not urls:
            return {}
        placeholders = ", ".join("?" for _ in urls)
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT url, estimated_cost FROM page_meta_staging WHERE url IN ({placeholders});",
                urls,
            )
            rows = await cursor.fetchall()
        return {url: cost or 0 for url, cost in rows}

    async def urls_missing_from_staging(self) -> list[str]:
        """Pages with a live (non-deleted) current version that staging never saw."""
        async with self._connect() as db:
            cursor = await db.execute(_SELECT_MISSING_FROM_STAGING_SQL)
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Pages and versions
    # ------------------------------------------------------------------

    async def get_page_id(self, url: str) -> int | None:
        async with self._connect() as db:
            cursor = await db.execute("SELECT id FROM pages WHERE url = ?;", (url,))
            row = await cursor.fetchone()
        return row[0] if row else None

    async def get_current_version(self, url: str) -> PageVersion | None:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(_SELECT_CURRENT_VERSION_SQL, (url,))
            row = await cursor.fetchone()
        return _row_to_version(row) if row else None

    async def get_current_versions(self, include_content: bool = False) -> dict[str, PageVersion]:
        """Current version of every page, keyed by URL.

        Without ``include_content`` the heavy ``source``/``text_content``
        columns come back as ``None``; use that form only for metadata
        comparison.
        """
        columns = _VERSION_COLUMNS if include_content else _VERSION_COLUMNS_NO_CONTENT
        query = (
            f"SELECT {columns} FROM page_versions v JOIN pages p ON p.id = v.page_id "
            "WHERE v.valid_to IS NULL;"
        )
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query)
            rows = await cursor.fetchall()
        return {row["url"]: _row_to_version(row) for row in rows}

    async def list_versions(self, url: str) -> list[PageVersion]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(_SELECT_VERSIONS_FOR_URL_SQL, (url,))
            rows = await cursor.fetchall()
        return [_row_to_version(row) for row in rows]

    async def write_version(
        self,
        url: str,
        snapshot: PageSnapshot,
        observed_at: datetime,
        wikidot_id: int | None = None,
    ) -> PageVersion:
        """Open a new current version for *url*, closing the previous one.

        The previous version's ``valid_to`` and the new version's
        ``valid_from`` are the same instant: *observed_at*, or the previous
        ``valid_from`` if the observation is older than it.  Both writes
        commit together.
        """
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                _UPSERT_PAGE_SQL,
                (url, wikidot_id, encode_ts(observed_at), encode_ts(observed_at)),
            )
            cursor = await db.execute(_SELECT_CURRENT_VERSION_SQL, (url,))
            current_row = await cursor.fetchone()

            boundary = observed_at
            if current_row is not None:
                current = _row_to_version(current_row)
                if boundary < current.valid_from:
                    boundary = current.valid_from
                await db.execute(
                    "UPDATE page_versions SET valid_to = ? WHERE id = ? AND valid_to IS NULL;",
                    (encode_ts(boundary), current.id),
                )

            cursor = await db.execute("SELECT id FROM pages WHERE url = ?;", (url,))
            page_id = (await cursor.fetchone())[0]
            try:
                cursor = await db.execute(
                    _INSERT_VERSION_SQL,
                    (page_id, encode_ts(boundary), *_snapshot_params(snapshot)),
                )
            except aiosqlite.IntegrityError as exc:
                await db.rollback()
                raise IntegrityError(
                    f"Cannot open a second current version for {url}",
                    provider_name="sqlite_mirror",
                ) from exc
            version_id = cursor.lastrowid
            await db.commit()

        logger.debug(
            "page_version_opened",
            url=url,
            version_id=version_id,
            valid_from=encode_ts(boundary),
            superseded=current_row is not None,
            is_deleted=snapshot.is_deleted,
        )
        return PageVersion(
            id=version_id,
            page_id=page_id,
            url=url,
            valid_from=boundary,
            valid_to=None,
            snapshot=snapshot,
        )

    async def update_current_counters(self, version_id: int, snapshot: PageSnapshot) -> None:
        """Refresh the non-versioned counters of the open version in place."""
        async with self._connect() as db:
            await db.execute(
                _UPDATE_COUNTERS_SQL,
                (
                    snapshot.rating,
                    snapshot.vote_count,
                    snapshot.revision_count,
                    snapshot.comment_count,
                    snapshot.attribution_count,
                    snapshot.alternate_title,
                    version_id,
                ),
            )
            await db.commit()

    async def touch_page(self, url: str, wikidot_id: int | None = None) -> None:
        await self.upsert_pages([(url, wikidot_id)])

    async def upsert_pages(self, pages: list[tuple[str, int | None]]) -> None:
        """Register pages seen upstream; existing rows only get ``last_seen_at`` bumped."""
        if not pages:
            return
        now = encode_ts(utc_now())
        async with self._connect() as db:
            await db.executemany(
                _UPSERT_PAGE_SQL, [(url, wikidot_id, now, now) for url, wikidot_id in pages]
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Attributions and users
    # ------------------------------------------------------------------

    async def upsert_users(self, users: list[tuple[str, str | None, int | None]]) -> None:
        if not users:
            return
        now = encode_ts(utc_now())
        async with self._connect() as db:
            await db.executemany(
                _UPSERT_USER_SQL, [(key, name, wid, now) for key, name, wid in users]
            )
            await db.commit()

    async def replace_attributions(self, version_id: int, records: list[AttributionRecord]) -> int:
        """Make *records* the complete attribution set of a version."""
        rows = {
            (r.user_key, r.role): (version_id, r.user_key, r.role, r.order_index, encode_ts(r.date))
            for r in records
        }
        async with self._connect() as db:
            await db.execute("DELETE FROM attributions WHERE version_id = ?;", (version_id,))
            await db.executemany(
                "INSERT INTO attributions (version_id, user_key, role, order_index, date) "
                "VALUES (?, ?, ?, ?, ?);",
                list(rows.values()),
            )
            await db.commit()
        return len(rows)

    async def list_attributions(self, version_id: int) -> list[AttributionRecord]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT a.*, u.display_name, u.wikidot_id FROM attributions a "
                "LEFT JOIN users u ON u.user_key = a.user_key "
                "WHERE a.version_id = ? ORDER BY a.order_index, a.id;",
                (version_id,),
            )
            rows = await cursor.fetchall()
        return [
            AttributionRecord(
                role=row["role"],
                user_key=row["user_key"],
                user_name=row["display_name"],
                wikidot_id=row["wikidot_id"],
                order_index=row["order_index"],
                date=decode_ts(row["date"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Votes and revisions (append-only)
    # ------------------------------------------------------------------

    async def insert_votes(self, page_id: int, version_id: int, votes: list[VoteRecord]) -> int:
        """Append vote observations; duplicates are ignored.  Returns rows added."""
        if not votes:
            return 0
        params = [
            (page_id, version_id, v.voter_key, v.direction, encode_ts(v.timestamp)) for v in votes
        ]
        async with self._connect() as db:
            before = db.total_changes
            await db.executemany(_INSERT_VOTE_SQL, params)
            added = db.total_changes - before
            await db.commit()
        return added

    async def count_votes(self, page_id: int) -> int:
        async with self._connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM votes WHERE page_id = ?;", (page_id,))
            row = await cursor.fetchone()
        return row[0]

    async def list_votes(self, page_id: int) -> list[VoteRecord]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT voter_key, direction, timestamp FROM votes WHERE page_id = ? ORDER BY id;",
                (page_id,),
            )
            rows = await cursor.fetchall()
        return [
            VoteRecord(
                voter_key=row["voter_key"],
                direction=row["direction"],
                timestamp=decode_ts(row["timestamp"]),
            )
            for row in rows
        ]

    async def iter_all_votes(self) -> list[tuple[int, VoteRecord]]:
        """Every stored vote observation as ``(page_id, vote)``."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT page_id, voter_key, direction, timestamp FROM votes;")
            rows = await cursor.fetchall()
        return [
            (
                row["page_id"],
                VoteRecord(
                    voter_key=row["voter_key"],
                    direction=row["direction"],
                    timestamp=decode_ts(row["timestamp"]),
                ),
            )
            for row in rows
        ]

    async def insert_revisions(
        self, page_id: int, version_id: int, revisions: list[RevisionRecord]
    ) -> int:
        if not revisions:
            return 0
        params = [
            (
                page_id,
                version_id,
                r.revision_id,
                encode_ts(r.timestamp),
                r.type,
                r.user_key,
                r.comment,
            )
            for r in revisions
        ]
        async with self._connect() as db:
            before = db.total_changes
            await db.executemany(_INSERT_REVISION_SQL, params)
            added = db.total_changes - before
            await db.commit()
        return added

    async def count_revisions(self, page_id: int) -> int:
        async with self._connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM revisions WHERE page_id = ?;", (page_id,))
            row = await cursor.fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Aggregation inputs and outputs
    # ------------------------------------------------------------------

    async def current_versions_for_stats(self) -> list[dict[str, Any]]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(_SELECT_CURRENT_FOR_STATS_SQL)
            rows = await cursor.fetchall()
        return [
            {
                "version_id": row["version_id"],
                "page_id": row["page_id"],
                "url": row["url"],
                "rating": row["rating"],
                "tags": decode_tags(row["tags"]),
                "category": row["category"],
                "is_deleted": bool(row["is_deleted"]),
            }
            for row in rows
        ]

    async def current_attributions(self) -> list[dict[str, Any]]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(_SELECT_CURRENT_ATTRIBUTIONS_SQL)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def user_names(self) -> dict[str, str | None]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT user_key, display_name FROM users;")
            rows = await cursor.fetchall()
        return {key: name for key, name in rows}

    async def replace_user_stats(self, stats: list[UserStats]) -> None:
        """Swap the user statistics views for *stats* in one transaction."""
        now = encode_ts(utc_now())
        user_rows = [
            (
                s.user_key,
                s.display_name,
                s.overall_rating,
                s.overall_rank,
                s.page_count,
                s.mean_rating,
                s.votes_cast_up,
                s.votes_cast_down,
                s.votes_received_up,
                s.votes_received_down,
                now,
            )
            for s in stats
        ]
        category_rows = [
            (c.user_key, c.category, c.page_count, c.rating, c.rank)
            for s in stats
            for c in s.categories.values()
        ]
        async with self._connect() as db:
            await db.execute("DELETE FROM user_category_stats;")
            await db.execute("DELETE FROM user_stats;")
            await db.executemany(
                "INSERT INTO user_stats VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);", user_rows
            )
            await db.executemany(
                "INSERT INTO user_category_stats VALUES (?, ?, ?, ?, ?);", category_rows
            )
            await db.commit()

    async def replace_page_stats(self, stats: list[tuple[int, PageStats]]) -> None:
        now = encode_ts(utc_now())
        rows = [
            (
                page_id,
                s.url,
                s.upvotes,
                s.downvotes,
                s.reconciled_rating,
                s.like_ratio,
                s.wilson95,
                s.controversy,
                now,
            )
            for page_id, s in stats
        ]
        async with self._connect() as db:
            await db.execute("DELETE FROM page_stats;")
            await db.executemany(
                "INSERT INTO page_stats VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);", rows
            )
            await db.commit()

    async def replace_series_stats(self, stats: list[SeriesStats]) -> None:
        now = encode_ts(utc_now())
        rows = [
            (
                s.series_number,
                s.used_slots,
                s.total_slots,
                s.usage_percentage,
                1 if s.is_open else 0,
                s.milestone_url,
                now,
            )
            for s in stats
        ]
        async with self._connect() as db:
            await db.execute("DELETE FROM series_stats;")
            await db.executemany("INSERT INTO series_stats VALUES (?, ?, ?, ?, ?, ?, ?);", rows)
            await db.commit()

    async def list_user_stats(self) -> list[UserStats]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM user_stats ORDER BY user_key;")
            user_rows = await cursor.fetchall()
            cursor = await db.execute("SELECT * FROM user_category_stats ORDER BY user_key, category;")
            category_rows = await cursor.fetchall()

        categories: dict[str, dict[str, CategoryStats]] = {}
        for row in category_rows:
            categories.setdefault(row["user_key"], {})[row["category"]] = CategoryStats(
                user_key=row["user_key"],
                category=row["category"],
                page_count=row["page_count"],
                rating=row["rating"],
                rank=row["rank"],
            )
        return [
            UserStats(
                user_key=row["user_key"],
                display_name=row["display_name"],
                overall_rating=row["overall_rating"],
                overall_rank=row["overall_rank"],
                page_count=row["page_count"],
                mean_rating=row["mean_rating"],
                votes_cast_up=row["votes_cast_up"],
                votes_cast_down=row["votes_cast_down"],
                votes_received_up=row["votes_received_up"],
                votes_received_down=row["votes_received_down"],
                categories=categories.get(row["user_key"], {}),
            )
            for row in user_rows
        ]

    async def list_page_stats(self) -> list[PageStats]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM page_stats ORDER BY url;")
            rows = await cursor.fetchall()
        return [
            PageStats(
                url=row["url"],
                upvotes=row["upvotes"],
                downvotes=row["downvotes"],
                reconciled_rating=row["reconciled_rating"],
                like_ratio=row["like_ratio"],
                wilson95=row["wilson95"],
                controversy=row["controversy"],
            )
            for row in rows
        ]

    async def list_series_stats(self) -> list[SeriesStats]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM series_stats ORDER BY series_number;")
            rows = await cursor.fetchall()
        return [
            SeriesStats(
                series_number=row["series_number"],
                used_slots=row["used_slots"],
                total_slots=row["total_slots"],
                usage_percentage=row["usage_percentage"],
                is_open=bool(row["is_open"]),
                milestone_url=row["milestone_url"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    async def get_watermark(self, task: str) -> AnalysisWatermark | None:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM analysis_watermarks WHERE task = ?;", (task,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return AnalysisWatermark(
            task=row["task"],
            last_run_at=decode_ts(row["last_run_at"]),
            cursor_ts=decode_ts(row["cursor_ts"]),
            upserted=row["upserted"],
        )

    async def set_watermark(self, watermark: AnalysisWatermark) -> None:
        async with self._connect() as db:
            await db.execute(
                _UPSERT_WATERMARK_SQL,
                (
                    watermark.task,
                    encode_ts(watermark.last_run_at),
                    encode_ts(watermark.cursor_ts),
                    watermark.upserted,
                ),
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Integrity support
    # ------------------------------------------------------------------

    async def version_bounds(self) -> list[VersionBounds]:
        """Interval columns of every version, ordered by page then ``valid_from``."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(_SELECT_VERSION_BOUNDS_SQL)
            rows = await cursor.fetchall()
        return [
            VersionBounds(
                id=row["id"],
                page_id=row["page_id"],
                url=row["url"],
                valid_from=decode_ts(row["valid_from"]),
                valid_to=decode_ts(row["valid_to"]),
            )
            for row in rows
        ]

    async def set_valid_to(self, updates: list[tuple[int, datetime]]) -> int:
        """Apply ``(version_id, valid_to)`` pairs to closed versions in one transaction."""
        if not updates:
            return 0
        async with self._connect() as db:
            await db.executemany(
                "UPDATE page_versions SET valid_to = ? WHERE id = ? AND valid_to IS NOT NULL;",
                [(encode_ts(ts), version_id) for version_id, ts in updates],
            )
            await db.commit()
        return len(updates)

    async def counts(self) -> dict[str, int]:
        tables = ("pages", "page_versions", "attributions", "votes", "revisions", "page_meta_staging")
        result: dict[str, int] = {}
        async with self._connect() as db:
            for table in tables:
                cursor = await db.execute(f"SELECT COUNT(*) FROM {table};")
                result[table] = (await cursor.fetchone())[0]
            cursor = await db.execute("SELECT COUNT(*) FROM page_versions WHERE valid_to IS NULL;")
            result["current_versions"] = (await cursor.fetchone())[0]
        return result

    def get_provider_name(self) -> str:
        """Return ``'sqlite_mirror'``."""
        return "sqlite_mirror"
