"""SQLite-backed dirty-page work queue.

Every row carries an explicit :class:`~wikimirror.models.dirty.DirtyState`.
All state changes go through :meth:`SQLiteDirtyQueue._transition`, which
checks the move against ``LEGAL_TRANSITIONS`` and applies it with a
conditional ``UPDATE ... WHERE url = ? AND state = ?``.  A claim is the
same compare-and-set: if another worker moved the row first, the update
touches zero rows and the claimer moves on to the next candidate.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from wikimirror.models.dirty import CLAIMABLE, DirtyPage, DirtyState, is_legal
from wikimirror.models.page import utc_now
from wikimirror.providers.mirror.sql_codec import decode_list, decode_ts, encode_list, encode_ts
from wikimirror.utils.errors import InvalidTransitionError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/mirror.db")

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS dirty_pages (
    url              TEXT PRIMARY KEY,
    state            TEXT    NOT NULL,
    reasons          TEXT    NOT NULL DEFAULT '[]',
    attempts         INTEGER NOT NULL DEFAULT 0,
    last_error       TEXT,
    claimed_at       TEXT,
    phase_b_done_at  TEXT,
    phase_c_done_at  TEXT,
    created_at       TEXT    NOT NULL,
    updated_at       TEXT    NOT NULL
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_dirty_pages_state ON dirty_pages(state, updated_at);",
]

_INSERT_SQL = """\
INSERT INTO dirty_pages (url, state, reasons, created_at, updated_at)
VALUES (?, ?, ?, ?, ?);
"""


def _row_to_dirty(row: aiosqlite.Row) -> DirtyPage:
    return DirtyPage(
        url=row["url"],
        state=DirtyState(row["state"]),
        reasons=decode_list(row["reasons"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        claimed_at=decode_ts(row["claimed_at"]),
        phase_b_done_at=decode_ts(row["phase_b_done_at"]),
        phase_c_done_at=decode_ts(row["phase_c_done_at"]),
        created_at=decode_ts(row["created_at"]),
        updated_at=decode_ts(row["updated_at"]),
    )


def _merge_reasons(existing: list[str], new: list[str]) -> list[str]:
    merged = list(existing)
    for reason in new:
        if reason not in merged:
            merged.append(reason)
    return merged


class SQLiteDirtyQueue:
    """Persistent dirty-page queue with validated state transitions.

    Parameters
    ----------
    db_path:
        SQLite database file; usually shared with the mirror store.
    """

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(str(self._db_path))

    async def initialize(self) -> None:
        """Create the ``dirty_pages`` table if it doesn't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute(_CREATE_TABLE_SQL)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("dirty_queue_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Core transition
    # ------------------------------------------------------------------

    async def _fetch_row(self, db: aiosqlite.Connection, url: str) -> aiosqlite.Row | None:
        cursor = await db.execute("SELECT * FROM dirty_pages WHERE url = ?;", (url,))
        return await cursor.fetchone()

    async def _transition(
        self,
        db: aiosqlite.Connection,
        row: aiosqlite.Row,
        to_state: DirtyState,
        **fields: Any,
    ) -> bool:
        """Move *row* to *to_state*, guarded on its current state.

        Returns ``False`` when the row changed state underneath us.

        Raises
        ------
        InvalidTransitionError
            If the move is not in the legal-transition table.
        """
        from_state = DirtyState(row["state"])
        if not is_legal(from_state, to_state):
            raise InvalidTransitionError(row["url"], from_state.value, to_state.value)

        fields["updated_at"] = encode_ts(utc_now())
        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor = await db.execute(
            f"UPDATE dirty_pages SET state = ?, {assignments} WHERE url = ? AND state = ?;",
            (to_state.value, *fields.values(), row["url"], from_state.value),
        )
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def mark_dirty(self, url: str, reasons: list[str]) -> DirtyPage:
        """Queue *url* for a content fetch, merging *reasons* into any already recorded.

        Legal from every state: new drift always needs a fresh fetch.
        """
        return await self._enqueue(url, DirtyState.NEEDS_B, reasons)

    async def schedule_reconciliation(self, url: str, reasons: list[str]) -> DirtyPage | None:
        """Queue *url* for the reconciliation pass.

        Pages already waiting for (or inside) a content fetch are left alone;
        the content stage decides whether they need reconciling.
        """
        current = await self.get(url)
        if current is not None and current.state in (DirtyState.NEEDS_B, DirtyState.IN_B):
            logger.debug("dirty_reconciliation_deferred", url=url, state=current.state.value)
            return current
        return await self._enqueue(url, DirtyState.NEEDS_C, reasons)

    async def _enqueue(self, url: str, to_state: DirtyState, reasons: list[str]) -> DirtyPage:
        now = encode_ts(utc_now())
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch_row(db, url)
            if row is None:
                await db.execute(_INSERT_SQL, (url, to_state.value, encode_list(list(reasons)), now, now))
            else:
                merged = _merge_reasons(decode_list(row["reasons"]), reasons)
                moved = await self._transition(db, row, to_state, reasons=encode_list(merged))
                if not moved:
                    row = await self._fetch_row(db, url)
                    await self._transition(db, row, to_state, reasons=encode_list(merged))
            await db.commit()
            page = _row_to_dirty(await self._fetch_row(db, url))
        logger.debug("dirty_page_enqueued", url=url, state=to_state.value, reasons=reasons)
        return page

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def claim(self, phase: str) -> DirtyPage | None:
        """Claim the oldest page waiting for *phase* (``"B"`` or ``"C"``).

        Returns ``None`` when nothing is waiting.
        """
        waiting, claimed = CLAIMABLE[phase]
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM dirty_pages WHERE state = ? ORDER BY updated_at, url LIMIT 16;",
                (waiting.value,),
            )
            candidates = await cursor.fetchall()
            for row in candidates:
                if await self._claim_row(db, row, claimed):
                    await db.commit()
                    return _row_to_dirty(await self._fetch_row(db, row["url"]))
                logger.debug("dirty_claim_lost", url=row["url"], phase=phase)
        return None

    async def claim_url(self, url: str, phase: str) -> DirtyPage | None:
        """Claim *url* for *phase* if it is waiting for it; otherwise ``None``."""
        waiting, claimed = CLAIMABLE[phase]
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch_row(db, url)
            if row is None or row["state"] != waiting.value:
                return None
            if not await self._claim_row(db, row, claimed):
                return None
            await db.commit()
            return _row_to_dirty(await self._fetch_row(db, url))

    async def _claim_row(self, db: aiosqlite.Connection, row: aiosqlite.Row, claimed: DirtyState) -> bool:
        return await self._transition(
            db,
            row,
            claimed,
            attempts=row["attempts"] + 1,
            claimed_at=encode_ts(utc_now()),
        )

    # ------------------------------------------------------------------
    # Completion and release
    # ------------------------------------------------------------------

    async def complete_b(self, url: str, needs_c_reasons: list[str] | None = None) -> DirtyPage:
        """Finish the content stage for a claimed page.

        The page goes to ``NEEDS_C`` when *needs_c_reasons* is non-empty,
        otherwise to ``CLEAN``.
        """
        to_state = DirtyState.NEEDS_C if needs_c_reasons else DirtyState.CLEAN
        return await self._finish(
            url,
            expected=DirtyState.IN_B,
            to_state=to_state,
            reasons=encode_list(list(needs_c_reasons or [])),
            last_error=None,
            phase_b_done_at=encode_ts(utc_now()),
        )

    async def complete_c(self, url: str) -> DirtyPage:
        return await self._finish(
            url,
            expected=DirtyState.IN_C,
            to_state=DirtyState.CLEAN,
            reasons=encode_list([]),
            last_error=None,
            phase_c_done_at=encode_ts(utc_now()),
        )

    async def release(self, url: str, error: str, reason: str | None = None) -> DirtyPage:
        """Hand a claimed page back to its waiting state after a failure."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch_row(db, url)
            if row is None:
                raise InvalidTransitionError(url, "missing", "release")
            state = DirtyState(row["state"])
            back = {DirtyState.IN_B: DirtyState.NEEDS_B, DirtyState.IN_C: DirtyState.NEEDS_C}.get(state)
            if back is None:
                raise InvalidTransitionError(url, state.value, "release")
            reasons = decode_list(row["reasons"])
            if reason:
                reasons = _merge_reasons(reasons, [reason])
            await self._transition(db, row, back, reasons=encode_list(reasons), last_error=error[:500])
            await db.commit()
            page = _row_to_dirty(await self._fetch_row(db, url))
        logger.warning("dirty_page_released", url=url, state=back.value, attempts=page.attempts, error=error)
        return page

    async def _finish(self, url: str, expected: DirtyState, to_state: DirtyState, **fields: Any) -> DirtyPage:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch_row(db, url)
            if row is None:
                raise InvalidTransitionError(url, "missing", to_state.value)
            if row["state"] != expected.value:
                raise InvalidTransitionError(url, row["state"], to_state.value)
            if not await self._transition(db, row, to_state, **fields):
                raise InvalidTransitionError(url, row["state"], to_state.value)
            await db.commit()
            return _row_to_dirty(await self._fetch_row(db, url))

    async def release_stale_claims(self) -> int:
        """Return every in-flight claim to its waiting state.

        Called at phase start: with one sync process at a time, any claim
        still open belongs to an interrupted run.
        """
        now = encode_ts(utc_now())
        released = 0
        async with self._connect() as db:
            for claimed, waiting in ((DirtyState.IN_B, DirtyState.NEEDS_B), (DirtyState.IN_C, DirtyState.NEEDS_C)):
                cursor = await db.execute(
                    "UPDATE dirty_pages SET state = ?, updated_at = ? WHERE state = ?;",
                    (waiting.value, now, claimed.value),
                )
                released += cursor.rowcount
            await db.commit()
        if released:
            logger.info("dirty_stale_claims_released", count=released)
        return released

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, url: str) -> DirtyPage | None:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch_row(db, url)
        return _row_to_dirty(row) if row else None

    async def list_by_state(self, state: DirtyState, limit: int | None = None) -> list[DirtyPage]:
        query = "SELECT * FROM dirty_pages WHERE state = ? ORDER BY updated_at, url"
        params: tuple[Any, ...] = (DirtyState(state).value,)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query + ";", params)
            rows = await cursor.fetchall()
        return [_row_to_dirty(row) for row in rows]

    async def counts_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in DirtyState}
        async with self._connect() as db:
            cursor = await db.execute("SELECT state, COUNT(*) FROM dirty_pages GROUP BY state;")
            for state, count in await cursor.fetchall():
                counts[state] = count
        return counts

    async def pending_count(self, phase: str) -> int:
        waiting, _ = CLAIMABLE[phase]
        async with self._connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM dirty_pages WHERE state = ?;", (waiting.value,))
            row = await cursor.fetchone()
        return row[0]

    def get_provider_name(self) -> str:
        """Return ``'sqlite_dirty_queue'``."""
        return "sqlite_dirty_queue"


def format_phase_c_error(when: datetime | None = None) -> str:
    """Reason tag recorded when reconciliation fails for a page."""
    return f"phase_c_error:{encode_ts(when or utc_now())}"
