"""Temporal version management.

Only changes to the fields in :data:`VERSIONED_FIELDS` (or to the deletion
flag) open a new version.  Counter drift (rating, votes, revisions,
comments, attributions) is written onto the open version in place, so a
page whose score moves every day does not grow a version per day.
"""

from __future__ import annotations

from datetime import datetime

from wikimirror.models.page import PageSnapshot, PageVersion, utc_now
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.utils.logging import get_logger

VERSIONED_FIELDS: tuple[str, ...] = ("title", "category", "tags", "source", "text_content")

COUNTER_FIELDS: tuple[str, ...] = (
    "rating",
    "vote_count",
    "revision_count",
    "comment_count",
    "attribution_count",
    "alternate_title",
)


def requires_new_version(current: PageSnapshot | None, new: PageSnapshot) -> bool:
    if current is None:
        return True
    if current.is_deleted != new.is_deleted:
        return True
    for field in VERSIONED_FIELDS:
        old_value = getattr(current, field)
        new_value = getattr(new, field)
        if field == "tags":
            if sorted(old_value) != sorted(new_value):
                return True
        elif old_value != new_value:
            return True
    return False


def counters_changed(current: PageSnapshot, new: PageSnapshot) -> bool:
    return any(getattr(current, f) != getattr(new, f) for f in COUNTER_FIELDS)


class VersionManager:
    """Applies observed page snapshots to the temporal version history."""

    def __init__(self, store: SQLiteMirrorStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    async def apply_snapshot(
        self,
        url: str,
        snapshot: PageSnapshot,
        observed_at: datetime | None = None,
        wikidot_id: int | None = None,
    ) -> tuple[PageVersion, bool]:
        """Record *snapshot* for *url*.

        Returns ``(current_version, created)`` where ``created`` tells
        whether a new version was opened.  Re-applying the same snapshot is
        a no-op.
        """
        observed_at = observed_at or utc_now()
        current = await self._store.get_current_version(url)

        if requires_new_version(current.snapshot if current else None, snapshot):
            version = await self._store.write_version(url, snapshot, observed_at, wikidot_id=wikidot_id)
            self._logger.info(
                "version_superseded" if current else "version_created",
                url=url,
                version_id=version.id,
                previous_version_id=current.id if current else None,
            )
            return version, True

        if counters_changed(current.snapshot, snapshot):
            await self._store.update_current_counters(current.id, snapshot)
            self._logger.debug("version_counters_updated", url=url, version_id=current.id)
            current = current.model_copy(
                update={
                    "snapshot": current.snapshot.model_copy(
                        update={
                            f: getattr(snapshot, f)
                            for f in COUNTER_FIELDS
                            if f != "alternate_title" or snapshot.alternate_title is not None
                        }
                    )
                }
            )
        await self._store.touch_page(url, wikidot_id)
        return current, False

    async def mark_deleted(self, url: str, observed_at: datetime | None = None) -> PageVersion | None:
        """Close the current version and open a deleted one.

        Returns ``None`` when the page has no version or is already deleted.
        """
        current = await self._store.get_current_version(url)
        if current is None or current.snapshot.is_deleted:
            return None
        deleted = current.snapshot.model_copy(update={"is_deleted": True})
        version = await self._store.write_version(url, deleted, observed_at or utc_now())
        self._logger.info("version_deleted", url=url, version_id=version.id, previous_version_id=current.id)
        return version
