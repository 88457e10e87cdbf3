"""Unit tests for temporal version management over SQLiteMirrorStore."""

from __future__ import annotations

from datetime import timedelta

import pytest

from wikimirror.models.page import PageSnapshot
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.services.versioning import VersionManager, counters_changed, requires_new_version

from conftest import BASE_TIME, SITE

URL = f"{SITE}/scp-cn-001"


def _snapshot(**overrides) -> PageSnapshot:
    fields = {
        "title": "SCP-CN-001",
        "category": "_default",
        "tags": ["scp", "原创"],
        "source": "v1",
        "text_content": "v1",
        "rating": 10,
        "vote_count": 3,
    }
    fields.update(overrides)
    return PageSnapshot(**fields)


# ======================================================================
# Pure rules
# ======================================================================


class TestRequiresNewVersion:
    def test_first_snapshot(self) -> None:
        assert requires_new_version(None, _snapshot()) is True

    def test_identical(self) -> None:
        assert requires_new_version(_snapshot(), _snapshot()) is False

    def test_counter_only_change(self) -> None:
        assert requires_new_version(_snapshot(), _snapshot(rating=50, vote_count=40)) is False
        assert counters_changed(_snapshot(), _snapshot(rating=50)) is True

    def test_source_change(self) -> None:
        assert requires_new_version(_snapshot(), _snapshot(source="v2")) is True

    def test_tag_order_ignored(self) -> None:
        assert requires_new_version(_snapshot(), _snapshot(tags=["原创", "scp"])) is False

    def test_deletion_flag(self) -> None:
        assert requires_new_version(_snapshot(), _snapshot(is_deleted=True)) is True


# ======================================================================
# VersionManager
# ======================================================================


class TestVersionManager:
    @pytest.mark.asyncio
    async def test_first_snapshot_opens_version(self, store: SQLiteMirrorStore) -> None:
        manager = VersionManager(store)
        version, created = await manager.apply_snapshot(URL, _snapshot(), BASE_TIME, wikidot_id=7)

        assert created is True
        assert version.valid_to is None
        assert version.valid_from == BASE_TIME
        current = await store.get_current_version(URL)
        assert current.id == version.id
        assert current.snapshot.source == "v1"

    @pytest.mark.asyncio
    async def test_reapplying_is_noop(self, store: SQLiteMirrorStore) -> None:
        manager = VersionManager(store)
        first, _ = await manager.apply_snapshot(URL, _snapshot(), BASE_TIME)
        again, created = await manager.apply_snapshot(URL, _snapshot(), BASE_TIME + timedelta(hours=1))

        assert created is False
        assert again.id == first.id
        assert len(await store.list_versions(URL)) == 1

    @pytest.mark.asyncio
    async def test_counter_drift_updates_in_place(self, store: SQLiteMirrorStore) -> None:
        manager = VersionManager(store)
        first, _ = await manager.apply_snapshot(URL, _snapshot(), BASE_TIME)
        updated, created = await manager.apply_snapshot(URL, _snapshot(rating=25, vote_count=30), BASE_TIME)

        assert created is False
        assert updated.id == first.id
        assert updated.snapshot.rating == 25
        stored = await store.get_current_version(URL)
        assert stored.snapshot.rating == 25
        assert stored.snapshot.vote_count == 30

    @pytest.mark.asyncio
    async def test_content_change_supersedes_contiguously(self, store: SQLiteMirrorStore) -> None:
        manager = VersionManager(store)
        later = BASE_TIME + timedelta(days=1)
        first, _ = await manager.apply_snapshot(URL, _snapshot(), BASE_TIME)
        second, created = await manager.apply_snapshot(URL, _snapshot(source="v2"), later)

        assert created is True
        versions = await store.list_versions(URL)
        assert [v.id for v in versions] == [first.id, second.id]
        assert versions[0].valid_to == versions[1].valid_from == later
        assert versions[1].valid_to is None

    @pytest.mark.asyncio
    async def test_stale_observation_never_inverts_interval(self, store: SQLiteMirrorStore) -> None:
        manager = VersionManager(store)
        await manager.apply_snapshot(URL, _snapshot(), BASE_TIME)
        await manager.apply_snapshot(URL, _snapshot(source="v2"), BASE_TIME - timedelta(hours=1))

        versions = await store.list_versions(URL)
        assert versions[0].valid_to == versions[0].valid_from == BASE_TIME
        assert versions[1].valid_from == BASE_TIME

    @pytest.mark.asyncio
    async def test_mark_deleted(self, store: SQLiteMirrorStore) -> None:
        manager = VersionManager(store)
        await manager.apply_snapshot(URL, _snapshot(), BASE_TIME)

        deleted = await manager.mark_deleted(URL, BASE_TIME + timedelta(days=2))
        assert deleted is not None
        assert deleted.snapshot.is_deleted is True
        assert deleted.snapshot.source == "v1"

        assert await manager.mark_deleted(URL, BASE_TIME + timedelta(days=3)) is None
        assert len(await store.list_versions(URL)) == 2

    @pytest.mark.asyncio
    async def test_mark_deleted_unknown_page(self, store: SQLiteMirrorStore) -> None:
        assert await VersionManager(store).mark_deleted(URL) is None

    @pytest.mark.asyncio
    async def test_one_current_version_per_page(self, store: SQLiteMirrorStore) -> None:
        manager = VersionManager(store)
        for i in range(4):
            await manager.apply_snapshot(URL, _snapshot(source=f"v{i}"), BASE_TIME + timedelta(hours=i))

        counts = await store.counts()
        assert counts["page_versions"] == 4
        assert counts["current_versions"] == 1
