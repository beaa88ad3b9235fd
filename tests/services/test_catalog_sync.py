from __future__ import annotations

import pytest

from app.integrations.contracts import CatalogTrack
from app.models import MediaStatus
from app.services.catalog_sync import CatalogSyncService
from app.services.item_store import ItemStore
from tests.fixtures.pipeline import StaticCatalogSource, analysis_payload


def _tracks(count: int) -> list[CatalogTrack]:
    return [
        CatalogTrack(id=f"nd-{index}", title=f"Song {index}", artist="Band", album="LP")
        for index in range(1, count + 1)
    ]


@pytest.mark.asyncio
async def test_sync_is_idempotent() -> None:
    store = ItemStore()
    source = StaticCatalogSource(_tracks(3))
    service = CatalogSyncService(source, store)

    first = await service.sync()
    second = await service.sync()

    assert first.as_dict() == {"added": 3, "updated": 0, "skipped": 0}
    assert second.as_dict() == {"added": 0, "updated": 0, "skipped": 3}
    assert store.count_pending() == 3


@pytest.mark.asyncio
async def test_sync_passes_limit_to_source() -> None:
    store = ItemStore()
    source = StaticCatalogSource(_tracks(5))

    result = await CatalogSyncService(source, store).sync(limit=2)

    assert source.calls == [2]
    assert result.added == 2
    assert store.count_total() == 2


@pytest.mark.asyncio
async def test_changed_track_is_queued_for_reanalysis() -> None:
    store = ItemStore()
    source = StaticCatalogSource(_tracks(2))
    service = CatalogSyncService(source, store)
    await service.sync()
    store.record_success("nd-1", analysis_payload(), {})
    store.record_success("nd-2", analysis_payload(), {})

    source.tracks[0] = CatalogTrack(id="nd-1", title="Song 1 (Remaster)", artist="Band")
    result = await service.sync()

    assert (result.updated, result.skipped) == (1, 1)
    changed, untouched = store.get_items(["nd-1", "nd-2"])
    assert changed.metadata_status is MediaStatus.PENDING
    assert changed.title == "Song 1 (Remaster)"
    assert untouched.metadata_status is MediaStatus.COMPLETED


@pytest.mark.asyncio
async def test_fetch_failure_propagates() -> None:
    class BrokenSource:
        async def fetch_tracks(self, limit=None):
            raise RuntimeError("catalog offline")

    with pytest.raises(RuntimeError):
        await CatalogSyncService(BrokenSource(), ItemStore()).sync()
