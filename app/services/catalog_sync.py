"""Catalog sync: pull tracks from the catalog source into the item store."""

from __future__ import annotations

import asyncio
import time

from app.integrations.contracts import CatalogSource, SyncResult
from app.logging import get_logger
from app.logging_events import log_event
from app.services.item_store import ItemStore

logger = get_logger(__name__)


class CatalogSyncService:
    """Idempotent upsert of the remote catalog into the local item table."""

    def __init__(self, source: CatalogSource, store: ItemStore) -> None:
        self._source = source
        self._store = store

    async def sync(self, limit: int | None = None) -> SyncResult:
        started = time.perf_counter()
        tracks = await self._source.fetch_tracks(limit)
        result = await asyncio.to_thread(self._store.upsert_catalog, tracks)
        log_event(
            logger,
            "catalog.sync",
            component="services.catalog_sync",
            status="ok",
            fetched=len(tracks),
            added=result.added,
            updated=result.updated,
            skipped=result.skipped,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return result


__all__ = ["CatalogSyncService"]
