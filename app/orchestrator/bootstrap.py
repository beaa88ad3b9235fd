"""Bootstrap helpers for the pipeline runtime wiring."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

import httpx

from app.config import AppConfig
from app.db import SessionFactory, session_scope
from app.integrations.contracts import CatalogSource, EmbeddingGenerator, MetadataGenerator
from app.integrations.openai_compat import (
    OpenAICompatibleEmbeddingGenerator,
    OpenAICompatibleMetadataGenerator,
)
from app.integrations.subsonic import SubsonicCatalogSource
from app.orchestrator.controller import ConfigResolver, PipelineService
from app.orchestrator.watchdog import ResumeWatchdog
from app.services.catalog_sync import CatalogSyncService
from app.services.item_store import ItemStore
from app.services.resume_schedule import ResumeScheduleStore
from app.services.runtime_settings import resolve_pipeline_config
from app.workers.processors import BatchProcessor, PipelineMode
from app.workers.queue import JobQueue

QUEUE_NAMES: Mapping[PipelineMode, str] = {
    PipelineMode.FULL: "metadata-generation",
    PipelineMode.METADATA: "metadata-only",
    PipelineMode.EMBEDDING: "embedding-only",
}


@dataclass(slots=True)
class PipelineRuntime:
    """Container bundling the pipeline components of one process."""

    service: PipelineService
    watchdog: ResumeWatchdog
    store: ItemStore
    queues: Mapping[PipelineMode, JobQueue]
    schedule: ResumeScheduleStore
    catalog_sync: Optional[CatalogSyncService]


def build_pipeline_service(
    config: AppConfig,
    *,
    metadata_generator: MetadataGenerator | None = None,
    embedding_generator: EmbeddingGenerator | None = None,
    catalog_source: CatalogSource | None = None,
    session_factory: SessionFactory = session_scope,
    config_resolver: ConfigResolver | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PipelineRuntime:
    """Wire store, queues, processor, schedule and watchdog for ``config``.

    Collaborators not passed explicitly are built from the provider and
    catalog configuration. Without catalog credentials the pipeline runs on
    the items already stored.
    """

    store = ItemStore(session_factory)
    schedule = ResumeScheduleStore(session_factory)
    pipeline_config = config.pipeline
    queues = {
        mode: JobQueue(
            name,
            session_factory=session_factory,
            max_items=pipeline_config.batch_size,
            default_max_attempts=pipeline_config.queue(mode).max_attempts,
        )
        for mode, name in QUEUE_NAMES.items()
    }

    metadata = metadata_generator or OpenAICompatibleMetadataGenerator.from_config(
        config.provider, transport=transport
    )
    embedding = embedding_generator or OpenAICompatibleEmbeddingGenerator.from_config(
        config.provider, transport=transport
    )
    processor = BatchProcessor(store, metadata, embedding)

    source = catalog_source
    if source is None and config.catalog.enabled:
        source = SubsonicCatalogSource(
            base_url=config.catalog.base_url or "",
            username=config.catalog.username or "",
            password=config.catalog.password or "",
            page_size=config.catalog.page_size,
            timeout_ms=config.catalog.timeout_ms,
            transport=transport,
        )
    catalog_sync = CatalogSyncService(source, store) if source is not None else None

    service = PipelineService(
        store=store,
        queues=queues,
        processor=processor,
        schedule=schedule,
        catalog_sync=catalog_sync,
        config_resolver=config_resolver
        or (lambda: resolve_pipeline_config(factory=session_factory)),
    )
    watchdog = ResumeWatchdog(
        queues.values(), schedule, interval_s=pipeline_config.watchdog_interval_s
    )
    return PipelineRuntime(
        service=service,
        watchdog=watchdog,
        store=store,
        queues=queues,
        schedule=schedule,
        catalog_sync=catalog_sync,
    )


__all__ = ["PipelineRuntime", "QUEUE_NAMES", "build_pipeline_service"]
