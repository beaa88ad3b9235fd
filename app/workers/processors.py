"""Batch processing shared by the queue workers and the immediate path."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
import time
from typing import Any

from app.errors import MalformedResponseError
from app.integrations.contracts import (
    AnalysisRequestItem,
    AnalysisResult,
    BatchEmbeddingGenerator,
    EmbeddingGenerator,
    MetadataGenerator,
    ProviderError,
)
from app.logging import get_logger
from app.logging_events import log_event
from app.models import MediaStatus
from app.orchestrator import events as orchestrator_events
from app.services.analysis import build_embedding_text, derive_fields, parse_analysis
from app.services.item_store import AnalysisWrite, CatalogItem, ItemStore
from app.workers.queue import QueueJobDTO
from app.workers.worker import ExhaustedHook, JobHandler

logger = get_logger(__name__)

_LOG_COMPONENT = "workers.processors"


class PipelineMode(str, Enum):
    FULL = "full"
    METADATA = "metadata"
    EMBEDDING = "embedding"


@dataclass(slots=True, frozen=True)
class BatchOutcome:
    """Partial success report: ``count`` of ``total`` items succeeded."""

    count: int
    total: int

    def as_dict(self) -> dict[str, int]:
        return {"count": self.count, "total": self.total}


BatchEntry = CatalogItem | Mapping[str, Any]


def _request_item(entry: BatchEntry) -> AnalysisRequestItem:
    if isinstance(entry, CatalogItem):
        return AnalysisRequestItem(id=entry.id, title=entry.title, artist=entry.artist)
    return AnalysisRequestItem(
        id=str(entry.get("id")),
        title=str(entry.get("title") or ""),
        artist=str(entry.get("artist") or ""),
    )


def _entry_id(entry: BatchEntry) -> str:
    if isinstance(entry, CatalogItem):
        return entry.id
    return str(entry.get("id"))


@dataclass(slots=True)
class _ParsedItem:
    item: AnalysisRequestItem
    analysis: dict[str, Any]
    derived: dict[str, Any]


class BatchProcessor:
    """Run one batch through the AI collaborators and persist the outcome.

    Provider errors raised by the metadata call propagate so the queue can
    retry the job. Everything item specific (parse failures, missing results,
    embedding failures) is written as a per-item status instead.
    """

    def __init__(
        self,
        store: ItemStore,
        metadata_generator: MetadataGenerator,
        embedding_generator: EmbeddingGenerator,
    ) -> None:
        self._store = store
        self._metadata = metadata_generator
        self._embedding = embedding_generator

    @property
    def store(self) -> ItemStore:
        return self._store

    async def process(self, mode: PipelineMode, items: Sequence[BatchEntry]) -> BatchOutcome:
        resolved = PipelineMode(mode)
        if resolved is PipelineMode.FULL:
            return await self.process_full(items)
        if resolved is PipelineMode.METADATA:
            return await self.process_metadata(items)
        return await self.process_embedding(items)

    async def process_full(self, items: Sequence[BatchEntry]) -> BatchOutcome:
        start = time.perf_counter()
        requests = [_request_item(entry) for entry in items]
        if not requests:
            return BatchOutcome(count=0, total=0)
        parsed, failed = await self._generate_metadata(requests)
        if parsed is None:
            return self._report(PipelineMode.FULL, 0, len(requests), start, error="malformed")

        vectors = await self.embed_texts(
            [
                build_embedding_text(
                    entry.analysis, title=entry.item.title, artist=entry.item.artist
                )
                for entry in parsed
            ]
        )
        writes = [
            AnalysisWrite(
                id=entry.item.id,
                payload=entry.analysis,
                derived=entry.derived,
                vector=vector,
                embedding_failed=vector is None,
            )
            for entry, vector in zip(parsed, vectors)
        ]
        saved = self._store.save_batch_analysis(writes)
        if failed:
            self._store.record_failures(failed)
        embedding_failures = sum(1 for vector in vectors if vector is None)
        if embedding_failures:
            log_event(
                logger,
                "pipeline.embedding_failed",
                component=_LOG_COMPONENT,
                mode=PipelineMode.FULL.value,
                count=embedding_failures,
            )
        return self._report(PipelineMode.FULL, saved, len(requests), start, failed=len(failed))

    async def process_metadata(self, items: Sequence[BatchEntry]) -> BatchOutcome:
        start = time.perf_counter()
        requests = [_request_item(entry) for entry in items]
        if not requests:
            return BatchOutcome(count=0, total=0)
        parsed, failed = await self._generate_metadata(requests)
        if parsed is None:
            return self._report(
                PipelineMode.METADATA, 0, len(requests), start, error="malformed"
            )
        saved = self._store.save_batch_analysis(
            [
                AnalysisWrite(id=entry.item.id, payload=entry.analysis, derived=entry.derived)
                for entry in parsed
            ]
        )
        if failed:
            self._store.record_failures(failed)
        return self._report(
            PipelineMode.METADATA, saved, len(requests), start, failed=len(failed)
        )

    async def process_embedding(self, items: Sequence[BatchEntry]) -> BatchOutcome:
        start = time.perf_counter()
        ids = [_entry_id(entry) for entry in items]
        if not ids:
            return BatchOutcome(count=0, total=0)
        records = self._store.get_items(ids)
        ready: list[CatalogItem] = []
        skipped: list[str] = []
        found = {record.id for record in records}
        skipped.extend(item_id for item_id in ids if item_id not in found)
        for record in records:
            if record.analysis_payload:
                ready.append(record)
            else:
                skipped.append(record.id)
        if skipped:
            log_event(
                logger,
                "pipeline.embedding_skipped",
                component=_LOG_COMPONENT,
                reason="missing_analysis",
                count=len(skipped),
                meta={"ids": skipped},
            )
        if not ready:
            return self._report(
                PipelineMode.EMBEDDING, 0, len(ids), start, skipped=len(skipped)
            )

        self._store.mark_embedding_processing(record.id for record in ready)
        vectors = await self.embed_texts(
            [
                build_embedding_text(
                    record.analysis_payload or {}, title=record.title, artist=record.artist
                )
                for record in ready
            ]
        )
        saved = 0
        failed = 0
        for record, vector in zip(ready, vectors):
            if vector is None:
                self._store.set_embedding_status(record.id, MediaStatus.FAILED)
                failed += 1
            elif self._store.save_vector(record.id, vector):
                saved += 1
        return self._report(
            PipelineMode.EMBEDDING,
            saved,
            len(ids),
            start,
            failed=failed,
            skipped=len(skipped),
        )

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float] | None]:
        """Vectorise ``texts``; a failed entry is returned as ``None``.

        Providers with ``embed_batch`` get one request for the whole batch, so
        a provider error fails every entry. The sequential fallback isolates
        failures per text.
        """

        if not texts:
            return []
        if isinstance(self._embedding, BatchEmbeddingGenerator):
            try:
                vectors = await self._embedding.embed_batch(list(texts))
            except ProviderError as exc:
                self._log_embedding_error(exc, count=len(texts))
                return [None] * len(texts)
            if len(vectors) != len(texts):
                self._log_embedding_error(None, count=len(texts))
                return [None] * len(texts)
            return [list(vector) for vector in vectors]

        results: list[list[float] | None] = []
        for text in texts:
            try:
                results.append(list(await self._embedding.embed(text)))
            except ProviderError as exc:
                self._log_embedding_error(exc, count=1)
                results.append(None)
        return results

    async def _generate_metadata(
        self, requests: Sequence[AnalysisRequestItem]
    ) -> tuple[list[_ParsedItem] | None, list[str]]:
        ids = [request.id for request in requests]
        self._store.mark_processing(ids)
        try:
            results = await self._metadata.generate_batch_metadata(list(requests))
        except MalformedResponseError as exc:
            self._store.record_failures(ids)
            log_event(
                logger,
                "pipeline.malformed_response",
                component=_LOG_COMPONENT,
                scope="batch",
                count=len(ids),
                error=str(exc),
            )
            return None, ids

        by_id: dict[str, AnalysisResult] = {}
        for result in results:
            by_id.setdefault(str(result.id), result)

        parsed: list[_ParsedItem] = []
        failed: list[str] = []
        for request in requests:
            result = by_id.get(request.id)
            if result is None:
                failed.append(request.id)
                log_event(
                    logger,
                    "pipeline.missing_result",
                    component=_LOG_COMPONENT,
                    entity_id=request.id,
                )
                continue
            try:
                analysis = parse_analysis(result.payload, item_id=request.id)
            except MalformedResponseError as exc:
                failed.append(request.id)
                log_event(
                    logger,
                    "pipeline.malformed_response",
                    component=_LOG_COMPONENT,
                    scope="item",
                    entity_id=request.id,
                    error=str(exc),
                )
                continue
            if result.llm_model:
                analysis.setdefault("llm_model", result.llm_model)
            parsed.append(
                _ParsedItem(item=request, analysis=analysis, derived=derive_fields(analysis))
            )
        return parsed, failed

    def _log_embedding_error(self, exc: Exception | None, *, count: int) -> None:
        log_event(
            logger,
            "pipeline.embedding_error",
            component=_LOG_COMPONENT,
            count=count,
            error=type(exc).__name__ if exc is not None else "count_mismatch",
        )

    def _report(
        self,
        mode: PipelineMode,
        count: int,
        total: int,
        start: float,
        *,
        failed: int | None = None,
        skipped: int = 0,
        error: str | None = None,
    ) -> BatchOutcome:
        orchestrator_events.emit_batch_event(
            logger,
            mode=mode.value,
            status="error" if error else ("ok" if count == total else "partial"),
            total=total,
            succeeded=count,
            failed=failed if failed is not None else total - count - skipped,
            skipped=skipped,
            duration_ms=int((time.perf_counter() - start) * 1000),
            error=error,
        )
        return BatchOutcome(count=count, total=total)


def mark_batch_failed(mode: PipelineMode, store: ItemStore, ids: Sequence[str]) -> int:
    """Write the terminal failure status for ``ids`` according to ``mode``."""

    if not ids:
        return 0
    if PipelineMode(mode) is PipelineMode.EMBEDDING:
        return store.set_embedding_status_many(ids, MediaStatus.FAILED)
    return store.record_failures(ids)


def build_job_handler(mode: PipelineMode, processor: BatchProcessor) -> JobHandler:
    resolved = PipelineMode(mode)

    async def _handler(job: QueueJobDTO) -> Mapping[str, Any]:
        outcome = await processor.process(resolved, job.items)
        return {"mode": resolved.value, **outcome.as_dict()}

    return _handler


def build_exhausted_hook(mode: PipelineMode, store: ItemStore) -> ExhaustedHook:
    resolved = PipelineMode(mode)

    def _on_exhausted(job: QueueJobDTO, exc: BaseException) -> None:
        count = mark_batch_failed(resolved, store, job.item_ids)
        log_event(
            logger,
            "pipeline.job_exhausted",
            component=_LOG_COMPONENT,
            mode=resolved.value,
            entity_id=str(job.id),
            count=count,
            error=type(exc).__name__,
        )

    return _on_exhausted


__all__ = [
    "BatchOutcome",
    "BatchProcessor",
    "PipelineMode",
    "build_exhausted_hook",
    "build_job_handler",
    "mark_batch_failed",
]
