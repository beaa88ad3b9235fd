"""Fakes and seeding helpers shared by the pipeline tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence
from datetime import timedelta
from typing import Any

from app.config import PipelineConfig, load_config
from app.db import session_scope
from app.integrations.contracts import (
    AnalysisRequestItem,
    AnalysisResult,
    CatalogTrack,
    ProviderError,
)
from app.models import MediaStatus, Song
from app.orchestrator.bootstrap import PipelineRuntime, build_pipeline_service
from app.utils.time import utcnow_naive

FAST_QUEUE_ENV = {
    "PIPELINE_BATCH_SIZE": "10",
    "PIPELINE_FULL_BACKOFF_BASE_MS": "0",
    "PIPELINE_FULL_POLL_INTERVAL_MS": "10",
    "PIPELINE_FULL_RATE_LIMIT_MAX": "100",
    "PIPELINE_METADATA_BACKOFF_BASE_MS": "0",
    "PIPELINE_METADATA_POLL_INTERVAL_MS": "10",
    "PIPELINE_METADATA_RATE_LIMIT_MAX": "100",
    "PIPELINE_EMBEDDING_BACKOFF_BASE_MS": "0",
    "PIPELINE_EMBEDDING_POLL_INTERVAL_MS": "10",
    "PIPELINE_EMBEDDING_RATE_LIMIT_MAX": "100",
}


def analysis_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "vector_anchor": {
            "acoustic_model": "Warm analog synths over a steady drum machine",
            "semantic_push": "A neon city at night",
            "cultural_weight": "80s synthwave revival",
            "exclusion_logic": "Not acoustic",
        },
        "embedding_tags": {
            "spectrum": "Warm",
            "spatial": "Wide",
            "energy": 6,
            "tempo_vibe": "Mid-tempo",
            "timbre_texture": "Glossy",
            "mood_coord": ["nostalgic", "dreamy"],
            "objects": ["Synthwave Genre", "neon"],
            "scene_tag": "Night Drive",
        },
        "popularity_raw": 0.42,
        "language": "instrumental",
        "is_instrumental": True,
    }
    payload.update(overrides)
    return payload


def pipeline_config(**env: str) -> PipelineConfig:
    return PipelineConfig.from_env({**FAST_QUEUE_ENV, **env})


def seed_songs(
    count: int,
    *,
    prefix: str = "song",
    metadata_status: MediaStatus = MediaStatus.PENDING,
    embedding_status: MediaStatus | None = None,
    with_payload: bool = False,
) -> list[str]:
    """Insert ``count`` songs with strictly increasing ``created_at``."""

    base = utcnow_naive()
    ids: list[str] = []
    with session_scope() as session:
        for index in range(1, count + 1):
            song_id = f"{prefix}-{index:03d}"
            session.add(
                Song(
                    id=song_id,
                    title=f"Title {index}",
                    artist=f"Artist {index}",
                    album="Album",
                    metadata_status=metadata_status.value,
                    embedding_status=embedding_status.value if embedding_status else None,
                    analysis_payload=analysis_payload() if with_payload else None,
                    created_at=base + timedelta(milliseconds=index),
                    updated_at=base,
                )
            )
            ids.append(song_id)
    return ids


def load_song(song_id: str) -> Song | None:
    with session_scope() as session:
        return session.get(Song, song_id)


class FakeMetadataGenerator:
    """Return a valid analysis per item unless told otherwise."""

    def __init__(
        self,
        *,
        malformed_ids: Iterable[str] = (),
        missing_ids: Iterable[str] = (),
        error: Exception | None = None,
        model: str = "fake-llm",
    ) -> None:
        self.malformed_ids = set(malformed_ids)
        self.missing_ids = set(missing_ids)
        self.error = error
        self.model = model
        self.calls: list[list[str]] = []

    async def generate_batch_metadata(
        self, items: Sequence[AnalysisRequestItem]
    ) -> list[AnalysisResult]:
        self.calls.append([item.id for item in items])
        if self.error is not None:
            raise self.error
        results: list[AnalysisResult] = []
        for item in items:
            if item.id in self.missing_ids:
                continue
            if item.id in self.malformed_ids:
                payload: Any = "Sorry, I could not analyse this song."
            else:
                payload = analysis_payload()
            results.append(AnalysisResult(id=item.id, payload=payload, llm_model=self.model))
        return results


class FakeEmbeddingGenerator:
    """Sequential embedder; texts containing a ``fail_on`` marker raise."""

    def __init__(self, *, fail_on: Iterable[str] = (), dimensions: int = 4) -> None:
        self.fail_on = tuple(fail_on)
        self.dimensions = dimensions
        self.texts: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.texts.append(text)
        if any(marker in text for marker in self.fail_on):
            raise ProviderError("ai.embedding", "embedding backend rejected the input")
        return [float(len(text) % 7)] + [0.5] * (self.dimensions - 1)


class FakeBatchEmbeddingGenerator(FakeEmbeddingGenerator):
    def __init__(self, *, error: Exception | None = None, short_by: int = 0) -> None:
        super().__init__()
        self.error = error
        self.short_by = short_by
        self.batches: list[int] = []

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        self.batches.append(len(texts))
        if self.error is not None:
            raise self.error
        vectors = [await self.embed(text) for text in texts]
        return vectors[: len(vectors) - self.short_by]


class StaticCatalogSource:
    def __init__(self, tracks: Sequence[CatalogTrack], *, gate: asyncio.Event | None = None) -> None:
        self.tracks = list(tracks)
        self.gate = gate
        self.calls: list[int | None] = []

    async def fetch_tracks(self, limit: int | None = None) -> list[CatalogTrack]:
        self.calls.append(limit)
        if self.gate is not None:
            await self.gate.wait()
        if limit is None:
            return list(self.tracks)
        return list(self.tracks[:limit])


def build_runtime(
    *,
    metadata_generator: Any | None = None,
    embedding_generator: Any | None = None,
    catalog_source: Any | None = None,
    config_resolver: Callable[[], PipelineConfig] | None = None,
) -> PipelineRuntime:
    return build_pipeline_service(
        load_config(),
        metadata_generator=metadata_generator or FakeMetadataGenerator(),
        embedding_generator=embedding_generator or FakeEmbeddingGenerator(),
        catalog_source=catalog_source,
        config_resolver=config_resolver or pipeline_config,
    )


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 3.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


__all__ = [
    "FAST_QUEUE_ENV",
    "FakeBatchEmbeddingGenerator",
    "FakeEmbeddingGenerator",
    "FakeMetadataGenerator",
    "StaticCatalogSource",
    "analysis_payload",
    "build_runtime",
    "load_song",
    "pipeline_config",
    "seed_songs",
    "wait_until",
]
