from __future__ import annotations

import pytest

from app.errors import MalformedResponseError
from app.integrations.contracts import ProviderUnavailableError
from app.models import MediaStatus
from app.services.item_store import ItemStore
from app.workers.processors import (
    BatchProcessor,
    PipelineMode,
    build_exhausted_hook,
    build_job_handler,
)
from app.workers.queue import JobQueue
from tests.fixtures.pipeline import (
    FakeBatchEmbeddingGenerator,
    FakeEmbeddingGenerator,
    FakeMetadataGenerator,
    seed_songs,
)


def _processor(metadata=None, embedding=None) -> BatchProcessor:
    return BatchProcessor(
        ItemStore(),
        metadata or FakeMetadataGenerator(),
        embedding or FakeEmbeddingGenerator(),
    )


@pytest.mark.asyncio
async def test_full_batch_isolates_unparseable_item() -> None:
    ids = seed_songs(5)
    processor = _processor(metadata=FakeMetadataGenerator(malformed_ids={ids[2]}))
    items = processor.store.get_items(ids)

    outcome = await processor.process(PipelineMode.FULL, items)

    assert outcome.as_dict() == {"count": 4, "total": 5}
    stored = {item.id: item for item in processor.store.get_items(ids)}
    assert stored[ids[2]].metadata_status is MediaStatus.FAILED
    assert stored[ids[2]].embedding_status is None
    for item_id in (ids[0], ids[1], ids[3], ids[4]):
        assert stored[item_id].metadata_status is MediaStatus.COMPLETED
        assert stored[item_id].embedding_status is MediaStatus.COMPLETED
        assert stored[item_id].has_vector
        assert stored[item_id].analysis_payload["llm_model"] == "fake-llm"


@pytest.mark.asyncio
async def test_full_batch_marks_missing_results_failed() -> None:
    ids = seed_songs(3)
    processor = _processor(metadata=FakeMetadataGenerator(missing_ids={ids[0]}))

    outcome = await processor.process_full(processor.store.get_items(ids))

    assert (outcome.count, outcome.total) == (2, 3)
    assert processor.store.get_item(ids[0]).metadata_status is MediaStatus.FAILED


@pytest.mark.asyncio
async def test_whole_batch_malformed_response_fails_every_item() -> None:
    ids = seed_songs(3)
    processor = _processor(
        metadata=FakeMetadataGenerator(error=MalformedResponseError("not JSON at all"))
    )

    outcome = await processor.process(PipelineMode.METADATA, processor.store.get_items(ids))

    assert (outcome.count, outcome.total) == (0, 3)
    assert all(
        item.metadata_status is MediaStatus.FAILED for item in processor.store.get_items(ids)
    )


@pytest.mark.asyncio
async def test_provider_error_propagates_and_leaves_items_processing() -> None:
    ids = seed_songs(2)
    processor = _processor(
        metadata=FakeMetadataGenerator(error=ProviderUnavailableError("ai", "503"))
    )

    with pytest.raises(ProviderUnavailableError):
        await processor.process(PipelineMode.FULL, processor.store.get_items(ids))

    assert all(
        item.metadata_status is MediaStatus.PROCESSING
        for item in processor.store.get_items(ids)
    )


@pytest.mark.asyncio
async def test_embedding_failure_does_not_undo_metadata() -> None:
    ids = seed_songs(3)
    processor = _processor(embedding=FakeEmbeddingGenerator(fail_on=["Title 2 by"]))

    outcome = await processor.process(PipelineMode.FULL, processor.store.get_items(ids))

    assert (outcome.count, outcome.total) == (3, 3)
    failed = processor.store.get_item(ids[1])
    assert failed.metadata_status is MediaStatus.COMPLETED
    assert failed.embedding_status is MediaStatus.FAILED
    assert failed.has_vector is False
    assert processor.store.get_item(ids[0]).embedding_status is MediaStatus.COMPLETED


@pytest.mark.asyncio
async def test_metadata_mode_leaves_embedding_pending() -> None:
    ids = seed_songs(2)
    embedding = FakeEmbeddingGenerator()
    processor = _processor(embedding=embedding)

    outcome = await processor.process(
        PipelineMode.METADATA,
        [{"id": ids[0], "title": "Title 1", "artist": "Artist 1"}, {"id": ids[1]}],
    )

    assert (outcome.count, outcome.total) == (2, 2)
    assert embedding.texts == []
    assert [item.id for item in processor.store.get_pending_embeddings()] == ids


@pytest.mark.asyncio
async def test_embedding_mode_skips_items_without_analysis() -> None:
    ready = seed_songs(
        2,
        prefix="ready",
        metadata_status=MediaStatus.COMPLETED,
        embedding_status=MediaStatus.PENDING,
        with_payload=True,
    )
    bare = seed_songs(1, prefix="bare")
    processor = _processor()

    outcome = await processor.process(
        PipelineMode.EMBEDDING, [{"id": item_id} for item_id in [*ready, *bare, "ghost"]]
    )

    assert (outcome.count, outcome.total) == (2, 4)
    assert all(
        item.embedding_status is MediaStatus.COMPLETED
        for item in processor.store.get_items(ready)
    )
    untouched = processor.store.get_item(bare[0])
    assert untouched.metadata_status is MediaStatus.PENDING
    assert untouched.embedding_status is None


@pytest.mark.asyncio
async def test_batch_embedding_error_fails_every_vector() -> None:
    ids = seed_songs(
        2,
        metadata_status=MediaStatus.COMPLETED,
        embedding_status=MediaStatus.PENDING,
        with_payload=True,
    )
    embedding = FakeBatchEmbeddingGenerator(error=ProviderUnavailableError("ai", "down"))
    processor = _processor(embedding=embedding)

    outcome = await processor.process_embedding([{"id": item_id} for item_id in ids])

    assert (outcome.count, outcome.total) == (0, 2)
    assert embedding.batches == [2]
    assert all(
        item.embedding_status is MediaStatus.FAILED for item in processor.store.get_items(ids)
    )


@pytest.mark.asyncio
async def test_embed_texts_uses_single_batch_request() -> None:
    embedding = FakeBatchEmbeddingGenerator()
    processor = _processor(embedding=embedding)

    vectors = await processor.embed_texts(["a", "bb", "ccc"])

    assert embedding.batches == [3]
    assert all(vector is not None and len(vector) == 4 for vector in vectors)


@pytest.mark.asyncio
async def test_embed_texts_treats_count_mismatch_as_failure() -> None:
    processor = _processor(embedding=FakeBatchEmbeddingGenerator(short_by=1))

    assert await processor.embed_texts(["a", "b"]) == [None, None]


@pytest.mark.asyncio
async def test_job_handler_reports_partial_success() -> None:
    ids = seed_songs(3)
    processor = _processor(metadata=FakeMetadataGenerator(malformed_ids={ids[0]}))
    queue = JobQueue("metadata-generation")
    queue.enqueue([item.as_job_entry() for item in processor.store.get_items(ids)])
    job = queue.claim()
    assert job is not None

    result = await build_job_handler(PipelineMode.FULL, processor)(job)

    assert result == {"mode": "full", "count": 2, "total": 3}


def test_exhausted_hook_writes_mode_specific_failure() -> None:
    store = ItemStore()
    ids = seed_songs(2)
    embedding_ids = seed_songs(
        2,
        prefix="emb",
        metadata_status=MediaStatus.COMPLETED,
        embedding_status=MediaStatus.PROCESSING,
        with_payload=True,
    )
    full_queue = JobQueue("metadata-generation")
    embedding_queue = JobQueue("embedding-only")
    full_queue.enqueue([{"id": item_id} for item_id in ids])
    embedding_queue.enqueue([{"id": item_id} for item_id in embedding_ids])

    build_exhausted_hook(PipelineMode.FULL, store)(full_queue.claim(), RuntimeError("x"))
    build_exhausted_hook(PipelineMode.EMBEDDING, store)(
        embedding_queue.claim(), RuntimeError("x")
    )

    assert all(item.metadata_status is MediaStatus.FAILED for item in store.get_items(ids))
    embedded = store.get_items(embedding_ids)
    assert all(item.metadata_status is MediaStatus.COMPLETED for item in embedded)
    assert all(item.embedding_status is MediaStatus.FAILED for item in embedded)
