from __future__ import annotations

from app.integrations.contracts import CatalogTrack
from app.models import MediaStatus
from app.services.item_store import AnalysisWrite, ItemStore
from tests.fixtures.pipeline import analysis_payload, load_song, seed_songs


def _track(track_id: str, title: str = "Song") -> CatalogTrack:
    return CatalogTrack(id=track_id, title=title, artist="Artist", album="Album", duration=200)


def test_upsert_catalog_inserts_pending_and_is_idempotent() -> None:
    store = ItemStore()

    first = store.upsert_catalog([_track("a"), _track("b"), _track("a")])
    second = store.upsert_catalog([_track("a"), _track("b")])

    assert first.as_dict() == {"added": 2, "updated": 0, "skipped": 0}
    assert second.as_dict() == {"added": 0, "updated": 0, "skipped": 2}
    song = load_song("a")
    assert song is not None
    assert song.metadata_status == MediaStatus.PENDING.value
    assert song.embedding_status is None


def test_upsert_catalog_resets_analysis_when_tags_change() -> None:
    store = ItemStore()
    store.upsert_catalog([_track("a")])
    store.record_success("a", analysis_payload(), {"mood": "nostalgic"})

    result = store.upsert_catalog([_track("a", title="Renamed")])

    assert result.updated == 1
    song = load_song("a")
    assert song is not None
    assert song.title == "Renamed"
    assert song.metadata_status == MediaStatus.PENDING.value
    assert song.embedding_status is None


def test_record_success_flags_item_for_embedding() -> None:
    store = ItemStore()
    (song_id,) = seed_songs(1)

    assert store.record_success(song_id, analysis_payload(), {"mood": "nostalgic", "bogus": 1})

    song = load_song(song_id)
    assert song is not None
    assert song.metadata_status == MediaStatus.COMPLETED.value
    assert song.embedding_status == MediaStatus.PENDING.value
    assert song.mood == "nostalgic"
    assert song.last_analyzed is not None
    assert [item.id for item in store.get_pending_embeddings()] == [song_id]


def test_record_success_for_unknown_item_is_a_noop() -> None:
    assert ItemStore().record_success("missing", analysis_payload(), {}) is False


def test_get_pending_returns_oldest_first_and_honours_limit() -> None:
    store = ItemStore()
    ids = seed_songs(5)
    store.record_failure(ids[1])

    pending = store.get_pending(limit=3)

    assert [item.id for item in pending] == [ids[0], ids[2], ids[3]]
    assert store.get_pending(limit=0) == []
    assert store.count_pending() == 4


def test_pending_embeddings_require_completed_metadata_and_payload() -> None:
    store = ItemStore()
    seed_songs(2, prefix="fresh")
    ready = seed_songs(
        2,
        prefix="ready",
        metadata_status=MediaStatus.COMPLETED,
        embedding_status=MediaStatus.PENDING,
        with_payload=True,
    )
    seed_songs(
        1,
        prefix="done",
        metadata_status=MediaStatus.COMPLETED,
        embedding_status=MediaStatus.COMPLETED,
        with_payload=True,
    )
    seed_songs(1, prefix="nopayload", metadata_status=MediaStatus.COMPLETED)

    assert sorted(item.id for item in store.get_pending_embeddings()) == sorted(ready)
    assert store.count_pending_embeddings() == 2


def test_reset_interrupted_moves_processing_back_to_pending() -> None:
    store = ItemStore()
    ids = seed_songs(4)
    store.mark_processing(ids[:3])
    embedding_ids = seed_songs(
        2,
        prefix="emb",
        metadata_status=MediaStatus.COMPLETED,
        embedding_status=MediaStatus.PROCESSING,
        with_payload=True,
    )

    assert store.reset_interrupted_metadata() == 3
    assert store.reset_interrupted_embeddings() == 2
    assert store.reset_interrupted_metadata() == 0
    assert all(item.metadata_status is MediaStatus.PENDING for item in store.get_items(ids))
    assert all(
        item.embedding_status is MediaStatus.PENDING for item in store.get_items(embedding_ids)
    )


def test_save_batch_analysis_writes_vectors_and_embedding_failures() -> None:
    store = ItemStore()
    ids = seed_songs(3)

    saved = store.save_batch_analysis(
        [
            AnalysisWrite(id=ids[0], payload=analysis_payload(), derived={}, vector=[0.1, 0.2]),
            AnalysisWrite(
                id=ids[1], payload=analysis_payload(), derived={}, embedding_failed=True
            ),
            AnalysisWrite(id="unknown", payload=analysis_payload(), derived={}),
        ]
    )

    assert saved == 2
    first, second, third = store.get_items(ids)
    assert first.embedding_status is MediaStatus.COMPLETED
    assert store.get_vector(ids[0]) == [0.1, 0.2]
    assert second.metadata_status is MediaStatus.COMPLETED
    assert second.embedding_status is MediaStatus.FAILED
    assert third.metadata_status is MediaStatus.PENDING


def test_get_items_keeps_request_order_and_skips_unknown() -> None:
    store = ItemStore()
    ids = seed_songs(3)

    items = store.get_items([ids[2], "ghost", ids[0]])

    assert [item.id for item in items] == [ids[2], ids[0]]


def test_status_breakdown_counts_every_status() -> None:
    store = ItemStore()
    ids = seed_songs(4)
    store.mark_processing(ids[:1])
    store.record_failures(ids[1:3])

    assert store.status_breakdown() == {
        "PENDING": 1,
        "PROCESSING": 1,
        "COMPLETED": 0,
        "FAILED": 2,
    }
    assert store.count_total() == 4
