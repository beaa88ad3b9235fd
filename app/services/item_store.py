"""Durable per-item enrichment state."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from app.db import SessionFactory, session_scope
from app.integrations.contracts import CatalogTrack, SyncResult
from app.logging import get_logger
from app.logging_events import log_event
from app.models import MediaStatus, Song
from app.utils.time import utcnow_naive

logger = get_logger(__name__)

_LOG_COMPONENT = "services.item_store"

_DERIVED_COLUMNS = frozenset(
    {
        "description",
        "tags",
        "mood",
        "is_instrumental",
        "energy_level",
        "popularity",
        "language",
        "spectrum",
        "spatial",
        "scene_tag",
        "tempo_vibe",
        "timbre_texture",
        "llm_model",
    }
)


@dataclass(slots=True)
class CatalogItem:
    """Snapshot of an item as seen by the processors and the controller."""

    id: str
    title: str
    artist: str
    album: str | None
    metadata_status: MediaStatus
    embedding_status: MediaStatus | None
    analysis_payload: Mapping[str, Any] | None = None
    has_vector: bool = False

    def as_job_entry(self) -> dict[str, str]:
        return {"id": self.id, "title": self.title, "artist": self.artist}


@dataclass(slots=True)
class AnalysisWrite:
    """Per-item outcome of a full-mode batch, persisted in one transaction."""

    id: str
    payload: Mapping[str, Any]
    derived: Mapping[str, Any]
    vector: Sequence[float] | None = None
    embedding_failed: bool = False


def _to_item(record: Song) -> CatalogItem:
    return CatalogItem(
        id=record.id,
        title=record.title or "",
        artist=record.artist or "",
        album=record.album,
        metadata_status=MediaStatus(record.metadata_status),
        embedding_status=(
            MediaStatus(record.embedding_status) if record.embedding_status else None
        ),
        analysis_payload=record.analysis_payload,
        has_vector=record.vector is not None,
    )


def _clean_derived(derived: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in derived.items() if key in _DERIVED_COLUMNS}


class ItemStore:
    """State store for catalog items.

    Every write touches exactly one row; batch helpers issue one statement per
    item inside a single transaction so a failure cannot leak into unrelated
    rows. Reads go through the same engine, so writes are visible immediately.
    """

    def __init__(self, session_factory: SessionFactory = session_scope) -> None:
        self._session_factory = session_factory

    # -- writes ---------------------------------------------------------

    def mark_processing(self, ids: Iterable[str]) -> int:
        return self._set_status_many(ids, Song.metadata_status, MediaStatus.PROCESSING)

    def mark_embedding_processing(self, ids: Iterable[str]) -> int:
        return self._set_status_many(ids, Song.embedding_status, MediaStatus.PROCESSING)

    def record_success(
        self,
        item_id: str,
        payload: Mapping[str, Any],
        derived_fields: Mapping[str, Any],
    ) -> bool:
        """Persist metadata and flag the item for embedding."""

        with self._session_factory() as session:
            return self._apply_success(session, item_id, payload, derived_fields)

    def record_failure(self, item_id: str) -> bool:
        with self._session_factory() as session:
            return self._update_one(
                session, item_id, metadata_status=MediaStatus.FAILED.value
            )

    def record_failures(self, ids: Iterable[str]) -> int:
        return self._set_status_many(ids, Song.metadata_status, MediaStatus.FAILED)

    def set_embedding_status(self, item_id: str, status: MediaStatus | None) -> bool:
        value = status.value if status is not None else None
        with self._session_factory() as session:
            return self._update_one(session, item_id, embedding_status=value)

    def set_embedding_status_many(self, ids: Iterable[str], status: MediaStatus) -> int:
        return self._set_status_many(ids, Song.embedding_status, status)

    def save_vector(self, item_id: str, vector: Sequence[float]) -> bool:
        with self._session_factory() as session:
            return self._update_one(
                session,
                item_id,
                vector=[float(value) for value in vector],
                embedding_status=MediaStatus.COMPLETED.value,
            )

    def save_batch_analysis(self, entries: Sequence[AnalysisWrite]) -> int:
        """Persist metadata (and vectors where present) for a full-mode batch."""

        if not entries:
            return 0
        saved = 0
        with self._session_factory() as session:
            for entry in entries:
                if not self._apply_success(session, entry.id, entry.payload, entry.derived):
                    continue
                if entry.vector is not None:
                    self._update_one(
                        session,
                        entry.id,
                        vector=[float(value) for value in entry.vector],
                        embedding_status=MediaStatus.COMPLETED.value,
                    )
                elif entry.embedding_failed:
                    self._update_one(
                        session, entry.id, embedding_status=MediaStatus.FAILED.value
                    )
                saved += 1
        return saved

    def reset_interrupted_metadata(self) -> int:
        """Move every item stuck in PROCESSING back to PENDING."""

        with self._session_factory() as session:
            result = session.execute(
                update(Song)
                .where(Song.metadata_status == MediaStatus.PROCESSING.value)
                .values(metadata_status=MediaStatus.PENDING.value, updated_at=utcnow_naive())
            )
            count = int(result.rowcount or 0)
        if count:
            log_event(
                logger,
                "items.reset_interrupted",
                component=_LOG_COMPONENT,
                field="metadata_status",
                count=count,
            )
        return count

    def reset_interrupted_embeddings(self) -> int:
        with self._session_factory() as session:
            result = session.execute(
                update(Song)
                .where(Song.embedding_status == MediaStatus.PROCESSING.value)
                .values(embedding_status=MediaStatus.PENDING.value, updated_at=utcnow_naive())
            )
            count = int(result.rowcount or 0)
        if count:
            log_event(
                logger,
                "items.reset_interrupted",
                component=_LOG_COMPONENT,
                field="embedding_status",
                count=count,
            )
        return count

    def upsert_catalog(self, tracks: Iterable[CatalogTrack]) -> SyncResult:
        """Insert unknown tracks as PENDING and refresh tracks whose tags changed."""

        added = updated = skipped = 0
        now = utcnow_naive()
        seen: set[str] = set()
        with self._session_factory() as session:
            for track in tracks:
                track_id = str(track.id).strip()
                if not track_id or track_id in seen:
                    continue
                seen.add(track_id)
                record = session.get(Song, track_id)
                if record is None:
                    session.add(
                        Song(
                            id=track_id,
                            title=track.title,
                            artist=track.artist,
                            album=track.album,
                            duration=track.duration,
                            file_path=track.path,
                            metadata_status=MediaStatus.PENDING.value,
                            embedding_status=None,
                            last_synced=now,
                        )
                    )
                    added += 1
                    continue
                incoming = (track.title, track.artist, track.album, track.duration, track.path)
                current = (
                    record.title,
                    record.artist,
                    record.album,
                    record.duration,
                    record.file_path,
                )
                if incoming == current:
                    skipped += 1
                    continue
                record.title = track.title
                record.artist = track.artist
                record.album = track.album
                record.duration = track.duration
                record.file_path = track.path
                record.metadata_status = MediaStatus.PENDING.value
                record.embedding_status = None
                record.last_synced = now
                updated += 1
        return SyncResult(added=added, updated=updated, skipped=skipped)

    # -- reads ----------------------------------------------------------

    def get_pending(self, limit: int | None = None) -> list[CatalogItem]:
        statement = (
            select(Song)
            .where(Song.metadata_status == MediaStatus.PENDING.value)
            .order_by(Song.created_at.asc(), Song.id.asc())
        )
        return self._select_items(statement, limit)

    def get_pending_embeddings(self, limit: int | None = None) -> list[CatalogItem]:
        statement = (
            select(Song)
            .where(self._pending_embedding_clause())
            .order_by(Song.last_analyzed.asc(), Song.id.asc())
        )
        return self._select_items(statement, limit)

    def get_items(self, ids: Sequence[str]) -> list[CatalogItem]:
        """Return items in the order of ``ids``; unknown ids are omitted."""

        wanted = [str(item_id) for item_id in ids]
        if not wanted:
            return []
        with self._session_factory() as session:
            records = session.execute(select(Song).where(Song.id.in_(wanted))).scalars().all()
            by_id = {record.id: _to_item(record) for record in records}
        return [by_id[item_id] for item_id in wanted if item_id in by_id]

    def get_item(self, item_id: str) -> CatalogItem | None:
        items = self.get_items([item_id])
        return items[0] if items else None

    def get_vector(self, item_id: str) -> list[float] | None:
        with self._session_factory() as session:
            record = session.get(Song, str(item_id))
            if record is None or record.vector is None:
                return None
            return list(record.vector)

    def count_pending(self) -> int:
        return self._count(Song.metadata_status == MediaStatus.PENDING.value)

    def count_pending_embeddings(self) -> int:
        return self._count(self._pending_embedding_clause())

    def count_total(self) -> int:
        return self._count(None)

    def status_breakdown(self) -> dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(
                select(Song.metadata_status, func.count()).group_by(Song.metadata_status)
            ).all()
        breakdown = {status.value: 0 for status in MediaStatus}
        for status, count in rows:
            breakdown[str(status)] = int(count)
        return breakdown

    # -- internals ------------------------------------------------------

    @staticmethod
    def _pending_embedding_clause():
        return and_(
            Song.metadata_status == MediaStatus.COMPLETED.value,
            Song.analysis_payload.is_not(None),
            or_(
                Song.embedding_status.is_(None),
                Song.embedding_status == MediaStatus.PENDING.value,
            ),
        )

    def _select_items(self, statement, limit: int | None) -> list[CatalogItem]:
        if limit is not None:
            if limit <= 0:
                return []
            statement = statement.limit(int(limit))
        with self._session_factory() as session:
            records = session.execute(statement).scalars().all()
            return [_to_item(record) for record in records]

    def _count(self, clause) -> int:
        statement = select(func.count()).select_from(Song)
        if clause is not None:
            statement = statement.where(clause)
        with self._session_factory() as session:
            return int(session.execute(statement).scalar_one())

    def _set_status_many(self, ids: Iterable[str], column, status: MediaStatus) -> int:
        changed = 0
        with self._session_factory() as session:
            for item_id in ids:
                if self._update_one(session, item_id, **{column.key: status.value}):
                    changed += 1
        return changed

    @staticmethod
    def _update_one(session: Session, item_id: str, **values: Any) -> bool:
        values.setdefault("updated_at", utcnow_naive())
        result = session.execute(update(Song).where(Song.id == str(item_id)).values(**values))
        return bool(result.rowcount)

    def _apply_success(
        self,
        session: Session,
        item_id: str,
        payload: Mapping[str, Any],
        derived_fields: Mapping[str, Any],
    ) -> bool:
        return self._update_one(
            session,
            item_id,
            analysis_payload=dict(payload),
            metadata_status=MediaStatus.COMPLETED.value,
            embedding_status=MediaStatus.PENDING.value,
            last_analyzed=utcnow_naive(),
            **_clean_derived(derived_fields),
        )


__all__ = ["AnalysisWrite", "CatalogItem", "ItemStore"]
