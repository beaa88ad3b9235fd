"""Database models for the enrichment pipeline."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)

from app.db import Base


def _utcnow() -> datetime:
    """Return a naive UTC timestamp; SQLite does not keep offsets."""

    return datetime.now(UTC).replace(tzinfo=None)


class MediaStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class QueueJobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class Song(Base):
    """A catalog item together with its enrichment state."""

    __tablename__ = "songs"
    __table_args__ = (
        CheckConstraint(
            "metadata_status IN ('PENDING','PROCESSING','COMPLETED','FAILED')",
            name="ck_songs_metadata_status_valid",
        ),
        CheckConstraint(
            "embedding_status IS NULL OR "
            "embedding_status IN ('PENDING','PROCESSING','COMPLETED','FAILED')",
            name="ck_songs_embedding_status_valid",
        ),
        Index("ix_songs_metadata_status", "metadata_status"),
        Index("ix_songs_embedding_status", "embedding_status"),
    )

    id = Column(String(128), primary_key=True)
    title = Column(String(512), nullable=False, default="")
    artist = Column(String(512), nullable=False, default="")
    album = Column(String(512), nullable=True)
    duration = Column(Integer, nullable=True)
    file_path = Column(Text, nullable=True)

    metadata_status = Column(
        String(16),
        nullable=False,
        default=MediaStatus.PENDING.value,
    )
    embedding_status = Column(String(16), nullable=True)

    analysis_payload = Column(JSON(none_as_null=True), nullable=True)
    description = Column(Text, nullable=True)
    tags = Column(JSON(none_as_null=True), nullable=True)
    mood = Column(String(128), nullable=True)
    is_instrumental = Column(Boolean, nullable=True)
    energy_level = Column(Float, nullable=True)
    popularity = Column(Float, nullable=True)
    language = Column(String(64), nullable=True)
    spectrum = Column(String(255), nullable=True)
    spatial = Column(String(255), nullable=True)
    scene_tag = Column(String(255), nullable=True)
    tempo_vibe = Column(String(255), nullable=True)
    timbre_texture = Column(String(255), nullable=True)
    llm_model = Column(String(128), nullable=True)
    vector = Column(JSON(none_as_null=True), nullable=True)

    last_analyzed = Column(DateTime, nullable=True)
    last_synced = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class QueueJob(Base):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_queue_jobs_attempts_non_negative"),
        CheckConstraint(
            "status IN ('waiting','active','delayed','completed','failed')",
            name="ck_queue_jobs_status_valid",
        ),
        Index("ix_queue_jobs_queue_status_available_at", "queue", "status", "available_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    queue = Column(String(64), nullable=False, index=True)
    correlation_id = Column(String(128), nullable=False)
    status = Column(
        String(16),
        nullable=False,
        default=QueueJobStatus.WAITING.value,
    )
    payload = Column("payload_json", JSON, nullable=False, default=dict)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(DateTime, nullable=False, default=_utcnow)
    last_error = Column(Text, nullable=True)
    result_payload = Column(JSON(none_as_null=True), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class Setting(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(255), unique=True, nullable=False)
    value = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


__all__ = [
    "MediaStatus",
    "QueueJob",
    "QueueJobStatus",
    "Setting",
    "Song",
]
