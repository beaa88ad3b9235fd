"""Persisted resume deadlines, one per queue."""

from __future__ import annotations

from datetime import UTC, datetime

from app.db import SessionFactory, session_scope
from app.logging import get_logger
from app.utils.settings_store import delete_setting, read_setting, write_setting

logger = get_logger(__name__)


def _resume_key(queue_name: str) -> str:
    return f"queue.{queue_name}.resume_at"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ResumeScheduleStore:
    """Read and write the ``queue.<name>.resume_at`` settings."""

    def __init__(self, session_factory: SessionFactory = session_scope) -> None:
        self._session_factory = session_factory

    def schedule(self, queue_name: str, resume_at: datetime) -> datetime:
        deadline = _as_utc(resume_at)
        write_setting(
            _resume_key(queue_name), deadline.isoformat(), factory=self._session_factory
        )
        return deadline

    def get(self, queue_name: str) -> datetime | None:
        raw = read_setting(_resume_key(queue_name), factory=self._session_factory)
        if not raw:
            return None
        try:
            return _as_utc(datetime.fromisoformat(raw))
        except ValueError:
            logger.warning("Ignoring unparsable resume deadline for %s: %r", queue_name, raw)
            return None

    def clear(self, queue_name: str) -> bool:
        return delete_setting(_resume_key(queue_name), factory=self._session_factory)


__all__ = ["ResumeScheduleStore"]
