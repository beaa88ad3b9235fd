"""Durable FIFO job queue backed by the ``queue_jobs`` table."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
import contextlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlalchemy import and_, delete, func, or_, select, update

from app.db import SessionFactory, session_scope
from app.logging import get_logger
from app.logging_events import log_event
from app.models import QueueJob, QueueJobStatus
from app.utils.settings_store import read_setting, write_setting
from app.utils.time import utcnow_naive

if TYPE_CHECKING:
    from app.utils.rate_limit import SlidingWindowRateLimiter
    from app.workers.worker import ExhaustedHook, JobHandler, QueueWorker, RateLimitedHook

logger = get_logger(__name__)

_OPEN_STATES = (
    QueueJobStatus.WAITING.value,
    QueueJobStatus.ACTIVE.value,
    QueueJobStatus.DELAYED.value,
)
_CLAIMABLE_STATES = (QueueJobStatus.WAITING.value, QueueJobStatus.DELAYED.value)
_ERROR_LIMIT = 512


@dataclass(slots=True)
class QueueJobDTO:
    """Lightweight data transfer object for queue jobs."""

    id: int
    queue: str
    correlation_id: str
    items: list[dict[str, Any]]
    status: QueueJobStatus
    attempts: int
    max_attempts: int
    available_at: datetime
    last_error: str | None = None
    result_payload: dict[str, Any] | None = None

    @property
    def item_ids(self) -> list[str]:
        return [str(item.get("id")) for item in self.items if item.get("id") is not None]


@dataclass(slots=True, frozen=True)
class QueueSnapshot:
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused,
        }


def _to_dto(record: QueueJob) -> QueueJobDTO:
    payload = dict(record.payload or {})
    items = [dict(item) for item in payload.get("items") or [] if isinstance(item, Mapping)]
    return QueueJobDTO(
        id=int(record.id),
        queue=str(record.queue),
        correlation_id=str(record.correlation_id),
        items=items,
        status=QueueJobStatus(record.status),
        attempts=int(record.attempts or 0),
        max_attempts=int(record.max_attempts or 1),
        available_at=record.available_at,
        last_error=record.last_error,
        result_payload=dict(record.result_payload) if record.result_payload else None,
    )


def _truncate_error(message: str | None, limit: int = _ERROR_LIMIT) -> str | None:
    if message is None:
        return None
    text = str(message)
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _new_correlation_id() -> str:
    return f"batch_{uuid4().hex[:16]}"


class JobQueue:
    """One independently controllable queue instance.

    Jobs are handed out strictly by ascending id. Delayed jobs (retries) become
    eligible again once ``available_at`` has passed. The paused flag is kept in
    the settings table so it survives restarts.
    """

    def __init__(
        self,
        name: str,
        *,
        session_factory: SessionFactory = session_scope,
        max_items: int | None = None,
        default_max_attempts: int = 3,
    ) -> None:
        if not name:
            raise ValueError("queue name must not be empty")
        self._name = name
        self._session_factory = session_factory
        self._max_items = max_items
        self._default_max_attempts = max(1, int(default_max_attempts))
        self._wakeup = asyncio.Event()
        self._worker: QueueWorker | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def paused_key(self) -> str:
        return f"queue.{self._name}.paused"

    @property
    def worker(self) -> QueueWorker | None:
        return self._worker

    @property
    def is_worker_running(self) -> bool:
        return bool(self._worker and self._worker.is_running)

    def configure(self, *, max_items: int | None, default_max_attempts: int) -> None:
        self._max_items = max_items
        self._default_max_attempts = max(1, int(default_max_attempts))

    # -- producer side --------------------------------------------------

    def enqueue(
        self,
        items: Sequence[Mapping[str, Any]],
        *,
        correlation_id: str | None = None,
        max_attempts: int | None = None,
    ) -> QueueJobDTO:
        """Append a job holding ``items`` and return it."""

        if not items:
            raise ValueError("a job requires at least one item")
        if self._max_items is not None and len(items) > self._max_items:
            raise ValueError(
                f"job holds {len(items)} items, queue '{self._name}' allows {self._max_items}"
            )
        now = utcnow_naive()
        with self._session_factory() as session:
            record = QueueJob(
                queue=self._name,
                correlation_id=correlation_id or _new_correlation_id(),
                status=QueueJobStatus.WAITING.value,
                payload={"items": [dict(item) for item in items]},
                attempts=0,
                max_attempts=max(1, int(max_attempts or self._default_max_attempts)),
                available_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            session.flush()
            session.refresh(record)
            dto = _to_dto(record)
        self._emit(dto, "enqueued", size=len(dto.items))
        self.notify()
        return dto

    def enqueue_many(
        self,
        batches: Sequence[Sequence[Mapping[str, Any]]],
        *,
        max_attempts: int | None = None,
    ) -> list[QueueJobDTO]:
        return [self.enqueue(batch, max_attempts=max_attempts) for batch in batches if batch]

    # -- control --------------------------------------------------------

    def pause(self) -> None:
        write_setting(self.paused_key, "1", factory=self._session_factory)
        log_event(logger, "queue.paused", component="workers.queue", queue=self._name)

    def resume(self) -> None:
        write_setting(self.paused_key, "0", factory=self._session_factory)
        log_event(logger, "queue.resumed", component="workers.queue", queue=self._name)
        self.notify()

    def is_paused(self) -> bool:
        return read_setting(self.paused_key, factory=self._session_factory) == "1"

    def purge(self) -> int:
        """Drop every open job and the failed history; return the open-job count."""

        with self._session_factory() as session:
            count = int(
                session.execute(
                    select(func.count())
                    .select_from(QueueJob)
                    .where(QueueJob.queue == self._name, QueueJob.status.in_(_OPEN_STATES))
                ).scalar_one()
            )
            session.execute(
                delete(QueueJob).where(
                    QueueJob.queue == self._name,
                    QueueJob.status.in_((*_OPEN_STATES, QueueJobStatus.FAILED.value)),
                )
            )
        log_event(
            logger, "queue.purged", component="workers.queue", queue=self._name, count=count
        )
        self.notify()
        return count

    def counts(self) -> QueueSnapshot:
        with self._session_factory() as session:
            rows = session.execute(
                select(QueueJob.status, func.count())
                .where(QueueJob.queue == self._name)
                .group_by(QueueJob.status)
            ).all()
        by_status = {str(status): int(count) for status, count in rows}
        return QueueSnapshot(
            waiting=by_status.get(QueueJobStatus.WAITING.value, 0),
            active=by_status.get(QueueJobStatus.ACTIVE.value, 0),
            completed=by_status.get(QueueJobStatus.COMPLETED.value, 0),
            failed=by_status.get(QueueJobStatus.FAILED.value, 0),
            delayed=by_status.get(QueueJobStatus.DELAYED.value, 0),
            paused=self.is_paused(),
        )

    # -- consumer side --------------------------------------------------

    def _ready_clause(self, now: datetime):
        return and_(
            QueueJob.queue == self._name,
            or_(
                QueueJob.status == QueueJobStatus.WAITING.value,
                and_(
                    QueueJob.status == QueueJobStatus.DELAYED.value,
                    QueueJob.available_at <= now,
                ),
            ),
        )

    def has_ready(self) -> bool:
        with self._session_factory() as session:
            found = session.execute(
                select(QueueJob.id).where(self._ready_clause(utcnow_naive())).limit(1)
            ).first()
        return found is not None

    def next_due_at(self) -> datetime | None:
        """Return when the earliest delayed job becomes eligible."""

        with self._session_factory() as session:
            return session.execute(
                select(func.min(QueueJob.available_at)).where(
                    QueueJob.queue == self._name,
                    QueueJob.status == QueueJobStatus.DELAYED.value,
                )
            ).scalar_one_or_none()

    def claim(self) -> QueueJobDTO | None:
        """Move the oldest eligible job to ``active`` and return it."""

        now = utcnow_naive()
        with self._session_factory() as session:
            job_id = session.execute(
                select(QueueJob.id)
                .where(self._ready_clause(now))
                .order_by(QueueJob.id.asc())
                .limit(1)
            ).scalar_one_or_none()
            if job_id is None:
                return None
            result = session.execute(
                update(QueueJob)
                .where(QueueJob.id == job_id, QueueJob.status.in_(_CLAIMABLE_STATES))
                .values(
                    status=QueueJobStatus.ACTIVE.value,
                    attempts=QueueJob.attempts + 1,
                    updated_at=now,
                )
            )
            if not result.rowcount:
                return None
            record = session.get(QueueJob, job_id, populate_existing=True)
            dto = _to_dto(record)
        self._emit(dto, "active")
        return dto

    def complete(self, job_id: int, result_payload: Mapping[str, Any] | None = None) -> bool:
        return self._finish(
            job_id,
            status=QueueJobStatus.COMPLETED,
            result_payload=dict(result_payload) if result_payload else None,
            last_error=None,
        )

    def retry(self, job_id: int, *, delay_ms: int, error: str | None = None) -> bool:
        """Put an active job back as ``delayed`` until ``delay_ms`` has elapsed."""

        available_at = utcnow_naive() + timedelta(milliseconds=max(0, int(delay_ms)))
        with self._session_factory() as session:
            result = session.execute(
                update(QueueJob)
                .where(
                    QueueJob.id == int(job_id),
                    QueueJob.queue == self._name,
                    QueueJob.status == QueueJobStatus.ACTIVE.value,
                )
                .values(
                    status=QueueJobStatus.DELAYED.value,
                    available_at=available_at,
                    last_error=_truncate_error(error),
                    updated_at=utcnow_naive(),
                )
            )
            updated = bool(result.rowcount)
        if updated:
            self.notify()
        return updated

    def fail(self, job_id: int, *, error: str | None = None) -> bool:
        return self._finish(
            job_id, status=QueueJobStatus.FAILED, result_payload=None, last_error=error
        )

    def get(self, job_id: int) -> QueueJobDTO | None:
        with self._session_factory() as session:
            record = session.get(QueueJob, int(job_id))
            if record is None or record.queue != self._name:
                return None
            return _to_dto(record)

    def list_jobs(self, *, status: QueueJobStatus | None = None) -> list[QueueJobDTO]:
        statement = select(QueueJob).where(QueueJob.queue == self._name)
        if status is not None:
            statement = statement.where(QueueJob.status == status.value)
        with self._session_factory() as session:
            records = session.execute(statement.order_by(QueueJob.id.asc())).scalars().all()
            return [_to_dto(record) for record in records]

    # -- worker attachment ----------------------------------------------

    def attach(
        self,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        backoff_base_ms: int = 5_000,
        jitter_pct: int = 20,
        poll_interval_ms: int = 1_000,
        on_exhausted: ExhaustedHook | None = None,
        on_rate_limited: RateLimitedHook | None = None,
    ) -> QueueWorker:
        """Start a consumer for this queue; an already running one is reused."""

        from app.workers.worker import QueueWorker

        if self._worker is not None and self._worker.is_running:
            return self._worker
        worker = QueueWorker(
            self,
            handler,
            concurrency=concurrency,
            rate_limiter=rate_limiter,
            backoff_base_ms=backoff_base_ms,
            jitter_pct=jitter_pct,
            poll_interval_ms=poll_interval_ms,
            on_exhausted=on_exhausted,
            on_rate_limited=on_rate_limited,
        )
        worker.start()
        self._worker = worker
        return worker

    async def detach(self, *, wait: bool = False) -> bool:
        worker = self._worker
        self._worker = None
        if worker is None:
            return False
        await worker.close(wait=wait)
        return True

    # -- change notification --------------------------------------------

    def notify(self) -> None:
        self._wakeup.set()

    async def wait_for_change(self, timeout: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wakeup.wait(), timeout=max(0.0, timeout))
        self._wakeup.clear()

    # -- internals ------------------------------------------------------

    def _finish(
        self,
        job_id: int,
        *,
        status: QueueJobStatus,
        result_payload: dict[str, Any] | None,
        last_error: str | None,
    ) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(QueueJob)
                .where(
                    QueueJob.id == int(job_id),
                    QueueJob.queue == self._name,
                    QueueJob.status == QueueJobStatus.ACTIVE.value,
                )
                .values(
                    status=status.value,
                    result_payload=result_payload,
                    last_error=_truncate_error(last_error),
                    updated_at=utcnow_naive(),
                )
            )
            return bool(result.rowcount)

    def _emit(self, job: QueueJobDTO, status: str, **extra: Any) -> None:
        log_event(
            logger,
            "queue.job",
            component="workers.queue",
            queue=self._name,
            entity_id=str(job.id),
            correlation_id=job.correlation_id,
            status=status,
            attempts=job.attempts,
            **{key: value for key, value in extra.items() if value is not None},
        )


__all__ = ["JobQueue", "QueueJobDTO", "QueueSnapshot"]
