"""Structured logging helpers for pipeline orchestration components."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from app.logging import get_logger
from app.logging_events import log_event
from app.utils.settings_store import increment_counter

_metrics_logger = get_logger(__name__)


def format_datetime(value: datetime | None) -> str | None:
    """Return an ISO formatted timestamp for ``value`` if present."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc).isoformat()
    return value.astimezone(timezone.utc).isoformat()


def emit_job_event(
    logger: Any,
    *,
    queue: str,
    job_id: int | str,
    status: str,
    attempts: int,
    correlation_id: str | None = None,
    duration_ms: int | None = None,
    retry_in_ms: int | None = None,
    count: int | None = None,
    total: int | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "queue": queue,
        "entity_id": str(job_id),
        "status": status,
        "attempts": attempts,
    }
    if correlation_id:
        payload["correlation_id"] = correlation_id
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    if retry_in_ms is not None:
        payload["retry_in_ms"] = retry_in_ms
    if count is not None:
        payload["count"] = count
    if total is not None:
        payload["total"] = total
    if error:
        payload["error"] = error
    _emit_event(
        logger,
        "pipeline.job",
        payload,
        track_metric=status in {"completed", "failed"},
    )


def emit_batch_event(
    logger: Any,
    *,
    mode: str,
    status: str,
    total: int,
    succeeded: int,
    failed: int,
    skipped: int = 0,
    duration_ms: int | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "mode": mode,
        "status": status,
        "total": total,
        "succeeded": succeeded,
        "failed": failed,
    }
    if skipped:
        payload["skipped"] = skipped
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    if error:
        payload["error"] = error
    _emit_event(logger, "pipeline.batch", payload)


def emit_pipeline_event(
    logger: Any,
    *,
    status: str,
    mode: str,
    state: str | None = None,
    pending: int | None = None,
    jobs_created: int | None = None,
    dry_run: bool | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {"status": status, "mode": mode}
    if state is not None:
        payload["state"] = state
    if pending is not None:
        payload["pending"] = pending
    if jobs_created is not None:
        payload["jobs_created"] = jobs_created
    if dry_run is not None:
        payload["dry_run"] = dry_run
    if error:
        payload["error"] = error
    _emit_event(logger, "pipeline.run", payload, track_metric=status in {"completed", "error"})


def emit_queue_event(
    logger: Any,
    *,
    queue: str,
    action: str,
    reason: str | None = None,
    resume_at: str | None = None,
    cleared_jobs: int | None = None,
) -> None:
    payload: dict[str, Any] = {"queue": queue, "status": action}
    if reason:
        payload["reason"] = reason
    if resume_at:
        payload["resume_at"] = resume_at
    if cleared_jobs is not None:
        payload["cleared_jobs"] = cleared_jobs
    _emit_event(logger, "pipeline.queue", payload)


def emit_watchdog_event(
    logger: Any,
    *,
    status: str,
    duration_ms: int,
    queues_checked: int,
    queues_resumed: int,
    reason: str | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "status": status,
        "duration_ms": duration_ms,
        "queues_checked": queues_checked,
        "queues_resumed": queues_resumed,
    }
    if reason:
        payload["reason"] = reason
    if error:
        payload["error"] = error
    _emit_event(logger, "pipeline.watchdog_tick", payload, track_metric=True)


def _emit_event(
    logger: Any,
    event: str,
    payload: dict[str, Any],
    *,
    track_metric: bool = False,
) -> None:
    log_event(logger, event, **payload)
    if track_metric:
        _increment_metric(event, payload.get("status"))


def _increment_metric(event: str, status: str | None) -> None:
    segments = ["metrics", *event.split(".")]
    segments.append(status or "total")
    key = ".".join(segments)
    try:
        increment_counter(key)
    except Exception:
        _metrics_logger.debug("Failed to increment metric %s", key, exc_info=True)


__all__ = [
    "emit_batch_event",
    "emit_job_event",
    "emit_pipeline_event",
    "emit_queue_event",
    "emit_watchdog_event",
    "format_datetime",
]
