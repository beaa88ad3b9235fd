"""Pipeline controller: start/pause/resume/stop/status over the three queues."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import math
from typing import Any

from app.config import PipelineConfig, QueueConfig
from app.integrations.contracts import (
    CatalogSync,
    ProviderError,
    ProviderQuotaExhaustedError,
    ProviderRateLimitedError,
)
from app.logging import get_logger
from app.orchestrator import events as orchestrator_events
from app.services.item_store import CatalogItem, ItemStore
from app.services.resume_schedule import ResumeScheduleStore
from app.services.runtime_settings import resolve_pipeline_config
from app.utils.rate_limit import SlidingWindowRateLimiter
from app.utils.time import next_hour_utc, now_utc
from app.workers.processors import (
    BatchProcessor,
    PipelineMode,
    build_exhausted_hook,
    build_job_handler,
    mark_batch_failed,
)
from app.workers.queue import JobQueue, QueueJobDTO

ConfigResolver = Callable[[], PipelineConfig]


class PipelineState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ENQUEUING = "enqueuing"


@dataclass(slots=True, frozen=True)
class StartResult:
    success: bool
    message: str
    mode: PipelineMode = PipelineMode.FULL
    pending_count: int = 0
    jobs_created: int = 0
    dry_run: bool = False
    busy: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "mode": self.mode.value,
            "pending_count": self.pending_count,
            "jobs_created": self.jobs_created,
            "dry_run": self.dry_run,
        }


@dataclass(slots=True, frozen=True)
class ControlResult:
    success: bool
    message: str
    mode: PipelineMode
    resume_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "mode": self.mode.value,
            "resume_at": orchestrator_events.format_datetime(self.resume_at),
        }


@dataclass(slots=True, frozen=True)
class StopResult:
    success: bool
    message: str
    mode: PipelineMode
    cleared_jobs: int = 0
    reset_items: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "mode": self.mode.value,
            "cleared_jobs": self.cleared_jobs,
            "reset_items": self.reset_items,
        }


@dataclass(slots=True, frozen=True)
class ImmediateResult:
    success: bool
    message: str
    mode: PipelineMode
    count: int = 0
    total: int = 0
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "mode": self.mode.value,
            "count": self.count,
            "total": self.total,
        }


@dataclass(slots=True, frozen=True)
class PipelineStatus:
    state: PipelineState
    queues: Mapping[str, Mapping[str, Any]]
    pending_songs: int
    pending_embeddings: int
    total_songs: int
    breakdown: Mapping[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "queues": {name: dict(snapshot) for name, snapshot in self.queues.items()},
            "pending_songs": self.pending_songs,
            "pending_embeddings": self.pending_embeddings,
            "total_songs": self.total_songs,
            "breakdown": dict(self.breakdown),
        }


def _chunk(items: Sequence[CatalogItem], size: int) -> list[list[CatalogItem]]:
    step = max(1, int(size))
    return [list(items[index : index + step]) for index in range(0, len(items), step)]


class PipelineService:
    """Process-wide controller owning the queues, their workers and the state machine.

    Public operations never raise; they report failures through the
    ``success``/``message`` fields of their result objects.
    """

    def __init__(
        self,
        *,
        store: ItemStore,
        queues: Mapping[PipelineMode, JobQueue],
        processor: BatchProcessor,
        schedule: ResumeScheduleStore,
        catalog_sync: CatalogSync | None = None,
        config_resolver: ConfigResolver = resolve_pipeline_config,
        now_factory: Callable[[], datetime] = now_utc,
    ) -> None:
        missing = [mode.value for mode in PipelineMode if mode not in queues]
        if missing:
            raise ValueError(f"queues missing for modes: {', '.join(missing)}")
        self._store = store
        self._queues = {PipelineMode(mode): queue for mode, queue in queues.items()}
        self._processor = processor
        self._schedule = schedule
        self._catalog_sync = catalog_sync
        self._config_resolver = config_resolver
        self._now_factory = now_factory
        self._logger = get_logger(__name__)
        self._state = PipelineState.IDLE
        self._run_task: asyncio.Task[None] | None = None
        self._run_mode: PipelineMode | None = None
        self._limiters: dict[PipelineMode, SlidingWindowRateLimiter] = {}

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def queues(self) -> Mapping[PipelineMode, JobQueue]:
        return dict(self._queues)

    def queue(self, mode: PipelineMode | str) -> JobQueue:
        return self._queues[PipelineMode(mode)]

    # -- start ----------------------------------------------------------

    async def start(
        self,
        *,
        skip_sync: bool = False,
        limit: int | None = None,
        dry_run: bool = False,
        mode: PipelineMode | str = PipelineMode.FULL,
    ) -> StartResult:
        resolved = PipelineMode(mode)
        if self._state is not PipelineState.IDLE:
            return StartResult(
                success=False,
                message=f"Pipeline is busy ({self._state.value}).",
                mode=resolved,
                dry_run=dry_run,
                busy=True,
            )
        try:
            config = self._config_resolver()
        except Exception as exc:
            self._logger.exception("Failed to resolve pipeline configuration")
            return StartResult(
                success=False, message=f"Configuration error: {exc}", mode=resolved
            )

        if dry_run:
            return await self._dry_run(config, resolved, skip_sync=skip_sync, limit=limit)

        self._set_state(PipelineState.ENQUEUING if skip_sync else PipelineState.SYNCING)
        self._run_task = asyncio.create_task(
            self._run_pipeline(config, resolved, skip_sync=skip_sync, limit=limit),
            name=f"pipeline-start-{resolved.value}",
        )
        self._run_mode = resolved
        orchestrator_events.emit_pipeline_event(
            self._logger, status="started", mode=resolved.value, state=self._state.value
        )
        message = (
            "Pipeline started; enqueuing pending items in the background."
            if skip_sync
            else "Pipeline started; syncing the catalog before enqueuing."
        )
        return StartResult(success=True, message=message, mode=resolved)

    async def _dry_run(
        self,
        config: PipelineConfig,
        mode: PipelineMode,
        *,
        skip_sync: bool,
        limit: int | None,
    ) -> StartResult:
        try:
            if not skip_sync:
                self._set_state(PipelineState.SYNCING)
                await self._sync_catalog(limit)
            pending = len(self._pending_items(mode, limit, config))
        except Exception as exc:
            self._logger.exception("Pipeline dry run failed")
            orchestrator_events.emit_pipeline_event(
                self._logger,
                status="error",
                mode=mode.value,
                dry_run=True,
                error=type(exc).__name__,
            )
            return StartResult(
                success=False, message=f"Dry run failed: {exc}", mode=mode, dry_run=True
            )
        finally:
            self._set_state(PipelineState.IDLE)
        jobs = math.ceil(pending / config.batch_size) if pending else 0
        orchestrator_events.emit_pipeline_event(
            self._logger,
            status="dry_run",
            mode=mode.value,
            pending=pending,
            jobs_created=jobs,
            dry_run=True,
        )
        return StartResult(
            success=True,
            message=f"Dry run: {pending} pending items would create {jobs} jobs.",
            mode=mode,
            pending_count=pending,
            jobs_created=jobs,
            dry_run=True,
        )

    async def _run_pipeline(
        self,
        config: PipelineConfig,
        mode: PipelineMode,
        *,
        skip_sync: bool,
        limit: int | None,
    ) -> None:
        try:
            if not skip_sync:
                self._set_state(PipelineState.SYNCING)
                await self._sync_catalog(limit)
            self._set_state(PipelineState.ENQUEUING)
            items = self._pending_items(mode, limit, config)
            jobs = self._enqueue(mode, items, config)
            if jobs:
                queue = self._queues[mode]
                queue.resume()
                self._schedule.clear(queue.name)
                self._ensure_worker(mode, config)
            orchestrator_events.emit_pipeline_event(
                self._logger,
                status="completed",
                mode=mode.value,
                pending=len(items),
                jobs_created=len(jobs),
            )
        except Exception as exc:
            self._logger.exception("Pipeline run failed")
            orchestrator_events.emit_pipeline_event(
                self._logger, status="error", mode=mode.value, error=type(exc).__name__
            )
        finally:
            self._set_state(PipelineState.IDLE)

    async def _sync_catalog(self, limit: int | None) -> None:
        if self._catalog_sync is None:
            self._logger.info("Catalog sync not configured; using stored items")
            return
        await self._catalog_sync.sync(limit)

    def _pending_items(
        self, mode: PipelineMode, limit: int | None, config: PipelineConfig
    ) -> list[CatalogItem]:
        fetch_limit = config.fetch_limit if limit is None else min(int(limit), config.fetch_limit)
        if mode is PipelineMode.EMBEDDING:
            return self._store.get_pending_embeddings(fetch_limit)
        return self._store.get_pending(fetch_limit)

    def _enqueue(
        self, mode: PipelineMode, items: Sequence[CatalogItem], config: PipelineConfig
    ) -> list[QueueJobDTO]:
        queue = self._queues[mode]
        queue.configure(
            max_items=config.batch_size,
            default_max_attempts=config.queue(mode).max_attempts,
        )
        batches = [
            [item.as_job_entry() for item in batch] for batch in _chunk(items, config.batch_size)
        ]
        return queue.enqueue_many(batches)

    # -- workers --------------------------------------------------------

    def ensure_workers(self) -> None:
        """Attach a consumer to every queue that has none running."""

        config = self._config_resolver()
        for mode in PipelineMode:
            self._ensure_worker(mode, config)

    def _ensure_worker(self, mode: PipelineMode, config: PipelineConfig) -> None:
        queue = self._queues[mode]
        if queue.is_worker_running:
            return
        queue_config = config.queue(mode)
        queue.configure(
            max_items=config.batch_size, default_max_attempts=queue_config.max_attempts
        )

        async def _on_rate_limited(job: QueueJobDTO, exc: ProviderRateLimitedError) -> None:
            self.trip_circuit_breaker(mode, exc)

        queue.attach(
            build_job_handler(mode, self._processor),
            concurrency=queue_config.concurrency,
            rate_limiter=self._limiter(mode, queue_config),
            backoff_base_ms=queue_config.backoff_base_ms,
            jitter_pct=queue_config.jitter_pct,
            poll_interval_ms=queue_config.poll_interval_ms,
            on_exhausted=build_exhausted_hook(mode, self._store),
            on_rate_limited=_on_rate_limited,
        )

    def _limiter(self, mode: PipelineMode, queue_config: QueueConfig) -> SlidingWindowRateLimiter:
        # one limiter per mode for the lifetime of the service
        limiter = self._limiters.get(mode)
        if (
            limiter is None
            or limiter.max_calls != queue_config.rate_limit_max
            or limiter.window_seconds != queue_config.rate_limit_window_s
        ):
            limiter = SlidingWindowRateLimiter(
                max_calls=queue_config.rate_limit_max,
                window_seconds=queue_config.rate_limit_window_s,
            )
            self._limiters[mode] = limiter
        return limiter

    def trip_circuit_breaker(
        self, mode: PipelineMode | str, exc: ProviderRateLimitedError
    ) -> datetime:
        """Pause the queue of ``mode`` and schedule its automatic resume."""

        resolved = PipelineMode(mode)
        config = self._config_resolver()
        queue = self._queues[resolved]
        now = self._now_factory()
        if isinstance(exc, ProviderQuotaExhaustedError):
            resume_at = next_hour_utc(config.quota_resume_hour_utc, now=now)
            reason = "quota_exhausted"
        else:
            retry_after_s = (exc.retry_after_ms or 0) / 1000
            cooldown_s = max(float(config.rate_limit_cooldown_s), retry_after_s)
            resume_at = now + timedelta(seconds=cooldown_s)
            reason = "rate_limited"
        existing = self._schedule.get(queue.name)
        if existing is not None and existing > resume_at:
            resume_at = existing
        queue.pause()
        resume_at = self._schedule.schedule(queue.name, resume_at)
        orchestrator_events.emit_queue_event(
            self._logger,
            queue=queue.name,
            action="paused",
            reason=reason,
            resume_at=orchestrator_events.format_datetime(resume_at),
        )
        return resume_at

    # -- control --------------------------------------------------------

    async def pause(
        self, mode: PipelineMode | str = PipelineMode.FULL, *, duration_s: float | None = None
    ) -> ControlResult:
        resolved = PipelineMode(mode)
        queue = self._queues[resolved]
        try:
            queue.pause()
            resume_at: datetime | None = None
            if duration_s is not None and duration_s > 0:
                resume_at = self._schedule.schedule(
                    queue.name, self._now_factory() + timedelta(seconds=float(duration_s))
                )
            else:
                self._schedule.clear(queue.name)
        except Exception as exc:
            self._logger.exception("Failed to pause queue %s", queue.name)
            return ControlResult(success=False, message=f"Pause failed: {exc}", mode=resolved)
        orchestrator_events.emit_queue_event(
            self._logger,
            queue=queue.name,
            action="paused",
            reason="operator",
            resume_at=orchestrator_events.format_datetime(resume_at),
        )
        message = (
            f"Queue {queue.name} paused until {resume_at.isoformat()}."
            if resume_at
            else f"Queue {queue.name} paused."
        )
        return ControlResult(success=True, message=message, mode=resolved, resume_at=resume_at)

    async def resume(self, mode: PipelineMode | str = PipelineMode.FULL) -> ControlResult:
        resolved = PipelineMode(mode)
        queue = self._queues[resolved]
        try:
            config = self._config_resolver()
            queue.resume()
            self._schedule.clear(queue.name)
            self._ensure_worker(resolved, config)
        except Exception as exc:
            self._logger.exception("Failed to resume queue %s", queue.name)
            return ControlResult(success=False, message=f"Resume failed: {exc}", mode=resolved)
        orchestrator_events.emit_queue_event(
            self._logger, queue=queue.name, action="resumed", reason="operator"
        )
        return ControlResult(success=True, message=f"Queue {queue.name} resumed.", mode=resolved)

    async def stop(self, mode: PipelineMode | str = PipelineMode.FULL) -> StopResult:
        """Pause, purge and detach the queue, then reset interrupted items.

        A background start targeting the same mode is cancelled first.
        Handlers already in flight are not cancelled; their results are
        accepted when they finish. Interrupted items are reset even when an
        earlier step fails.
        """

        resolved = PipelineMode(mode)
        queue = self._queues[resolved]
        failure: Exception | None = None
        cleared = 0
        reset = 0
        try:
            await self._cancel_run(resolved)
            queue.pause()
            cleared = queue.purge()
            await queue.detach(wait=False)
            self._schedule.clear(queue.name)
        except Exception as exc:
            self._logger.exception("Failed to stop queue %s", queue.name)
            failure = exc
        finally:
            try:
                reset = self._store.reset_interrupted_metadata()
                reset += self._store.reset_interrupted_embeddings()
            except Exception as exc:
                self._logger.exception("Failed to reset interrupted items for %s", queue.name)
                failure = failure or exc
        if failure is not None:
            return StopResult(
                success=False,
                message=f"Stop failed: {failure}",
                mode=resolved,
                cleared_jobs=cleared,
                reset_items=reset,
            )
        orchestrator_events.emit_queue_event(
            self._logger,
            queue=queue.name,
            action="stopped",
            reason="operator",
            cleared_jobs=cleared,
        )
        return StopResult(
            success=True,
            message=f"Queue {queue.name} stopped; {cleared} jobs cleared.",
            mode=resolved,
            cleared_jobs=cleared,
            reset_items=reset,
        )

    async def _cancel_run(self, mode: PipelineMode) -> None:
        task = self._run_task
        if task is None or task.done() or self._run_mode is not mode:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        # a task cancelled before its first step never reaches its finally
        self._set_state(PipelineState.IDLE)
        orchestrator_events.emit_pipeline_event(
            self._logger, status="cancelled", mode=mode.value
        )

    def status(self) -> PipelineStatus:
        queues: dict[str, dict[str, Any]] = {}
        for mode, queue in self._queues.items():
            snapshot = queue.counts().as_dict()
            snapshot["name"] = queue.name
            snapshot["worker_running"] = queue.is_worker_running
            snapshot["resume_at"] = orchestrator_events.format_datetime(
                self._schedule.get(queue.name)
            )
            queues[mode.value] = snapshot
        return PipelineStatus(
            state=self._state,
            queues=queues,
            pending_songs=self._store.count_pending(),
            pending_embeddings=self._store.count_pending_embeddings(),
            total_songs=self._store.count_total(),
            breakdown=self._store.status_breakdown(),
        )

    # -- immediate path -------------------------------------------------

    async def process_immediate(
        self, ids: Sequence[str], mode: PipelineMode | str = PipelineMode.FULL
    ) -> ImmediateResult:
        """Process ``ids`` right now, bypassing the queue and its rate limiter.

        Callers must not pass ids that are also sitting in a queued job.
        """

        resolved = PipelineMode(mode)
        unique_ids = list(dict.fromkeys(str(item_id) for item_id in ids if item_id))
        try:
            config = self._config_resolver()
        except Exception as exc:
            self._logger.exception("Failed to resolve pipeline configuration")
            return ImmediateResult(
                success=False,
                message=f"Configuration error: {exc}",
                mode=resolved,
                reason="unexpected",
            )
        if not unique_ids:
            return ImmediateResult(
                success=False,
                message="At least one id is required.",
                mode=resolved,
                reason="invalid_request",
            )
        if len(unique_ids) > config.immediate_max_items:
            return ImmediateResult(
                success=False,
                message=(
                    f"At most {config.immediate_max_items} items can be processed immediately."
                ),
                mode=resolved,
                total=len(unique_ids),
                reason="invalid_request",
            )

        if resolved is PipelineMode.EMBEDDING:
            entries: list[Any] = [{"id": item_id} for item_id in unique_ids]
        else:
            found = self._store.get_items(unique_ids)
            if len(found) != len(unique_ids):
                known = {item.id for item in found}
                unknown = [item_id for item_id in unique_ids if item_id not in known]
                return ImmediateResult(
                    success=False,
                    message=f"Unknown ids: {', '.join(unknown)}",
                    mode=resolved,
                    total=len(unique_ids),
                    reason="invalid_request",
                )
            entries = found

        try:
            outcome = await self._processor.process(resolved, entries)
        except ProviderError as exc:
            mark_batch_failed(resolved, self._store, unique_ids)
            self._logger.warning(
                "Immediate %s batch failed: %s", resolved.value, exc, exc_info=True
            )
            return ImmediateResult(
                success=False,
                message=f"Provider error: {exc}",
                mode=resolved,
                total=len(unique_ids),
                reason="provider_error",
            )
        except Exception as exc:
            mark_batch_failed(resolved, self._store, unique_ids)
            self._logger.exception("Immediate %s batch failed", resolved.value)
            return ImmediateResult(
                success=False,
                message=f"Processing failed: {exc}",
                mode=resolved,
                total=len(unique_ids),
                reason="unexpected",
            )
        return ImmediateResult(
            success=True,
            message=f"Processed {outcome.count}/{outcome.total} items.",
            mode=resolved,
            count=outcome.count,
            total=outcome.total,
        )

    # -- lifecycle ------------------------------------------------------

    async def wait_until_idle(self, timeout: float | None = None) -> bool:
        task = self._run_task
        if task is None or task.done():
            return self._state is PipelineState.IDLE
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except TimeoutError:
            return False
        return self._state is PipelineState.IDLE

    async def shutdown(self, *, wait: bool = True) -> None:
        task = self._run_task
        self._run_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for queue in self._queues.values():
            await queue.detach(wait=wait)
        self._set_state(PipelineState.IDLE)

    def _set_state(self, state: PipelineState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        self._logger.debug("Pipeline state %s -> %s", previous.value, state.value)


__all__ = [
    "ControlResult",
    "ImmediateResult",
    "PipelineService",
    "PipelineState",
    "PipelineStatus",
    "StartResult",
    "StopResult",
]
