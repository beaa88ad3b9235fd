"""Consumer loop executing the jobs of a single :class:`JobQueue`."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import inspect
import random
import time
from typing import TYPE_CHECKING, Any

from app.integrations.contracts import (
    ProviderError,
    ProviderRateLimitedError,
    TransientProviderError,
)
from app.logging import get_logger
from app.orchestrator import events as orchestrator_events
from app.utils.retry import backoff_delay_ms
from app.utils.time import utcnow_naive
from app.workers.queue import QueueJobDTO

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from app.utils.rate_limit import SlidingWindowRateLimiter
    from app.workers.queue import JobQueue


JobHandler = Callable[[QueueJobDTO], Awaitable[Mapping[str, Any] | None]]
ExhaustedHook = Callable[[QueueJobDTO, BaseException], Awaitable[None] | None]
RateLimitedHook = Callable[[QueueJobDTO, ProviderRateLimitedError], Awaitable[None] | None]

_ERROR_PREVIEW = 256


class QueueWorker:
    """Pull jobs from ``queue`` and hand them to ``handler``.

    At most ``concurrency`` handlers run at once and every job start draws a
    token from the optional rate limiter. A failing job is retried with
    exponential backoff until ``max_attempts`` is reached; then it is marked
    failed and ``on_exhausted`` runs. Non-transient provider errors skip the
    retries. Rate limit errors additionally invoke ``on_rate_limited`` so the
    owner can trip a circuit breaker.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        backoff_base_ms: int = 5_000,
        jitter_pct: int = 20,
        poll_interval_ms: int = 1_000,
        on_exhausted: ExhaustedHook | None = None,
        on_rate_limited: RateLimitedHook | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._concurrency = max(1, int(concurrency))
        self._rate_limiter = rate_limiter
        self._backoff_base_ms = max(0, int(backoff_base_ms))
        self._jitter_pct = max(0, int(jitter_pct))
        self._poll_interval = max(0.01, int(poll_interval_ms) / 1000)
        self._on_exhausted = on_exhausted
        self._on_rate_limited = on_rate_limited
        self._rng = rng or random.Random()
        self._logger = get_logger(__name__)
        self._semaphore = asyncio.Semaphore(self._concurrency)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"queue-worker-{self._queue.name}")

    async def close(self, *, wait: bool = False) -> None:
        """Stop claiming jobs; optionally wait for in-flight handlers to finish."""

        self._stop_event.set()
        self._queue.notify()
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                self._logger.exception("Queue %s consumer ended with an error", self._queue.name)
        if wait and self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._step()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Queue %s consumer iteration failed", self._queue.name)
                await asyncio.sleep(self._poll_interval)

    async def _step(self) -> None:
        if self._queue.is_paused():
            await self._queue.wait_for_change(self._poll_interval)
            return
        await self._semaphore.acquire()
        try:
            ready = self._queue.has_ready()
            if ready and self._rate_limiter is not None:
                await self._rate_limiter.acquire()
            job = self._claim() if ready else None
        except BaseException:
            self._semaphore.release()
            raise
        if job is None:
            self._semaphore.release()
            if not ready:
                await self._queue.wait_for_change(self._idle_timeout())
            return
        task = asyncio.create_task(self._execute(job))
        self._inflight.add(task)
        task.add_done_callback(self._on_task_done)

    def _claim(self) -> QueueJobDTO | None:
        if self._stop_event.is_set() or self._queue.is_paused():
            return None
        return self._queue.claim()

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._inflight.discard(task)
        self._semaphore.release()

    def _idle_timeout(self) -> float:
        due_at = self._queue.next_due_at()
        if due_at is None:
            return self._poll_interval
        remaining = (due_at - utcnow_naive()).total_seconds()
        return max(0.0, min(self._poll_interval, remaining))

    async def _execute(self, job: QueueJobDTO) -> None:
        try:
            await self._run_job(job)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception(
                "Queue %s could not record the outcome of job %s", self._queue.name, job.id
            )

    async def _run_job(self, job: QueueJobDTO) -> None:
        start = time.perf_counter()
        try:
            result = await self._handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._handle_failure(job, exc, start)
            return
        duration_ms = int((time.perf_counter() - start) * 1000)
        self._queue.complete(job.id, result)
        orchestrator_events.emit_job_event(
            self._logger,
            queue=self._queue.name,
            job_id=job.id,
            status="completed",
            attempts=job.attempts,
            correlation_id=job.correlation_id,
            duration_ms=duration_ms,
            count=_as_int(result, "count"),
            total=_as_int(result, "total"),
        )

    async def _handle_failure(self, job: QueueJobDTO, exc: Exception, start: float) -> None:
        duration_ms = int((time.perf_counter() - start) * 1000)
        message = f"{type(exc).__name__}: {exc}"[:_ERROR_PREVIEW]

        if isinstance(exc, ProviderRateLimitedError) and self._on_rate_limited is not None:
            await self._invoke_hook(self._on_rate_limited, job, exc, name="rate_limited")

        if job.attempts >= job.max_attempts or _is_permanent(exc):
            self._queue.fail(job.id, error=message)
            orchestrator_events.emit_job_event(
                self._logger,
                queue=self._queue.name,
                job_id=job.id,
                status="failed",
                attempts=job.attempts,
                correlation_id=job.correlation_id,
                duration_ms=duration_ms,
                error=message,
            )
            if self._on_exhausted is not None:
                await self._invoke_hook(self._on_exhausted, job, exc, name="exhausted")
            return

        delay_ms = backoff_delay_ms(
            job.attempts,
            base_ms=self._backoff_base_ms,
            jitter_pct=self._jitter_pct,
            rng=self._rng,
        )
        if isinstance(exc, ProviderRateLimitedError) and exc.retry_after_ms:
            delay_ms = max(delay_ms, int(exc.retry_after_ms))
        self._queue.retry(job.id, delay_ms=delay_ms, error=message)
        orchestrator_events.emit_job_event(
            self._logger,
            queue=self._queue.name,
            job_id=job.id,
            status="retry",
            attempts=job.attempts,
            correlation_id=job.correlation_id,
            duration_ms=duration_ms,
            retry_in_ms=delay_ms,
            error=message,
        )

    async def _invoke_hook(
        self,
        hook: Callable[..., Awaitable[None] | None],
        job: QueueJobDTO,
        exc: BaseException,
        *,
        name: str,
    ) -> None:
        try:
            outcome = hook(job, exc)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self._logger.exception(
                "Queue %s hook failed", name, extra={"queue": self._queue.name, "job_id": job.id}
            )


def _is_permanent(exc: Exception) -> bool:
    return isinstance(exc, ProviderError) and not isinstance(exc, TransientProviderError)


def _as_int(result: Mapping[str, Any] | None, key: str) -> int | None:
    if not isinstance(result, Mapping):
        return None
    value = result.get(key)
    return int(value) if isinstance(value, int) else None


__all__ = ["ExhaustedHook", "JobHandler", "QueueWorker", "RateLimitedHook"]
