"""Generic periodic task bound to the application lifecycle."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import contextlib
import inspect
from typing import Any

from app.logging import get_logger
from app.utils.time import sleep_jitter_ms

TickCallback = Callable[[], Awaitable[Any] | Any]


def _coerce_interval(value: float | int | str | None, default: float) -> float:
    if value is None:
        return default
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        return default
    if resolved < 0:
        return 0.0
    return resolved


class PeriodicTask:
    """Run ``callback`` every ``interval_s`` seconds until stopped.

    The first tick runs immediately after :meth:`start`. Overlapping ticks are
    skipped rather than queued.
    """

    def __init__(
        self,
        name: str,
        interval_s: float | int | str | None,
        callback: TickCallback,
        *,
        shutdown_grace_s: float = 5.0,
        jitter_pct: int = 0,
        default_interval_s: float = 60.0,
    ) -> None:
        self._name = name
        self._interval = _coerce_interval(interval_s, default_interval_s)
        self._callback = callback
        self._shutdown_grace = max(0.0, float(shutdown_grace_s))
        self._jitter_pct = max(0, int(jitter_pct))
        self._logger = get_logger(__name__)
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    async def start(self) -> bool:
        if self.is_running:
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self._name)
        return True

    async def stop(self) -> None:
        """Signal the loop to stop and wait up to the shutdown grace period."""

        self._stop_event.set()
        task = self._task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._shutdown_grace)
        except TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        finally:
            self._task = None

    async def trigger(self) -> Any:
        """Execute one tick now; returns ``None`` when a tick is already running."""

        if self._lock.locked():
            self._logger.debug("Periodic task %s busy; tick skipped", self._name)
            return None
        async with self._lock:
            result = self._callback()
            if inspect.isawaitable(result):
                result = await result
            return result

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.trigger()
            except Exception:
                self._logger.exception("Periodic task %s tick failed", self._name)
            if self._stop_event.is_set():
                break
            await self._sleep_until_next()

    async def _sleep_until_next(self) -> None:
        if self._interval <= 0:
            await asyncio.sleep(0)
            return
        sleep_task = asyncio.create_task(
            sleep_jitter_ms(int(self._interval * 1000), self._jitter_pct),
            name=f"{self._name}-sleep",
        )
        wait_task = asyncio.create_task(self._stop_event.wait())
        done, pending = await asyncio.wait(
            {sleep_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in done:
            with contextlib.suppress(asyncio.CancelledError):
                task.result()
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["PeriodicTask", "TickCallback"]
