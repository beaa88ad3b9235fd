"""Watchdog resuming paused queues once their stored deadline has passed."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
import time

from app.logging import get_logger
from app.orchestrator import events as orchestrator_events
from app.orchestrator.timer import PeriodicTask
from app.services.resume_schedule import ResumeScheduleStore
from app.utils.time import now_utc
from app.workers.queue import JobQueue


class ResumeWatchdog:
    def __init__(
        self,
        queues: Iterable[JobQueue],
        schedule: ResumeScheduleStore,
        *,
        interval_s: float = 60.0,
        now_factory: Callable[[], datetime] = now_utc,
        time_source: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._queues = list(queues)
        self._schedule = schedule
        self._now_factory = now_factory
        self._time_source = time_source
        self._logger = get_logger(__name__)
        self._timer = PeriodicTask("resume-watchdog", interval_s, self.check)

    @property
    def interval(self) -> float:
        return self._timer.interval

    @property
    def is_running(self) -> bool:
        return self._timer.is_running

    async def start(self) -> bool:
        return await self._timer.start()

    async def stop(self) -> None:
        await self._timer.stop()

    def check(self) -> list[str]:
        """Resume every paused queue whose deadline has passed.

        Returns the names of the queues resumed by this call. Deadlines left
        behind by queues that are no longer paused are cleared as well.
        """

        start = self._time_source()
        now = self._now_factory()
        resumed: list[str] = []
        try:
            for queue in self._queues:
                deadline = self._schedule.get(queue.name)
                if deadline is None or deadline > now:
                    continue
                if queue.is_paused():
                    queue.resume()
                    resumed.append(queue.name)
                    orchestrator_events.emit_queue_event(
                        self._logger,
                        queue=queue.name,
                        action="resumed",
                        reason="deadline_passed",
                        resume_at=orchestrator_events.format_datetime(deadline),
                    )
                self._schedule.clear(queue.name)
        except Exception as exc:
            orchestrator_events.emit_watchdog_event(
                self._logger,
                status="error",
                duration_ms=int((self._time_source() - start) * 1000),
                queues_checked=len(self._queues),
                queues_resumed=len(resumed),
                error=type(exc).__name__,
            )
            raise
        orchestrator_events.emit_watchdog_event(
            self._logger,
            status="resumed" if resumed else "idle",
            duration_ms=int((self._time_source() - start) * 1000),
            queues_checked=len(self._queues),
            queues_resumed=len(resumed),
        )
        return resumed


__all__ = ["ResumeWatchdog"]
