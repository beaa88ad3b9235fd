from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from app.orchestrator.watchdog import ResumeWatchdog
from app.services.resume_schedule import ResumeScheduleStore
from app.utils.settings_store import increment_counter, write_setting
from app.workers.queue import JobQueue
from tests.fixtures.pipeline import wait_until

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _watchdog(queues, schedule, *, now: datetime = NOW) -> ResumeWatchdog:
    return ResumeWatchdog(queues, schedule, interval_s=60, now_factory=lambda: now)


def test_check_resumes_queues_whose_deadline_passed() -> None:
    schedule = ResumeScheduleStore()
    due = JobQueue("metadata-generation")
    later = JobQueue("embedding-only")
    due.pause()
    later.pause()
    schedule.schedule(due.name, NOW - timedelta(seconds=1))
    schedule.schedule(later.name, NOW + timedelta(minutes=5))

    resumed = _watchdog([due, later], schedule).check()

    assert resumed == ["metadata-generation"]
    assert due.is_paused() is False
    assert schedule.get(due.name) is None
    assert later.is_paused() is True
    assert schedule.get(later.name) == NOW + timedelta(minutes=5)


def test_check_is_idempotent() -> None:
    schedule = ResumeScheduleStore()
    queue = JobQueue("metadata-only")
    queue.pause()
    schedule.schedule(queue.name, NOW)
    watchdog = _watchdog([queue], schedule)

    assert watchdog.check() == ["metadata-only"]
    assert watchdog.check() == []
    assert queue.is_paused() is False


def test_stale_deadline_for_running_queue_is_cleared() -> None:
    schedule = ResumeScheduleStore()
    queue = JobQueue("metadata-generation")
    schedule.schedule(queue.name, NOW - timedelta(hours=1))

    assert _watchdog([queue], schedule).check() == []
    assert schedule.get(queue.name) is None


def test_check_records_tick_metrics() -> None:
    schedule = ResumeScheduleStore()
    watchdog = _watchdog([JobQueue("metadata-generation")], schedule)

    watchdog.check()
    watchdog.check()

    assert increment_counter("metrics.pipeline.watchdog_tick.idle", amount=0) == 2


def test_unparsable_deadline_is_ignored() -> None:
    schedule = ResumeScheduleStore()
    queue = JobQueue("metadata-generation")
    queue.pause()
    write_setting("queue.metadata-generation.resume_at", "tomorrow-ish")

    assert schedule.get(queue.name) is None
    assert _watchdog([queue], schedule).check() == []
    assert queue.is_paused() is True


def test_schedule_normalises_naive_datetimes_to_utc() -> None:
    schedule = ResumeScheduleStore()

    stored = schedule.schedule("metadata-generation", datetime(2026, 3, 1, 8, 0))

    assert stored.tzinfo is UTC
    assert schedule.get("metadata-generation") == datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
    assert schedule.clear("metadata-generation") is True
    assert schedule.clear("metadata-generation") is False


@pytest.mark.asyncio
async def test_watchdog_runs_a_tick_on_start() -> None:
    schedule = ResumeScheduleStore()
    queue = JobQueue("metadata-generation")
    queue.pause()
    schedule.schedule(queue.name, NOW - timedelta(seconds=5))
    watchdog = _watchdog([queue], schedule)

    assert await watchdog.start() is True
    try:
        assert watchdog.is_running
        assert await wait_until(lambda: not queue.is_paused())
    finally:
        await watchdog.stop()

    assert watchdog.is_running is False
