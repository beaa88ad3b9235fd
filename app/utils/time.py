"""Time helpers with monotonic clocks and jittered sleep."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import random

__all__ = [
    "next_hour_utc",
    "now_utc",
    "sleep_jitter_ms",
    "utcnow_naive",
]


def now_utc() -> datetime:
    """Return the current UTC time with timezone information."""

    return datetime.now(UTC)


def utcnow_naive() -> datetime:
    """Return the current UTC time without tzinfo, as stored in the database."""

    return now_utc().replace(tzinfo=None)


def next_hour_utc(hour: int, *, now: datetime | None = None) -> datetime:
    """Return the next occurrence of ``hour``:00 UTC strictly after ``now``."""

    reference = now or now_utc()
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=UTC)
    candidate = reference.astimezone(UTC).replace(
        hour=max(0, min(23, int(hour))), minute=0, second=0, microsecond=0
    )
    if candidate <= reference:
        candidate += timedelta(days=1)
    return candidate


async def sleep_jitter_ms(ms: int, jitter_pct: int) -> float:
    """Sleep for ``ms`` milliseconds, applying +/- jitter percentage."""

    delay_ms = max(0, int(ms))
    pct = max(0, int(jitter_pct))
    actual_ms = float(delay_ms)
    if delay_ms > 0 and pct > 0:
        jitter = delay_ms * pct / 100.0
        actual_ms = random.uniform(max(0.0, delay_ms - jitter), delay_ms + jitter)
    seconds = actual_ms / 1000.0
    await asyncio.sleep(max(0.0, seconds))
    return seconds
