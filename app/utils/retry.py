"""Retry and backoff helpers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import random
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryDirective:
    """Instruction returned from ``classify_err`` for ``with_retry``."""

    retry: bool
    delay_override_ms: int | None = None
    error: Exception | None = None


AsyncFactory = Callable[[], Awaitable[T]]
Classifier = Callable[[Exception], RetryDirective | bool]


def exp_backoff_delays(base_ms: int, max_attempts: int, jitter_pct: int) -> list[int]:
    """Return exponential backoff delays in milliseconds.

    ``jitter_pct`` increases each nominal delay by the configured percentage so
    upper bounds can be inspected in tests; random jitter is applied when
    actually sleeping.
    """

    base = max(1, int(base_ms))
    attempts = max(0, int(max_attempts))
    pct = max(0, int(jitter_pct))
    delays: list[int] = []
    for index in range(attempts):
        delay = base * (2**index)
        if pct:
            delay += int(delay * pct / 100)
        delays.append(delay)
    return delays


def jitter_delay_ms(
    delay_ms: int,
    jitter_pct: int,
    *,
    rng: random.Random | None = None,
) -> float:
    """Spread ``delay_ms`` uniformly by +/- ``jitter_pct`` percent."""

    delay = max(0, int(delay_ms))
    pct = max(0, int(jitter_pct))
    if delay <= 0 or pct <= 0:
        return float(delay)
    jitter = delay * pct / 100.0
    source = rng or random
    return source.uniform(max(0.0, delay - jitter), delay + jitter)


def backoff_delay_ms(
    attempt: int,
    *,
    base_ms: int,
    jitter_pct: int,
    rng: random.Random | None = None,
) -> int:
    """Return the jittered delay before retry number ``attempt`` (1-based)."""

    if base_ms <= 0:
        return 0
    exponent = max(0, int(attempt) - 1)
    nominal = int(base_ms) * (2**exponent)
    return int(jitter_delay_ms(nominal, jitter_pct, rng=rng))


def _resolve_directive(result: RetryDirective | bool, error: Exception) -> RetryDirective:
    if isinstance(result, RetryDirective):
        resolved_error = result.error if result.error is not None else error
        return RetryDirective(
            retry=bool(result.retry),
            delay_override_ms=(
                max(0, int(result.delay_override_ms))
                if result.delay_override_ms is not None
                else None
            ),
            error=resolved_error,
        )
    if isinstance(result, bool):
        return RetryDirective(retry=result, error=error, delay_override_ms=None)
    raise TypeError("classify_err must return a boolean or RetryDirective")


async def with_retry(
    async_fn: AsyncFactory[T],
    *,
    attempts: int,
    base_ms: int,
    jitter_pct: int,
    timeout_ms: int | None,
    classify_err: Classifier,
) -> T:
    """Execute ``async_fn`` with retries, exponential backoff and jitter."""

    max_attempts = max(1, int(attempts))
    timeout = int(timeout_ms) if timeout_ms is not None else None
    delays = exp_backoff_delays(max(1, int(base_ms)), max_attempts, 0)

    for attempt in range(1, max_attempts + 1):
        try:
            call = async_fn()
            if timeout is not None and timeout > 0:
                return await asyncio.wait_for(call, timeout / 1000.0)
            return await call
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            directive = _resolve_directive(classify_err(exc), exc)
            if not (directive.retry and attempt < max_attempts):
                if directive.error is not exc:
                    raise directive.error from exc
                raise

            delay_ms = directive.delay_override_ms
            if delay_ms is None:
                delay_ms = delays[attempt - 1]
            jittered_ms = jitter_delay_ms(delay_ms, jitter_pct)
            if jittered_ms > 0:
                await asyncio.sleep(jittered_ms / 1000.0)
    raise RuntimeError("Retry loop exited unexpectedly")


__all__ = [
    "RetryDirective",
    "backoff_delay_ms",
    "exp_backoff_delays",
    "jitter_delay_ms",
    "with_retry",
]
