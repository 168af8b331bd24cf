"""Retry/backoff supervisor shared by every model call site.

Transient failures (rate limit, temporarily unavailable) are retried after a
user-visible countdown. The wait grows by a fixed step per retry, so budgets
of 2-3 retries stay in the tens of seconds. Everything else, and the last
transient failure once the budget is spent, is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

# Gemini: 429 RESOURCE_EXHAUSTED / 503 UNAVAILABLE. Anthropic: 429 / 529 overloaded.
_TRANSIENT_STATUS = frozenset({429, 503, 529})
_TRANSIENT_MARKERS = ("429", "503", "quota", "resource_exhausted", "unavailable", "overloaded")

WaitCallback = Callable[[int], None]
Sleeper = Callable[[float], Awaitable[None]]


def is_transient_error(exc: BaseException) -> bool:
    """Classify an SDK error as rate-limit / unavailable.

    google-genai APIError carries `code`, anthropic APIStatusError carries
    `status_code`. Anything without a usable status falls back to the text.
    """
    for attr in ("code", "status_code"):
        status = getattr(exc, attr, None)
        if isinstance(status, int) and status in _TRANSIENT_STATUS:
            return True
    text = f"{type(exc).__name__}: {exc}".lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


async def _countdown(seconds: float, on_wait: WaitCallback | None, sleep: Sleeper) -> None:
    remaining = seconds
    while remaining > 0:
        if on_wait is not None:
            on_wait(math.ceil(remaining))
        tick = min(1.0, remaining)
        await sleep(tick)
        remaining -= tick
    if on_wait is not None:
        on_wait(0)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_delay: float,
    step: float = 3.0,
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    on_wait: WaitCallback | None = None,
    sleep: Sleeper = asyncio.sleep,
    label: str = "model_call",
) -> T:
    """Run `operation`, retrying transient failures up to `retries` times.

    `on_wait(n)` is called once per second of the wait with the seconds left,
    then once with 0 right before the retry is issued.
    """
    delay = base_delay
    remaining = retries
    while True:
        try:
            return await operation()
        except Exception as exc:
            if remaining <= 0 or not is_transient(exc):
                raise
            logger.warning(
                "backoff_wait",
                call=label,
                delay_seconds=delay,
                retries_left=remaining,
                error=str(exc)[:200],
            )
            await _countdown(delay, on_wait, sleep)
            remaining -= 1
            delay += step
