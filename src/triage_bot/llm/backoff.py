"""Deterministic exponential backoff and the transient-retry loop built on it."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from triage_bot.errors import TransientExternalError
from triage_bot.logging import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class ExponentialBackoffParams(BaseModel):
    """Delay for retry ``step`` is ``base_seconds * factor ** clamp(step - start_step, 0, max_exp)``.

    No jitter: the same step always waits the same time, which keeps retry
    behaviour reproducible in tests.
    """

    base_seconds: float = Field(0.5, gt=0)
    factor: float = Field(2.0, gt=1e-9)
    start_step: int = Field(0, ge=0)
    max_exp: int = Field(6, ge=0, le=60)
    cap_seconds: float | None = Field(default=8.0, gt=0)


def backoff_exponential_current(
    step: int,
    *,
    base_seconds: float,
    factor: float = 2.0,
    start_step: int = 0,
    max_exp: int = 6,
    cap_seconds: float | None = None,
) -> float:
    if step < 0:
        raise ValueError("step must be >= 0")
    if base_seconds <= 0:
        raise ValueError("base_seconds must be > 0")
    if factor <= 0:
        raise ValueError("factor must be > 0")

    exponent = min(int(max_exp), max(0, int(step) - int(start_step)))
    delay = float(base_seconds) * float(factor) ** exponent
    if cap_seconds is not None:
        delay = min(float(cap_seconds), delay)
    return delay


def delay_for(step: int, params: ExponentialBackoffParams | dict[str, Any]) -> float:
    parsed = params if isinstance(params, ExponentialBackoffParams) else ExponentialBackoffParams.model_validate(params)
    return backoff_exponential_current(
        step,
        base_seconds=parsed.base_seconds,
        factor=parsed.factor,
        start_step=parsed.start_step,
        max_exp=parsed.max_exp,
        cap_seconds=parsed.cap_seconds,
    )


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    params: ExponentialBackoffParams,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``operation`` and retry it on :class:`TransientExternalError`.

    At most ``max_retries`` retries follow the first attempt. The last
    transient error is re-raised once retries are spent; any other exception
    propagates immediately.
    """

    attempt = 0
    while True:
        try:
            return await operation()
        except TransientExternalError as exc:
            if attempt >= max_retries:
                raise
            delay = delay_for(attempt, params)
            logger.warning(
                "%s failed transiently (attempt %s/%s, status=%s); retrying in %.2fs",
                label,
                attempt + 1,
                max_retries + 1,
                exc.status_code,
                delay,
            )
            attempt += 1
            await sleep(delay)
