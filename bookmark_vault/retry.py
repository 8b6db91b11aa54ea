from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff retry policy.

    - max_attempts counts the initial attempt (max_attempts=5 => 1 try + 4 retries).
    - base_delay_seconds is the first delay after the first failure; each later
      delay doubles, capped at max_delay_seconds.
    - jitter_seconds adds a random [0, jitter_seconds) on top of each delay.
    - retry_after_cap_seconds caps any Retry-After override (0 disables the override).
    """

    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter_seconds: float = 0.25
    retry_after_cap_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.jitter_seconds < 0:
            raise ValueError("jitter_seconds must be >= 0")
        if self.retry_after_cap_seconds < 0:
            raise ValueError("retry_after_cap_seconds must be >= 0")


@dataclass(frozen=True)
class RetryEvent:
    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int

    delay_seconds: float
    retry_after_seconds: float | None
    reason: str | None

    error_type: str
    error_message: str


IsRetryableFn = Callable[[BaseException], tuple[bool, float | None, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
AsyncSleepFn = Callable[[float], Awaitable[None]]


def compute_backoff_seconds(failure_attempt: int, cfg: RetryConfig) -> float:
    # failure_attempt=1 => base delay.
    exponent = max(0, int(failure_attempt) - 1)
    delay = cfg.base_delay_seconds * (2**exponent)
    return min(cfg.max_delay_seconds, max(0.0, float(delay)))


def _jitter(cfg: RetryConfig) -> float:
    if cfg.jitter_seconds <= 0:
        return 0.0
    return random.uniform(0.0, cfg.jitter_seconds)


def _normalize_retry_after(value: float | None, cfg: RetryConfig) -> float | None:
    if value is None or cfg.retry_after_cap_seconds <= 0:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    return min(seconds, float(cfg.retry_after_cap_seconds))


async def call_with_retries_async(
    fn: Callable[[], Awaitable[T]],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: AsyncSleepFn | None = None,
) -> T:
    """
    Await fn() with retries on retryable failures.

    Delays grow exponentially with additive jitter and never shrink between
    consecutive retries; a Retry-After hint can only lengthen a delay.
    """
    op = (operation or "").strip() or "operation"
    sleeper = sleep_fn or asyncio.sleep
    previous_delay = 0.0

    for attempt in range(1, int(cfg.max_attempts) + 1):
        try:
            return await fn()
        except Exception as exc:
            retryable, retry_after, reason = is_retryable(exc)

            if not retryable or attempt >= int(cfg.max_attempts):
                raise

            delay = compute_backoff_seconds(attempt, cfg) + _jitter(cfg)
            ra = _normalize_retry_after(retry_after, cfg)
            if ra is not None:
                delay = max(delay, ra)
            delay = max(delay, previous_delay)
            previous_delay = delay

            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=int(attempt),
                        next_attempt=int(attempt) + 1,
                        max_attempts=int(cfg.max_attempts),
                        delay_seconds=float(delay),
                        retry_after_seconds=ra,
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=(str(exc) or "").strip(),
                    )
                )

            if delay > 0:
                await sleeper(float(delay))

    raise RuntimeError(f"Retry loop exited unexpectedly for operation={op}")
