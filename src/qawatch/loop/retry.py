"""Retry with exponential backoff, and the per-call timeout combinator.

The two compose as ``with_retry(lambda: with_timeout(call(), seconds, name))``
so every attempt gets its own deadline and a timed-out attempt is retried
like any other transient failure.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from qawatch.core.errors import ErrorKind, ReviewerTimeout, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, int, float, BaseException], Any]


async def with_timeout(awaitable: Awaitable[T], seconds: float, action: str = "operation") -> T:
    """Await ``awaitable`` for at most ``seconds``.

    On expiry the in-flight call is cancelled and ``ReviewerTimeout`` is
    raised.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise ReviewerTimeout(action, seconds) from e


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    classify: Callable[[BaseException], ErrorKind] = classify_error,
    name: str = "operation",
    on_retry: RetryCallback | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, a fatal error occurs, or attempts run out.

    Delays grow as ``base_delay * 2 ** (attempt - 1)``: 1s, 2s, 4s with the
    defaults. ``on_retry(attempt, max_attempts, delay, error)`` is called
    before each wait.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if classify(e) is ErrorKind.FATAL:
                raise

            if attempt < max_attempts:
                delay = base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "%s failed, retrying in %.1fs (attempt %d/%d): %s",
                    name, delay, attempt, max_attempts, e,
                )
                if on_retry is not None:
                    result = on_retry(attempt, max_attempts, delay, e)
                    if inspect.isawaitable(result):
                        await result
                await sleep(delay)

    assert last_error is not None
    raise last_error


class RetryingReviewer:
    """Wraps a reviewer so each call gets a hard timeout and retry policy."""

    def __init__(
        self,
        reviewer: Any,
        *,
        detect_timeout: float = 60.0,
        fix_timeout: float = 90.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        on_retry: RetryCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.reviewer = reviewer
        self.detect_timeout = detect_timeout
        self.fix_timeout = fix_timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.on_retry = on_retry
        self._sleep = sleep

    @classmethod
    def from_config(cls, reviewer: Any, config: Any, **kwargs: Any) -> RetryingReviewer:
        return cls(
            reviewer,
            detect_timeout=config.detect_timeout,
            fix_timeout=config.fix_timeout,
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            **kwargs,
        )

    async def detect(self, files):
        return await with_retry(
            lambda: with_timeout(self.reviewer.detect(files), self.detect_timeout, "Review"),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            name="Review",
            on_retry=self.on_retry,
            sleep=self._sleep,
        )

    async def fix(self, file, issues):
        return await with_retry(
            lambda: with_timeout(self.reviewer.fix(file, issues), self.fix_timeout, "Fix"),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            name=f"Fix {file}",
            on_retry=self.on_retry,
            sleep=self._sleep,
        )
