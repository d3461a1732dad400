"""
Bounded retry for remote calls.

``call_with_retry`` awaits a coroutine function until it succeeds, a
non-retryable exception escapes, or the attempt budget is spent. Backoff is
exponential with jitter and capped; an exception carrying a ``retry_after``
hint (seconds) stretches the wait up to ``max_delay``.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger

RetryHook = Callable[[int, BaseException, float], None]


class RetryConfig:
    """Attempt budget and backoff shape."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.5,
                 max_delay: float = 5.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = max(0.0, base_delay)
        self.max_delay = max(0.0, max_delay)
        self.exponential_base = exponential_base
        self.jitter = jitter

    @classmethod
    def from_config(cls, config) -> "RetryConfig":
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    def delay_for(self, attempt: int, hint: Optional[float] = None) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        if self.jitter and delay:
            delay += random.uniform(-0.1 * delay, 0.1 * delay)
        if hint:
            delay = max(delay, hint)
        return max(0.0, min(delay, self.max_delay))


class RetryError(Exception):
    """All attempts failed with a retryable exception."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


async def call_with_retry(func: Callable[..., Awaitable[Any]],
                          *args,
                          exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                          config: Optional[RetryConfig] = None,
                          name: Optional[str] = None,
                          on_retry: Optional[RetryHook] = None,
                          **kwargs) -> Any:
    """
    Await ``func(*args, **kwargs)`` until it succeeds or attempts run out.

    Only ``exceptions`` are retried; anything else propagates immediately.
    ``on_retry(attempt, error, delay)`` is called before each wait.
    Raises RetryError carrying the last retried exception once exhausted.
    """
    config = config or RetryConfig()
    label = name or getattr(func, "__name__", "call")
    logger = get_logger(f"content.retry.{label}")

    attempt = 1
    while True:
        try:
            result = await func(*args, **kwargs)
        except exceptions as exc:
            if attempt >= config.max_attempts:
                logger.error("Retries exhausted", attempts=attempt, error=str(exc))
                raise RetryError(
                    f"{label} failed after {attempt} attempts: {exc}",
                    last_exception=exc,
                    attempts=attempt,
                ) from exc

            delay = config.delay_for(attempt, getattr(exc, "retry_after", None))
            logger.warning("Attempt failed, backing off", attempt=attempt, delay=round(delay, 3), error=str(exc))
            if on_retry:
                on_retry(attempt, exc, delay)
            await asyncio.sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info("Succeeded after retry", attempts=attempt)
        return result
