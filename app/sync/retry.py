import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from app.sync.errors import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.1,
) -> float:
    """``base * 2^attempt`` plus up to ``jitter`` of itself, capped at ``max_delay``."""
    delay = base_delay * (2**attempt)
    delay += delay * random.uniform(0, jitter)
    return min(delay, max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    should_retry: Callable[[BaseException], bool] = is_transient,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds, retrying retryable failures.

    At most ``max_retries`` retries follow the first attempt. Errors that
    ``should_retry`` rejects, and the last error once retries are
    exhausted, propagate unchanged.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_retries or not should_retry(e):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info(f"Retry {attempt + 1}/{max_retries} in {delay:.2f}s: {e}")
            if on_retry:
                on_retry(attempt + 1, e)
            attempt += 1
            await sleep(delay)
