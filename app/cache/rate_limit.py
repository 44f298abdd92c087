import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request, status

from app.cache.keys import CacheKeys
from app.cache.layer import CacheUnavailable, KeyValueCache

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class RateLimiter:
    """
    Fixed-window counter on top of the key-value cache.

    The first increment in a window sets the counter's expiry to the
    window size; the store dropping the key is the reset. When the store
    is unreachable the limiter fails open.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        window_seconds: int = 3600,
        max_requests: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock

    async def check_and_increment(
        self,
        identifier: str,
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
    ) -> RateLimitResult:
        window = window_seconds or self.window_seconds
        limit = max_requests or self.max_requests
        key = CacheKeys.rate_limit(identifier)

        try:
            current = await self.cache.incr(key)
            if current == 1:
                await self.cache.expire(key, window)

            ttl = await self.cache.ttl(key)
            if ttl < 0:
                # counter survived without an expiry; restart the window
                await self.cache.expire(key, window)
                ttl = window
        except CacheUnavailable as e:
            logger.warning(f"Rate limit store unavailable for {identifier}, allowing: {e}")
            return RateLimitResult(
                allowed=True, remaining=limit, reset_at=self._clock() + window
            )

        return RateLimitResult(
            allowed=current <= limit,
            remaining=max(0, limit - current),
            reset_at=self._clock() + ttl,
        )

    async def reset(self, identifier: str) -> bool:
        return await self.cache.delete(CacheKeys.rate_limit(identifier))


def rate_limit(scope: str, max_requests: Optional[int] = None, window_seconds: Optional[int] = None):
    """
    FastAPI dependency gating a route per owner.

    Example:
      @router.post("/", dependencies=[Depends(rate_limit("create_todos", 100))])
    """

    async def dependency(request: Request) -> RateLimitResult:
        limiter: RateLimiter = request.app.state.rate_limiter
        owner_id = request.headers.get("X-User-Id", "anonymous")
        result = await limiter.check_and_increment(
            f"{scope}:{owner_id}", window_seconds, max_requests
        )
        if not result.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers=result.headers(),
            )
        return result

    return dependency
