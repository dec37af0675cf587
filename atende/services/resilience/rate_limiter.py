"""Fixed-window rate limiting on redis with an in-process fallback."""

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request, Response

from atende.logging_config import get_logger

logger = get_logger("resilience.rate_limiter")


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: int
    max_requests: int


RATE_LIMITS: dict[str, RateLimitConfig] = {
    "auth": RateLimitConfig(window_seconds=60, max_requests=10),
    "api": RateLimitConfig(window_seconds=60, max_requests=100),
    "webhook": RateLimitConfig(window_seconds=1, max_requests=50),
    "ai": RateLimitConfig(window_seconds=60, max_requests=30),
    "admin": RateLimitConfig(window_seconds=60, max_requests=200),
    "upload": RateLimitConfig(window_seconds=60, max_requests=20),
}

_CLEANUP_EVERY = 1000


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # unix seconds

    def headers(self, now: Optional[float] = None) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            now = time.time() if now is None else now
            headers["Retry-After"] = str(max(int(math.ceil(self.reset_at - now)), 1))
        return headers


class RateLimiter:
    """One counter per (preset, identifier) that expires with its window.

    With redis the limit is shared by every process. Without it (or when a
    redis call fails) each process enforces the limit on its own.
    """

    def __init__(self, redis_client=None, *, clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self._clock = clock
        self._memory: dict[str, dict] = {}
        self._calls = 0
        self._warned = False

    @staticmethod
    def key(preset: str, identifier: str) -> str:
        return f"ratelimit:{preset}:{identifier}"

    async def check(self, identifier: str, preset: str = "api") -> RateLimitResult:
        config = RATE_LIMITS.get(preset)
        if config is None:
            raise ValueError(f"Unknown rate limit preset: {preset}")

        key = self.key(preset, identifier)
        if self.redis is not None:
            try:
                return await self._check_redis(key, config)
            except Exception as exc:
                logger.warning(
                    "Rate limit redis check failed, using memory",
                    extra={"context": {"key": key, "error": str(exc)}},
                )
        elif not self._warned:
            logger.warning("Rate limiter running without redis")
            self._warned = True
        return self._check_memory(key, config)

    async def _check_redis(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.expire(key, config.window_seconds)
        ttl = await self.redis.ttl(key)
        if ttl is None or ttl < 0:
            await self.redis.expire(key, config.window_seconds)
            ttl = config.window_seconds
        return self._result(int(count), config, self._clock() + ttl)

    def _check_memory(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        self._calls += 1
        if self._calls % _CLEANUP_EVERY == 0:
            self._purge(now)

        window = self._memory.get(key)
        if not window or window["reset_at"] <= now:
            window = {"count": 0, "reset_at": now + config.window_seconds}
            self._memory[key] = window
        window["count"] += 1
        return self._result(window["count"], config, window["reset_at"])

    def _purge(self, now: float) -> None:
        expired = [key for key, window in self._memory.items() if window["reset_at"] <= now]
        for key in expired:
            self._memory.pop(key, None)

    @staticmethod
    def _result(count: int, config: RateLimitConfig, reset_at: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=count <= config.max_requests,
            limit=config.max_requests,
            remaining=max(config.max_requests - count, 0),
            reset_at=reset_at,
        )

    async def close(self) -> None:
        self._memory.clear()


def client_identifier(request: Request) -> str:
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def rate_limit(preset: str):
    """FastAPI dependency enforcing ``preset`` for the calling client."""

    async def dependency(request: Request, response: Response) -> RateLimitResult:
        limiter: RateLimiter = request.app.state.runtime.rate_limiter
        result = await limiter.check(client_identifier(request), preset)
        if not result.allowed:
            logger.info(
                "Rate limit exceeded",
                extra={"context": {"preset": preset, "path": request.url.path}},
            )
            raise HTTPException(
                status_code=429,
                detail="Too many requests",
                headers=result.headers(),
            )
        response.headers.update(result.headers())
        return result

    return dependency
