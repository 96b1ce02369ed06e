"""
Redis-backed sliding window rate limiter middleware.

Tracks request counts per client IP over a one-minute window. When Redis is
unreachable the limiter fails open and retries the connection after a
back-off, so a Redis outage never takes the API down with it.
"""

import time
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

import redis.asyncio as aioredis

from app.config import settings
from app.errors import RateLimitError

logger = logging.getLogger(__name__)

# Paths exempt from rate limiting
EXEMPT_PATHS = frozenset({"/api/health", "/metrics"})

RECONNECT_BACKOFF_SECONDS = 30.0


def _trusted_proxies() -> frozenset[str]:
    return frozenset(p.strip() for p in settings.trusted_proxies.split(",") if p.strip())


def client_key(request: Request) -> str:
    """Rate-limit key: the peer address.

    X-Forwarded-For is only honoured when the peer is a configured trusted
    proxy.
    """
    peer = request.client.host if request.client else "unknown"
    if peer in _trusted_proxies():
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return peer


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limit: int | None = None, window: int = 60):
        super().__init__(app)
        self._redis: aioredis.Redis | None = None
        self._retry_at = 0.0
        self.limit = limit or settings.rate_limit_per_minute
        self.window = window  # seconds

    async def _get_redis(self) -> aioredis.Redis | None:
        if self._redis is None and time.monotonic() >= self._retry_at:
            try:
                client = aioredis.from_url(settings.redis_url, decode_responses=True)
                await client.ping()
                self._redis = client
            except Exception as exc:
                logger.warning("Rate limiter: Redis unavailable (%s), passing through", exc)
                self._retry_at = time.monotonic() + RECONNECT_BACKOFF_SECONDS
        return self._redis

    async def dispatch(self, request: Request, call_next):
        if not settings.rate_limit_enabled or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        r = await self._get_redis()
        if r is None:
            return await call_next(request)

        now = time.time()
        key = f"ratelimit:{client_key(request)}"

        try:
            pipe = r.pipeline()
            # Remove entries outside the sliding window
            pipe.zremrangebyscore(key, 0, now - self.window)
            pipe.zadd(key, {str(now): now})
            pipe.zcard(key)
            pipe.expire(key, self.window)
            results = await pipe.execute()
            request_count = results[2]
        except Exception as exc:
            logger.warning("Rate limiter Redis error: %s", exc)
            return await call_next(request)

        if request_count > self.limit:
            err = RateLimitError()
            return JSONResponse(
                status_code=err.status_code,
                content={"error": {"code": err.code, "message": err.message}},
                headers={"Retry-After": str(self.window)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.limit - request_count))
        return response
