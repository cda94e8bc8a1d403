"""Rate limiting приёма событий (in-memory token bucket на IP)."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, Response

from webhook_pipeline.core.config import get_settings
from webhook_pipeline.core.rate_limiter import RateLimiter

# Лимитируем только приём событий; операционные эндпоинты закрыты токеном.
LIMITED_PATH_PREFIX = "/webhooks/events"


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(
        capacity=settings.rate_limit_capacity,
        refill_rate=settings.rate_limit_refill_rate,
    )


def client_key(request: Request) -> str:
    """IP отправителя, а за прокси первый адрес из `X-Forwarded-For`."""

    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",", 1)[0].strip()
    if first:
        return first
    return request.client.host if request.client else "unknown"


def _is_limited(request: Request) -> bool:
    return request.method == "POST" and request.url.path.startswith(LIMITED_PATH_PREFIX)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """429 с `Retry-After`, если отправитель выбрал свой лимит."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not get_settings().rate_limit_enabled or not _is_limited(request):
            return await call_next(request)

        limiter = get_rate_limiter()
        key = client_key(request)
        if limiter.allow(key):
            return await call_next(request)

        retry_after = limiter.retry_after(key)
        logger.warning("Rate limit exceeded for {key}, retry after {s}s", key=key, s=retry_after)
        return JSONResponse(
            status_code=429,
            content={"detail": "rate limit exceeded"},
            headers={"Retry-After": str(retry_after)},
        )
