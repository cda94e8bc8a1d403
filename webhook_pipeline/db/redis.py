"""Redis клиент (async) для кеша статусов событий.

Redis здесь необязателен: любые его ошибки гасит `EventStatusCache`, источник
истины всегда ledger в БД. Клиент создаётся лениво, только если кеш включён.
"""

from __future__ import annotations

from functools import lru_cache

from redis.asyncio import Redis

from webhook_pipeline.core.config import get_settings

# Кеш не должен держать запрос дольше, чем сам ledger.
_SOCKET_TIMEOUT_SECONDS = 0.5


@lru_cache(maxsize=1)
def get_redis_client() -> Redis:
    """Вернуть закэшированный async Redis клиент.

    Returns
    -------
    redis.asyncio.Redis
        Клиент с собственным пулом соединений.
    """

    return Redis.from_url(
        get_settings().redis_dsn,
        decode_responses=True,
        max_connections=20,
        socket_timeout=_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=_SOCKET_TIMEOUT_SECONDS,
    )
