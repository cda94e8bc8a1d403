"""Кеш терминальных статусов событий в Redis (best-effort).

Правило
-------
Ошибки Redis никогда не должны влиять на обработку. Кеш лишь быстрый путь
для повторных доставок уже обработанных событий; защита от двойной обработки
по-прежнему обеспечивается claim'ом в ledger'е.
"""

from __future__ import annotations

from loguru import logger
from redis.asyncio import Redis

_PROCESSED = "processed"


def make_event_status_key(event_id: str) -> str:
    """Собрать ключ кеша для события."""

    return f"webhook_events:{event_id}"


class EventStatusCache:
    """Кеш `event_id -> processed` с TTL."""

    def __init__(self, client: Redis, *, ttl_seconds: int) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def is_processed(self, event_id: str) -> bool:
        """Проверить, отмечено ли событие как обработанное.

        Returns
        -------
        bool
            True только при явном попадании в кеш; при ошибке Redis False.
        """

        key = make_event_status_key(event_id)
        try:
            return await self.client.get(key) == _PROCESSED
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Redis status cache get failed for key={key}: {err}",
                key=key,
                err=str(exc),
            )
            return False

    async def mark_processed(self, event_id: str) -> bool:
        """Запомнить, что событие обработано.

        Returns
        -------
        bool
            True если запись успешна, иначе False.
        """

        key = make_event_status_key(event_id)
        try:
            await self.client.setex(key, self.ttl_seconds, _PROCESSED)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Redis status cache set failed for key={key}: {err}",
                key=key,
                err=str(exc),
            )
            return False
