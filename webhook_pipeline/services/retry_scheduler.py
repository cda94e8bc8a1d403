"""Планирование ретраев с экспоненциальным backoff.

Backoff
-------
`delay = base * 2 ** (attempts_so_far - 1)`, где `attempts_so_far` это число
уже записанных неудачных попыток. При base = 1 s: после первой ошибки ретрай
через 1 s, после второй через 2 s, после третьей через 4 s.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_pipeline.core.clock import utcnow
from webhook_pipeline.models.retry_queue import RetryQueueEntry
from webhook_pipeline.services.retry_queue import RetryQueue

# 2 ** 32 секунд больше века, дальше считать незачем.
_MAX_EXPONENT = 32


def calculate_retry_delay(
    attempts_so_far: int,
    *,
    base_seconds: float,
    max_delay_seconds: float | None = None,
) -> float:
    """Посчитать задержку перед следующей попыткой.

    Parameters
    ----------
    attempts_so_far : int
        Число неудачных попыток (>= 1 после первой ошибки).
    base_seconds : float
        Базовая задержка.
    max_delay_seconds : float | None
        Верхняя граница задержки (если задана).

    Returns
    -------
    float
        Задержка в секундах.
    """

    exponent = min(max(attempts_so_far - 1, 0), _MAX_EXPONENT)
    delay = base_seconds * (2**exponent)
    if max_delay_seconds is not None:
        delay = min(delay, max_delay_seconds)
    return delay


def calculate_retry_at(
    attempts_so_far: int,
    *,
    base_seconds: float,
    max_delay_seconds: float | None = None,
    now: datetime | None = None,
) -> datetime:
    """Посчитать момент следующей попытки."""

    delay = calculate_retry_delay(
        attempts_so_far,
        base_seconds=base_seconds,
        max_delay_seconds=max_delay_seconds,
    )
    return (now or utcnow()) + timedelta(seconds=delay)


class RetryScheduler:
    """Записать ретрай события в очередь."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        base_seconds: float,
        max_delay_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.base_seconds = base_seconds
        self.max_delay_seconds = max_delay_seconds

    async def schedule_retry(
        self,
        event_id: str,
        event_type: str,
        attempts_so_far: int,
    ) -> RetryQueueEntry | None:
        """Поставить событие в очередь ретраев.

        Returns
        -------
        RetryQueueEntry | None
            Запись очереди или None, если запись не удалась. Событие тогда
            остаётся `failed` без записи в очереди, и его подберёт
            reconciliation sweep worker'а.
        """

        retry_at = calculate_retry_at(
            attempts_so_far,
            base_seconds=self.base_seconds,
            max_delay_seconds=self.max_delay_seconds,
        )
        try:
            async with self._session_factory() as db:
                entry = await RetryQueue(db).replace(
                    event_id=event_id,
                    event_type=event_type,
                    attempt_number=attempts_so_far + 1,
                    retry_at=retry_at,
                )
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to schedule retry for event id={id}: {err}",
                id=event_id,
                err=str(exc),
            )
            return None

        logger.info(
            "Scheduled retry for event id={id} attempt={n} at {at}",
            id=event_id,
            n=attempts_so_far + 1,
            at=retry_at.isoformat(),
        )
        return entry
