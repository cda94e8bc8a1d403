"""Точка входа пайплайна: идемпотентная обработка одного события.

Алгоритм `EventIngress.process`
-------------------------------
1. Гарантировать строку в ledger'е (`record_received`).
2. `processed` -> дубликат, ничего не делаем.
3. `processing` -> событие уже кто-то обрабатывает, выходим без работы.
4. `failed` и попытки исчерпаны -> dead-letter.
5. Атомарный claim; проиграли гонку -> исход по актуальной строке
   (`in_progress`, `duplicate` или `dead_lettered`).
6. Вызов обработчика через `Dispatcher`.
7. Успех -> `processed`, отменить ожидающий ретрай.
8. Ошибка -> `failed`, ретрай по backoff или dead-letter.

Шаги 2–4 лишь быстрый путь по возможно устаревшему чтению; реальная
защита от двойной обработки даёт claim в шаге 5.
Результат (шаги 7–8) пишется только под токеном claim'а. Если lease истёк и
claim снял reconcile sweep, запись результата и все побочные действия
(отмена ретрая, новый ретрай, dead-letter алерт) пропускаются.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_pipeline.core.clock import as_utc, utcnow
from webhook_pipeline.core.errors import EventRecordError
from webhook_pipeline.models.event import EventStatus, WebhookEvent
from webhook_pipeline.services.alerts import (
    DeadLetterAlert,
    DeadLetterNotifier,
    LoggingDeadLetterNotifier,
)
from webhook_pipeline.services.dispatcher import Dispatcher
from webhook_pipeline.services.ledger import EventLedger
from webhook_pipeline.services.retry_queue import RetryQueue
from webhook_pipeline.services.retry_scheduler import RetryScheduler
from webhook_pipeline.services.status_cache import EventStatusCache


class IngressOutcome(str, Enum):
    """Итог обработки одной доставки."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    NOT_RECORDED = "not_recorded"


_SUCCESS_OUTCOMES = {
    IngressOutcome.PROCESSED,
    IngressOutcome.DUPLICATE,
    IngressOutcome.IN_PROGRESS,
}


@dataclass(frozen=True)
class IngressResult:
    """Результат `EventIngress.process`.

    Attributes
    ----------
    event_id : str
        Идентификатор события.
    outcome : IngressOutcome
        Итог обработки.
    attempts : int
        Число неудачных попыток по данным ledger'а.
    error : str | None
        Ошибка обработчика или инфраструктуры.
    retry_at : datetime | None
        Когда запланирован следующий ретрай.
    """

    event_id: str
    outcome: IngressOutcome
    attempts: int = 0
    error: str | None = None
    retry_at: datetime | None = None

    @property
    def ok(self) -> bool:
        """Событие обработано (сейчас, раньше или параллельным вызовом)."""

        return self.outcome in _SUCCESS_OUTCOMES

    @property
    def acknowledged(self) -> bool:
        """Можно ли подтверждать доставку провайдеру.

        Ack отдаём всегда, когда событие надёжно записано, даже если
        обработчик упал: иначе провайдер устроит шторм повторных доставок.
        """

        return self.outcome is not IngressOutcome.NOT_RECORDED


class EventIngress:
    """Идемпотентная state machine обработки событий.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Фабрика сессий; на каждый вызов `process` открывается своя сессия.
    dispatcher : Dispatcher
        Вызов обработчиков.
    scheduler : RetryScheduler
        Планировщик ретраев.
    max_attempts : int
        Потолок попыток.
    status_cache : EventStatusCache | None
        Опциональный Redis-кеш обработанных событий.
    notifier : DeadLetterNotifier | None
        Получатель сигнала о dead-letter.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: Dispatcher,
        scheduler: RetryScheduler,
        *,
        max_attempts: int,
        status_cache: EventStatusCache | None = None,
        notifier: DeadLetterNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.max_attempts = max_attempts
        self.status_cache = status_cache
        self.notifier = notifier or LoggingDeadLetterNotifier()

    async def process(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> IngressResult:
        """Обработать доставку события.

        Notes
        -----
        Исключения наружу не выходят. Единственный не-ack исход:
        `NOT_RECORDED`, когда событие не удалось записать в ledger.
        """

        if self.status_cache is not None and await self.status_cache.is_processed(event_id):
            logger.info("Event id={id} already processed (cache), skipping", id=event_id)
            return IngressResult(event_id, IngressOutcome.DUPLICATE)

        recorded = False
        try:
            async with self._session_factory() as db:
                ledger = EventLedger(db, max_attempts=self.max_attempts)
                event = await ledger.record_received(event_id, event_type, payload)
                recorded = True
                return await self._run(db, ledger, event)
        except EventRecordError as exc:
            logger.error("Failed to record webhook event id={id}: {err}", id=event_id, err=exc.reason)
            return IngressResult(event_id, IngressOutcome.NOT_RECORDED, error=exc.reason)
        except Exception as exc:  # noqa: BLE001
            if not recorded:
                logger.exception("Failed to record webhook event id={id}", id=event_id)
                return IngressResult(event_id, IngressOutcome.NOT_RECORDED, error=str(exc))
            logger.exception("Bookkeeping failed for webhook event id={id}", id=event_id)
            return IngressResult(event_id, IngressOutcome.FAILED, error=str(exc))

    async def _run(
        self,
        db: AsyncSession,
        ledger: EventLedger,
        event: WebhookEvent,
    ) -> IngressResult:
        event_id = event.id

        if event.status == EventStatus.PROCESSED.value:
            logger.info("Event id={id} already processed, skipping", id=event_id)
            await self._remember_processed(event_id)
            return IngressResult(event_id, IngressOutcome.DUPLICATE, attempts=event.attempts)

        if event.status == EventStatus.PROCESSING.value:
            logger.warning("Event id={id} is being processed elsewhere, skipping duplicate", id=event_id)
            return IngressResult(event_id, IngressOutcome.IN_PROGRESS, attempts=event.attempts)

        if ledger.is_dead_lettered(event):
            logger.warning(
                "Event id={id} is dead-lettered after {a} attempts, not retrying",
                id=event_id,
                a=event.attempts,
            )
            return IngressResult(
                event_id,
                IngressOutcome.DEAD_LETTERED,
                attempts=event.attempts,
                error=event.error_message,
            )

        claimed_at = await ledger.try_claim(event_id)
        if claimed_at is None:
            logger.info("Lost claim race for event id={id}, skipping", id=event_id)
            return await self._owned_elsewhere(ledger, event_id)

        logger.info(
            "Processing webhook event id={id} type={t} attempt={n}",
            id=event_id,
            t=event.event_type,
            n=event.attempts + 1,
        )
        result = await self.dispatcher.dispatch(event)

        if result.ok:
            if not await ledger.mark_processed(event_id, claimed_at=claimed_at):
                return await self._claim_expired(ledger, event_id)
            await RetryQueue(db).cancel(event_id)
            await self._remember_processed(event_id)
            logger.info("Processed webhook event id={id} type={t}", id=event_id, t=event.event_type)
            return IngressResult(event_id, IngressOutcome.PROCESSED, attempts=event.attempts)

        error = result.error or "handler failed"
        if result.permanent:
            attempts = await ledger.mark_dead_lettered(event_id, error, claimed_at=claimed_at)
            if attempts is None:
                return await self._claim_expired(ledger, event_id)
            await self.notify_dead_letter(event, attempts, error)
            return IngressResult(event_id, IngressOutcome.DEAD_LETTERED, attempts=attempts, error=error)

        attempts = await ledger.mark_failed(event_id, error, claimed_at=claimed_at)
        if attempts is None:
            return await self._claim_expired(ledger, event_id)
        if attempts >= self.max_attempts:
            await self.notify_dead_letter(event, attempts, error)
            return IngressResult(event_id, IngressOutcome.DEAD_LETTERED, attempts=attempts, error=error)

        entry = await self.scheduler.schedule_retry(event_id, event.event_type, attempts)
        if entry is None:
            return IngressResult(event_id, IngressOutcome.FAILED, attempts=attempts, error=error)
        return IngressResult(
            event_id,
            IngressOutcome.RETRY_SCHEDULED,
            attempts=attempts,
            error=error,
            retry_at=as_utc(entry.retry_at),
        )

    async def _claim_expired(self, ledger: EventLedger, event_id: str) -> IngressResult:
        logger.warning(
            "Claim on event id={id} was released before its result was recorded, "
            "leaving the event to its current owner",
            id=event_id,
        )
        return await self._owned_elsewhere(ledger, event_id)

    async def _owned_elsewhere(self, ledger: EventLedger, event_id: str) -> IngressResult:
        """Исход по актуальной строке, когда событием распоряжается другой вызов."""

        current = await ledger.lookup(event_id)
        if current is None:
            return IngressResult(event_id, IngressOutcome.IN_PROGRESS)
        if current.status == EventStatus.PROCESSED.value:
            return IngressResult(event_id, IngressOutcome.DUPLICATE, attempts=current.attempts)
        if ledger.is_dead_lettered(current):
            return IngressResult(
                event_id,
                IngressOutcome.DEAD_LETTERED,
                attempts=current.attempts,
                error=current.error_message,
            )
        return IngressResult(event_id, IngressOutcome.IN_PROGRESS, attempts=current.attempts)

    async def _remember_processed(self, event_id: str) -> None:
        if self.status_cache is not None:
            await self.status_cache.mark_processed(event_id)

    async def notify_dead_letter(self, event: WebhookEvent, attempts: int, error: str) -> None:
        alert = DeadLetterAlert(
            event_id=event.id,
            event_type=event.event_type,
            attempts=attempts,
            error=error,
            occurred_at=utcnow(),
        )
        try:
            await self.notifier.notify(alert)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Dead-letter notification failed for event id={id}: {err}",
                id=event.id,
                err=str(exc),
            )
