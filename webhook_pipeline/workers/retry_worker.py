"""Фоновый worker ретраев webhook событий.

Поведение
---------
- Раз в `RETRY_WORKER_POLL_SECONDS` забирает из очереди записи с
  `retry_at <= now()` (claim = удаление записи) и заново прогоняет событие
  через `EventIngress.process` с сохранённым payload'ом.
- Раз в `RETRY_RECONCILE_INTERVAL_SECONDS` делает reconciliation sweep:
  снимает брошенные claim'ы (`processing` дольше lease), ставит в очередь
  `failed` события без записи в очереди и дообрабатывает зависшие `received`.

Запуск: `python -m webhook_pipeline.workers.retry_worker`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_pipeline.core.clock import utcnow
from webhook_pipeline.core.config import Settings, get_settings
from webhook_pipeline.core.logging import setup_logging
from webhook_pipeline.db.session import SessionLocal
from webhook_pipeline.services.ingress import EventIngress, IngressResult
from webhook_pipeline.services.ledger import EventLedger
from webhook_pipeline.services.pipeline import WebhookPipeline, build_pipeline
from webhook_pipeline.services.retry_queue import RetryQueue
from webhook_pipeline.services.retry_scheduler import RetryScheduler


@dataclass(frozen=True)
class ReconcileReport:
    """Итоги одного reconciliation sweep."""

    released_claims: int = 0
    rescheduled: int = 0
    resubmitted: int = 0


class RetryWorker:
    """Опрос очереди ретраев и reconciliation sweep."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ingress: EventIngress,
        scheduler: RetryScheduler,
        *,
        batch_size: int,
        poll_seconds: float,
        reconcile_interval_seconds: float,
        lease_seconds: int,
    ) -> None:
        self._session_factory = session_factory
        self.ingress = ingress
        self.scheduler = scheduler
        self.batch_size = batch_size
        self.poll_seconds = poll_seconds
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self.lease_seconds = lease_seconds

    @classmethod
    def from_pipeline(cls, pipeline: WebhookPipeline, settings: Settings) -> RetryWorker:
        """Собрать worker поверх уже собранного пайплайна."""

        return cls(
            pipeline.session_factory,
            pipeline.ingress,
            pipeline.scheduler,
            batch_size=settings.retry_worker_batch_size,
            poll_seconds=settings.retry_worker_poll_seconds,
            reconcile_interval_seconds=settings.retry_reconcile_interval_seconds,
            lease_seconds=settings.processing_lease_seconds,
        )

    async def process_due_retries(self, now: datetime | None = None) -> list[IngressResult]:
        """Обработать одну пачку просроченных ретраев.

        Returns
        -------
        list[IngressResult]
            Результаты по каждому забранному ретраю.
        """

        now = now or utcnow()
        async with self._session_factory() as db:
            claimed = await RetryQueue(db).claim_due(now=now, limit=self.batch_size)

        results: list[IngressResult] = []
        for retry in claimed:
            async with self._session_factory() as db:
                event = await EventLedger(db, max_attempts=self.ingress.max_attempts).lookup(
                    retry.event_id
                )
            if event is None:
                logger.warning("Retry for unknown event id={id}, dropping", id=retry.event_id)
                continue

            logger.info(
                "Processing scheduled retry for event id={id} attempt={n}",
                id=retry.event_id,
                n=retry.attempt_number,
            )
            results.append(
                await self.ingress.process(event.id, event.event_type, event.payload)
            )
        return results

    async def reconcile(self, now: datetime | None = None) -> ReconcileReport:
        """Подобрать события, выпавшие из нормального потока."""

        now = now or utcnow()
        older_than = now - timedelta(seconds=self.lease_seconds)
        max_attempts = self.ingress.max_attempts

        async with self._session_factory() as db:
            ledger = EventLedger(db, max_attempts=max_attempts)
            released = await ledger.release_stale_claims(
                older_than=older_than,
                limit=self.batch_size,
            )
            orphaned = await ledger.find_orphaned_failures(limit=self.batch_size)
            stranded = await ledger.find_stranded_received(
                older_than=older_than,
                limit=self.batch_size,
            )

        for event in released:
            logger.warning(
                "Released stale claim for event id={id} attempts={a}",
                id=event.id,
                a=event.attempts,
            )
            if event.attempts >= max_attempts:
                await self.ingress.notify_dead_letter(event, event.attempts, event.error_message or "")

        rescheduled = 0
        for event in orphaned:
            entry = await self.scheduler.schedule_retry(event.id, event.event_type, event.attempts)
            if entry is not None:
                rescheduled += 1

        for event in stranded:
            logger.warning("Resubmitting stranded event id={id}", id=event.id)
            await self.ingress.process(event.id, event.event_type, event.payload)

        report = ReconcileReport(
            released_claims=len(released),
            rescheduled=rescheduled,
            resubmitted=len(stranded),
        )
        if report != ReconcileReport():
            logger.info(
                "Reconcile released={r} rescheduled={s} resubmitted={u}",
                r=report.released_claims,
                s=report.rescheduled,
                u=report.resubmitted,
            )
        return report

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Запустить worker в цикле до установки `stop`."""

        stop = stop or asyncio.Event()
        logger.info(
            "Retry worker started poll={p}s batch={b}",
            p=self.poll_seconds,
            b=self.batch_size,
        )
        loop = asyncio.get_running_loop()
        next_reconcile_at = loop.time()
        while not stop.is_set():
            try:
                if loop.time() >= next_reconcile_at:
                    await self.reconcile()
                    next_reconcile_at = loop.time() + self.reconcile_interval_seconds
                await self.process_due_retries()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Retry worker loop failed: {err}", err=str(exc))
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Retry worker stopped")


def main() -> None:
    """Entrypoint."""

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)
    worker = RetryWorker.from_pipeline(build_pipeline(SessionLocal, settings=settings), settings)
    asyncio.run(worker.run_forever())


if __name__ == "__main__":
    main()
