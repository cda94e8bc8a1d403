"""Ledger webhook событий: запись, атомарный claim и переходы статусов.

Единственная защита от двойной обработки это условный UPDATE в `try_claim`:
успех определяется числом затронутых строк, а не чтением статуса перед записью.
Никаких блокировок на уровне приложения.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_pipeline.core.clock import utcnow
from webhook_pipeline.core.errors import EventRecordError
from webhook_pipeline.models.event import EventStatus, WebhookEvent
from webhook_pipeline.models.retry_queue import RetryQueueEntry

LEASE_EXPIRED_MESSAGE = "processing lease expired"


class EventLedger:
    """Доступ к таблице `webhook_events`.

    Parameters
    ----------
    db : sqlalchemy.ext.asyncio.AsyncSession
        Async сессия БД. Каждый метод, меняющий состояние, коммитит сам.
    max_attempts : int
        Потолок попыток; `failed` событие с `attempts >= max_attempts`
        считается dead-letter и больше не берётся в работу.
    """

    def __init__(self, db: AsyncSession, *, max_attempts: int) -> None:
        self.db = db
        self.max_attempts = max_attempts

    async def lookup(self, event_id: str) -> WebhookEvent | None:
        """Прочитать актуальное состояние события (мимо identity map)."""

        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_received(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> WebhookEvent:
        """Гарантировать наличие строки события.

        Новая строка создаётся со статусом `received` и `attempts=0`. Если
        строка уже есть, она возвращается без изменений.

        Raises
        ------
        EventRecordError
            Если событие не удалось надёжно записать.
        """

        values = {
            "id": event_id,
            "event_type": event_type,
            "payload": payload,
            "status": EventStatus.RECEIVED.value,
            "attempts": 0,
            "created_at": utcnow(),
        }
        try:
            await self._insert_if_absent(values)
            await self.db.commit()
            event = await self.lookup(event_id)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise EventRecordError(event_id, str(exc)) from exc

        if event is None:
            raise EventRecordError(event_id, "row is missing after insert")
        return event

    async def _insert_if_absent(self, values: dict[str, Any]) -> None:
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(WebhookEvent).values(**values)
            await self.db.execute(stmt.on_conflict_do_nothing(index_elements=["id"]))
            return
        if dialect == "sqlite":
            stmt = sqlite_insert(WebhookEvent).values(**values)
            await self.db.execute(stmt.on_conflict_do_nothing(index_elements=["id"]))
            return

        try:
            async with self.db.begin_nested():
                self.db.add(WebhookEvent(**values))
        except IntegrityError:
            pass

    async def try_claim(self, event_id: str) -> datetime | None:
        """Атомарно перевести событие в `processing`.

        Claim успешен только из `received` или из `failed`, пока
        `attempts < max_attempts`.

        Returns
        -------
        datetime | None
            Токен claim'а (записанный `processing_started_at`), если claim
            получил именно этот вызов, иначе None. Токен нужен для записи
            результата: `mark_*` меняют строку, только пока claim не снят.
        """

        claimed_at = utcnow()
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .where(
                or_(
                    WebhookEvent.status == EventStatus.RECEIVED.value,
                    and_(
                        WebhookEvent.status == EventStatus.FAILED.value,
                        WebhookEvent.attempts < self.max_attempts,
                    ),
                )
            )
            .values(
                status=EventStatus.PROCESSING.value,
                processing_started_at=claimed_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return claimed_at if result.rowcount == 1 else None

    async def _finish_claim(self, event_id: str, claimed_at: datetime, **values: Any) -> bool:
        # Claim мог снять reconcile sweep (истёк lease) и взять кто-то другой:
        # тогда наш результат уже не наш, строку не трогаем.
        result = await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .where(WebhookEvent.status == EventStatus.PROCESSING.value)
            .where(WebhookEvent.processing_started_at == claimed_at)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_processed(self, event_id: str, *, claimed_at: datetime) -> bool:
        """Терминальный переход в `processed`.

        Returns
        -------
        bool
            False, если claim `claimed_at` к этому моменту уже потерян.
        """

        return await self._finish_claim(
            event_id,
            claimed_at,
            status=EventStatus.PROCESSED.value,
            processed_at=utcnow(),
            error_message=None,
        )

    async def mark_failed(
        self,
        event_id: str,
        error_message: str,
        *,
        claimed_at: datetime,
    ) -> int | None:
        """Перевести событие в `failed` и увеличить `attempts`.

        Returns
        -------
        int | None
            Число неудачных попыток после инкремента или None, если claim
            `claimed_at` уже потерян и строка не изменена.
        """

        updated = await self._finish_claim(
            event_id,
            claimed_at,
            status=EventStatus.FAILED.value,
            attempts=WebhookEvent.attempts + 1,
            error_message=error_message,
        )
        if not updated:
            return None
        return await self._attempts(event_id)

    async def mark_dead_lettered(
        self,
        event_id: str,
        error_message: str,
        *,
        claimed_at: datetime,
    ) -> int | None:
        """Сразу исчерпать попытки (ошибка обработчика не подлежит ретраю)."""

        updated = await self._finish_claim(
            event_id,
            claimed_at,
            status=EventStatus.FAILED.value,
            attempts=self.max_attempts,
            error_message=error_message,
        )
        if not updated:
            return None
        return await self._attempts(event_id)

    async def _attempts(self, event_id: str) -> int:
        result = await self.db.execute(
            select(WebhookEvent.attempts).where(WebhookEvent.id == event_id)
        )
        return int(result.scalar_one())

    def is_dead_lettered(self, event: WebhookEvent) -> bool:
        return (
            event.status == EventStatus.FAILED.value
            and event.attempts >= self.max_attempts
        )

    async def list_failed(self, *, limit: int = 50, offset: int = 0) -> list[WebhookEvent]:
        """Неудачные события (включая dead-letter), новые первыми."""

        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status == EventStatus.FAILED.value)
            .order_by(WebhookEvent.created_at.desc(), WebhookEvent.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def find_orphaned_failures(self, *, limit: int) -> list[WebhookEvent]:
        """`failed` события с оставшимися попытками, но без записи в очереди.

        Так выглядит событие, для которого не удалась запись ретрая.
        """

        has_retry = exists().where(RetryQueueEntry.event_id == WebhookEvent.id)
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status == EventStatus.FAILED.value)
            .where(WebhookEvent.attempts < self.max_attempts)
            .where(~has_retry)
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_stranded_received(
        self,
        *,
        older_than: datetime,
        limit: int,
    ) -> list[WebhookEvent]:
        """`received` события, которые так и не были взяты в работу."""

        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status == EventStatus.RECEIVED.value)
            .where(WebhookEvent.created_at < older_than)
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def release_stale_claims(
        self,
        *,
        older_than: datetime,
        limit: int,
    ) -> list[WebhookEvent]:
        """Снять claim'ы, брошенные упавшим процессом.

        Событие в `processing`, чей claim старше `older_than`, считается
        неудачной попыткой: `failed`, `attempts + 1`.

        Returns
        -------
        list[WebhookEvent]
            Освобождённые события (в актуальном состоянии).
        """

        result = await self.db.execute(
            select(WebhookEvent.id)
            .where(WebhookEvent.status == EventStatus.PROCESSING.value)
            .where(
                or_(
                    WebhookEvent.processing_started_at.is_(None),
                    WebhookEvent.processing_started_at < older_than,
                )
            )
            .limit(limit)
        )
        candidate_ids = list(result.scalars().all())

        released: list[WebhookEvent] = []
        for event_id in candidate_ids:
            outcome = await self.db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_id)
                .where(WebhookEvent.status == EventStatus.PROCESSING.value)
                .where(
                    or_(
                        WebhookEvent.processing_started_at.is_(None),
                        WebhookEvent.processing_started_at < older_than,
                    )
                )
                .values(
                    status=EventStatus.FAILED.value,
                    attempts=WebhookEvent.attempts + 1,
                    error_message=LEASE_EXPIRED_MESSAGE,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            if outcome.rowcount != 1:
                continue
            event = await self.lookup(event_id)
            if event is not None:
                released.append(event)
        return released
