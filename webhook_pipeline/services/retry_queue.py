"""Доступ к очереди отложенных ретраев `webhook_retry_queue`."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_pipeline.core.clock import as_utc, utcnow
from webhook_pipeline.models.retry_queue import RetryQueueEntry


@dataclass(frozen=True)
class ClaimedRetry:
    """Запись очереди, которую забрал этот worker."""

    event_id: str
    event_type: str
    attempt_number: int
    retry_at: datetime


class RetryQueue:
    """Очередь ретраев: не больше одной живой записи на событие."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, event_id: str) -> RetryQueueEntry | None:
        result = await self.db.execute(
            select(RetryQueueEntry)
            .where(RetryQueueEntry.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def replace(
        self,
        *,
        event_id: str,
        event_type: str,
        attempt_number: int,
        retry_at: datetime,
    ) -> RetryQueueEntry:
        """Записать ретрай, заменив предыдущий для этого события."""

        await self.db.execute(
            delete(RetryQueueEntry)
            .where(RetryQueueEntry.event_id == event_id)
            .execution_options(synchronize_session=False)
        )
        entry = RetryQueueEntry(
            event_id=event_id,
            event_type=event_type,
            attempt_number=attempt_number,
            retry_at=retry_at,
            created_at=utcnow(),
        )
        self.db.add(entry)
        await self.db.commit()
        return entry

    async def cancel(self, event_id: str) -> bool:
        """Удалить ожидающий ретрай события (если есть)."""

        result = await self.db.execute(
            delete(RetryQueueEntry)
            .where(RetryQueueEntry.event_id == event_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount > 0

    async def claim_due(self, *, now: datetime, limit: int) -> list[ClaimedRetry]:
        """Забрать пачку записей с `retry_at <= now`.

        Notes
        -----
        Запись считается забранной, только если именно наш DELETE её удалил
        (rowcount == 1). Если запись уже удалил другой worker, она молча
        пропускается. На Postgres выборка идёт с `FOR UPDATE SKIP LOCKED`,
        чтобы параллельные worker'ы не толкались на одних и тех же строках.
        """

        result = await self.db.execute(
            select(RetryQueueEntry)
            .where(RetryQueueEntry.retry_at <= now)
            .order_by(RetryQueueEntry.retry_at.asc())
            .with_for_update(skip_locked=True)
            .limit(limit)
        )
        due = list(result.scalars().all())

        claimed: list[ClaimedRetry] = []
        for entry in due:
            outcome = await self.db.execute(
                delete(RetryQueueEntry)
                .where(RetryQueueEntry.event_id == entry.event_id)
                .where(RetryQueueEntry.attempt_number == entry.attempt_number)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 1:
                claimed.append(
                    ClaimedRetry(
                        event_id=entry.event_id,
                        event_type=entry.event_type,
                        attempt_number=entry.attempt_number,
                        retry_at=as_utc(entry.retry_at),
                    )
                )
        await self.db.commit()
        return claimed

    async def count(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(RetryQueueEntry))
        return int(result.scalar_one())
