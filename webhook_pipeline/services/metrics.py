"""Метрики пайплайна для операционных дашбордов."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_pipeline.core.clock import utcnow
from webhook_pipeline.models.event import EventStatus, WebhookEvent
from webhook_pipeline.services.retry_queue import RetryQueue


@dataclass(frozen=True)
class WebhookMetrics:
    """Срез по событиям за окно и текущая длина очереди ретраев.

    Attributes
    ----------
    window_hours : int
        Размер окна.
    total_events : int
        Все события, впервые полученные в окне.
    processed_events : int
        Из них обработанные.
    failed_events : int
        Из них `failed` с оставшимися попытками.
    dead_lettered_events : int
        Из них `failed` с исчерпанными попытками.
    pending_retries : int
        Записей в очереди ретраев сейчас (без окна).
    """

    window_hours: int
    total_events: int
    processed_events: int
    failed_events: int
    dead_lettered_events: int
    pending_retries: int

    @property
    def success_rate(self) -> float:
        if self.total_events == 0:
            return 100.0
        return self.processed_events / self.total_events * 100.0


def _count_where(condition) -> object:  # noqa: ANN001
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


async def get_metrics(
    db: AsyncSession,
    *,
    window_hours: int,
    max_attempts: int,
    now: datetime | None = None,
) -> WebhookMetrics:
    """Посчитать метрики за последние `window_hours` часов."""

    since = (now or utcnow()) - timedelta(hours=window_hours)
    is_failed = WebhookEvent.status == EventStatus.FAILED.value
    stmt = select(
        func.count(WebhookEvent.id),
        _count_where(WebhookEvent.status == EventStatus.PROCESSED.value),
        _count_where(and_(is_failed, WebhookEvent.attempts < max_attempts)),
        _count_where(and_(is_failed, WebhookEvent.attempts >= max_attempts)),
    ).where(WebhookEvent.created_at >= since)

    row = (await db.execute(stmt)).one()
    pending = await RetryQueue(db).count()
    return WebhookMetrics(
        window_hours=window_hours,
        total_events=int(row[0]),
        processed_events=int(row[1]),
        failed_events=int(row[2]),
        dead_lettered_events=int(row[3]),
        pending_retries=pending,
    )
