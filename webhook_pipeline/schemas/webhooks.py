"""Схемы HTTP адаптера пайплайна."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from webhook_pipeline.services.ingress import IngressOutcome


class InboundEvent(BaseModel):
    """Событие провайдера (уже прошедшее проверку подписи).

    Лишние поля (`data`, `created`, `livemode`, ...) сохраняются: событие
    целиком уходит в ledger как payload.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=128)


class IngestResponse(BaseModel):
    """Ответ на доставку события."""

    event_id: str
    outcome: IngressOutcome
    acknowledged: bool
    attempts: int
    retry_at: datetime | None = None


class MetricsOut(BaseModel):
    """Метрики за окно."""

    window_hours: int
    total_events: int
    processed_events: int
    failed_events: int
    dead_lettered_events: int
    pending_retries: int
    success_rate: float


class StatusOut(BaseModel):
    """Сводный статус пайплайна."""

    status: str
    environment: str
    registered_event_types: list[str]
    metrics: MetricsOut


class FailedEventOut(BaseModel):
    """Неудачное событие для ручного разбора."""

    id: str
    event_type: str
    attempts: int
    error_message: str | None
    dead_lettered: bool
    created_at: datetime


class FailedEventsPage(BaseModel):
    items: list[FailedEventOut]
    limit: int
    offset: int


class RetryRunOut(BaseModel):
    """Итог ручного прогона очереди ретраев."""

    claimed: int
    outcomes: dict[str, int]


class ReconcileOut(BaseModel):
    released_claims: int
    rescheduled: int
    resubmitted: int
