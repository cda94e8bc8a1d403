"""Эндпоинты приёма событий и операционного обслуживания пайплайна."""

from __future__ import annotations

from collections import Counter

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_pipeline.api.deps import get_pipeline, get_retry_worker, require_ops_token
from webhook_pipeline.core.clock import as_utc
from webhook_pipeline.core.config import get_settings
from webhook_pipeline.db.session import get_db
from webhook_pipeline.schemas.webhooks import (
    FailedEventOut,
    FailedEventsPage,
    InboundEvent,
    IngestResponse,
    MetricsOut,
    ReconcileOut,
    RetryRunOut,
    StatusOut,
)
from webhook_pipeline.services.ingress import IngressResult
from webhook_pipeline.services.ledger import EventLedger
from webhook_pipeline.services.metrics import WebhookMetrics, get_metrics
from webhook_pipeline.services.pipeline import WebhookPipeline
from webhook_pipeline.workers.retry_worker import RetryWorker

router = APIRouter()

HEALTHY_SUCCESS_RATE = 95.0


def _to_ingest_response(result: IngressResult) -> IngestResponse:
    return IngestResponse(
        event_id=result.event_id,
        outcome=result.outcome,
        acknowledged=result.acknowledged,
        attempts=result.attempts,
        retry_at=result.retry_at,
    )


def _to_metrics_out(metrics: WebhookMetrics) -> MetricsOut:
    return MetricsOut(
        window_hours=metrics.window_hours,
        total_events=metrics.total_events,
        processed_events=metrics.processed_events,
        failed_events=metrics.failed_events,
        dead_lettered_events=metrics.dead_lettered_events,
        pending_retries=metrics.pending_retries,
        success_rate=round(metrics.success_rate, 2),
    )


async def _current_metrics(db: AsyncSession) -> WebhookMetrics:
    settings = get_settings()
    return await get_metrics(
        db,
        window_hours=settings.metrics_window_hours,
        max_attempts=settings.webhook_max_attempts,
    )


@router.post("/events", response_model=IngestResponse)
async def ingest_event(
    event: InboundEvent,
    response: Response,
    pipeline: WebhookPipeline = Depends(get_pipeline),
) -> IngestResponse:
    """Принять событие провайдера.

    Returns
    -------
    IngestResponse
        Итог обработки. 200: событие записано (даже если обработчик упал и
        запланирован ретрай). 503: событие не удалось записать, провайдер
        должен доставить его повторно.
    """

    result = await pipeline.ingress.process(event.id, event.type, event.model_dump())
    if not result.acknowledged:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return _to_ingest_response(result)


@router.get(
    "/metrics",
    response_model=MetricsOut,
    dependencies=[Depends(require_ops_token)],
)
async def metrics(db: AsyncSession = Depends(get_db)) -> MetricsOut:
    """Счётчики событий за окно `METRICS_WINDOW_HOURS`."""

    return _to_metrics_out(await _current_metrics(db))


@router.get(
    "/status",
    response_model=StatusOut,
    dependencies=[Depends(require_ops_token)],
)
async def pipeline_status(
    db: AsyncSession = Depends(get_db),
    pipeline: WebhookPipeline = Depends(get_pipeline),
) -> StatusOut:
    """Сводный статус: `healthy`, если доля успешных событий не ниже 95%."""

    current = await _current_metrics(db)
    return StatusOut(
        status="healthy" if current.success_rate >= HEALTHY_SUCCESS_RATE else "degraded",
        environment=get_settings().app_env,
        registered_event_types=pipeline.registry.event_types(),
        metrics=_to_metrics_out(current),
    )


@router.get(
    "/failed",
    response_model=FailedEventsPage,
    dependencies=[Depends(require_ops_token)],
)
async def failed_events(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> FailedEventsPage:
    """Неудачные и dead-letter события, новые первыми."""

    ledger = EventLedger(db, max_attempts=get_settings().webhook_max_attempts)
    events = await ledger.list_failed(limit=limit, offset=offset)
    items = [
        FailedEventOut(
            id=event.id,
            event_type=event.event_type,
            attempts=event.attempts,
            error_message=event.error_message,
            dead_lettered=ledger.is_dead_lettered(event),
            created_at=as_utc(event.created_at),
        )
        for event in events
    ]
    return FailedEventsPage(items=items, limit=limit, offset=offset)


@router.post(
    "/replay/{event_id}",
    response_model=IngestResponse,
    dependencies=[Depends(require_ops_token)],
)
async def replay_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    pipeline: WebhookPipeline = Depends(get_pipeline),
) -> IngestResponse:
    """Повторно прогнать сохранённое событие через пайплайн.

    Notes
    -----
    Replay идёт через обычную state machine: обработанное событие вернёт
    `duplicate`, dead-letter событие вернёт `dead_lettered`.

    Raises
    ------
    HTTPException
        404, если событие не найдено.
    """

    ledger = EventLedger(db, max_attempts=get_settings().webhook_max_attempts)
    event = await ledger.lookup(event_id)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="webhook event not found",
        )
    result = await pipeline.ingress.process(event.id, event.event_type, event.payload)
    return _to_ingest_response(result)


@router.post(
    "/process-retries",
    response_model=RetryRunOut,
    dependencies=[Depends(require_ops_token)],
)
async def process_retries(worker: RetryWorker = Depends(get_retry_worker)) -> RetryRunOut:
    """Один ручной прогон просроченных ретраев."""

    results = await worker.process_due_retries()
    outcomes = Counter(result.outcome.value for result in results)
    return RetryRunOut(claimed=len(results), outcomes=dict(outcomes))


@router.post(
    "/reconcile",
    response_model=ReconcileOut,
    dependencies=[Depends(require_ops_token)],
)
async def reconcile(worker: RetryWorker = Depends(get_retry_worker)) -> ReconcileOut:
    """Один ручной reconciliation sweep."""

    report = await worker.reconcile()
    return ReconcileOut(
        released_claims=report.released_claims,
        rescheduled=report.rescheduled,
        resubmitted=report.resubmitted,
    )
