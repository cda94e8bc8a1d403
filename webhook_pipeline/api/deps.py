"""Общие зависимости для роутов FastAPI."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from webhook_pipeline.core.security import verify_ops_token
from webhook_pipeline.services.pipeline import WebhookPipeline
from webhook_pipeline.workers.retry_worker import RetryWorker


def get_pipeline(request: Request) -> WebhookPipeline:
    """Собранный пайплайн приложения."""

    return request.app.state.pipeline


def get_retry_worker(request: Request) -> RetryWorker:
    """Retry worker приложения (для ручных прогонов)."""

    return request.app.state.retry_worker


def require_ops_token(x_ops_token: str | None = Header(default=None)) -> None:
    """Пустить только с валидным `X-Ops-Token`.

    Raises
    ------
    HTTPException
        401, если токена нет или он неверный.
    """

    if not verify_ops_token(x_ops_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid ops token",
        )
