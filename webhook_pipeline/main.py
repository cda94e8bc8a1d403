"""Точка входа FastAPI приложения."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_pipeline.api.router import api_router
from webhook_pipeline.core.config import get_settings
from webhook_pipeline.core.logging import setup_logging
from webhook_pipeline.core.migrations import run_migrations_once
from webhook_pipeline.core.rate_limit_middleware import RateLimitMiddleware
from webhook_pipeline.db.session import SessionLocal
from webhook_pipeline.services.pipeline import build_pipeline
from webhook_pipeline.services.registry import HandlerRegistry
from webhook_pipeline.workers.retry_worker import RetryWorker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan приложения.

    Миграции запускаются один раз при старте процесса (если включено).
    Retry worker крутится внутри процесса, только если `RETRY_WORKER_ENABLED`;
    в проде его обычно запускают отдельным процессом.
    """

    await asyncio.to_thread(run_migrations_once)

    settings = get_settings()
    stop = asyncio.Event()
    worker_task: asyncio.Task | None = None
    if settings.retry_worker_enabled:
        worker_task = asyncio.create_task(app.state.retry_worker.run_forever(stop))
    try:
        yield
    finally:
        if worker_task is not None:
            stop.set()
            await worker_task
            logger.info("In-process retry worker shut down")


def create_app(
    *,
    registry: HandlerRegistry | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """Создать и сконфигурировать экземпляр FastAPI.

    Parameters
    ----------
    registry : HandlerRegistry | None
        Реестр обработчиков; по умолчанию из `WEBHOOK_HANDLERS`.
    session_factory : async_sessionmaker | None
        Фабрика сессий для пайплайна; по умолчанию `SessionLocal`.

    Returns
    -------
    fastapi.FastAPI
        Сконфигурированное приложение.
    """

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)

    pipeline = build_pipeline(
        session_factory or SessionLocal,
        settings=settings,
        registry=registry,
    )

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.retry_worker = RetryWorker.from_pipeline(pipeline, settings)
    app.add_middleware(RateLimitMiddleware)
    app.include_router(api_router)
    return app


app = create_app()


def run() -> None:
    """Запустить API под uvicorn (`webhook-pipeline-api`).

    `log_config=None`: логи uvicorn идут через root logger в loguru.
    """

    settings = get_settings()
    uvicorn.run(
        "webhook_pipeline.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
