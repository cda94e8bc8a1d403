"""Утилиты для тестов (async SQLite, пайплайн, TestClient)."""

from __future__ import annotations

import asyncio
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from webhook_pipeline.core.config import get_settings
from webhook_pipeline.db.base import Base
from webhook_pipeline.db.session import get_db
from webhook_pipeline.models import event as _event  # noqa: F401  # ensure model import for metadata
from webhook_pipeline.models import retry_queue as _retry_queue  # noqa: F401
from webhook_pipeline.services.alerts import DeadLetterAlert
from webhook_pipeline.services.pipeline import WebhookPipeline, build_pipeline
from webhook_pipeline.services.registry import HandlerRegistry
from webhook_pipeline.workers.retry_worker import RetryWorker

OPS_HEADERS = {"X-Ops-Token": "test-ops-token-0123456789"}


def make_session_factory(db_path: Path) -> async_sessionmaker[AsyncSession]:
    """Фабрика async сессий к SQLite файлу (схема не создаётся)."""

    # NullPool: соединения не переживают event loop, в котором созданы.
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


async def create_session_factory(tmp_path: Path) -> async_sessionmaker[AsyncSession]:
    """Создать SQLite БД со схемой и вернуть фабрику async сессий."""

    db_path = tmp_path / "test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    return make_session_factory(db_path)


class RecordingNotifier:
    """Notifier, который просто запоминает алерты."""

    def __init__(self) -> None:
        self.alerts: list[DeadLetterAlert] = []

    async def notify(self, alert: DeadLetterAlert) -> None:
        self.alerts.append(alert)


class FakeRedis:
    """Простой in-memory async Redis для тестов."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:  # noqa: ARG002
        self.data[key] = value


class BrokenRedis:
    """Redis-клиент, который всегда падает (симуляция Redis down)."""

    async def get(self, key: str) -> str | None:  # noqa: ARG002
        raise RuntimeError("redis is down")

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:  # noqa: ARG002
        raise RuntimeError("redis is down")


def make_pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    registry: HandlerRegistry | None = None,
    **kwargs,
) -> tuple[WebhookPipeline, RetryWorker, RecordingNotifier]:
    """Собрать пайплайн и worker поверх тестовой БД."""

    settings = get_settings()
    notifier = kwargs.pop("notifier", None) or RecordingNotifier()
    pipeline = build_pipeline(
        session_factory,
        settings=settings,
        registry=registry or HandlerRegistry(),
        notifier=notifier,
        **kwargs,
    )
    return pipeline, RetryWorker.from_pipeline(pipeline, settings), notifier


def make_client(
    tmp_path: Path,
    registry: HandlerRegistry | None = None,
) -> tuple[TestClient, async_sessionmaker[AsyncSession]]:
    """Собрать TestClient с тестовой SQLite БД (async).

    Returns
    -------
    tuple[fastapi.testclient.TestClient, sqlalchemy.ext.asyncio.async_sessionmaker]
        (клиент приложения, фабрика async сессий).
    """

    from webhook_pipeline.main import create_app

    session_factory = asyncio.run(create_session_factory(tmp_path))
    app = create_app(registry=registry or HandlerRegistry(), session_factory=session_factory)

    async def override_get_db():  # noqa: ANN202
        async with session_factory() as db:
            yield db

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), session_factory
