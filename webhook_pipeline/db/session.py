"""Async движок и сессии БД.

Пайплайн целиком асинхронный: запись в ledger и очередь ретраев не должна
блокировать event loop, пока обработчики ходят во внешние сервисы.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from webhook_pipeline.core.config import get_settings


def _engine_options(url: str) -> dict[str, Any]:
    # У SQLite нет серверного пула, pre-ping и размеры пула там бессмысленны.
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 10}


@lru_cache(maxsize=1)
def get_async_engine() -> AsyncEngine:
    """Закэшированный AsyncEngine по `Settings.sqlalchemy_async_url`."""

    url = get_settings().sqlalchemy_async_url
    return create_async_engine(url, **_engine_options(url))


# Сессии не expire'ят атрибуты на commit: ledger коммитит после каждого
# перехода, а объекты события читаются и после него.
SessionLocal = async_sessionmaker(
    bind=get_async_engine(),
    autoflush=False,
    expire_on_commit=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: async сессия на запрос."""

    async with SessionLocal() as db:
        yield db
