"""Тесты настроек."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from webhook_pipeline.core.config import Settings


def test_async_url_is_derived_from_sync_url() -> None:
    assert Settings(database_url="sqlite+pysqlite:///./app.db").sqlalchemy_async_url == (
        "sqlite+aiosqlite:///./app.db"
    )
    assert Settings(database_url="postgresql://u:p@db:5432/x").sqlalchemy_async_url == (
        "postgresql+asyncpg://u:p@db:5432/x"
    )
    explicit = Settings(database_async_url="sqlite+aiosqlite:///other.db")
    assert explicit.sqlalchemy_async_url == "sqlite+aiosqlite:///other.db"


def test_short_ops_token_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(ops_api_token="short")


def test_rabbitmq_dsn_requires_password() -> None:
    with pytest.raises(ValueError):
        _ = Settings(rabbitmq_password=None).rabbitmq_dsn


def test_retry_defaults() -> None:
    settings = Settings()
    assert settings.webhook_max_attempts == 3
    assert settings.webhook_retry_base_seconds == 1.0
    assert settings.webhook_retry_max_delay_seconds is None
