"""Конфигурация pytest."""

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from webhook_pipeline.core import config as config_module  # noqa: E402

# В тестах не запускаем миграции и фоновый worker (нужен внешний Postgres).
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("RETRY_WORKER_ENABLED", "false")
os.environ.setdefault("OPS_API_TOKEN", "test-ops-token-0123456789")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("WEBHOOK_STATUS_CACHE_ENABLED", "false")
os.environ.setdefault("DEAD_LETTER_ALERTS_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")
config_module.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_cached_settings():
    """Сбросить кэш настроек после тестов, которые меняли env."""

    yield
    from webhook_pipeline.core import rate_limit_middleware

    config_module.get_settings.cache_clear()
    rate_limit_middleware.get_rate_limiter.cache_clear()
