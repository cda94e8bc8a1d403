"""Запуск Alembic миграций при старте процесса.

Важно
-----
В продакшене миграции обычно гоняются отдельным шагом деплоя. Если включён
`RUN_MIGRATIONS_ON_STARTUP`, их запускает каждый процесс (API и retry worker),
поэтому на Postgres берётся advisory lock: схему мигрирует ровно один процесс,
остальные ждут и получают уже актуальную `head`.
"""

from __future__ import annotations

import time
import zlib
from contextlib import contextmanager

import psycopg2
from alembic import command
from alembic.config import Config
from loguru import logger

from webhook_pipeline.core.config import Settings, get_settings

ALEMBIC_INI = "alembic.ini"


def _alembic_config(database_url: str) -> Config:
    cfg = Config(ALEMBIC_INI)
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def _migration_lock_key(settings: Settings) -> int:
    return zlib.crc32(f"{settings.app_name}:migrations".encode("utf-8"))


def _connect_when_ready(settings: Settings):  # noqa: ANN202
    """Открыть autocommit соединение с Postgres, дождавшись его готовности."""

    tries = settings.migrations_wait_tries
    sleep_seconds = settings.migrations_wait_sleep_seconds

    for attempt in range(1, tries + 1):
        try:
            conn = psycopg2.connect(settings.sqlalchemy_url)
            conn.autocommit = True
            return conn
        except psycopg2.OperationalError:
            logger.info(
                "DB not ready yet ({i}/{n}), sleep {s}s",
                i=attempt,
                n=tries,
                s=sleep_seconds,
            )
            time.sleep(sleep_seconds)

    raise RuntimeError("database is not reachable for migrations")


@contextmanager
def _migration_lock(settings: Settings):
    """Держать session-level advisory lock на время миграций."""

    lock_key = _migration_lock_key(settings)
    conn = _connect_when_ready(settings)
    logger.info("Acquiring migrations advisory lock key={k}", k=lock_key)
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT pg_advisory_lock(%s)", (lock_key,))
        yield
    finally:
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_unlock(%s)", (lock_key,))
        finally:
            conn.close()


def run_migrations_once() -> None:
    """Обновить схему до `head`, если это включено в настройках."""

    settings = get_settings()
    if not settings.run_migrations_on_startup:
        logger.info("Migrations on startup disabled")
        return

    db_url = settings.sqlalchemy_url
    if not db_url.startswith("postgresql://"):
        logger.info("Running alembic upgrade head")
        command.upgrade(_alembic_config(db_url), "head")
        return

    with _migration_lock(settings):
        logger.info("Running alembic upgrade head (postgres)")
        command.upgrade(_alembic_config(db_url), "head")
    logger.info("Migrations completed")
