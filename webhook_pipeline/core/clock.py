"""Время в UTC.

SQLite (тесты) отдаёт `DateTime(timezone=True)` колонки как naive значения,
Postgres отдаёт aware. Наружу сервис всегда отдаёт aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Текущее время (aware, UTC)."""

    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Интерпретировать naive значение из БД как UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
