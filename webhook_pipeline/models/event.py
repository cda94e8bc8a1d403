"""Модель ledger'а webhook событий.

Назначение
----------
Каждое событие провайдера записывается ровно одной строкой по его `id`
(ключ идемпотентности). Строки никогда не удаляются и служат audit trail'ом,
а также источником payload'а для ретраев и ручного replay.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from webhook_pipeline.db.base import Base


class EventStatus(str, Enum):
    """Статус обработки события."""

    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """Событие, полученное от провайдера.

    Attributes
    ----------
    id : str
        Идентификатор события у провайдера (ключ идемпотентности).
    event_type : str
        Тип события (например, `invoice.payment_succeeded`).
    payload : dict
        Событие целиком, как пришло от провайдера.
    status : str
        Статус обработки (см. `EventStatus`).
    attempts : int
        Количество неудачных попыток обработки.
    error_message : str | None
        Причина последней ошибки.
    created_at : datetime
        Когда событие было получено впервые.
    processing_started_at : datetime | None
        Когда был взят текущий claim на обработку.
    processed_at : datetime | None
        Когда событие было успешно обработано.
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # JSONB для Postgres, JSON для остальных (например, SQLite в тестах).
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text("'received'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
