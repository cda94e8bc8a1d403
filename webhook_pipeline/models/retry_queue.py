"""Модель очереди отложенных ретраев."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from webhook_pipeline.db.base import Base


class RetryQueueEntry(Base):
    """Запланированная повторная попытка обработки события.

    На одно событие допускается не больше одной живой записи (PK = `event_id`).
    Запись удаляется в момент, когда worker её забирает.

    Attributes
    ----------
    event_id : str
        Идентификатор события в `webhook_events`.
    event_type : str
        Тип события.
    attempt_number : int
        Номер попытки, которую выполнит эта запись.
    retry_at : datetime
        Не раньше этого момента запись считается "due".
    created_at : datetime
        Когда ретрай был запланирован.
    """

    __tablename__ = "webhook_retry_queue"

    event_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("webhook_events.id"),
        primary_key=True,
    )
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
