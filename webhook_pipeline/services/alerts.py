"""Сигнал о dead-letter событиях для алертинга."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Protocol

from loguru import logger

from webhook_pipeline.core.config import Settings
from webhook_pipeline.messaging.rabbitmq import RabbitMQConfig, publish_json


@dataclass(frozen=True)
class DeadLetterAlert:
    """Событие исчерпало попытки и требует ручного разбора."""

    event_id: str
    event_type: str
    attempts: int
    error: str | None
    occurred_at: datetime

    def to_json(self) -> bytes:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class DeadLetterNotifier(Protocol):
    async def notify(self, alert: DeadLetterAlert) -> None: ...


class LoggingDeadLetterNotifier:
    """Записать dead-letter в лог уровня ERROR."""

    async def notify(self, alert: DeadLetterAlert) -> None:
        logger.error(
            "Webhook event dead-lettered id={id} type={t} attempts={a}: {err}",
            id=alert.event_id,
            t=alert.event_type,
            a=alert.attempts,
            err=alert.error,
        )


class RabbitMQDeadLetterNotifier(LoggingDeadLetterNotifier):
    """Записать в лог и опубликовать алерт в очередь RabbitMQ."""

    def __init__(self, config: RabbitMQConfig) -> None:
        self.config = config

    async def notify(self, alert: DeadLetterAlert) -> None:
        await super().notify(alert)
        await asyncio.to_thread(
            publish_json,
            config=self.config,
            routing_key=self.config.alerts_queue,
            body=alert.to_json(),
        )


def build_dead_letter_notifier(settings: Settings) -> DeadLetterNotifier:
    """Выбрать notifier по настройкам."""

    if not settings.dead_letter_alerts_enabled:
        return LoggingDeadLetterNotifier()
    return RabbitMQDeadLetterNotifier(
        RabbitMQConfig(
            amqp_url=settings.rabbitmq_dsn,
            alerts_queue=settings.dead_letter_alerts_queue,
        )
    )
