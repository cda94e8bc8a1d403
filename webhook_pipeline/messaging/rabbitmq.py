"""Публикация dead-letter алертов в RabbitMQ (блокирующий pika).

Функции здесь блокирующие: из async кода их вызывают через `asyncio.to_thread`.
Соединение открывается на каждый алерт. Dead-letter случается редко, держать
ради него постоянное соединение и heartbeat'ы не нужно.
"""

from __future__ import annotations

from dataclasses import dataclass

import pika
from pika.exceptions import NackError, UnroutableError

# Алерт не должен висеть на недоступном брокере дольше нескольких секунд.
_CONNECT_TIMEOUT_SECONDS = 5.0

_PERSISTENT = pika.DeliveryMode.Persistent


@dataclass(frozen=True)
class RabbitMQConfig:
    amqp_url: str
    alerts_queue: str


def _connection_parameters(amqp_url: str) -> pika.URLParameters:
    parameters = pika.URLParameters(amqp_url)
    parameters.socket_timeout = _CONNECT_TIMEOUT_SECONDS
    parameters.blocked_connection_timeout = _CONNECT_TIMEOUT_SECONDS
    parameters.connection_attempts = 1
    return parameters


def publish_json(*, config: RabbitMQConfig, routing_key: str, body: bytes) -> None:
    """Опубликовать JSON в durable очередь с publisher confirms.

    Очередь объявляется перед публикацией (idempotent), поэтому отдельный шаг
    подготовки брокера не нужен.

    Raises
    ------
    RuntimeError
        Если брокер не принял сообщение.
    """

    with pika.BlockingConnection(_connection_parameters(config.amqp_url)) as connection:
        channel = connection.channel()
        channel.confirm_delivery()
        channel.queue_declare(queue=routing_key, durable=True)
        try:
            channel.basic_publish(
                exchange="",
                routing_key=routing_key,
                body=body,
                properties=pika.BasicProperties(
                    content_type="application/json",
                    delivery_mode=_PERSISTENT,
                ),
                mandatory=True,
            )
        except (NackError, UnroutableError) as exc:
            raise RuntimeError(f"rabbitmq did not accept message for {routing_key!r}") from exc
