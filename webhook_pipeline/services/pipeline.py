"""Сборка пайплайна из настроек (registry -> dispatcher -> ingress)."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_pipeline.core.config import Settings, get_settings
from webhook_pipeline.db.redis import get_redis_client
from webhook_pipeline.services.alerts import DeadLetterNotifier, build_dead_letter_notifier
from webhook_pipeline.services.dispatcher import Dispatcher
from webhook_pipeline.services.ingress import EventIngress
from webhook_pipeline.services.registry import HandlerRegistry, load_handlers
from webhook_pipeline.services.retry_scheduler import RetryScheduler
from webhook_pipeline.services.status_cache import EventStatusCache


@dataclass(frozen=True)
class WebhookPipeline:
    """Собранные компоненты пайплайна."""

    session_factory: async_sessionmaker[AsyncSession]
    registry: HandlerRegistry
    dispatcher: Dispatcher
    scheduler: RetryScheduler
    ingress: EventIngress


def build_pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    settings: Settings | None = None,
    registry: HandlerRegistry | None = None,
    status_cache: EventStatusCache | None = None,
    notifier: DeadLetterNotifier | None = None,
) -> WebhookPipeline:
    """Собрать пайплайн.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Фабрика async сессий БД.
    settings : Settings | None
        Настройки; по умолчанию `get_settings()`.
    registry : HandlerRegistry | None
        Готовый реестр. Если не передан, создаётся пустой и заполняется
        через `WEBHOOK_HANDLERS` (`module:function`), если он задан.
    status_cache : EventStatusCache | None
        Кеш статусов; по умолчанию Redis, если включён в настройках.
    notifier : DeadLetterNotifier | None
        Получатель dead-letter сигналов; по умолчанию по настройкам.

    Returns
    -------
    WebhookPipeline
        Компоненты пайплайна.
    """

    settings = settings or get_settings()
    if registry is None:
        registry = HandlerRegistry()
        if settings.webhook_handlers:
            load_handlers(registry, settings.webhook_handlers)

    if status_cache is None and settings.webhook_status_cache_enabled:
        status_cache = EventStatusCache(
            get_redis_client(),
            ttl_seconds=settings.webhook_status_cache_ttl_seconds,
        )

    # Вызов обработчика не длиннее lease claim'а.
    dispatcher = Dispatcher(registry, timeout_seconds=settings.processing_lease_seconds)
    scheduler = RetryScheduler(
        session_factory,
        base_seconds=settings.webhook_retry_base_seconds,
        max_delay_seconds=settings.webhook_retry_max_delay_seconds,
    )
    ingress = EventIngress(
        session_factory,
        dispatcher,
        scheduler,
        max_attempts=settings.webhook_max_attempts,
        status_cache=status_cache,
        notifier=notifier or build_dead_letter_notifier(settings),
    )
    return WebhookPipeline(
        session_factory=session_factory,
        registry=registry,
        dispatcher=dispatcher,
        scheduler=scheduler,
        ingress=ingress,
    )
