"""Диспетчер: выбор обработчика по типу события и единый перехват ошибок."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

from webhook_pipeline.core.errors import PermanentEventError
from webhook_pipeline.services.registry import Handler, HandlerRegistry


class DispatchableEvent(Protocol):
    """Минимальный интерфейс события для диспетчера."""

    id: str
    event_type: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class DispatchResult:
    """Результат вызова обработчика.

    Attributes
    ----------
    ok : bool
        Обработчик завершился успешно (или тип события неизвестен).
    error : str | None
        Текст ошибки для ledger'а.
    permanent : bool
        Обработчик сообщил, что ретраить бессмысленно.
    handled : bool
        False, если для типа события нет обработчика.
    """

    ok: bool
    error: str | None = None
    permanent: bool = False
    handled: bool = True


def _is_async_handler(handler: Handler) -> bool:
    if inspect.iscoroutinefunction(handler):
        return True
    return inspect.iscoroutinefunction(getattr(handler, "__call__", None))


def _describe(exc: BaseException) -> str:
    message = str(exc)
    if not message:
        return type(exc).__name__
    return f"{type(exc).__name__}: {message}"


async def _invoke(handler: Handler, payload: dict[str, Any]) -> None:
    if _is_async_handler(handler):
        await handler(payload)
        return
    result = await asyncio.to_thread(handler, payload)
    if inspect.isawaitable(result):
        await result


class Dispatcher:
    """Вызвать обработчик из реестра, не выпуская исключения наружу.

    Parameters
    ----------
    registry : HandlerRegistry
        Реестр обработчиков.
    timeout_seconds : float | None
        Потолок времени одного вызова (пайплайн передаёт сюда lease claim'а).
        Таймаут записывается как обычная неудачная попытка.
    """

    def __init__(self, registry: HandlerRegistry, *, timeout_seconds: float | None = None) -> None:
        self.registry = registry
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, event: DispatchableEvent) -> DispatchResult:
        """Обработать событие.

        Notes
        -----
        Неизвестный тип события считается успешным no-op: обработчика нет,
        и ретраи бессмысленны. Синхронные обработчики выполняются в отдельном
        потоке, чтобы не блокировать event loop; поток по таймауту прервать
        нельзя, отменяется только ожидание его результата.
        """

        handler = self.registry.get(event.event_type)
        if handler is None:
            logger.info(
                "Unhandled webhook event type={t} id={id}, acknowledging",
                t=event.event_type,
                id=event.id,
            )
            return DispatchResult(ok=True, handled=False)

        try:
            await asyncio.wait_for(_invoke(handler, event.payload), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error = f"handler timed out after {self.timeout_seconds}s"
            logger.warning(
                "Handler timed out for event id={id} type={t} after {s}s",
                id=event.id,
                t=event.event_type,
                s=self.timeout_seconds,
            )
            return DispatchResult(ok=False, error=error)
        except PermanentEventError as exc:
            logger.warning(
                "Handler rejected event id={id} type={t} permanently: {err}",
                id=event.id,
                t=event.event_type,
                err=_describe(exc),
            )
            return DispatchResult(ok=False, error=_describe(exc), permanent=True)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Handler failed for event id={id} type={t}: {err}",
                id=event.id,
                t=event.event_type,
                err=_describe(exc),
            )
            return DispatchResult(ok=False, error=_describe(exc))

        return DispatchResult(ok=True)
