"""Реестр обработчиков webhook событий.

Обработчик это внешний коллаборатор с сигнатурой `handler(payload) -> None`
(обычная функция или корутина). Реестр заполняется при старте процесса и
дальше используется только на чтение.

Пример
------
>>> registry = HandlerRegistry()
>>> @registry.handler("invoice.payment_succeeded")
... async def on_invoice_paid(payload: dict) -> None:
...     ...
"""

from __future__ import annotations

import importlib
from collections.abc import Awaitable, Callable
from typing import Any

Handler = Callable[[dict[str, Any]], Awaitable[None] | None]


class HandlerRegistry:
    """Отображение `event_type -> handler`."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, event_type: str, handler: Handler) -> None:
        """Зарегистрировать обработчик для типа события.

        Raises
        ------
        ValueError
            Если тип пустой или для него уже есть обработчик.
        """

        if not event_type:
            raise ValueError("event_type must not be empty")
        if event_type in self._handlers:
            raise ValueError(f"handler for {event_type!r} is already registered")
        self._handlers[event_type] = handler

    def handler(self, event_type: str) -> Callable[[Handler], Handler]:
        """Декоратор-обёртка над `register`."""

        def decorator(func: Handler) -> Handler:
            self.register(event_type, func)
            return func

        return decorator

    def get(self, event_type: str) -> Handler | None:
        return self._handlers.get(event_type)

    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def load_handlers(registry: HandlerRegistry, target: str) -> None:
    """Заполнить реестр через функцию `module.path:callable`.

    Parameters
    ----------
    registry : HandlerRegistry
        Реестр, который нужно заполнить.
    target : str
        Путь вида `package.module:register_handlers`. Функция получает реестр
        единственным аргументом.

    Raises
    ------
    ValueError
        Если путь не в формате `module:attr`.
    """

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"handlers target must look like 'module:function', got {target!r}")
    module = importlib.import_module(module_name)
    register = getattr(module, attr)
    register(registry)
