"""Тесты реестра обработчиков и диспетчера."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any

import pytest

from tests import sample_handlers
from webhook_pipeline.core.errors import PermanentEventError
from webhook_pipeline.services.dispatcher import Dispatcher
from webhook_pipeline.services.registry import HandlerRegistry, load_handlers


@dataclass
class StubEvent:
    id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


def test_registry_rejects_duplicates_and_empty_types() -> None:
    registry = HandlerRegistry()

    @registry.handler("invoice.paid")
    def on_paid(payload: dict) -> None:  # noqa: ARG001
        return None

    assert "invoice.paid" in registry
    assert registry.get("invoice.paid") is on_paid
    assert registry.get("invoice.unknown") is None

    with pytest.raises(ValueError):
        registry.register("invoice.paid", on_paid)
    with pytest.raises(ValueError):
        registry.register("", on_paid)
    assert len(registry) == 1


def test_load_handlers_from_module_path() -> None:
    registry = HandlerRegistry()
    load_handlers(registry, "tests.sample_handlers:register")
    assert registry.event_types() == ["sample.created"]

    with pytest.raises(ValueError):
        load_handlers(HandlerRegistry(), "tests.sample_handlers")


def test_unknown_event_type_is_acknowledged_noop() -> None:
    result = asyncio.run(Dispatcher(HandlerRegistry()).dispatch(StubEvent("evt_1", "nobody.cares")))
    assert result.ok is True
    assert result.handled is False


def test_async_and_sync_handlers_receive_payload() -> None:
    registry = HandlerRegistry()
    seen: list[tuple[str, dict]] = []
    main_thread = threading.get_ident()
    sync_threads: list[int] = []

    async def on_async(payload: dict) -> None:
        seen.append(("async", payload))

    def on_sync(payload: dict) -> None:
        sync_threads.append(threading.get_ident())
        seen.append(("sync", payload))

    registry.register("a", on_async)
    registry.register("s", on_sync)
    dispatcher = Dispatcher(registry)

    async def scenario() -> None:
        assert (await dispatcher.dispatch(StubEvent("evt_a", "a", {"n": 1}))).ok
        assert (await dispatcher.dispatch(StubEvent("evt_s", "s", {"n": 2}))).ok

    asyncio.run(scenario())
    assert seen == [("async", {"n": 1}), ("sync", {"n": 2})]
    # Синхронный обработчик не блокирует event loop.
    assert sync_threads and sync_threads[0] != main_thread


def test_handler_errors_are_captured() -> None:
    registry = HandlerRegistry()

    async def broken(payload: dict) -> None:  # noqa: ARG001
        raise RuntimeError("downstream timeout")

    def rejected(payload: dict) -> None:  # noqa: ARG001
        raise PermanentEventError("customer does not exist")

    registry.register("broken", broken)
    registry.register("rejected", rejected)
    dispatcher = Dispatcher(registry)

    failed = asyncio.run(dispatcher.dispatch(StubEvent("evt_1", "broken")))
    assert failed.ok is False
    assert failed.permanent is False
    assert failed.error == "RuntimeError: downstream timeout"

    permanent = asyncio.run(dispatcher.dispatch(StubEvent("evt_2", "rejected")))
    assert permanent.ok is False
    assert permanent.permanent is True
    assert "customer does not exist" in permanent.error


def test_sample_handler_module_is_callable() -> None:
    registry = HandlerRegistry()
    sample_handlers.register(registry)
    sample_handlers.handled.clear()

    result = asyncio.run(Dispatcher(registry).dispatch(StubEvent("evt_1", "sample.created", {"x": 1})))
    assert result.ok is True
    assert sample_handlers.handled == [{"x": 1}]


def test_slow_handler_is_cut_off_by_timeout() -> None:
    registry = HandlerRegistry()

    async def stuck(payload: dict) -> None:  # noqa: ARG001
        await asyncio.sleep(5)

    registry.register("report.generate", stuck)
    dispatcher = Dispatcher(registry, timeout_seconds=0.05)

    result = asyncio.run(dispatcher.dispatch(StubEvent("evt_1", "report.generate")))
    assert result.ok is False
    assert result.permanent is False
    assert "timed out" in result.error
