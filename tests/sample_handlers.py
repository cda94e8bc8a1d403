"""Обработчики для теста загрузки через `WEBHOOK_HANDLERS`."""

from __future__ import annotations

handled: list[dict] = []


def handle_sample_created(payload: dict) -> None:
    handled.append(payload)


def register(registry) -> None:  # noqa: ANN001
    registry.register("sample.created", handle_sample_created)
