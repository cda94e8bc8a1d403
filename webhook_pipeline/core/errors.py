"""Исключения пайплайна обработки webhook событий."""

from __future__ import annotations


class PermanentEventError(Exception):
    """Ошибка обработчика, которую бессмысленно ретраить.

    Обработчик поднимает её, когда событие никогда не сможет быть применено
    (например, payload ссылается на сущность, которой не существует).
    Событие сразу уходит в dead-letter без ретраев.
    """


class EventRecordError(Exception):
    """Не удалось надёжно записать событие в ledger.

    Единственный случай, когда провайдеру нужно вернуть не-ack, чтобы он
    доставил событие повторно.
    """

    def __init__(self, event_id: str, reason: str) -> None:
        super().__init__(f"failed to record event {event_id}: {reason}")
        self.event_id = event_id
        self.reason = reason
