"""Token bucket для входящих доставок.

Состояние живёт в памяти процесса. Для webhook'ов этого достаточно: лимит
защищает инстанс от шторма повторных доставок, а не считает квоты клиента.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

# Сколько разных ключей держим, прежде чем выбросить полные (простаивающие) вёдра.
DEFAULT_MAX_KEYS = 10_000


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class RateLimiter:
    """Token bucket на ключ (обычно IP отправителя).

    Parameters
    ----------
    capacity : int
        Размер ведра, он же допустимый всплеск.
    refill_rate : float
        Токенов в секунду.
    clock : Callable[[], float]
        Монотонные часы; подменяются в тестах.
    max_keys : int
        Порог, после которого простаивающие вёдра удаляются.
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = DEFAULT_MAX_KEYS,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.max_keys = max_keys
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, _Bucket] = {}

    def _refilled(self, key: str, now: float) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self.max_keys:
                self._evict_idle(now)
            bucket = self._buckets[key] = _Bucket(float(self.capacity), now)
            return bucket
        elapsed = max(0.0, now - bucket.updated_at)
        bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
        bucket.updated_at = now
        return bucket

    def _evict_idle(self, now: float) -> None:
        full_after = self.capacity / self.refill_rate
        idle = [k for k, b in self._buckets.items() if now - b.updated_at >= full_after]
        for key in idle:
            del self._buckets[key]

    def allow(self, key: str, cost: int = 1) -> bool:
        """Списать `cost` токенов, если они есть."""

        if cost <= 0:
            raise ValueError("cost must be positive")
        with self._lock:
            bucket = self._refilled(key, self._clock())
            if bucket.tokens < cost:
                return False
            bucket.tokens -= cost
            return True

    def retry_after(self, key: str, cost: int = 1) -> int:
        """Через сколько секунд (с округлением вверх) наберётся `cost` токенов."""

        with self._lock:
            bucket = self._refilled(key, self._clock())
            missing = cost - bucket.tokens
        if missing <= 0:
            return 0
        return max(1, math.ceil(missing / self.refill_rate))
