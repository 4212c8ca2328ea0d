"""Per-resource exponential backoff shared by every controller.

The calculator is keyed by an opaque string (the resource key) and knows
nothing about resource kinds.  The retry map is the only mutable state
shared between concurrent reconciles, so every access goes through one
lock.  Callers must run ``cleanup`` periodically with the live key set or
the map grows without bound.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

DEFAULT_BASE_DELAY = 5.0
DEFAULT_MAX_DELAY = 300.0
DEFAULT_MAX_RETRIES = 10


class BackoffCalculator:
    """Exponential retry delays per key: ``min(base * 2**retries, max)``.

    Delays are in seconds.
    """

    def __init__(
        self,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_retries = max_retries
        self._lock = threading.Lock()
        self._retries: dict[str, int] = {}

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def get_backoff_result(self, key: str) -> float:
        """Return the delay for the next retry of ``key`` and count the attempt."""
        with self._lock:
            retries = self._retries.get(key, 0)
            self._retries[key] = retries + 1
        return min(self._base_delay * (2**retries), self._max_delay)

    def get_retry_count(self, key: str) -> int:
        with self._lock:
            return self._retries.get(key, 0)

    def reset_retries(self, key: str) -> None:
        """Forget ``key``.  Called after every successful reconcile."""
        with self._lock:
            self._retries.pop(key, None)

    def should_give_up(self, key: str) -> bool:
        with self._lock:
            return self._retries.get(key, 0) >= self._max_retries

    def cleanup(self, active_keys: Iterable[str]) -> int:
        """Drop every key not in ``active_keys``.  Returns the number removed."""
        active = set(active_keys)
        with self._lock:
            stale = [key for key in self._retries if key not in active]
            for key in stale:
                del self._retries[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._retries)
