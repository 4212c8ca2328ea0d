"""Liveness and readiness state for the probe endpoints.

Liveness never checks an external dependency.  Readiness tracks the last
observed health of the gt CLI, but stays optimistic when that observation
is stale so a quiet operator is not marked unready.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

STALE_AFTER = 300.0


class HealthChecker:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._tool_healthy = True
        self._last_tool_check: float | None = None

    def set_tool_healthy(self, healthy: bool) -> None:
        with self._lock:
            self._tool_healthy = healthy
            self._last_tool_check = self._clock()

    def liveness(self) -> tuple[bool, str]:
        return True, "ok"

    def readiness(self) -> tuple[bool, str]:
        """Return ``(ready, detail)``."""
        with self._lock:
            if self._last_tool_check is None or self._clock() - self._last_tool_check > STALE_AFTER:
                return True, "ok"
            if not self._tool_healthy:
                return False, "gt CLI is not healthy"
            return True, "ok"
