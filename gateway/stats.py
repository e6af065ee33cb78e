"""Process-wide request counters, reported by ``GET /``.

Constructed once in the app lifespan and handed to route handlers; only
ever incremented.
"""

from __future__ import annotations

import threading


class RequestStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total = 0
        self._successful = 0
        self._failed = 0

    def record_request(self) -> None:
        with self._lock:
            self._total += 1

    def record_success(self) -> None:
        with self._lock:
            self._successful += 1

    def record_failure(self) -> None:
        with self._lock:
            self._failed += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "total_requests": self._total,
                "successful": self._successful,
                "failed": self._failed,
            }
