"""In-memory rate limiter guarding the login and password-reset endpoints."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class InMemoryRateLimiter:
    """Sliding-window limiter per key (client address + route)."""

    def __init__(self):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    @staticmethod
    def key_for(client_host: str | None, path: str) -> str:
        return f"{client_host or 'unknown'}:{path}"

    def allow(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """Record a hit for `key`; return `(allowed, retry_after_seconds)`."""
        if max_requests <= 0:
            return True, 0
        now = time.monotonic()
        with self._lock:
            hits = self._hits[key]
            cutoff = now - window_seconds
            while hits and hits[0] < cutoff:
                hits.popleft()
            if len(hits) >= max_requests:
                return False, max(1, int(window_seconds - (now - hits[0])))
            hits.append(now)
        return True, 0
