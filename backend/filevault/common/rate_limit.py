from __future__ import annotations

import threading
import time


class LoginRateLimiter:
    """Per-key sliding window of failed login timestamps, kept in process memory.

    Keys whose window has emptied are dropped, so only keys with recent
    failures are held.
    """

    def __init__(self) -> None:
        self._failures: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._failures)

    def _prune(self, key: str, window_seconds: int, now: float) -> list[float]:
        recent = [stamp for stamp in self._failures.get(key, ()) if now - stamp <= window_seconds]
        if recent:
            self._failures[key] = recent
        else:
            self._failures.pop(key, None)
        return recent

    def is_blocked(self, key: str, window_seconds: int, max_attempts: int) -> bool:
        with self._lock:
            return len(self._prune(key, window_seconds, time.time())) >= max_attempts

    def add_failure(self, key: str) -> None:
        with self._lock:
            self._failures.setdefault(key, []).append(time.time())

    def clear(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._failures.clear()
            else:
                self._failures.pop(key, None)


login_rate_limiter = LoginRateLimiter()
