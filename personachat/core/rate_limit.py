"""Simple in-memory fixed-window rate limiting."""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

WINDOW_SECONDS = 60


class FixedWindowLimiter:
    """Per-key request counter that resets every minute.

    Windows live in process memory only; a restart clears them. Windows that
    have run out are dropped at most once per window length.
    """

    def __init__(self, limit_per_minute: int, time_fn: Optional[Callable[[], float]] = None):
        self.limit = limit_per_minute
        self.time_fn = time_fn or time.monotonic
        self.windows: Dict[str, Tuple[float, int]] = {}
        self._next_prune: Optional[float] = None
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        if self._next_prune is not None and now < self._next_prune:
            return
        stale = [key for key, (start, _) in self.windows.items() if now - start >= WINDOW_SECONDS]
        for key in stale:
            del self.windows[key]
        self._next_prune = now + WINDOW_SECONDS

    def allow(self, key: str) -> bool:
        with self._lock:
            now = self.time_fn()
            self._prune(now)
            window_start, count = self.windows.get(key, (now, 0))
            if now - window_start >= WINDOW_SECONDS:
                window_start, count = now, 0
            if count >= self.limit:
                self.windows[key] = (window_start, count)
                return False
            self.windows[key] = (window_start, count + 1)
            return True

    def reset(self) -> None:
        with self._lock:
            self.windows.clear()
            self._next_prune = None
