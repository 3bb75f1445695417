import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta

class RollingWindowLimiter:
    """
    Per-key request log over a rolling window.

    ``try_acquire`` only succeeds while fewer than ``limit`` grants fall inside
    the last ``window_seconds``, so no window of that length ever sees more.
    """

    def __init__(self, window_seconds: float = 60):
        self.window = timedelta(seconds=window_seconds)
        self._lock = threading.Lock()
        self._grants: dict[str, deque[datetime]] = defaultdict(deque)

    def _prune(self, key: str, now: datetime) -> deque:
        grants = self._grants[key]
        while grants and grants[0] <= now - self.window:
            grants.popleft()
        return grants

    def remaining(self, key: str, limit: int, now: datetime) -> int:
        with self._lock:
            return max(limit - len(self._prune(key, now)), 0)

    def try_acquire(self, key: str, limit: int, now: datetime) -> bool:
        with self._lock:
            grants = self._prune(key, now)
            if len(grants) >= limit:
                return False
            grants.append(now)
            return True

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._grants.clear()
            else:
                self._grants.pop(key, None)
