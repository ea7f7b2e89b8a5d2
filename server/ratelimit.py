import math
import threading
import time
from functools import wraps

from flask import current_app, jsonify, request


class FixedWindowRateLimiter:
    """Per-origin request ceiling over fixed windows (in-process only)."""

    def __init__(self, limit: int, window_seconds: int = 60, clock=time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._windows = {}  # origin -> (window start, hits)

    def hit(self, origin: str) -> bool:
        now = self.clock()
        with self._lock:
            start, hits = self._windows.get(origin, (now, 0))
            if now - start >= self.window_seconds:
                start, hits = now, 0
            hits += 1
            self._windows[origin] = (start, hits)
            if len(self._windows) > 10000:
                self._prune(now)
            return hits <= self.limit

    def retry_after(self, origin: str) -> int:
        with self._lock:
            start, _ = self._windows.get(origin, (self.clock(), 0))
        return max(1, math.ceil(self.window_seconds - (self.clock() - start)))

    def _prune(self, now: float) -> None:
        expired = [o for o, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for origin in expired:
            del self._windows[origin]


def rate_limited(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        limiter = current_app.extensions["license_rate_limiter"]
        origin = request.remote_addr or "unknown"
        if not limiter.hit(origin):
            resp = jsonify({"valid": False, "error": "Too many requests, please try again later"})
            resp.status_code = 429
            resp.headers["Retry-After"] = str(limiter.retry_after(origin))
            return resp
        return view(*args, **kwargs)
    return wrapper
