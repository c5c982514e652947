"""
Fixed-window request limiting.

Counters live in an injected ``CounterStore``. The in-process store suits a
single instance only; a multi-instance deployment needs a shared store with
the same interface. Windows expire and are evicted, so the map stays bounded
by the number of clients active inside one window.
"""
import math
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

from fastapi import Depends, Request

from config import get_settings
from errors import RateLimitedError


class CounterStore(Protocol):
    def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Count one hit for ``key``; return ``(hits in window, seconds until reset)``."""

    def reset(self, key: str) -> None:
        ...


class InMemoryCounterStore:
    def __init__(self, max_keys: int = 100_000, sweep_interval: float = 60.0, clock=time.monotonic):
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._max_keys = max_keys
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (reset_at, _) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now

    def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self._sweep_interval or len(self._windows) >= self._max_keys:
                self._sweep(now)
            reset_at, count = self._windows.get(key, (0.0, 0))
            if reset_at <= now:
                reset_at, count = now + window_seconds, 0
            count += 1
            self._windows[key] = (reset_at, count)
            return count, reset_at - now

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


_store = InMemoryCounterStore()


def get_counter_store() -> CounterStore:
    return _store


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimiter:
    def __init__(self, name: str, max_requests: int, window_seconds: int, message: Optional[str] = None):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.message = message or "Too many requests from this IP, please try again later."

    def check(self, store: CounterStore, client_key: str) -> None:
        count, remaining = store.hit(f"{self.name}:{client_key}", self.window_seconds)
        if count > self.max_requests:
            raise RateLimitedError(self.message, retryAfter=max(math.ceil(remaining), 1))

    def __call__(self, request: Request, store: CounterStore = Depends(get_counter_store)) -> None:
        if not get_settings().rate_limit_enabled:
            return
        self.check(store, client_ip(request))


api_limiter = RateLimiter("api", 100, 15 * 60)
auth_limiter = RateLimiter("auth", 5, 15 * 60,
                           "Too many authentication attempts, please try again after 15 minutes.")
register_limiter = RateLimiter("register", 3, 60 * 60,
                               "Too many registration attempts, please try again after 1 hour.")
password_reset_limiter = RateLimiter("password-reset", 3, 60 * 60,
                                     "Too many password reset attempts, please try again after 1 hour.")
verification_limiter = RateLimiter("email-verification", 3, 60 * 60,
                                   "Too many verification attempts, please try again after 1 hour.")
appointment_limiter = RateLimiter("appointment", 5, 60 * 60,
                                  "Too many appointment booking attempts, please try again later.")
search_limiter = RateLimiter("search", 50, 15 * 60, "Too many search requests, please try again later.")
analytics_limiter = RateLimiter("analytics", 30, 15 * 60, "Too many analytics requests, please try again later.")
