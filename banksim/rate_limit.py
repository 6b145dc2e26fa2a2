from __future__ import annotations

import hashlib
import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from fastapi import HTTPException, Request

from banksim.security import AUTHORIZATION_HEADER_NAME


@dataclass(frozen=True)
class RateLimitSettings:
    enabled: bool = True
    requests: int = 10
    window_seconds: int = 60

    def __post_init__(self) -> None:
        if self.requests <= 0:
            raise ValueError("RATE_LIMIT_REQUESTS must be greater than 0.")
        if self.window_seconds <= 0:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be greater than 0.")


class InMemoryRateLimiter:
    """Sliding-window counter per key.

    Keys with no event inside the window are swept at most once per window,
    so clients that stop calling do not accumulate.
    """

    def __init__(self, settings: RateLimitSettings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._next_sweep_at = clock() + settings.window_seconds

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    def check_and_consume(self, key: str) -> tuple[bool, int]:
        now = self._clock()
        window_start = now - self._settings.window_seconds

        with self._lock:
            if now >= self._next_sweep_at:
                self._evict_idle_keys(window_start)
                self._next_sweep_at = now + self._settings.window_seconds

            events = self._events.setdefault(key, deque())
            while events and events[0] <= window_start:
                events.popleft()

            if len(events) >= self._settings.requests:
                retry_after = max(
                    1,
                    math.ceil(self._settings.window_seconds - (now - events[0])),
                )
                return False, retry_after

            events.append(now)
            return True, 0

    def _evict_idle_keys(self, window_start: float) -> None:
        idle_keys = [key for key, events in self._events.items() if not events or events[-1] <= window_start]
        for key in idle_keys:
            del self._events[key]


def _resolve_identity_key(request: Request) -> str:
    auth_header = request.headers.get(AUTHORIZATION_HEADER_NAME, "")
    if auth_header.lower().startswith("bearer "):
        bearer_token = auth_header[7:]
        if bearer_token:
            return "bearer:" + hashlib.sha256(bearer_token.encode("utf-8")).hexdigest()[:16]

    return "anonymous"


def enforce_rate_limit(scope: str) -> Callable[[Request], None]:
    """Build a dependency that limits calls per client, identity and scope."""

    def _enforce(request: Request) -> None:
        settings: RateLimitSettings | None = getattr(request.app.state, "rate_limit_settings", None)
        if not settings or not settings.enabled:
            return

        rate_limiter: InMemoryRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
        if rate_limiter is None:
            raise HTTPException(status_code=500, detail="Rate limiter is not configured.")

        client_ip = request.client.host if request.client else "unknown"
        limit_key = f"{scope}:{client_ip}:{_resolve_identity_key(request)}"

        allowed, retry_after = rate_limiter.check_and_consume(limit_key)
        if not allowed:
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded. Please retry later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _enforce
