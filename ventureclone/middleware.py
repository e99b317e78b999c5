"""Request id and user identity middleware, plus the per-identity rate limiter."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from typing import Callable

from fastapi import Request

from ventureclone.config import get_settings
from ventureclone.errors import AppError

log = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
USER_COOKIE = "venture_user_id"
USER_COOKIE_MAX_AGE = 365 * 24 * 60 * 60


def request_id_of(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def user_id_of(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        # middleware not installed (e.g. a bare sub-app); fall back to the cookie
        user_id = request.cookies.get(USER_COOKIE) or str(uuid.uuid4())
        request.state.user_id = user_id
    return user_id


async def identity_middleware(request: Request, call_next):
    """Attach ``request_id`` and ``user_id`` to ``request.state``.

    The request id is taken from ``X-Request-ID`` when present and echoed
    back. A first-time visitor gets a ``venture_user_id`` cookie.
    """
    request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    cookie = request.cookies.get(USER_COOKIE)
    request.state.user_id = cookie or str(uuid.uuid4())

    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request.state.request_id
    if not cookie:
        response.set_cookie(
            USER_COOKIE, request.state.user_id,
            max_age=USER_COOKIE_MAX_AGE, httponly=True, samesite="lax",
        )
    return response


class RateLimiter:
    """Sliding-window limiter keyed by client IP and user id.

    Used as a FastAPI dependency; raises ``AppError`` 429 when the identity
    already made ``max_requests`` requests within the window.
    """

    def __init__(self, window_ms: int | None = None, max_requests: int | None = None,
                 clock: Callable[[], float] = time.monotonic):
        settings = get_settings()
        self.window_ms = window_ms if window_ms is not None else settings.rate_limit_window_ms
        self.max_requests = max_requests if max_requests is not None else settings.rate_limit_max
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}

    @property
    def message(self) -> str:
        minutes = round(self.window_ms / 60000)
        return (f"Too many requests. Maximum {self.max_requests} requests allowed "
                f"per {minutes} minutes.")

    def check(self, key: str) -> None:
        now = self._clock()
        window = self.window_ms / 1000
        with self._lock:
            self._prune(now, window)
            hits = self._hits.setdefault(key, deque())
            if len(hits) >= self.max_requests:
                retry_after = int(window - (now - hits[0])) + 1
                log.warning("Rate limit exceeded for %s", key)
                raise AppError(self.message, 429, "RATE_LIMITED",
                               details={"retryAfter": retry_after})
            hits.append(now)

    def _prune(self, now: float, window: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and now - hits[0] >= window:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def __call__(self, request: Request) -> None:
        ip = request.client.host if request.client else "unknown"
        # a visitor without the cookie gets a fresh id per request; key those by IP only
        self.check(f"{ip}:{request.cookies.get(USER_COOKIE) or 'anonymous'}")
