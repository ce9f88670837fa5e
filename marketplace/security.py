from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict

from flask import current_app, request

from marketplace.errors import RateLimitedError
from marketplace.ui_strings import error_message


_EXEMPT_PATHS = frozenset({"/health", "/metrics"})
_MAX_TRACKED_KEYS = 10_000

_CONTENT_SECURITY_POLICY = (
    "default-src 'self'",
    "img-src 'self' data:",
    "connect-src 'self'",
    "frame-ancestors 'none'",
    "base-uri 'self'",
    "form-action 'self'",
)

SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Content-Security-Policy": "; ".join(_CONTENT_SECURITY_POLICY),
}


@dataclass
class _Window:
    opened_at: float
    hits: int = 0


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: int


class RequestRateLimiter:
    """Fixed-window counter per client key (ip, user, method and route)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateDecision:
        now = time.monotonic()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.opened_at >= window_seconds:
                window = _Window(opened_at=now)
                self._windows[key] = window
            window.hits += 1
            if len(self._windows) > _MAX_TRACKED_KEYS:
                self._evict(now - window_seconds)
            retry_after = max(0, int(window_seconds - (now - window.opened_at)))
            return RateDecision(
                allowed=window.hits <= limit,
                remaining=max(0, limit - window.hits),
                retry_after=retry_after,
            )

    def _evict(self, cutoff: float) -> None:
        self._windows = {key: window for key, window in self._windows.items() if window.opened_at >= cutoff}

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_RATE_LIMITER = RequestRateLimiter()


def _client_key() -> str:
    user = (request.headers.get("X-User-Id") or "").strip().lower() or "anon"
    ip = (request.remote_addr or "").strip() or "unknown"
    route = request.url_rule.rule if request.url_rule else request.path
    return "|".join((ip, user, request.method, route))


def enforce_rate_limit():
    config = current_app.config
    if not config.get("RATE_LIMIT_ENABLED", True):
        return None
    if request.method == "OPTIONS" or request.path in _EXEMPT_PATHS:
        return None

    decision = _RATE_LIMITER.hit(
        _client_key(),
        limit=max(1, int(config.get("RATE_LIMIT_MAX_REQUESTS") or 300)),
        window_seconds=max(1, int(config.get("RATE_LIMIT_WINDOW_SECONDS") or 60)),
    )
    if decision.allowed:
        return None

    current_app.logger.warning(
        "rate_limit_exceeded",
        extra={"request_path": request.path, "retry_after": decision.retry_after},
    )
    if request.path.startswith("/api/"):
        raise RateLimitedError(payload={"retry_after": decision.retry_after})
    return error_message("rate_limit_exceeded"), 429, {"Retry-After": str(decision.retry_after)}


def apply_security_headers(response):
    if not current_app.config.get("SECURITY_HEADERS_ENABLED", True):
        return response
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    if request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


def reset_rate_limiter_for_tests() -> None:
    _RATE_LIMITER.reset()
