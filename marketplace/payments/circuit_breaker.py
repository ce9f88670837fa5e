from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from threading import Lock


CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


def _bounded(value, default, minimum, maximum, cast):
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


@dataclass
class CircuitSettings:
    enabled: bool = True
    error_rate_threshold: float = 0.6
    min_samples: int = 5
    window_seconds: int = 120
    open_seconds: int = 30
    half_open_probes: int = 1


class PaymentCircuitBreaker:
    """Error-rate breaker around outbound payment gateway calls.

    Outcomes are kept for ``window_seconds``; once at least ``min_samples`` were
    seen and the failure share reaches the threshold the circuit opens. After
    ``open_seconds`` a single probe is let through: success closes the circuit,
    failure opens it again.
    """

    def __init__(self, settings: CircuitSettings | None = None) -> None:
        self._lock = Lock()
        self.settings = settings or CircuitSettings()
        self._state = CLOSED
        self._opened_at = 0.0
        self._probes_in_flight = 0
        self._outcomes: deque[tuple[float, bool]] = deque()

    def configure(
        self,
        *,
        enabled: bool,
        error_rate_threshold: float,
        min_samples: int,
        window_seconds: int,
        open_seconds: int,
    ) -> None:
        with self._lock:
            self.settings = CircuitSettings(
                enabled=bool(enabled),
                error_rate_threshold=_bounded(error_rate_threshold, 0.6, 0.05, 1.0, float),
                min_samples=_bounded(min_samples, 5, 1, 1000, int),
                window_seconds=_bounded(window_seconds, 120, 5, 3600, int),
                open_seconds=_bounded(open_seconds, 30, 1, 3600, int),
            )
            if not self.settings.enabled:
                self._close()

    def _close(self) -> None:
        self._state = CLOSED
        self._opened_at = 0.0
        self._probes_in_flight = 0
        self._outcomes.clear()

    def _trip(self, now: float) -> None:
        self._state = OPEN
        self._opened_at = now
        self._probes_in_flight = 0

    def _window_stats(self, now: float) -> tuple[int, int]:
        cutoff = now - self.settings.window_seconds
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()
        failures = sum(1 for _at, ok in self._outcomes if not ok)
        return len(self._outcomes), failures

    def before_call(self) -> tuple[bool, str]:
        """Returns whether the call may go out, and the circuit state it went out under."""
        now = time.monotonic()
        with self._lock:
            if not self.settings.enabled:
                return True, "disabled"
            if self._state == OPEN:
                if now - self._opened_at < self.settings.open_seconds:
                    return False, OPEN
                self._state = HALF_OPEN
                self._probes_in_flight = 0
            if self._state == HALF_OPEN:
                if self._probes_in_flight >= self.settings.half_open_probes:
                    return False, HALF_OPEN
                self._probes_in_flight += 1
            return True, self._state

    def record_success(self) -> None:
        with self._lock:
            if not self.settings.enabled:
                return
            if self._state == HALF_OPEN:
                self._close()
            else:
                self._outcomes.append((time.monotonic(), True))

    def record_failure(self) -> None:
        now = time.monotonic()
        with self._lock:
            if not self.settings.enabled or self._state == OPEN:
                return
            self._outcomes.append((now, False))
            if self._state == HALF_OPEN:
                self._trip(now)
                return
            samples, failures = self._window_stats(now)
            if samples >= self.settings.min_samples and failures / samples >= self.settings.error_rate_threshold:
                self._trip(now)

    def snapshot(self) -> dict:
        with self._lock:
            samples, failures = self._window_stats(time.monotonic())
            return {
                "state": self._state,
                "enabled": self.settings.enabled,
                "samples": samples,
                "failures": failures,
                "failure_rate": round(failures / samples, 4) if samples else 0.0,
            }

    def reset_for_tests(self) -> None:
        with self._lock:
            self.settings = CircuitSettings()
            self._close()


_PAYMENT_CIRCUIT_BREAKER = PaymentCircuitBreaker()


def get_payment_circuit_breaker() -> PaymentCircuitBreaker:
    return _PAYMENT_CIRCUIT_BREAKER


def payment_circuit_snapshot() -> dict:
    return _PAYMENT_CIRCUIT_BREAKER.snapshot()


def reset_payment_circuit_breaker_for_tests() -> None:
    _PAYMENT_CIRCUIT_BREAKER.reset_for_tests()
