from __future__ import annotations

import atexit
import logging
import os
import threading
import time
import uuid
from datetime import datetime

from flask import Flask

from marketplace.application.quotation_service import QuotationService
from marketplace.db import close_db, get_db
from marketplace.infrastructure.repositories import QuotationRepository
from marketplace.infrastructure.repositories.base import to_iso, utc_now
from marketplace.observability import bind_request_id, observe_expiry_sweep


logger = logging.getLogger(__name__)


class QuotationExpiryScheduler:
    """Periodically expires sent quotations whose validity window has elapsed."""

    def __init__(self, app: Flask, quotation_service: QuotationService | None = None) -> None:
        self.app = app
        self.quotation_service = quotation_service or QuotationService()
        self.interval_seconds = _int_config(app, "EXPIRY_SCHEDULER_INTERVAL_SECONDS", 300, 5, 86_400)
        self.min_backoff_seconds = _int_config(app, "EXPIRY_SCHEDULER_MIN_BACKOFF_SECONDS", 30, 1, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "EXPIRY_SCHEDULER_MAX_BACKOFF_SECONDS",
            1800,
            self.min_backoff_seconds,
            86_400,
        )

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_count = 0
        self._next_run_at: float | None = None
        self.last_run_at: str | None = None
        self.last_expired = 0
        self.last_error: str | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="quotation-expiry", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            if self._is_due():
                self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def run_once(self, now: datetime | None = None) -> int:
        """Runs one sweep over every tenant; returns how many quotations expired."""
        current = now or utc_now()
        started = time.perf_counter()
        expired = 0
        with self.app.app_context(), bind_request_id(f"expiry-sweep-{uuid.uuid4().hex[:12]}"):
            db = get_db()
            try:
                for tenant_id in QuotationRepository.tenants_with_overdue(db, to_iso(current)):
                    expired += self.quotation_service.expire_overdue(db, tenant_id=tenant_id, now=current)
                    db.commit()
                self._clear_backoff()
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                self._register_failure(exc)
                return expired
            finally:
                close_db()

        duration_ms = (time.perf_counter() - started) * 1000.0
        observe_expiry_sweep(expired, duration_ms)
        self.last_run_at = to_iso(current)
        self.last_expired = expired
        if expired:
            logger.info("quotation_expiry_sweep", extra={"expired": expired, "duration_ms": round(duration_ms, 2)})
        return expired

    def _is_due(self) -> bool:
        if self._next_run_at is None:
            return True
        return time.monotonic() >= self._next_run_at

    def _clear_backoff(self) -> None:
        self._failure_count = 0
        self._next_run_at = None
        self.last_error = None

    def _register_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (self._failure_count - 1)),
        )
        self._next_run_at = time.monotonic() + backoff_seconds
        self.last_error = str(exc)[:200]
        logger.warning(
            "quotation_expiry_sweep_failed",
            extra={"failure_count": self._failure_count, "backoff_seconds": backoff_seconds, "error": self.last_error},
        )

    @property
    def backoff_seconds_remaining(self) -> float:
        if self._next_run_at is None:
            return 0.0
        return max(0.0, self._next_run_at - time.monotonic())

    def snapshot(self) -> dict:
        return {
            "running": bool(self._thread and self._thread.is_alive()),
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at,
            "last_expired": self.last_expired,
            "failure_count": self._failure_count,
            "backoff_seconds_remaining": round(self.backoff_seconds_remaining, 1),
            "last_error": self.last_error,
        }


def start_expiry_scheduler(app: Flask) -> QuotationExpiryScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = QuotationExpiryScheduler(app)
    scheduler.start()
    atexit.register(scheduler.stop)
    app.extensions["expiry_scheduler"] = scheduler
    app.logger.info("Quotation expiry scheduler started: interval=%ss", scheduler.interval_seconds)
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("EXPIRY_SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
