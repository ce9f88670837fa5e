from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_EXPIRY_SWEEP_BUCKETS_MS = (1.0, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 5000.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class _Histogram:
    """Cumulative Prometheus-style histogram over fixed upper bounds."""

    def __init__(self, bounds: tuple[float, ...]) -> None:
        self.bounds = bounds
        self.count = 0
        self.total = 0.0
        self.counts = [0] * len(bounds)

    def observe(self, value: float) -> None:
        sample = max(0.0, float(value))
        self.count += 1
        self.total += sample
        for index, bound in enumerate(self.bounds):
            if sample <= bound:
                self.counts[index] += 1

    def export(self) -> dict:
        buckets = {f"{bound:g}": count for bound, count in zip(self.bounds, self.counts)}
        buckets["+Inf"] = self.count
        return {"count": self.count, "sum": self.total, "buckets": buckets}


def _label(value: str | None) -> str:
    return str(value or "").strip() or "unknown"


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._by_route: Dict[str, Dict[str, float]] = {}
            self._http_requests: Counter = Counter()
            self._http_durations: Dict[tuple[str, str], _Histogram] = {}
            self._gateway_calls: Counter = Counter()
            self._reconciliations: Counter = Counter()
            self._payments_recorded: Counter = Counter()
            self._negotiation_rounds: Counter = Counter()
            self._status_changes: Counter = Counter()
            self._quotations_expired = 0
            self._expiry_sweeps = _Histogram(_EXPIRY_SWEEP_BUCKETS_MS)

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = _label(method).upper()
        route_key = _label(route)
        elapsed = max(0.0, float(duration_ms))
        failed = int(status_code) >= 400
        with self._lock:
            self._requests_total += 1
            self._errors_total += int(failed)
            stats = self._by_route.setdefault(
                f"{method_key} {route_key}",
                {"requests": 0, "errors": 0, "latency_sum_ms": 0.0, "latency_max_ms": 0.0},
            )
            stats["requests"] += 1
            stats["errors"] += int(failed)
            stats["latency_sum_ms"] += elapsed
            stats["latency_max_ms"] = max(stats["latency_max_ms"], elapsed)

            self._http_requests[(method_key, route_key, str(int(status_code)))] += 1
            histogram = self._http_durations.get((method_key, route_key))
            if histogram is None:
                histogram = self._http_durations[(method_key, route_key)] = _Histogram(_HTTP_DURATION_BUCKETS_MS)
            histogram.observe(elapsed)

    def _count(self, counter: Counter, key) -> None:
        with self._lock:
            counter[key] += 1

    def observe_gateway_call(self, result: str) -> None:
        self._count(self._gateway_calls, _label(result))

    def observe_reconciliation(self, outcome: str) -> None:
        self._count(self._reconciliations, _label(outcome))

    def observe_payment_recorded(self, method: str) -> None:
        self._count(self._payments_recorded, _label(method))

    def observe_negotiation_round(self, party: str) -> None:
        self._count(self._negotiation_rounds, _label(party))

    def observe_status_change(self, entity_type: str, to_status: str) -> None:
        self._count(self._status_changes, (_label(entity_type), _label(to_status)))

    def observe_expiry_sweep(self, expired_count: int, duration_ms: float) -> None:
        with self._lock:
            self._quotations_expired += max(0, int(expired_count or 0))
            self._expiry_sweeps.observe(duration_ms)

    def snapshot(self) -> dict:
        """JSON view for /health."""
        with self._lock:
            routes = [
                {
                    "route": route,
                    "requests": int(stats["requests"]),
                    "errors": int(stats["errors"]),
                    "avg_latency_ms": round(stats["latency_sum_ms"] / stats["requests"], 2) if stats["requests"] else 0.0,
                    "max_latency_ms": round(stats["latency_max_ms"], 2),
                }
                for route, stats in self._by_route.items()
            ]
            routes.sort(key=lambda item: item["requests"], reverse=True)
            return {
                "requests_total": self._requests_total,
                "errors_total": self._errors_total,
                "by_route": routes[:40],
                "payments": {
                    "gateway_calls": dict(sorted(self._gateway_calls.items())),
                    "reconciliations": dict(sorted(self._reconciliations.items())),
                    "recorded": dict(sorted(self._payments_recorded.items())),
                },
                "negotiations": {
                    "rounds_total": sum(self._negotiation_rounds.values()),
                    "by_party": dict(sorted(self._negotiation_rounds.items())),
                },
                "quotation_expiry": {
                    "expired_total": self._quotations_expired,
                    "sweeps_total": self._expiry_sweeps.count,
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": value}
                    for (method, route, status), value in sorted(self._http_requests.items())
                ],
                "http_request_duration_ms": [
                    {"method": method, "route": route} | histogram.export()
                    for (method, route), histogram in sorted(self._http_durations.items())
                ],
                "payment_gateway_call_total": dict(sorted(self._gateway_calls.items())),
                "payment_reconciliation_total": dict(sorted(self._reconciliations.items())),
                "payment_recorded_total": dict(sorted(self._payments_recorded.items())),
                "negotiation_round_total": dict(sorted(self._negotiation_rounds.items())),
                "workflow_status_change_total": dict(sorted(self._status_changes.items())),
                "quotation_expired_total": self._quotations_expired,
                "expiry_sweep_duration_ms": self._expiry_sweeps.export(),
            }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_gateway_call(result: str) -> None:
    _METRICS.observe_gateway_call(result)


def observe_reconciliation(outcome: str) -> None:
    _METRICS.observe_reconciliation(outcome)


def observe_payment_recorded(method: str) -> None:
    _METRICS.observe_payment_recorded(method)


def observe_negotiation_round(party: str) -> None:
    _METRICS.observe_negotiation_round(party)


def observe_status_change(entity_type: str, to_status: str) -> None:
    _METRICS.observe_status_change(entity_type, to_status)


def observe_expiry_sweep(expired_count: int, duration_ms: float) -> None:
    _METRICS.observe_expiry_sweep(expired_count, duration_ms)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def _prom_labelled_counter(lines: list[str], name: str, help_text: str, label: str, samples: dict) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} counter")
    for key, value in samples.items():
        lines.append(_prom_line(name, int(value), labels={label: key}))


def prometheus_metrics_text(*, expiry_state: dict | None = None, circuit_state: dict | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={
                    "method": sample["method"],
                    "route": sample["route"],
                    "status": sample["status"],
                },
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})

    _prom_labelled_counter(
        lines,
        "payment_gateway_call_total",
        "Payment gateway calls by result.",
        "result",
        snapshot["payment_gateway_call_total"],
    )
    _prom_labelled_counter(
        lines,
        "payment_reconciliation_total",
        "Checkout redirect reconciliations by outcome.",
        "outcome",
        snapshot["payment_reconciliation_total"],
    )
    _prom_labelled_counter(
        lines,
        "payment_recorded_total",
        "Payments recorded against orders by method.",
        "method",
        snapshot["payment_recorded_total"],
    )
    _prom_labelled_counter(
        lines,
        "negotiation_round_total",
        "Negotiation rounds appended by party.",
        "party",
        snapshot["negotiation_round_total"],
    )

    lines.append("# HELP workflow_status_change_total Status changes by entity type and target status.")
    lines.append("# TYPE workflow_status_change_total counter")
    for (entity_type, to_status), value in snapshot["workflow_status_change_total"].items():
        lines.append(
            _prom_line(
                "workflow_status_change_total",
                int(value),
                labels={"entity_type": entity_type, "to_status": to_status},
            )
        )

    lines.append("# HELP quotation_expired_total Quotations moved to expired by the expiry sweep.")
    lines.append("# TYPE quotation_expired_total counter")
    lines.append(_prom_line("quotation_expired_total", int(snapshot["quotation_expired_total"])))

    lines.append("# HELP quotation_expiry_sweep_duration_ms Expiry sweep duration in milliseconds.")
    lines.append("# TYPE quotation_expiry_sweep_duration_ms histogram")
    _prom_histogram(lines, "quotation_expiry_sweep_duration_ms", snapshot["expiry_sweep_duration_ms"])

    backlog = (expiry_state or {}) if isinstance(expiry_state, dict) else {}
    lines.append("# HELP quotation_expiry_backlog Sent quotations past their expiry not yet swept.")
    lines.append("# TYPE quotation_expiry_backlog gauge")
    lines.append(_prom_line("quotation_expiry_backlog", int(backlog.get("overdue_quotations") or 0)))

    circuit = (circuit_state or {}) if isinstance(circuit_state, dict) else {}
    lines.append("# HELP payment_circuit_open Whether the payment gateway circuit is open.")
    lines.append("# TYPE payment_circuit_open gauge")
    lines.append(_prom_line("payment_circuit_open", 1 if circuit.get("state") == "open" else 0))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def expiry_health(db, *, now_iso: str) -> dict:
    row = db.execute(
        """
        SELECT
            SUM(CASE WHEN status = 'sent' AND expires_at IS NOT NULL AND expires_at < ? THEN 1 ELSE 0 END)
                AS overdue_quotations,
            SUM(CASE WHEN status = 'sent' THEN 1 ELSE 0 END) AS open_quotations
        FROM quotations
        """,
        (now_iso,),
    ).fetchone()
    overdue = int((row["overdue_quotations"] if row else 0) or 0)
    return {
        "overdue_quotations": overdue,
        "open_quotations": int((row["open_quotations"] if row else 0) or 0),
        "backlog": overdue > 0,
    }
