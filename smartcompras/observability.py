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
from typing import Dict, List, Tuple

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_STORE_BACKOFF_BUCKETS_SECONDS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)

_NO_REQUEST_ID = "n/a"
_BOUND_REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("bound_request_id", default="")

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


def _clean_request_id(value: str | None) -> str:
    return str(value or "").strip()


def set_log_request_id(request_id: str | None) -> None:
    """Pin the request id used by log lines emitted outside a Flask request."""
    _BOUND_REQUEST_ID.set(_clean_request_id(request_id) or _NO_REQUEST_ID)


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    """Scope a request id to a block, e.g. one CLI redelivery run."""
    token = _BOUND_REQUEST_ID.set(_clean_request_id(request_id) or _NO_REQUEST_ID)
    try:
        yield _BOUND_REQUEST_ID.get()
    finally:
        _BOUND_REQUEST_ID.reset(token)


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        from_request = _clean_request_id(getattr(g, "request_id", None))
        if from_request:
            return from_request
    return _clean_request_id(_BOUND_REQUEST_ID.get()) or default or _NO_REQUEST_ID


def ensure_request_id() -> str:
    request_id = _clean_request_id(getattr(g, "request_id", None))
    if not request_id:
        request_id = _clean_request_id(request.headers.get("X-Request-Id")) or str(uuid.uuid4())
        g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields (requisition_id, event_id...) are kept."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id()
            payload["method"] = request.method
            payload["path"] = request.path
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            payload["request_id"] = _clean_request_id(getattr(record, "request_id", None)) or current_request_id()

        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_") and key not in payload and not callable(value)
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not app.config.get("LOG_JSON", True):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).strip().upper(), logging.INFO))
    # Flask's own handler would print every line twice.
    app.logger.handlers = []
    app.logger.propagate = True



def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: Dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


class Histogram:
    """Cumulative histogram over fixed upper bounds, Prometheus style."""

    def __init__(self, limits: Tuple[float, ...]) -> None:
        self.limits = limits
        self.count = 0
        self.total = 0.0
        self.bucket_counts = [0] * len(limits)

    def observe(self, value: float) -> None:
        sample = max(0.0, float(value))
        self.count += 1
        self.total += sample
        for index, limit in enumerate(self.limits):
            if sample <= limit:
                self.bucket_counts[index] += 1

    def render(self, name: str, labels: Dict[str, object] | None = None) -> List[str]:
        base = dict(labels or {})
        lines = [
            _prom_line(f"{name}_bucket", count, {**base, "le": f"{limit:g}"})
            for limit, count in zip(self.limits, self.bucket_counts)
        ]
        lines.append(_prom_line(f"{name}_bucket", self.count, {**base, "le": "+Inf"}))
        lines.append(_prom_line(f"{name}_sum", float(self.total), labels))
        lines.append(_prom_line(f"{name}_count", self.count, labels))
        return lines


def _counter_lines(name: str, help_text: str, samples: Counter, label_names: Tuple[str, ...]) -> List[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for key, value in sorted(samples.items()):
        values = key if isinstance(key, tuple) else (key,)
        lines.append(_prom_line(name, int(value), dict(zip(label_names, values))))
    return lines


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clear()

    def _clear(self) -> None:
        self._http_requests: Counter = Counter()
        self._http_latency_ms: Dict[Tuple[str, str], Histogram] = {}
        self._transitions: Counter = Counter()
        self._notifications_delivered: Counter = Counter()
        self._notifications_failed: Counter = Counter()
        self._store_retries = 0
        self._store_unavailable = 0
        self._store_backoff = Histogram(_STORE_BACKOFF_BUCKETS_SECONDS)

    def reset(self) -> None:
        with self._lock:
            self._clear()

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        with self._lock:
            self._http_requests[(method_key, route_key, str(int(status_code)))] += 1
            latency = self._http_latency_ms.get((method_key, route_key))
            if latency is None:
                latency = self._http_latency_ms[(method_key, route_key)] = Histogram(_HTTP_DURATION_BUCKETS_MS)
            latency.observe(duration_ms)

    def observe_requisition_transition(self, kind: str, from_status: str | None, to_status: str) -> None:
        with self._lock:
            self._transitions[(str(kind or "unknown"), str(from_status or "none"), str(to_status or "unknown"))] += 1

    def observe_notification(self, to_status: str, *, delivered: bool) -> None:
        counter = self._notifications_delivered if delivered else self._notifications_failed
        with self._lock:
            counter[str(to_status or "unknown")] += 1

    def observe_store_retry(self, backoff_seconds: float) -> None:
        with self._lock:
            self._store_retries += 1
            self._store_backoff.observe(backoff_seconds)

    def observe_store_unavailable(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        with self._lock:
            self._store_unavailable += increment

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": sum(self._http_requests.values()),
                "errors_total": sum(
                    value for (_, _, status), value in self._http_requests.items() if int(status) >= 400
                ),
                "requisition_transitions_total": sum(self._transitions.values()),
                "notifications_delivered_total": sum(self._notifications_delivered.values()),
                "notifications_failed_total": sum(self._notifications_failed.values()),
                "store_retry_total": self._store_retries,
                "store_unavailable_total": self._store_unavailable,
            }

    def render_prometheus(self) -> str:
        with self._lock:
            lines = _counter_lines(
                "http_request_total",
                "Total HTTP requests by method, route and status.",
                self._http_requests,
                ("method", "route", "status"),
            )
            lines.append("# HELP http_request_duration_ms HTTP request latency in milliseconds.")
            lines.append("# TYPE http_request_duration_ms histogram")
            for (method, route), latency in sorted(self._http_latency_ms.items()):
                lines.extend(latency.render("http_request_duration_ms", {"method": method, "route": route}))

            lines.extend(
                _counter_lines(
                    "requisition_transition_total",
                    "Requisition status transitions.",
                    self._transitions,
                    ("kind", "from_status", "to_status"),
                )
            )
            lines.extend(
                _counter_lines(
                    "notification_delivered_total",
                    "Notifications accepted by the sink.",
                    self._notifications_delivered,
                    ("to_status",),
                )
            )
            lines.extend(
                _counter_lines(
                    "notification_failed_total",
                    "Notifications the sink failed to accept.",
                    self._notifications_failed,
                    ("to_status",),
                )
            )

            lines.append("# HELP store_retry_total Ledger store calls retried after StoreUnavailable.")
            lines.append("# TYPE store_retry_total counter")
            lines.append(_prom_line("store_retry_total", self._store_retries))
            lines.append("# HELP store_unavailable_total Ledger store calls that exhausted their retries.")
            lines.append("# TYPE store_unavailable_total counter")
            lines.append(_prom_line("store_unavailable_total", self._store_unavailable))
            lines.append("# HELP store_retry_backoff_seconds Backoff applied before ledger store retries.")
            lines.append("# TYPE store_retry_backoff_seconds histogram")
            lines.extend(self._store_backoff.render("store_retry_backoff_seconds"))
        return "\n".join(lines) + "\n"


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = getattr(g, "_request_started_at", None)
    elapsed_ms = (time.perf_counter() - started) * 1000.0 if started else 0.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_requisition_transition(kind: str, from_status: str | None, to_status: str) -> None:
    _METRICS.observe_requisition_transition(kind, from_status, to_status)


def observe_notification_delivered(to_status: str) -> None:
    _METRICS.observe_notification(to_status, delivered=True)


def observe_notification_failed(to_status: str) -> None:
    _METRICS.observe_notification(to_status, delivered=False)


def observe_store_retry(backoff_seconds: float) -> None:
    _METRICS.observe_store_retry(backoff_seconds)


def observe_store_unavailable(count: int = 1) -> None:
    _METRICS.observe_store_unavailable(count)


def prometheus_metrics_text() -> str:
    return _METRICS.render_prometheus()


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
