"""
metrics.py - Observability for sync and notifications.

Provides:
- Prometheus-style in-process metrics
- Structured JSON logging
- Health checks for the reference server
"""

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Callable


# =============================================================================
# Metric Types
# =============================================================================

@dataclass
class MetricValue:
    """Single metric value with labels."""
    name: str
    value: float
    labels: dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class _Metric:
    def __init__(self, name: str, help_text: str, labels: list[str] | None = None):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self._values: dict[tuple, float] = {}
        self._lock = threading.Lock()

    def get(self, **label_values) -> float:
        """Get current value."""
        key = self._label_key(label_values)
        with self._lock:
            return self._values.get(key, 0)

    def collect(self) -> list[MetricValue]:
        """Collect all values for export."""
        with self._lock:
            return [
                MetricValue(name=self.name, value=value, labels=dict(zip(self.labels, key)))
                for key, value in self._values.items()
            ]

    def _label_key(self, label_values: dict) -> tuple:
        return tuple(str(label_values.get(label, "")) for label in self.labels)


class Counter(_Metric):
    """Monotonic counter."""

    def inc(self, value: float = 1, **label_values) -> None:
        if value < 0:
            raise ValueError("Counters can only increase")
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value


class Gauge(_Metric):
    """Value that can go up and down."""

    def set(self, value: float, **label_values) -> None:
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = value

    def inc(self, value: float = 1, **label_values) -> None:
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value


class Histogram:
    """Bucketed distribution of observed values."""

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf"))

    def __init__(
        self,
        name: str,
        help_text: str,
        labels: list[str] | None = None,
        buckets: tuple | None = None,
    ):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._values: dict[tuple, dict] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **label_values) -> None:
        key = tuple(str(label_values.get(label, "")) for label in self.labels)
        with self._lock:
            data = self._values.setdefault(
                key, {"count": 0, "sum": 0.0, "buckets": {b: 0 for b in self.buckets}}
            )
            data["count"] += 1
            data["sum"] += value
            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def count(self, **label_values) -> int:
        key = tuple(str(label_values.get(label, "")) for label in self.labels)
        with self._lock:
            data = self._values.get(key)
            return 0 if data is None else data["count"]

    def collect(self) -> list[MetricValue]:
        results = []
        with self._lock:
            for key, data in self._values.items():
                labels = dict(zip(self.labels, key))
                results.append(MetricValue(f"{self.name}_sum", data["sum"], labels))
                results.append(MetricValue(f"{self.name}_count", data["count"], labels))
                for le, count in data["buckets"].items():
                    results.append(MetricValue(f"{self.name}_bucket", count, {**labels, "le": str(le)}))
        return results


# =============================================================================
# Metrics Registry
# =============================================================================

class MetricsRegistry:
    """Named collection of metrics sharing a prefix."""

    def __init__(self, prefix: str = "finsync"):
        self.prefix = prefix
        self._metrics: dict[str, Counter | Gauge | Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str, labels: list[str] | None = None) -> Counter:
        return self._register(name, lambda full: Counter(full, help_text, labels))

    def gauge(self, name: str, help_text: str, labels: list[str] | None = None) -> Gauge:
        return self._register(name, lambda full: Gauge(full, help_text, labels))

    def histogram(
        self,
        name: str,
        help_text: str,
        labels: list[str] | None = None,
        buckets: tuple | None = None,
    ) -> Histogram:
        return self._register(name, lambda full: Histogram(full, help_text, labels, buckets))

    def _register(self, name: str, factory: Callable[[str], Counter | Gauge | Histogram]):
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = factory(full_name)
            return self._metrics[full_name]

    def collect_all(self) -> list[MetricValue]:
        results = []
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for metric in self.collect_all():
            if metric.labels:
                label_str = ",".join(f'{k}="{v}"' for k, v in metric.labels.items())
                lines.append(f"{metric.name}{{{label_str}}} {metric.value}")
            else:
                lines.append(f"{metric.name} {metric.value}")
        return "\n".join(lines)

    def export_json(self) -> dict:
        return {
            "metrics": [
                {"name": m.name, "value": m.value, "labels": m.labels, "timestamp": m.timestamp}
                for m in self.collect_all()
            ],
            "exported_at": time.time(),
        }


# =============================================================================
# Pre-defined Metrics
# =============================================================================

_registry = MetricsRegistry()

push_total = _registry.counter(
    "push_total",
    "Queue entries pushed to the remote authority",
    labels=["operation", "outcome"],
)

conflicts_total = _registry.counter(
    "conflicts_total",
    "Records resolved by last-writer-wins",
    labels=["winner"],
)

pulled_records_total = _registry.counter(
    "pulled_records_total",
    "Remote records received by pull",
    labels=["table"],
)

queue_depth = _registry.gauge(
    "queue_depth",
    "Queue entries by status after the last drain",
    labels=["status"],
)

drain_duration_seconds = _registry.histogram(
    "drain_duration_seconds",
    "Duration of drain passes in seconds",
)

notifications_total = _registry.counter(
    "notifications_total",
    "Notification lifecycle events",
    labels=["type", "event"],
)


def get_registry() -> MetricsRegistry:
    """Get the global metrics registry."""
    return _registry


# =============================================================================
# Structured Logging
# =============================================================================

_STANDARD_RECORD_KEYS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
))


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self):
        super().__init__()
        self._hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "hostname": self._hostname,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_KEYS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class SyncLogger:
    """
    Structured logger for sync and notification events.

    Each method logs one event with machine-readable extras and updates
    the matching metric.
    """

    def __init__(self, name: str = "finsync.sync"):
        self._logger = logging.getLogger(name)

    def push_applied(self, table_name: str, record_id: str, operation: str) -> None:
        self._logger.debug(
            f"Pushed {operation} {table_name}/{record_id}",
            extra={"event": "push_applied", "table_name": table_name, "record_id": record_id},
        )
        push_total.inc(1, operation=operation, outcome="applied")

    def push_failed(self, table_name: str, record_id: str, operation: str, error: str, permanent: bool) -> None:
        outcome = "rejected" if permanent else "transient"
        log = self._logger.error if permanent else self._logger.warning
        log(
            f"Push of {table_name}/{record_id} failed ({outcome}): {error}",
            extra={
                "event": "push_failed",
                "table_name": table_name,
                "record_id": record_id,
                "error": error,
                "permanent": permanent,
            },
        )
        push_total.inc(1, operation=operation, outcome=outcome)

    def conflict_resolved(self, table_name: str, record_id: str, winner: str) -> None:
        self._logger.info(
            f"Conflict on {table_name}/{record_id} resolved: {winner} wins",
            extra={
                "event": "conflict_resolved",
                "table_name": table_name,
                "record_id": record_id,
                "winner": winner,
            },
        )
        conflicts_total.inc(1, winner=winner)

    def entry_stalled(self, table_name: str, record_id: str, attempts: int) -> None:
        self._logger.warning(
            f"Sync of {table_name}/{record_id} stalled after {attempts} attempts",
            extra={
                "event": "entry_stalled",
                "table_name": table_name,
                "record_id": record_id,
                "attempts": attempts,
            },
        )

    def drain_completed(self, applied: int, conflicts: int, failed: int, duration_s: float) -> None:
        self._logger.info(
            f"Drain completed: applied={applied}, conflicts={conflicts}, failed={failed}",
            extra={
                "event": "drain_completed",
                "applied": applied,
                "conflicts": conflicts,
                "failed": failed,
                "duration_ms": duration_s * 1000,
            },
        )
        drain_duration_seconds.observe(duration_s)

    def pull_completed(self, counts: dict[str, int]) -> None:
        total = sum(counts.values())
        self._logger.info(
            f"Pull completed: {total} records",
            extra={"event": "pull_completed", "counts": counts},
        )
        for table_name, count in counts.items():
            if count:
                pulled_records_total.inc(count, table=table_name)

    def notification_event(self, notification_type: str, event: str, notification_id: str | None = None) -> None:
        self._logger.info(
            f"Notification {event}: {notification_type}",
            extra={
                "event": f"notification_{event}",
                "notification_type": notification_type,
                "notification_id": notification_id,
            },
        )
        notifications_total.inc(1, type=notification_type, event=event)


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: str | None = None,
) -> None:
    """
    Configure root logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting on the console
        log_file: Optional log file path (always JSON)
    """
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    if json_format:
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    handlers.append(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=getattr(logging, level.upper()), handlers=handlers, force=True)


# =============================================================================
# Health Checks
# =============================================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: dict[str, dict]
    timestamp: float = field(default_factory=time.time)


class HealthChecker:
    """
    Runs named health checks.

    A check returns {"healthy": bool, "message": str, ...}; a check that
    raises counts as unhealthy.
    """

    def __init__(self):
        self._checks: dict[str, Callable[[], dict]] = {}

    def register_check(self, name: str, check_fn: Callable[[], dict]) -> None:
        self._checks[name] = check_fn

    def check_all(self) -> HealthStatus:
        results = {}
        all_healthy = True
        for name, check_fn in self._checks.items():
            try:
                result = check_fn()
            except Exception as e:
                result = {"healthy": False, "message": f"Check failed: {e}"}
            results[name] = result
            if not result.get("healthy", False):
                all_healthy = False
        return HealthStatus(healthy=all_healthy, checks=results)


def check_database(conn: sqlite3.Connection) -> dict:
    """Check database connectivity and latency."""
    try:
        start = time.perf_counter()
        conn.execute("SELECT 1").fetchone()
        latency_ms = (time.perf_counter() - start) * 1000
        return {"healthy": True, "message": "Database connected", "latency_ms": latency_ms}
    except sqlite3.Error as e:
        return {"healthy": False, "message": f"Database error: {e}"}
