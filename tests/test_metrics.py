"""
test_metrics.py - Tests for metrics, structured logging and health checks.
"""

import json
import logging
import sqlite3

import pytest

from finsync.metrics import (
    HealthChecker,
    JSONFormatter,
    MetricsRegistry,
    SyncLogger,
    check_database,
    conflicts_total,
)


class TestMetrics:
    def test_counter_labels(self):
        registry = MetricsRegistry(prefix="test")
        counter = registry.counter("events_total", "Events", labels=["kind"])
        counter.inc(kind="a")
        counter.inc(2, kind="a")
        counter.inc(kind="b")

        assert counter.get(kind="a") == 3
        assert counter.get(kind="b") == 1
        assert 'test_events_total{kind="a"} 3' in registry.export_prometheus()

    def test_counter_rejects_decrease(self):
        counter = MetricsRegistry().counter("x_total", "x")
        with pytest.raises(ValueError):
            counter.inc(-1)

    def test_registry_reuses_metric(self):
        registry = MetricsRegistry()
        assert registry.gauge("depth", "d") is registry.gauge("depth", "d")

    def test_histogram_buckets(self):
        histogram = MetricsRegistry().histogram("latency", "l", buckets=(0.1, 1.0, float("inf")))
        histogram.observe(0.05)
        histogram.observe(0.5)
        assert histogram.count() == 2
        buckets = {m.labels["le"]: m.value for m in histogram.collect() if m.name.endswith("_bucket")}
        assert buckets == {"0.1": 1, "1.0": 2, "inf": 2}

    def test_export_json(self):
        registry = MetricsRegistry()
        registry.gauge("queue", "q").set(4)
        exported = registry.export_json()
        assert exported["metrics"][0]["value"] == 4

    def test_sync_logger_updates_metrics(self):
        before = conflicts_total.get(winner="remote")
        SyncLogger().conflict_resolved("expenses", "e-1", "remote")
        assert conflicts_total.get(winner="remote") == before + 1


class TestJSONFormatter:
    def test_includes_extras(self):
        record = logging.LogRecord("finsync.sync", logging.INFO, __file__, 1, "pushed %s", ("x",), None)
        record.table_name = "expenses"
        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "pushed x"
        assert data["level"] == "INFO"
        assert data["table_name"] == "expenses"


class TestHealth:
    def test_database_check(self):
        conn = sqlite3.connect(":memory:")
        assert check_database(conn)["healthy"]
        conn.close()

    def test_failing_check_is_unhealthy(self):
        checker = HealthChecker()
        checker.register_check("ok", lambda: {"healthy": True})
        checker.register_check("boom", lambda: 1 / 0)
        status = checker.check_all()
        assert not status.healthy
        assert status.checks["ok"]["healthy"]
