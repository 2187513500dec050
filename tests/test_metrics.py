"""
test_metrics.py - Tests for metrics, structured logging and health checks.
"""

import json
import logging

from chat_sync.metrics import (
    HealthChecker,
    JSONFormatter,
    MetricsRegistry,
    SyncLogger,
    get_registry,
    sync_items_total,
    sync_sessions_total,
)
from chat_sync.session import SyncResult


class TestMetricsRegistry:

    def test_counter_and_gauge_export(self):
        registry = MetricsRegistry(prefix="test")
        counter = registry.counter("events_total", "Events", labels=["kind"])
        gauge = registry.gauge("queue", "Queue size")

        counter.inc(kind="a")
        counter.inc(2, kind="a")
        gauge.set(5)

        assert counter.get(kind="a") == 3
        assert registry.counter("events_total", "Events", labels=["kind"]) is counter

        text = registry.export_prometheus()
        assert '# TYPE test_events_total counter' in text
        assert 'test_events_total{kind="a"} 3' in text
        assert 'test_queue 5' in text

    def test_histogram_buckets(self):
        registry = MetricsRegistry(prefix="test")
        histogram = registry.histogram("latency", "Latency", buckets=(0.1, 1.0, float('inf')))

        histogram.observe(0.05)
        histogram.observe(0.5)

        assert histogram.count() == 2
        text = registry.export_prometheus()
        assert 'test_latency_bucket{le="0.1"} 1' in text
        assert 'test_latency_bucket{le="1.0"} 2' in text


class TestSyncLogger:

    def test_sync_completed_updates_metrics(self, caplog):
        before_sessions = sync_sessions_total.get(status="success")
        before_received = sync_items_total.get(direction="download", kind="message")
        result = SyncResult(messages_sent=1, messages_received=3, last_seq_num=9, duration_ms=12.0)

        with caplog.at_level(logging.INFO, logger="chat_sync"):
            SyncLogger().sync_completed("device-1", result)

        assert sync_sessions_total.get(status="success") == before_sessions + 1
        assert sync_items_total.get(direction="download", kind="message") == before_received + 3
        record = caplog.records[-1]
        assert record.event == "sync_completed"
        assert record.last_seq_num == 9

    def test_sync_failed_counts_by_kind(self):
        before = sync_sessions_total.get(status="NetworkError")

        SyncLogger().sync_failed("device-1", "Server unreachable", "NetworkError")

        assert sync_sessions_total.get(status="NetworkError") == before + 1
        assert "chat_sync_sessions_total" in get_registry().export_prometheus()


class TestJSONFormatter:

    def test_extra_fields_are_included(self):
        record = logging.LogRecord(
            "chat_sync", logging.INFO, __file__, 1, "Sync started", None, None
        )
        record.event = "sync_started"
        record.device_id = "device-1"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Sync started"
        assert data["level"] == "INFO"
        assert data["event"] == "sync_started"
        assert data["device_id"] == "device-1"


class TestHealthChecker:

    def test_database_check(self, store):
        result = HealthChecker.check_database(store.connection)
        assert result["healthy"] is True

    def test_failing_check_marks_unhealthy(self):
        checker = HealthChecker()
        checker.register_check("ok", lambda: {"healthy": True})
        checker.register_check("broken", lambda: 1 / 0)

        status = checker.check_all()

        assert status.healthy is False
        assert status.checks["ok"]["healthy"] is True
        assert "Check failed" in status.checks["broken"]["message"]

    def test_memory_and_disk_checks(self, temp_dir):
        assert "memory_mb" in HealthChecker.check_memory(threshold_mb=10**9)
        assert HealthChecker.check_disk(temp_dir, threshold_percent=101)["healthy"] is True
