"""
metrics.py - Observability & Monitoring

Provides:
- Prometheus-compatible metrics
- Structured JSON logging
- Health check with detailed status
"""

import time
import json
import logging
import os
import shutil
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List

import psutil

if TYPE_CHECKING:
    from chat_sync.session import SyncResult


# =============================================================================
# Metric Types
# =============================================================================

@dataclass
class MetricValue:
    """Single metric value with labels."""
    name: str
    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str, labels: List[str] = None):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self._values: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    def get(self, **label_values) -> float:
        """Get current value."""
        key = self._label_key(label_values)
        return self._values.get(key, 0)

    def collect(self) -> List[MetricValue]:
        """Collect all values for export."""
        with self._lock:
            return [
                MetricValue(
                    name=self.name,
                    value=value,
                    labels=dict(zip(self.labels, key))
                )
                for key, value in self._values.items()
            ]

    def _label_key(self, label_values: dict) -> tuple:
        return tuple(label_values.get(l, "") for l in self.labels)


class Counter(_Metric):
    """Prometheus-style counter metric."""

    kind = "counter"

    def inc(self, value: float = 1, **label_values) -> None:
        """Increment counter."""
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value


class Gauge(_Metric):
    """Prometheus-style gauge metric."""

    kind = "gauge"

    def set(self, value: float, **label_values) -> None:
        """Set gauge value."""
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = value


class Histogram:
    """Prometheus-style histogram metric."""

    kind = "histogram"

    DEFAULT_BUCKETS = (
        0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5,
        0.75, 1.0, 2.5, 5.0, 7.5, 10.0, float('inf')
    )

    def __init__(
        self,
        name: str,
        help_text: str,
        labels: List[str] = None,
        buckets: tuple = None
    ):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._values: Dict[tuple, dict] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **label_values) -> None:
        """Observe a value."""
        key = self._label_key(label_values)

        with self._lock:
            if key not in self._values:
                self._values[key] = {
                    "count": 0,
                    "sum": 0.0,
                    "buckets": {b: 0 for b in self.buckets}
                }

            data = self._values[key]
            data["count"] += 1
            data["sum"] += value

            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    @contextmanager
    def time(self, **label_values):
        """Context manager to time an operation."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **label_values)

    def count(self, **label_values) -> int:
        data = self._values.get(self._label_key(label_values))
        return data["count"] if data else 0

    def collect(self) -> List[MetricValue]:
        """Collect all values for export."""
        results = []

        with self._lock:
            for key, data in self._values.items():
                labels = dict(zip(self.labels, key))
                results.append(MetricValue(f"{self.name}_sum", data["sum"], labels))
                results.append(MetricValue(f"{self.name}_count", data["count"], labels))
                for le, count in data["buckets"].items():
                    bucket_labels = {**labels, "le": str(le)}
                    results.append(MetricValue(f"{self.name}_bucket", count, bucket_labels))

        return results

    def _label_key(self, label_values: dict) -> tuple:
        return tuple(label_values.get(l, "") for l in self.labels)


# =============================================================================
# Metrics Registry
# =============================================================================

class MetricsRegistry:
    """Global metrics registry."""

    def __init__(self, prefix: str = "chat_sync"):
        self.prefix = prefix
        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str, labels: List[str] = None) -> Counter:
        """Register or get a counter metric."""
        return self._register(Counter, name, help_text, labels)

    def gauge(self, name: str, help_text: str, labels: List[str] = None) -> Gauge:
        """Register or get a gauge metric."""
        return self._register(Gauge, name, help_text, labels)

    def histogram(
        self,
        name: str,
        help_text: str,
        labels: List[str] = None,
        buckets: tuple = None
    ) -> Histogram:
        """Register or get a histogram metric."""
        full_name = f"{self.prefix}_{name}"

        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = Histogram(full_name, help_text, labels, buckets)
            return self._metrics[full_name]

    def _register(self, cls, name, help_text, labels):
        full_name = f"{self.prefix}_{name}"

        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = cls(full_name, help_text, labels)
            return self._metrics[full_name]

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        with self._lock:
            metrics = list(self._metrics.values())

        for metric in metrics:
            lines.append(f"# HELP {metric.name} {metric.help}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for value in metric.collect():
                if value.labels:
                    label_str = ",".join(
                        f'{k}="{v}"' for k, v in value.labels.items()
                    )
                    lines.append(f"{value.name}{{{label_str}}} {value.value}")
                else:
                    lines.append(f"{value.name} {value.value}")

        return "\n".join(lines) + "\n"


# =============================================================================
# Pre-defined Chat Sync Metrics
# =============================================================================

# Global registry
_registry = MetricsRegistry()

sync_sessions_total = _registry.counter(
    "sessions_total",
    "Total number of sync sessions",
    labels=["status"]
)

sync_items_total = _registry.counter(
    "items_total",
    "Items exchanged during sync sessions",
    labels=["direction", "kind"]
)

sync_session_seconds = _registry.histogram(
    "session_seconds",
    "Duration of successful sync sessions in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))
)

messages_posted_total = _registry.counter(
    "messages_posted_total",
    "Messages appended to the outbound queue"
)

outbound_queue_size = _registry.gauge(
    "outbound_queue",
    "Messages waiting for a server sequence number"
)

watermark_value = _registry.gauge(
    "watermark",
    "Highest server sequence number incorporated locally"
)

last_sync_timestamp = _registry.gauge(
    "last_sync_timestamp",
    "Timestamp of last successful sync"
)


def get_registry() -> MetricsRegistry:
    """Get the global metrics registry."""
    return _registry


# =============================================================================
# Structured Logging
# =============================================================================

_RECORD_ATTRIBUTES = frozenset({
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName'
})


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra
        self._hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "hostname": self._hostname
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key not in _RECORD_ATTRIBUTES:
                    log_data[key] = value

        return json.dumps(log_data, default=str)


class SyncLogger:
    """
    Structured logger for chat sync events.

    Each event is logged with an "event" extra field and updates the
    matching metrics.
    """

    def __init__(self, name: str = "chat_sync"):
        self._logger = logging.getLogger(name)

    def sync_started(self, device_id: str, server_uri: str, transport: str) -> None:
        self._logger.info(
            "Sync started",
            extra={
                "event": "sync_started",
                "device_id": device_id,
                "server_uri": server_uri,
                "transport": transport
            }
        )

    def sync_completed(self, device_id: str, result: "SyncResult") -> None:
        self._logger.info(
            f"Sync completed: sent={result.messages_sent}, "
            f"received={result.messages_received}, watermark={result.last_seq_num}",
            extra={
                "event": "sync_completed",
                "device_id": device_id,
                "messages_sent": result.messages_sent,
                "messages_received": result.messages_received,
                "peers_received": result.peers_received,
                "chatrooms_received": result.chatrooms_received,
                "last_seq_num": result.last_seq_num,
                "duration_ms": result.duration_ms
            }
        )

        sync_sessions_total.inc(status="success")
        sync_session_seconds.observe(result.duration_ms / 1000)
        sync_items_total.inc(result.chatrooms_sent, direction="upload", kind="chatroom")
        sync_items_total.inc(result.messages_sent, direction="upload", kind="message")
        sync_items_total.inc(result.chatrooms_received, direction="download", kind="chatroom")
        sync_items_total.inc(result.peers_received, direction="download", kind="peer")
        sync_items_total.inc(result.messages_received, direction="download", kind="message")
        last_sync_timestamp.set(time.time())

    def sync_failed(self, device_id: str, error: str, kind: str) -> None:
        self._logger.warning(
            f"Sync failed: {error}",
            extra={
                "event": "sync_failed",
                "device_id": device_id,
                "error": error,
                "error_kind": kind
            }
        )

        sync_sessions_total.inc(status=kind)

    def message_posted(self, device_id: str, chatroom: str, message_id: int) -> None:
        self._logger.info(
            f"Message {message_id} queued for {chatroom}",
            extra={
                "event": "message_posted",
                "device_id": device_id,
                "chatroom": chatroom,
                "message_id": message_id
            }
        )

        messages_posted_total.inc()

    def registration_completed(self, chat_name: str, server_uri: str, server_id: str) -> None:
        self._logger.info(
            f"Registered as {chat_name}",
            extra={
                "event": "registration_completed",
                "chat_name": chat_name,
                "server_uri": server_uri,
                "server_id": server_id
            }
        )

    def registration_failed(self, chat_name: str, server_uri: str, error: str) -> None:
        self._logger.error(
            f"Registration failed: {error}",
            extra={
                "event": "registration_failed",
                "chat_name": chat_name,
                "server_uri": server_uri,
                "error": error
            }
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: str = None
) -> None:
    """
    Configure logging for production.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting
        log_file: Optional log file path
    """
    handlers = []

    console = logging.StreamHandler()
    if json_format:
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
    handlers.append(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True
    )


# =============================================================================
# Health Checks
# =============================================================================

@dataclass
class HealthStatus:
    """Health check status."""
    healthy: bool
    checks: Dict[str, dict]
    timestamp: float = field(default_factory=time.time)


class HealthChecker:
    """
    Health checker.

    Supports:
    - Database connectivity
    - Memory and disk thresholds
    - Custom checks
    """

    def __init__(self):
        self._checks: Dict[str, Callable[[], dict]] = {}

    def register_check(self, name: str, check_fn: Callable[[], dict]) -> None:
        """
        Register a health check.

        Check function should return:
        {"healthy": bool, "message": str, ...}
        """
        self._checks[name] = check_fn

    def check_all(self) -> HealthStatus:
        """Run all health checks."""
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

    @staticmethod
    def check_database(conn) -> dict:
        """Check database connectivity and performance."""
        try:
            start = time.perf_counter()
            conn.execute("SELECT 1").fetchone()
            latency_ms = (time.perf_counter() - start) * 1000
            return {
                "healthy": True,
                "message": "Database connected",
                "latency_ms": latency_ms
            }
        except Exception as e:
            return {"healthy": False, "message": f"Database error: {e}"}

    @staticmethod
    def check_memory(threshold_mb: int = 1000) -> dict:
        """Check memory usage of this process."""
        memory_mb = psutil.Process().memory_info().rss / 1024 / 1024
        return {
            "healthy": memory_mb < threshold_mb,
            "message": f"Memory usage: {memory_mb:.1f} MB",
            "memory_mb": memory_mb,
            "threshold_mb": threshold_mb
        }

    @staticmethod
    def check_disk(path: str = ".", threshold_percent: int = 90) -> dict:
        """Check disk space."""
        total, used, free = shutil.disk_usage(path)
        used_percent = (used / total) * 100
        return {
            "healthy": used_percent < threshold_percent,
            "message": f"Disk usage: {used_percent:.1f}%",
            "used_percent": used_percent,
            "free_bytes": free
        }
