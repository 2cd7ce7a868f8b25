"""
metrics.py - Observability for the sync client.

Provides:
- Prometheus-style counters, gauges and histograms (in-process)
- Structured JSON logging
- SyncLogger convenience events for passes, items and instructions
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List


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


class _LabeledMetric:
    def __init__(self, name: str, help_text: str, labels: List[str] = None):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self._values: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    def get(self, **label_values) -> float:
        return self._values.get(self._label_key(label_values), 0)

    def collect(self) -> List[MetricValue]:
        with self._lock:
            return [
                MetricValue(name=self.name, value=value, labels=dict(zip(self.labels, key)))
                for key, value in self._values.items()
            ]

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

    def _label_key(self, label_values: dict) -> tuple:
        return tuple(label_values.get(l, "") for l in self.labels)


class Counter(_LabeledMetric):
    """Monotonic counter."""

    def inc(self, value: float = 1, **label_values) -> None:
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value


class Gauge(_LabeledMetric):
    """Point-in-time value."""

    def set(self, value: float, **label_values) -> None:
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = value


class Histogram:
    """Bucketed latency histogram."""

    DEFAULT_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, float("inf"))

    def __init__(self, name: str, help_text: str, buckets: tuple = None):
        self.name = name
        self.help = help_text
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._count = 0
        self._sum = 0.0
        self._bucket_counts = {b: 0 for b in self.buckets}
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    @contextmanager
    def time(self):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start)

    @property
    def count(self) -> int:
        return self._count

    def collect(self) -> List[MetricValue]:
        with self._lock:
            results = [
                MetricValue(name=f"{self.name}_sum", value=self._sum),
                MetricValue(name=f"{self.name}_count", value=self._count),
            ]
            for bucket, count in self._bucket_counts.items():
                le = "+Inf" if bucket == float("inf") else str(bucket)
                results.append(MetricValue(name=f"{self.name}_bucket", value=count, labels={"le": le}))
            return results

    def reset(self) -> None:
        with self._lock:
            self._count = 0
            self._sum = 0.0
            self._bucket_counts = {b: 0 for b in self.buckets}


class MetricsRegistry:
    """Process-wide metrics registry."""

    def __init__(self, prefix: str = "aac_sync"):
        self.prefix = prefix
        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str, labels: List[str] = None) -> Counter:
        return self._register(name, lambda full: Counter(full, help_text, labels))

    def gauge(self, name: str, help_text: str, labels: List[str] = None) -> Gauge:
        return self._register(name, lambda full: Gauge(full, help_text, labels))

    def histogram(self, name: str, help_text: str, buckets: tuple = None) -> Histogram:
        return self._register(name, lambda full: Histogram(full, help_text, buckets))

    def _register(self, name, factory):
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = factory(full_name)
            return self._metrics[full_name]

    def collect_all(self) -> List[MetricValue]:
        results = []
        with self._lock:
            for metric in self._metrics.values():
                results.extend(metric.collect())
        return results

    def reset(self) -> None:
        with self._lock:
            for metric in self._metrics.values():
                metric.reset()

    def export_prometheus(self) -> str:
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

sync_passes_total = _registry.counter(
    "sync_passes_total",
    "Sync passes by outcome",
    labels=["status"],
)

sync_items_total = _registry.counter(
    "sync_items_total",
    "Per-item sync calls",
    labels=["entity", "operation", "status"],
)

pending_changes = _registry.gauge(
    "pending_changes",
    "Entities not yet confirmed by the server",
)

last_sync_timestamp = _registry.gauge(
    "last_sync_timestamp",
    "Unix time of the last completed sync pass",
)

sync_pass_seconds = _registry.histogram(
    "sync_pass_seconds",
    "Duration of a sync pass in seconds",
)

instructions_total = _registry.counter(
    "instructions_total",
    "Remote instructions by type and outcome",
    labels=["type", "outcome"],
)

peer_messages_total = _registry.counter(
    "peer_messages_total",
    "Peer messages by direction and delivery tier",
    labels=["direction", "tier"],
)


def get_registry() -> MetricsRegistry:
    return _registry


# =============================================================================
# Structured Logging
# =============================================================================

_RESERVED_RECORD_KEYS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
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
            "hostname": self._hostname,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if self.include_extra:
            for key, value in record.__dict__.items():
                if key not in _RESERVED_RECORD_KEYS:
                    log_data[key] = value
        return json.dumps(log_data, default=str)


class SyncLogger:
    """
    Structured logger for sync and dispatch events.

    Also updates the matching metrics so call sites stay one-liners.
    """

    def __init__(self, name: str = "aac_sync.sync"):
        self._logger = logging.getLogger(name)

    def pass_started(self, trigger: str) -> None:
        self._logger.info(
            f"Sync pass started ({trigger})",
            extra={"event": "sync_started", "trigger": trigger},
        )

    def pass_skipped(self, trigger: str, reason: str) -> None:
        self._logger.info(
            f"Sync pass skipped ({trigger}): {reason}",
            extra={"event": "sync_skipped", "trigger": trigger, "reason": reason},
        )
        sync_passes_total.inc(status="skipped")

    def pass_completed(self, trigger: str, counts: dict, pending: int, duration_ms: float) -> None:
        self._logger.info(
            f"Sync pass completed: pending={pending}",
            extra={
                "event": "sync_completed",
                "trigger": trigger,
                "counts": counts,
                "pending": pending,
                "duration_ms": duration_ms,
            },
        )
        sync_passes_total.inc(status="completed")

    def pass_failed(self, trigger: str, error: str) -> None:
        self._logger.error(
            f"Sync pass failed: {error}",
            extra={"event": "sync_failed", "trigger": trigger, "error": error},
        )
        sync_passes_total.inc(status="failed")

    def item_succeeded(self, entity: str, operation: str) -> None:
        sync_items_total.inc(entity=entity, operation=operation, status="success")

    def item_failed(
        self, entity: str, operation: str, entity_id: str, error: Exception, retryable: bool = True
    ) -> None:
        self._logger.warning(
            f"Failed to {operation} {entity} {entity_id}: {error}"
            + ("" if retryable else " (not retryable)"),
            extra={
                "event": "sync_item_failed",
                "entity": entity,
                "operation": operation,
                "entity_id": entity_id,
                "error_kind": type(error).__name__,
                "retryable": retryable,
            },
        )
        sync_items_total.inc(entity=entity, operation=operation, status="failed")

    def instruction(self, instruction_type: str, outcome: str, detail: str | None = None) -> None:
        level = logging.INFO if outcome == "processed" else logging.WARNING
        self._logger.log(
            level,
            f"Instruction {instruction_type} {outcome}" + (f": {detail}" if detail else ""),
            extra={
                "event": "instruction",
                "instruction_type": instruction_type,
                "outcome": outcome,
            },
        )
        instructions_total.inc(type=instruction_type, outcome=outcome)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str = None,
) -> None:
    """
    Configure root logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting on the console
        log_file: Optional log file path (always JSON)
    """
    handlers = []

    console = logging.StreamHandler()
    if json_format:
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
    handlers.append(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True,
    )
