"""
test_config_metrics.py - Tests for configuration loading and observability.
"""

import json
import logging

import pytest

from aac_sync.config import DEFAULT_API_URL, ClientConfig
from aac_sync.metrics import JSONFormatter, MetricsRegistry, SyncLogger, get_registry, sync_passes_total


class TestClientConfig:

    def test_defaults(self, monkeypatch):
        for name in ("AAC_SYNC_API_URL", "AAC_SYNC_PEER_URL", "GEMINI_API_KEY", "AAC_SYNC_LOG_JSON"):
            monkeypatch.delenv(name, raising=False)

        config = ClientConfig.from_env()

        assert config.api_url == DEFAULT_API_URL
        assert config.peer_url is None
        assert config.log_json is False

    def test_environment_and_overrides(self, monkeypatch):
        monkeypatch.setenv("AAC_SYNC_API_URL", "http://localhost:8000")
        monkeypatch.setenv("AAC_SYNC_LOG_JSON", "true")
        monkeypatch.setenv("AAC_SYNC_PEER_URL", "")

        config = ClientConfig.from_env(db_path="/tmp/board.db")

        assert config.api_url == "http://localhost:8000"
        assert config.log_json is True
        assert config.peer_url is None
        assert config.db_path == "/tmp/board.db"

    def test_request_timeout_must_be_shorter(self):
        with pytest.raises(ValueError):
            ClientConfig.from_env(request_timeout=60.0, resource_timeout=60.0)


class TestMetrics:

    def test_labeled_counter(self):
        registry = MetricsRegistry(prefix="test")
        counter = registry.counter("calls_total", "Calls", labels=["status"])

        counter.inc(status="ok")
        counter.inc(2, status="ok")
        counter.inc(status="failed")

        assert counter.get(status="ok") == 3
        assert counter.get(status="failed") == 1
        assert registry.counter("calls_total", "Calls") is counter

    def test_histogram_buckets(self):
        registry = MetricsRegistry(prefix="test")
        histogram = registry.histogram("latency", "Latency", buckets=(0.1, 1.0, float("inf")))

        histogram.observe(0.05)
        histogram.observe(0.5)

        values = {(m.name, m.labels.get("le")): m.value for m in histogram.collect()}
        assert histogram.count == 2
        assert values[("test_latency_bucket", "0.1")] == 1
        assert values[("test_latency_bucket", "+Inf")] == 2

    def test_export_prometheus(self):
        registry = MetricsRegistry(prefix="test")
        registry.gauge("pending", "Pending").set(4)
        registry.counter("passes", "Passes", labels=["status"]).inc(status="completed")

        text = registry.export_prometheus()

        assert "test_pending 4" in text
        assert 'test_passes{status="completed"} 1' in text

    def test_sync_logger_updates_metrics(self):
        SyncLogger().pass_skipped("manual", "offline")

        assert sync_passes_total.get(status="skipped") == 1
        names = {m["name"] for m in get_registry().export_json()["metrics"]}
        assert "aac_sync_sync_passes_total" in names


class TestJSONFormatter:

    def test_extra_fields_are_included(self):
        record = logging.LogRecord("aac_sync.sync", logging.INFO, __file__, 1, "pass %s", ("done",), None)
        record.event = "sync_completed"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "pass done"
        assert data["level"] == "INFO"
        assert data["event"] == "sync_completed"
