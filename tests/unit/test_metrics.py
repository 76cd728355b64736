#!/usr/bin/env python3
"""Unit tests for Prometheus metrics"""

from unittest.mock import Mock

import pytest
from prometheus_client import CollectorRegistry

from aaaa_filter.metrics import (
    RESULT_FILTERED,
    RESULT_FORWARDED,
    MetricsCollector,
    MetricsServer,
)


@pytest.fixture
def registry():
    return CollectorRegistry()


class TestMetricsCollector:
    """Test metrics recording"""

    def test_disabled_collector_is_noop(self):
        metrics = MetricsCollector(enabled=False)

        metrics.record_query("AAAA", RESULT_FILTERED)
        metrics.record_upstream_retry()
        metrics.record_upstream_failure()
        metrics.start_updates()
        metrics.stop()

        assert not hasattr(metrics, "query_total")

    def test_query_outcomes(self, registry):
        metrics = MetricsCollector(enabled=True, registry=registry)

        metrics.record_query("AAAA", RESULT_FILTERED)
        metrics.record_query("AAAA", RESULT_FILTERED)
        metrics.record_query("A", RESULT_FORWARDED)

        assert registry.get_sample_value(
            "aaaa_filter_query_total", {"query_type": "AAAA", "result": "filtered"}
        ) == 2
        assert registry.get_sample_value(
            "aaaa_filter_query_total", {"query_type": "A", "result": "forwarded"}
        ) == 1

    def test_upstream_counters(self, registry):
        metrics = MetricsCollector(enabled=True, registry=registry)

        metrics.record_upstream_retry()
        metrics.record_upstream_retry()
        metrics.record_upstream_failure()

        assert registry.get_sample_value("aaaa_filter_upstream_retries_total") == 2
        assert registry.get_sample_value("aaaa_filter_upstream_failures_total") == 1

    def test_gauge_updates(self, registry):
        metrics = MetricsCollector(enabled=True, registry=registry)
        metrics._queue_depth = lambda: 7

        metrics._update_gauges()

        assert registry.get_sample_value("aaaa_filter_stats_queue_depth") == 7
        assert registry.get_sample_value("aaaa_filter_uptime_seconds") >= 0


class TestMetricsServer:
    """Test the metrics HTTP endpoint lifecycle"""

    def test_not_started_when_disabled(self):
        reactor = Mock()
        server = MetricsServer(MetricsCollector(enabled=False))

        server.start(reactor)

        reactor.listenTCP.assert_not_called()

    def test_start_and_stop(self, registry):
        reactor = Mock()
        server = MetricsServer(MetricsCollector(enabled=True, registry=registry), "127.0.0.1", 9191)

        server.start(reactor)
        port = reactor.listenTCP.return_value
        assert reactor.listenTCP.call_args[0][0] == 9191
        assert reactor.listenTCP.call_args[1] == {"interface": "127.0.0.1"}

        server.stop()
        port.stopListening.assert_called_once()
