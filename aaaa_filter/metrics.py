# aaaa_filter/metrics.py
# Version: 1.0.0
# Prometheus metrics for the AAAA filter proxy

"""
Metrics Collection Module

Optional Prometheus exposition of query outcomes and upstream health. When
disabled every record call is a no-op, so callers never need to check.
"""

import logging
import time
from typing import Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge
from prometheus_client.twisted import MetricsResource
from twisted.internet import task
from twisted.web import resource, server

from aaaa_filter.constants import (
    METRICS_DEFAULT_ADDRESS,
    METRICS_DEFAULT_PORT,
    METRICS_UPTIME_INTERVAL,
)

logger = logging.getLogger(__name__)

METRIC_NAMESPACE = "aaaa_filter"

RESULT_FILTERED = "filtered"
RESULT_FORWARDED = "forwarded"
RESULT_DROPPED = "dropped"
RESULT_ERROR = "error"


class MetricsCollector:
    """Centralized metrics collection"""

    def __init__(self, enabled: bool = False, registry: Optional[CollectorRegistry] = None):
        self.enabled = enabled
        self._start_time = time.time()
        self._uptime_loop = None
        self._queue_depth = None

        if not self.enabled:
            logger.info("Metrics collection disabled")
            return

        self.registry = registry or CollectorRegistry()

        self.query_total = Counter(
            f"{METRIC_NAMESPACE}_query_total",
            "Total number of DNS queries handled",
            ["query_type", "result"],
            registry=self.registry,
        )
        self.upstream_retries = Counter(
            f"{METRIC_NAMESPACE}_upstream_retries_total",
            "Upstream exchanges retried after a failed first attempt",
            registry=self.registry,
        )
        self.upstream_failures = Counter(
            f"{METRIC_NAMESPACE}_upstream_failures_total",
            "Queries dropped after both upstream attempts failed",
            registry=self.registry,
        )
        self.stats_queue_depth = Gauge(
            f"{METRIC_NAMESPACE}_stats_queue_depth",
            "Query events waiting for the stats collector",
            registry=self.registry,
        )
        self.uptime_seconds = Gauge(
            f"{METRIC_NAMESPACE}_uptime_seconds",
            "Time since the proxy started in seconds",
            registry=self.registry,
        )

        logger.info("Metrics collector initialized")

    def start_updates(
        self,
        queue_depth: Optional[Callable[[], int]] = None,
        interval: float = METRICS_UPTIME_INTERVAL,
    ):
        """Refresh the uptime and queue depth gauges periodically"""
        if not self.enabled or self._uptime_loop is not None:
            return
        self._queue_depth = queue_depth
        self._uptime_loop = task.LoopingCall(self._update_gauges)
        self._uptime_loop.start(interval)

    def _update_gauges(self):
        self.uptime_seconds.set(time.time() - self._start_time)
        if self._queue_depth is not None:
            self.stats_queue_depth.set(self._queue_depth())

    def stop(self):
        if self._uptime_loop is not None and self._uptime_loop.running:
            self._uptime_loop.stop()
        self._uptime_loop = None

    def record_query(self, query_type: str, result: str):
        """Record one handled query and its outcome"""
        if self.enabled:
            self.query_total.labels(query_type=query_type, result=result).inc()

    def record_upstream_retry(self):
        if self.enabled:
            self.upstream_retries.inc()

    def record_upstream_failure(self):
        if self.enabled:
            self.upstream_failures.inc()


class MetricsServer:
    """HTTP server for the Prometheus metrics endpoint"""

    def __init__(
        self,
        collector: MetricsCollector,
        listen_address: str = METRICS_DEFAULT_ADDRESS,
        listen_port: int = METRICS_DEFAULT_PORT,
    ):
        self.collector = collector
        self.listen_address = listen_address
        self.listen_port = listen_port
        self.port = None

    def start(self, reactor):
        """Start metrics HTTP server"""
        if not self.collector.enabled:
            logger.info("Metrics server not started (metrics disabled)")
            return

        root = resource.Resource()
        root.putChild(b"metrics", MetricsResource(registry=self.collector.registry))
        factory = server.Site(root)

        self.port = reactor.listenTCP(self.listen_port, factory, interface=self.listen_address)
        logger.info(f"Metrics server listening on {self.listen_address}:{self.listen_port}/metrics")

    def stop(self):
        """Stop metrics HTTP server"""
        if self.port:
            self.port.stopListening()
            self.port = None
            logger.info("Metrics server stopped")
