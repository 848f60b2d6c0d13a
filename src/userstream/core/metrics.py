"""
Prometheus metrics collection.

In-memory counters for the ingestion pipeline and the read path;
Prometheus handles storage.
"""

import time
from typing import Optional

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for UserStream.

    Pass a dedicated ``registry`` to create more than one collector per
    process (tests do this).
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        registry = registry if registry is not None else REGISTRY
        self.registry = registry

        # Service info
        self.service_info = Info(
            "userstream_service",
            "UserStream service information",
            registry=registry,
        )
        self.service_info.info({
            "version": "0.1.0",
            "service": "userstream",
        })

        # Request metrics
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=registry,
        )

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=registry,
        )

        # Ingestion metrics
        self.batches_received_total = Counter(
            "ingestion_batches_received_total",
            "Total batches pulled from the ingestion source",
            registry=registry,
        )

        self.batch_size_records = Histogram(
            "ingestion_batch_size_records",
            "Number of records per decoded batch",
            buckets=[1, 5, 10, 25, 50, 100, 250, 500],
            registry=registry,
        )

        self.records_persisted_total = Counter(
            "ingestion_records_persisted_total",
            "Total records durably written by the pipeline",
            registry=registry,
        )

        self.pipeline_errors_total = Counter(
            "ingestion_errors_total",
            "Total pipeline errors reported to the error sink",
            ["kind"],
            registry=registry,
        )

        self.pipeline_errors_dropped_total = Counter(
            "ingestion_errors_dropped_total",
            "Pipeline errors discarded because the error sink was full",
            registry=registry,
        )

        self.store_write_duration = Histogram(
            "store_write_duration_seconds",
            "Durable store write duration in seconds",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0, 15.0],
            registry=registry,
        )

        # Cache metrics
        self.cache_requests_total = Counter(
            "cache_requests_total",
            "Cache lookups by outcome",
            ["result"],
            registry=registry,
        )

        self.cache_failures_total = Counter(
            "cache_failures_total",
            "Cache write/delete failures",
            ["operation"],
            registry=registry,
        )

        # System metrics
        self.pipeline_state = Gauge(
            "ingestion_pipeline_running",
            "1 while the ingestion pipeline is consuming, 0 otherwise",
            registry=registry,
        )

        self.uptime_seconds = Gauge(
            "uptime_seconds",
            "Service uptime in seconds",
            registry=registry,
        )

        self._start_time = time.time()

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration_seconds: float
    ) -> None:
        """Record HTTP request metrics."""
        self.requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self.request_duration.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration_seconds)

    def record_batch(self, records_count: int) -> None:
        """Record a successfully decoded batch."""
        self.batches_received_total.inc()
        self.batch_size_records.observe(records_count)

    def record_persisted(self, duration_seconds: float) -> None:
        self.records_persisted_total.inc()
        self.store_write_duration.observe(duration_seconds)

    def record_pipeline_error(self, kind: str) -> None:
        self.pipeline_errors_total.labels(kind=kind).inc()

    def record_dropped_errors(self, count: int) -> None:
        if count > 0:
            self.pipeline_errors_dropped_total.inc(count)

    def record_cache_lookup(self, hit: bool) -> None:
        self.cache_requests_total.labels(result="hit" if hit else "miss").inc()

    def record_cache_failure(self, operation: str) -> None:
        self.cache_failures_total.labels(operation=operation).inc()

    def set_pipeline_running(self, running: bool) -> None:
        self.pipeline_state.set(1 if running else 0)

    def update_system_metrics(self) -> None:
        """Update system-level metrics."""
        self.uptime_seconds.set(time.time() - self._start_time)
