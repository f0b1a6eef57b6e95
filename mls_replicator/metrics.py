"""
Prometheus Metrics Module

Exposes metrics for monitoring the replication service.

Metrics:
- Counters: HTTP requests, batches written/applied, records upserted/purged
- Histograms: request duration, run duration
- Gauges: active runs, circuit breaker status

Usage:
    from mls_replicator.metrics import metrics

    # Record HTTP request
    metrics.record_http_request(source="utahRealEstate", status=200, duration=0.5)

    # Track a run
    async with metrics.track_run("utahRealEstate", "sync"):
        await do_sync()

    # Start metrics server
    await metrics.start_server(port=9090)
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp.web as web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from rich.console import Console

console = Console()


@dataclass
class SimpleMetrics:
    """In-memory counters, kept alongside Prometheus for the CLI."""

    http_requests: int = 0
    http_errors: int = 0
    http_total_duration: float = 0.0
    batches_written: int = 0
    batches_applied: int = 0
    records_upserted: dict[str, int] = field(default_factory=dict)
    records_purged: int = 0
    reconcile_ids: int = 0
    runs: int = 0
    run_errors: int = 0
    active_runs: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "http_requests_total": self.http_requests,
            "http_errors_total": self.http_errors,
            "http_avg_duration_seconds": (
                self.http_total_duration / max(self.http_requests, 1)
            ),
            "batches_written_total": self.batches_written,
            "batches_applied_total": self.batches_applied,
            "records_upserted_total": sum(self.records_upserted.values()),
            "records_by_resource": self.records_upserted,
            "records_purged_total": self.records_purged,
            "reconcile_ids_total": self.reconcile_ids,
            "runs_total": self.runs,
            "run_errors_total": self.run_errors,
            "active_runs": self.active_runs,
        }


class MetricsCollector:
    """
    Prometheus metrics collector for the replicator.

    Every record_* call also updates the SimpleMetrics counters shown by the
    ``metrics`` CLI command.
    """

    def __init__(self, enabled: bool = True) -> None:
        """
        Initialize metrics collector.

        Args:
            enabled: Whether to collect metrics
        """
        self.enabled = enabled
        self.simple = SimpleMetrics()
        self.registry = CollectorRegistry()
        self._runner: web.AppRunner | None = None

        # HTTP Request metrics
        self.http_requests_total = Counter(
            "mls_replicator_http_requests_total",
            "Total HTTP requests made to MLS sources",
            ["source", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "mls_replicator_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["source"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )

        self.http_errors_total = Counter(
            "mls_replicator_http_errors_total",
            "Total HTTP errors",
            ["source", "error_type"],
            registry=self.registry,
        )

        # Batch metrics
        self.batches_written_total = Counter(
            "mls_replicator_batches_written_total",
            "Batch files written by the collector",
            ["source", "resource", "batch_type"],
            registry=self.registry,
        )

        self.batches_applied_total = Counter(
            "mls_replicator_batches_applied_total",
            "Batch files applied to all destinations",
            ["source", "resource"],
            registry=self.registry,
        )

        self.records_upserted_total = Counter(
            "mls_replicator_records_upserted_total",
            "Records upserted into destinations",
            ["source", "resource", "destination"],
            registry=self.registry,
        )

        self.records_purged_total = Counter(
            "mls_replicator_records_purged_total",
            "Records purged from destinations",
            ["source", "resource", "destination"],
            registry=self.registry,
        )

        self.reconcile_ids_total = Counter(
            "mls_replicator_reconcile_ids_total",
            "Records found missing or stale by reconcile",
            ["source", "resource", "destination"],
            registry=self.registry,
        )

        # Run metrics
        self.run_duration = Histogram(
            "mls_replicator_run_duration_seconds",
            "Run duration in seconds",
            ["source", "operation"],
            buckets=(10, 30, 60, 120, 300, 600, 1800, 3600),
            registry=self.registry,
        )

        self.runs_total = Counter(
            "mls_replicator_runs_total",
            "Total runs",
            ["source", "operation", "status"],
            registry=self.registry,
        )

        self.active_runs = Gauge(
            "mls_replicator_active_runs",
            "Number of currently active runs",
            registry=self.registry,
        )

        # Circuit breaker metrics
        self.circuit_breaker_state = Gauge(
            "mls_replicator_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=open, 2=half-open)",
            ["source"],
            registry=self.registry,
        )

        self.circuit_breaker_failures = Counter(
            "mls_replicator_circuit_breaker_failures_total",
            "Circuit breaker failure count",
            ["source"],
            registry=self.registry,
        )

    # ========== HTTP Metrics ==========

    def record_http_request(self, source: str, status: int, duration: float) -> None:
        """Record an HTTP request."""
        if not self.enabled:
            return

        self.simple.http_requests += 1
        self.simple.http_total_duration += duration
        self.http_requests_total.labels(source=source, status=str(status)).inc()
        self.http_request_duration.labels(source=source).observe(duration)

    def record_http_error(self, source: str, error_type: str) -> None:
        """Record an HTTP error."""
        if not self.enabled:
            return

        self.simple.http_errors += 1
        self.http_errors_total.labels(source=source, error_type=error_type).inc()

    # ========== Batch Metrics ==========

    def record_batch_written(self, source: str, resource: str, batch_type: str) -> None:
        if not self.enabled:
            return

        self.simple.batches_written += 1
        self.batches_written_total.labels(
            source=source, resource=resource, batch_type=batch_type
        ).inc()

    def record_batch_applied(self, source: str, resource: str) -> None:
        if not self.enabled:
            return

        self.simple.batches_applied += 1
        self.batches_applied_total.labels(source=source, resource=resource).inc()

    def record_records_upserted(
        self, source: str, resource: str, destination: str, count: int
    ) -> None:
        if not self.enabled:
            return

        self.simple.records_upserted[resource] = (
            self.simple.records_upserted.get(resource, 0) + count
        )
        self.records_upserted_total.labels(
            source=source, resource=resource, destination=destination
        ).inc(count)

    def record_records_purged(
        self, source: str, resource: str, destination: str, count: int
    ) -> None:
        if not self.enabled:
            return

        self.simple.records_purged += count
        self.records_purged_total.labels(
            source=source, resource=resource, destination=destination
        ).inc(count)

    def record_reconcile_ids(
        self, source: str, resource: str, destination: str, count: int
    ) -> None:
        if not self.enabled:
            return

        self.simple.reconcile_ids += count
        self.reconcile_ids_total.labels(
            source=source, resource=resource, destination=destination
        ).inc(count)

    # ========== Run Metrics ==========

    @asynccontextmanager
    async def track_run(self, source: str, operation: str) -> AsyncIterator[None]:
        """
        Context manager to track run duration and status.

        Usage:
            async with metrics.track_run("utahRealEstate", "purge"):
                await do_purge()
        """
        start_time = time.time()
        self.simple.active_runs += 1
        self.simple.runs += 1
        self.active_runs.inc()

        status = "error"
        try:
            yield
            status = "success"
        except Exception:
            self.simple.run_errors += 1
            raise
        finally:
            duration = time.time() - start_time
            self.simple.active_runs -= 1
            self.active_runs.dec()
            if self.enabled:
                self.run_duration.labels(source=source, operation=operation).observe(duration)
                self.runs_total.labels(
                    source=source, operation=operation, status=status
                ).inc()

    # ========== Circuit Breaker Metrics ==========

    def record_circuit_breaker_state(self, source: str, state: str) -> None:
        """Record circuit breaker state change."""
        if not self.enabled:
            return

        state_value = {"closed": 0, "open": 1, "half_open": 2}.get(state, 0)
        self.circuit_breaker_state.labels(source=source).set(state_value)

    def record_circuit_breaker_failure(self, source: str) -> None:
        """Record circuit breaker failure."""
        if not self.enabled:
            return

        self.circuit_breaker_failures.labels(source=source).inc()

    # ========== Metrics Server ==========

    async def start_server(self, port: int = 9090) -> None:
        """
        Start HTTP server to expose metrics.

        Args:
            port: Port to listen on (default 9090)
        """
        if not self.enabled:
            console.print("[yellow]Metrics disabled, metrics server not started[/yellow]")
            return

        async def metrics_handler(request: web.Request) -> web.Response:
            """Handle /metrics endpoint."""
            output = generate_latest(self.registry)
            response = web.Response(body=output)
            response.headers["Content-Type"] = CONTENT_TYPE_LATEST
            return response

        async def health_handler(request: web.Request) -> web.Response:
            """Handle /health endpoint."""
            return web.Response(text="OK")

        app = web.Application()
        app.router.add_get("/metrics", metrics_handler)
        app.router.add_get("/health", health_handler)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", port)
        await site.start()

        console.print(f"[green]Metrics server started on port {port}[/green]")

    async def stop_server(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    def get_simple_metrics(self) -> dict[str, Any]:
        """Get simple metrics as dictionary."""
        return self.simple.to_dict()


def _build_metrics() -> MetricsCollector:
    from mls_replicator.config import settings

    return MetricsCollector(enabled=settings.metrics_enabled)


# Global metrics instance
metrics = _build_metrics()
