"""Prometheus metrics definitions."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class Metrics:
    """Expose reconciliation metrics for monitoring."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.cycle_latency_ms = Histogram(
            "reconciliation_cycle_latency_ms",
            "Wall-clock duration of one reconciliation cycle (ms)",
            buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 20000, 60000),
            registry=self.registry,
        )
        self.cycles_total = Counter(
            "reconciliation_cycles_total",
            "Reconciliation cycles run",
            ["result"],
            registry=self.registry,
        )
        self.pending_trades = Gauge(
            "reconciliation_pending_trades",
            "Pending trades read at the start of the last cycle",
            registry=self.registry,
        )
        self.trade_outcomes_total = Counter(
            "reconciliation_trade_outcomes_total",
            "Classification outcomes by type",
            ["outcome"],
            registry=self.registry,
        )
        self.trade_failures_total = Counter(
            "reconciliation_trade_failures_total",
            "Trades or sibling groups that failed during a cycle",
            ["error"],
            registry=self.registry,
        )
        self.close_requests_total = Counter(
            "reconciliation_close_requests_total",
            "Close quotes evaluated for broken trade groups",
            ["decision"],
            registry=self.registry,
        )
        self.gateway_retries_total = Counter(
            "gateway_retries_total",
            "Retried gateway calls",
            ["op"],
            registry=self.registry,
        )
        self.service_enabled = Gauge(
            "service_enabled",
            "Whether reconciliation is administratively enabled",
            registry=self.registry,
        )

    def start(self, port: int) -> None:
        start_http_server(port, registry=self.registry)
