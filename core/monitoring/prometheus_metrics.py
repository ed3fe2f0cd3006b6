"""
Prometheus metrics for the pool ledger, price feed and rebalancer
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional
import time


class LedgerMetricsCollector:
    """Prometheus metrics with an injectable registry"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Price feed
        self.price_fetches = Counter(
            'price_fetches_total',
            'Price quotes served, by source',
            ['source'],
            registry=self.registry
        )
        self.oracle_latency = Histogram(
            'oracle_request_latency_seconds',
            'Latency of live oracle requests',
            ['outcome'],
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry
        )
        self.subscription_ticks = Counter(
            'price_subscription_ticks_total',
            'Subscription polling ticks, by outcome',
            ['outcome'],
            registry=self.registry
        )

        # Ledger
        self.ledger_operations = Counter(
            'ledger_operations_total',
            'Invest and withdraw operations, by outcome',
            ['operation', 'outcome'],
            registry=self.registry
        )
        self.ledger_operation_latency = Histogram(
            'ledger_operation_latency_seconds',
            'Latency of ledger mutations',
            ['operation'],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry
        )

        # Rebalancer
        self.rebalances = Counter(
            'rebalances_total',
            'Rebalance executions, by reason and outcome',
            ['reason', 'outcome'],
            registry=self.registry
        )
        self.trades_planned = Counter(
            'rebalance_trades_total',
            'Trades produced by the optimizer',
            ['action'],
            registry=self.registry
        )
        self.last_rebalance_run = Gauge(
            'rebalance_last_run_timestamp_seconds',
            'Unix time of the last completed run_all',
            registry=self.registry
        )

    def record_price_fetch(self, source: str):
        self.price_fetches.labels(source=source).inc()

    def record_oracle_latency(self, outcome: str, duration_seconds: float):
        self.oracle_latency.labels(outcome=outcome).observe(duration_seconds)

    def record_subscription_tick(self, outcome: str):
        self.subscription_ticks.labels(outcome=outcome).inc()

    def record_ledger_operation(self, operation: str, outcome: str):
        self.ledger_operations.labels(operation=operation, outcome=outcome).inc()

    def record_rebalance(self, reason: str, outcome: str):
        self.rebalances.labels(reason=reason, outcome=outcome).inc()

    def record_trade(self, action: str):
        self.trades_planned.labels(action=action).inc()

    def mark_rebalance_run(self):
        self.last_rebalance_run.set(time.time())

    def time_ledger_operation(self, operation: str) -> "MetricsContextManager":
        return MetricsContextManager(self, operation)


class MetricsContextManager:
    """Context manager for timing ledger operations"""

    def __init__(self, metrics_collector: LedgerMetricsCollector, operation: str):
        self.metrics_collector = metrics_collector
        self.operation = operation
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            duration = time.perf_counter() - self.start_time
            self.metrics_collector.ledger_operation_latency.labels(
                operation=self.operation
            ).observe(duration)


def get_metrics_for_testing() -> LedgerMetricsCollector:
    """Get metrics collector with custom registry for testing"""
    return LedgerMetricsCollector(registry=CollectorRegistry())
