"""
Monitoring components for the pool ledger
"""

from .prometheus_metrics import LedgerMetricsCollector, MetricsContextManager, get_metrics_for_testing

__all__ = [
    "LedgerMetricsCollector",
    "MetricsContextManager",
    "get_metrics_for_testing",
]
