"""
Monitoring Module for Index Rebuild

This module provides observability components for the index rebuild service:
- Prometheus metrics for rebuild cycles, batches and abandoned indexes
- Alert rule definitions for AlertManager

Usage:
    from src.monitoring import MetricsCollector, AlertRuleGenerator

    metrics = MetricsCollector(port=9090)
    metrics.start_server()
    scheduler = ReconciliationScheduler(ledger, executor, metrics=metrics.rebuild)

    alerts = AlertRuleGenerator()
    alerts.export_to_yaml("index_rebuild_alerts.yml")
"""

from src.monitoring.metrics import MetricsCollector, RebuildMetrics
from src.monitoring.alerts import AlertRuleGenerator

__all__ = [
    "MetricsCollector",
    "RebuildMetrics",
    "AlertRuleGenerator",
]

__version__ = "1.0.0"
