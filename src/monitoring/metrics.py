"""
Prometheus Metrics for Index Rebuild

Tracks rebuild cycles, replay batches, lifecycle transitions and abandoned
indexes. Metrics are exposed on port 9090 for Prometheus scraping.

Each RebuildMetrics owns its own registry so that several schedulers can live
in one process (and one test session) without duplicate registrations.
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

logger = logging.getLogger(__name__)


class RebuildMetrics:
    """Prometheus metrics for index rebuild cycles."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize rebuild metrics.

        Args:
            registry: Registry to register with (a fresh one if not provided)
        """
        self.registry = registry or CollectorRegistry()

        # Cycle counter
        self.cycles_total = Counter(
            'index_rebuild_cycles_total',
            'Total number of rebuild cycles',
            ['status'],
            registry=self.registry
        )

        self.cycle_duration_seconds = Histogram(
            'index_rebuild_cycle_duration_seconds',
            'Duration of rebuild cycles in seconds',
            buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 300, 600, 1800, 3600],
            registry=self.registry
        )

        # Replay batches
        self.batches_total = Counter(
            'index_rebuild_batches_total',
            'Total replay batches by outcome',
            ['table', 'outcome'],
            registry=self.registry
        )

        self.rows_replayed_total = Counter(
            'index_rebuild_rows_replayed_total',
            'Total data table rows read while replaying',
            ['table'],
            registry=self.registry
        )

        # Ledger
        self.state_transitions_total = Counter(
            'index_rebuild_state_transitions_total',
            'Index lifecycle transitions written by the rebuild task',
            ['from_state', 'to_state'],
            registry=self.registry
        )

        self.abandoned_total = Counter(
            'index_rebuild_abandoned_total',
            'Indexes whose automatic repair was abandoned',
            ['table'],
            registry=self.registry
        )

        self.ledger_conflicts_total = Counter(
            'index_rebuild_ledger_conflicts_total',
            'Ledger compare-and-set conflicts',
            ['table'],
            registry=self.registry
        )

        self.mixed_causes_total = Counter(
            'index_rebuild_mixed_causes_total',
            'Groups whose earliest divergence markers disagree on cause',
            ['table'],
            registry=self.registry
        )

        # Current divergence
        self.diverged_indexes = Gauge(
            'index_rebuild_diverged_indexes',
            'Diverged indexes found in the last cycle',
            ['table'],
            registry=self.registry
        )

        self.divergence_lag_seconds = Gauge(
            'index_rebuild_divergence_lag_seconds',
            'Age of the earliest divergence marker of a table',
            ['table'],
            registry=self.registry
        )

        self.last_cycle_timestamp = Gauge(
            'index_rebuild_last_cycle_timestamp_seconds',
            'Unix time at which the last cycle finished',
            registry=self.registry
        )

        logger.info("RebuildMetrics initialized")

    def record_cycle(self, status: str, duration_seconds: float, finished_at: float) -> None:
        """
        Record a finished cycle.

        Args:
            status: completed, skipped or failed
            duration_seconds: Duration in seconds
            finished_at: Unix time the cycle finished
        """
        self.cycles_total.labels(status=status).inc()
        if status != 'skipped':
            self.cycle_duration_seconds.observe(duration_seconds)
            self.last_cycle_timestamp.set(finished_at)

    def record_batch(self, table: str, outcome: str, rows: int = 0) -> None:
        """
        Record a replay batch.

        Args:
            table: Data table name
            outcome: final, partial or failed
            rows: Data table rows read
        """
        self.batches_total.labels(table=table, outcome=outcome).inc()
        if rows:
            self.rows_replayed_total.labels(table=table).inc(rows)

    def record_transition(self, from_state: str, to_state: str) -> None:
        self.state_transitions_total.labels(from_state=from_state, to_state=to_state).inc()

    def record_abandoned(self, table: str, count: int) -> None:
        self.abandoned_total.labels(table=table).inc(count)

    def record_conflict(self, table: str) -> None:
        self.ledger_conflicts_total.labels(table=table).inc()

    def record_mixed_causes(self, table: str) -> None:
        self.mixed_causes_total.labels(table=table).inc()

    def update_divergence(self, table: str, diverged: int, lag_seconds: float) -> None:
        """Update the divergence gauges of a table."""
        self.diverged_indexes.labels(table=table).set(diverged)
        self.divergence_lag_seconds.labels(table=table).set(max(0.0, lag_seconds))


class MetricsCollector:
    """
    Main metrics collector for the rebuild service.

    Owns the registry and serves it over HTTP.
    """

    def __init__(self, port: int = 9090, registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collector.

        Args:
            port: Port for Prometheus metrics server
            registry: Registry to use (a fresh one if not provided)
        """
        self.port = port
        self.registry = registry or CollectorRegistry()
        self.rebuild = RebuildMetrics(registry=self.registry)

        self.service_info = Info(
            'index_rebuild_service',
            'Index rebuild service information',
            registry=self.registry
        )
        self.service_info.info({
            'version': '1.0.0',
            'store': 'scylladb',
        })

        logger.info(f"MetricsCollector initialized on port {port}")

    def start_server(self) -> None:
        """Start Prometheus metrics HTTP server."""
        try:
            start_http_server(self.port, registry=self.registry)
            logger.info(f"Metrics server started on port {self.port}")
        except OSError as e:
            if "Address already in use" in str(e):
                logger.warning(f"Metrics server already running on port {self.port}")
            else:
                raise
