#!/usr/bin/env python3
"""
Index Rebuild Service for ScyllaDB Secondary Indexes

Repairs indexes whose maintenance failed by replaying data table history into
them, with support for:
- Periodic background rebuilding with bounded replay windows
- Single-cycle runs for cron jobs and troubleshooting
- Ledger status reporting
- Marking indexes diverged (external write path / manual re-arm)
- Alert rule export

Usage:
    ./scripts/index_rebuild.py run --config rebuild.yaml
    ./scripts/index_rebuild.py once
    ./scripts/index_rebuild.py status
    ./scripts/index_rebuild.py mark --index app_data.users_by_email --state INACTIVE --since 1700000000000
    ./scripts/index_rebuild.py init-schema --replication-factor 3
    ./scripts/index_rebuild.py alerts --output index_rebuild_alerts.yml
"""

import sys
import argparse
import json
import logging
import signal
import threading
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.index_rebuild import (
    CassandraLedger,
    ClusterCatalog,
    CqlReplayExecutor,
    DivergenceCause,
    DivergenceMarker,
    IndexDescriptor,
    IndexState,
    ReconciliationScheduler,
    load_config,
)
from src.index_rebuild.connection import connect_scylla
from src.monitoring import AlertRuleGenerator, MetricsCollector
from src.utils.logging_config import configure_logging
from src.utils.secrets import resolve_scylla_credentials

logger = logging.getLogger(__name__)


class RebuildService:
    """Wires configuration, ScyllaDB session, ledger and scheduler together."""

    def __init__(self, config):
        self.config = config
        self.cluster = None
        self.session = None
        self.metrics = None

    def __enter__(self):
        credentials = resolve_scylla_credentials()
        self.cluster, self.session = connect_scylla(self.config, credentials)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.cluster is not None:
            self.cluster.shutdown()
            logger.info("ScyllaDB connection closed")

    @property
    def ledger(self) -> CassandraLedger:
        return CassandraLedger(
            self.session,
            keyspace=self.config.ledger_keyspace,
            table=self.config.ledger_table
        )

    def build_scheduler(self, with_metrics: bool = False) -> ReconciliationScheduler:
        if with_metrics:
            self.metrics = MetricsCollector(port=self.config.metrics_port)
            self.metrics.start_server()

        executor = CqlReplayExecutor(
            self.session,
            fetch_size=self.config.replay_fetch_size,
            concurrency=self.config.replay_concurrency,
            request_timeout=self.config.replay_request_timeout_s
        )
        return ReconciliationScheduler(
            ledger=self.ledger,
            executor=executor,
            config=self.config,
            catalog=ClusterCatalog(self.cluster),
            metrics=self.metrics.rebuild if self.metrics else None
        )


def run_service(service: RebuildService) -> int:
    """Run the scheduler until SIGINT or SIGTERM."""
    scheduler = service.build_scheduler(with_metrics=True)
    if not scheduler.start():
        return 0

    stopped = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, stopping rebuild scheduler")
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    stopped.wait()
    scheduler.stop()
    return 0


def mark_index(service: RebuildService, args) -> dict:
    ledger = service.ledger
    if args.data_table:
        ledger.register_index(IndexDescriptor(
            name=args.index,
            data_table=args.data_table,
            columns=tuple(args.columns or ())
        ))

    cause = DivergenceCause.BLOCKING if args.blocking else DivergenceCause.STALE_SERVING
    marker = DivergenceMarker(timestamp=args.since, cause=cause)
    ledger.mark_diverged(args.index, IndexState(args.state), marker)
    return ledger.get_index(args.index).to_dict()


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Index Rebuild Service for ScyllaDB",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Run command
    subparsers.add_parser("run", help="Run the periodic rebuild scheduler")

    # Once command
    subparsers.add_parser("once", help="Run a single rebuild cycle")

    # Status command
    subparsers.add_parser("status", help="Show the divergence ledger")

    # Mark command
    mark_parser = subparsers.add_parser("mark", help="Mark an index as diverged")
    mark_parser.add_argument("--index", required=True, help="Qualified index table name")
    mark_parser.add_argument("--state", choices=["INACTIVE", "DISABLED"], default="INACTIVE")
    mark_parser.add_argument("--since", type=int, required=True, help="Divergence time in epoch ms")
    mark_parser.add_argument("--blocking", action="store_true", help="Writes are blocked until repaired")
    mark_parser.add_argument("--data-table", help="Register the index on this data table first")
    mark_parser.add_argument("--columns", nargs="+", help="Indexed columns when registering")

    # Schema command
    schema_parser = subparsers.add_parser("init-schema", help="Create the ledger keyspace and table")
    schema_parser.add_argument("--replication-factor", type=int, default=3)

    # Alerts command
    alerts_parser = subparsers.add_parser("alerts", help="Export AlertManager rules")
    alerts_parser.add_argument("--output", required=True, help="Output YAML file")

    # Common options
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--scylla-host", action="append", help="ScyllaDB host (repeatable)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    configure_logging(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    overrides = {}
    if args.scylla_host:
        overrides["scylla_hosts"] = args.scylla_host

    try:
        config = load_config(args.config, overrides=overrides)

        if args.command == "alerts":
            generator = AlertRuleGenerator(cycle_period_seconds=max(1, config.cycle_period_ms // 1000))
            generator.export_to_yaml(args.output)
            print(json.dumps(generator.get_alert_summary(), indent=2))
            return 0

        with RebuildService(config) as service:
            if args.command == "run":
                return run_service(service)

            elif args.command == "once":
                report = service.build_scheduler().run_once()
                print(json.dumps(report.to_dict(), indent=2))
                return 0 if report.status == "completed" else 1

            elif args.command == "status":
                indexes = [index.to_dict() for index in service.ledger.list_indexes()]
                print(json.dumps({
                    "indexes": indexes,
                    "diverged": sum(1 for i in indexes if i["divergence_timestamp"])
                }, indent=2))

            elif args.command == "mark":
                print(json.dumps(mark_index(service, args), indent=2))

            elif args.command == "init-schema":
                service.ledger.ensure_schema(args.replication_factor)

        return 0

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        return 1


if __name__ == "__main__":
    sys.exit(main())
