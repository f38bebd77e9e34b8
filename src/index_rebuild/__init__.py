"""
Index Rebuild Module

Background repair of secondary indexes that diverged from their data tables in
ScyllaDB. When index maintenance fails, the write path records a divergence
marker for the index; this module periodically replays data table history into
the diverged indexes in bounded windows and brings them back to ACTIVE, or
abandons repair when the divergence is too old.

Main components:
- models: index descriptors, divergence markers, repair windows
- window: repair window calculator
- ledger: divergence ledger access (CQL and in-memory)
- executor: replay executor
- scheduler: periodic reconciliation scheduler

Usage:
    from src.index_rebuild import (
        CassandraLedger, CqlReplayExecutor, ReconciliationScheduler, load_config
    )

    config = load_config("rebuild.yaml")
    scheduler = ReconciliationScheduler(
        ledger=CassandraLedger(session),
        executor=CqlReplayExecutor(session),
        config=config
    )
    report = scheduler.run_once()
"""

from src.index_rebuild.catalog import ClusterCatalog, PermissiveCatalog
from src.index_rebuild.config import RebuildConfig, load_config
from src.index_rebuild.errors import (
    ConfigurationError,
    IndexRebuildError,
    InvalidStateTransitionError,
    LedgerError,
    ReplayError,
)
from src.index_rebuild.executor import CqlReplayExecutor, ReplayExecutor
from src.index_rebuild.ledger import CassandraLedger, DivergenceLedger, InMemoryLedger
from src.index_rebuild.models import (
    MAX_TIMESTAMP,
    DivergenceCause,
    DivergenceMarker,
    IndexDescriptor,
    IndexState,
    RepairWindow,
)
from src.index_rebuild.scheduler import CycleReport, ReconciliationScheduler
from src.index_rebuild.window import Decision, DecisionAction, RepairWindowCalculator, compute_window

__all__ = [
    "ClusterCatalog",
    "PermissiveCatalog",
    "RebuildConfig",
    "load_config",
    "ConfigurationError",
    "IndexRebuildError",
    "InvalidStateTransitionError",
    "LedgerError",
    "ReplayError",
    "CqlReplayExecutor",
    "ReplayExecutor",
    "CassandraLedger",
    "DivergenceLedger",
    "InMemoryLedger",
    "MAX_TIMESTAMP",
    "DivergenceCause",
    "DivergenceMarker",
    "IndexDescriptor",
    "IndexState",
    "RepairWindow",
    "CycleReport",
    "ReconciliationScheduler",
    "Decision",
    "DecisionAction",
    "RepairWindowCalculator",
    "compute_window",
]

__version__ = "1.0.0"
