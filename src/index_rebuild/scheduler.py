"""
Reconciliation Scheduler

Periodic task that repairs diverged secondary indexes. Each cycle:

1. skips immediately if a previous cycle of this scheduler is still running
2. reads the divergence ledger and keeps resolvable, available indexes
3. groups them by data table and moves DISABLED indexes to INACTIVE so that
   writes are no longer blocked while repair runs
4. asks the window calculator whether to abandon or which window to replay
5. abandons (terminal DISABLED, marker 0) or replays the window and then
   either activates the indexes or advances their markers

Tables are processed independently: a failure on one table never stops the
others, and a failed replay leaves the ledger untouched so the same window is
retried on the next cycle.

The guard and the per-table batch counters belong to the scheduler instance.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from src.index_rebuild.catalog import PermissiveCatalog
from src.index_rebuild.config import RebuildConfig
from src.index_rebuild.errors import (
    IndexRebuildError,
    InvalidStateTransitionError,
    LedgerError,
)
from src.index_rebuild.executor import ReplayExecutor
from src.index_rebuild.ledger import DivergenceLedger
from src.index_rebuild.models import DivergenceMarker, IndexDescriptor, IndexState
from src.index_rebuild.window import Decision, RepairWindowCalculator
from src.utils.cycle_context import CycleContext

logger = logging.getLogger(__name__)


def current_time_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class TableOutcome:
    """What happened to one data table during a cycle."""

    table: str
    indexes: List[str]
    outcome: str
    decision: Optional[Decision] = None
    rows: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "indexes": self.indexes,
            "outcome": self.outcome,
            "decision": self.decision.to_dict() if self.decision else None,
            "rows": self.rows,
            "error": self.error,
        }


@dataclass
class CycleReport:
    """Summary of one scheduler cycle."""

    cycle_id: Optional[str] = None
    skipped: bool = False
    started_at: Optional[str] = None
    duration_seconds: float = 0.0
    tables: List[TableOutcome] = field(default_factory=list)
    activated: int = 0
    advanced: int = 0
    abandoned: int = 0
    conflicts: int = 0
    failed_tables: int = 0
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        if self.error is not None:
            return "failed"
        return "completed"

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "status": self.status,
            "started_at": self.started_at,
            "duration_seconds": self.duration_seconds,
            "tables": [t.to_dict() for t in self.tables],
            "activated": self.activated,
            "advanced": self.advanced,
            "abandoned": self.abandoned,
            "conflicts": self.conflicts,
            "failed_tables": self.failed_tables,
            "error": self.error,
        }


class ReconciliationScheduler:
    """
    Drives diverged indexes back to ACTIVE.

    run_once() performs one cycle and can be called directly; start() runs it on
    a background thread with a fixed delay between the end of one cycle and the
    start of the next.
    """

    def __init__(
        self,
        ledger: DivergenceLedger,
        executor: ReplayExecutor,
        config: Optional[RebuildConfig] = None,
        catalog=None,
        metrics=None,
        clock: Optional[Callable[[], int]] = None
    ):
        """
        Initialize the scheduler.

        Args:
            ledger: Divergence ledger
            executor: Replay executor
            config: Service configuration (defaults if not provided)
            catalog: Object with resolve(index) and is_available(index)
            metrics: Optional RebuildMetrics
            clock: Returns the current time in milliseconds
        """
        self.ledger = ledger
        self.executor = executor
        self.config = config or RebuildConfig()
        self.catalog = catalog or PermissiveCatalog()
        self.metrics = metrics
        self.clock = clock or current_time_millis
        self.calculator = RepairWindowCalculator.from_config(self.config)

        self._guard = threading.Lock()
        self._batches: Dict[str, int] = {}
        self._gauged_tables: Set[str] = set()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.debug("Initialized ReconciliationScheduler")

    # Lifecycle

    def start(self) -> bool:
        """
        Start the periodic rebuild thread.

        Returns:
            False if rebuilding is disabled by configuration or a stopped
            thread is still finishing its last cycle, True otherwise
        """
        if not self.config.rebuild_enabled:
            logger.info("Failure index rebuild is skipped by configuration")
            return False

        if self._thread is not None and self._thread.is_alive():
            if self._stop_event.is_set():
                logger.warning("Previous rebuild thread is still stopping, not starting a new one")
                return False
            logger.warning("Rebuild scheduler already running")
            return True

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="index-rebuild-scheduler",
            daemon=True
        )
        self._thread.start()
        logger.info(
            f"Rebuild scheduler started: period={self.config.cycle_period_ms}ms, "
            f"batch_size={self.config.batch_size_ms}ms, "
            f"max_batches={self.config.max_batches_per_table}"
        )
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop scheduling further cycles.

        A cycle already in progress runs to completion; this waits for it up to
        `timeout` seconds.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Rebuild cycle still running after stop timeout")
            else:
                self._thread = None
        logger.info("Rebuild scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        # wait out clock skew between hosts before trusting local time
        initial_wait = (self.config.clock_skew_interval_ms + self.config.initial_delay_ms) / 1000.0
        if self._stop_event.wait(initial_wait):
            return

        period = self.config.cycle_period_ms / 1000.0
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduled index rebuild cycle failed")
            if self._stop_event.wait(period):
                break

    # Batch progress

    def batches_executed(self, table: str) -> Optional[int]:
        """Bounded batches replayed for a table since its divergence began."""
        return self._batches.get(table)

    def reset_batches(self, table: str) -> None:
        self._batches.pop(table, None)

    # Cycle

    def run_once(self) -> CycleReport:
        """
        Run one rebuild cycle.

        Returns:
            CycleReport; skipped=True if another cycle was already running
        """
        if not self._guard.acquire(blocking=False):
            logger.debug("New rebuild cycle skipped as there is already one running")
            report = CycleReport(skipped=True)
            self._record_cycle(report)
            return report

        try:
            with CycleContext() as cycle_id:
                report = CycleReport(
                    cycle_id=cycle_id,
                    started_at=datetime.now(timezone.utc).isoformat()
                )
                start = time.monotonic()
                try:
                    self._run_cycle(report)
                except LedgerError as e:
                    logger.warning(f"Rebuild cycle aborted, ledger unavailable: {e}")
                    report.error = str(e)
                except Exception as e:
                    logger.exception("Rebuild cycle failed")
                    report.error = str(e)
                report.duration_seconds = time.monotonic() - start
                self._record_cycle(report)
                return report
        finally:
            self._guard.release()

    def _run_cycle(self, report: CycleReport) -> None:
        groups = self._collect_groups()
        for table in self._gauged_tables - set(groups):
            self._clear_divergence(table)

        if not groups:
            logger.debug("No diverged indexes found")
            return

        for table, indexes in groups.items():
            outcome = TableOutcome(
                table=table,
                indexes=[index.name for index in indexes],
                outcome="pending"
            )
            report.tables.append(outcome)
            try:
                self._reconcile_table(table, indexes, outcome, report)
            except Exception as e:
                logger.error(
                    f"Unable to rebuild {table} indexes {outcome.indexes}: {e}",
                    exc_info=True,
                    extra={"table": table}
                )
                outcome.outcome = "failed"
                outcome.error = str(e)

            if outcome.outcome == "failed":
                report.failed_tables += 1

    def _collect_groups(self) -> "OrderedDict[str, List[IndexDescriptor]]":
        groups: "OrderedDict[str, List[IndexDescriptor]]" = OrderedDict()

        for index in self.ledger.list_diverged():
            if not index.is_diverged:
                continue
            if not self.catalog.resolve(index):
                logger.debug(f"Index {index.name} no longer registered on {index.data_table}, skipping")
                continue
            if not self.catalog.is_available(index):
                logger.debug(
                    f"Index rebuild skipped because index table {index.name} is not fully available"
                )
                continue

            logger.debug(
                f"Found {index.state.value} index {index.name} on data table {index.data_table} "
                f"which diverged at {index.marker}"
            )
            groups.setdefault(index.data_table, []).append(index)

        return groups

    def _reconcile_table(
        self,
        table: str,
        indexes: List[IndexDescriptor],
        outcome: TableOutcome,
        report: CycleReport
    ) -> None:
        indexes = self._unblock_writes(table, indexes, outcome, report)
        if indexes is None:
            return

        now = self.clock()
        decision = self.calculator.compute(indexes, self._batches.get(table), now)
        outcome.decision = decision

        if decision.mixed_causes and self.metrics:
            self.metrics.record_mixed_causes(table)
        if self.metrics:
            self.metrics.update_divergence(table, len(indexes), (now - decision.earliest) / 1000.0)
            self._gauged_tables.add(table)

        if decision.is_abandon:
            self._abandon(table, indexes, decision, outcome, report)
        else:
            self._replay(table, indexes, decision, outcome, report)

    def _unblock_writes(
        self,
        table: str,
        indexes: List[IndexDescriptor],
        outcome: TableOutcome,
        report: CycleReport
    ) -> Optional[List[IndexDescriptor]]:
        """
        Move DISABLED indexes to INACTIVE.

        Repair cannot run while writes are blocked, and DISABLED cannot go straight
        to ACTIVE. Returns the updated group, or None if the table must be skipped.
        """
        updated = []
        for index in indexes:
            if index.state is not IndexState.DISABLED:
                updated.append(index)
                continue

            try:
                applied = self.ledger.compare_and_set_state(
                    index.name,
                    IndexState.DISABLED,
                    IndexState.INACTIVE,
                    index.marker,
                    expected_marker=index.marker
                )
            except (LedgerError, InvalidStateTransitionError) as e:
                logger.warning(
                    f"Unable to move index {index.name} from DISABLED to INACTIVE, "
                    f"skipping {table} this cycle: {e}",
                    extra={"table": table, "index": index.name}
                )
                outcome.outcome = "failed"
                outcome.error = str(e)
                return None

            if not applied:
                self._conflict(table, index, outcome, report)
                outcome.outcome = "conflict"
                return None

            logger.info(
                f"Index {index.name} moved from DISABLED to INACTIVE to allow incremental maintenance",
                extra={"table": table, "index": index.name}
            )
            self._transition(IndexState.DISABLED, IndexState.INACTIVE)
            updated.append(index.with_state(IndexState.INACTIVE))

        return updated

    def _abandon(
        self,
        table: str,
        indexes: List[IndexDescriptor],
        decision: Decision,
        outcome: TableOutcome,
        report: CycleReport
    ) -> None:
        outcome.outcome = "abandoned"
        abandoned = 0

        for index in indexes:
            try:
                applied = self.ledger.compare_and_set_state(
                    index.name,
                    index.state,
                    IndexState.DISABLED,
                    DivergenceMarker.clear(),
                    expected_marker=index.marker
                )
            except (LedgerError, InvalidStateTransitionError) as e:
                logger.error(f"Unable to mark index {index.name} as disabled: {e}")
                outcome.error = str(e)
                continue

            if not applied:
                self._conflict(table, index, outcome, report)
                continue

            abandoned += 1
            self._transition(index.state, IndexState.DISABLED)
            logger.error(
                f"Unable to rebuild index {index.name}. Won't attempt again since its divergence "
                f"marker {index.marker} is older than current time by more than "
                f"{self.config.abandon_threshold_ms} milliseconds. "
                f"Manual intervention needed to re-build the index",
                extra={"table": table, "index": index.name, "decision": "abandon"}
            )

        self.reset_batches(table)
        report.abandoned += abandoned
        if not abandoned:
            outcome.outcome = "failed" if outcome.error else "conflict"
            return

        self._clear_divergence(table)
        if self.metrics:
            self.metrics.record_abandoned(table, abandoned)

    def _replay(
        self,
        table: str,
        indexes: List[IndexDescriptor],
        decision: Decision,
        outcome: TableOutcome,
        report: CycleReport
    ) -> None:
        window = decision.window
        names = [index.name for index in indexes]

        logger.info(
            f"Starting to partially build indexes {names} on data table {table} "
            f"with the earliest divergence timestamp {decision.earliest} window {window}",
            extra={"table": table, "window": str(window)}
        )

        try:
            rows = self.executor.replay(table, indexes, window)
        except IndexRebuildError as e:
            logger.error(
                f"Replay of {table} indexes {names} failed, will retry next cycle: {e}",
                extra={"table": table, "window": str(window)}
            )
            outcome.outcome = "failed"
            outcome.error = str(e)
            if self.metrics:
                self.metrics.record_batch(table, "failed")
            return

        outcome.rows = rows or 0
        logger.info(
            f"Number of data table rows read while rebuilding {table} is {outcome.rows}",
            extra={"table": table, "rows": outcome.rows}
        )

        if window.is_final:
            self._complete(table, indexes, outcome, report)
        else:
            self._advance(table, indexes, window.end, outcome, report)

        if self.metrics:
            self.metrics.record_batch(table, "final" if window.is_final else "partial", outcome.rows)

    def _complete(
        self,
        table: str,
        indexes: List[IndexDescriptor],
        outcome: TableOutcome,
        report: CycleReport
    ) -> None:
        logger.info(f"Rebuild completed for all inactive/disabled indexes in data table {table}")
        outcome.outcome = "completed"
        self.reset_batches(table)
        self._clear_divergence(table)

        for index in indexes:
            if not self._persist(table, index, IndexState.ACTIVE, DivergenceMarker.clear(), outcome, report):
                continue
            report.activated += 1
            logger.info(
                f"Making index {index.name} active after rebuilding",
                extra={"table": table, "index": index.name}
            )

    def _advance(
        self,
        table: str,
        indexes: List[IndexDescriptor],
        end: int,
        outcome: TableOutcome,
        report: CycleReport
    ) -> None:
        outcome.outcome = "advanced"
        advanced = 0

        for index in indexes:
            marker = index.marker.advanced_to(end)
            if not self._persist(table, index, IndexState.INACTIVE, marker, outcome, report):
                continue
            advanced += 1
            report.advanced += 1
            logger.info(
                f"During round-robin build: updated divergence marker of {index.name} to {marker}",
                extra={"table": table, "index": index.name}
            )

        # the window only counts as a batch if some marker actually moved
        if advanced:
            self._batches[table] = self._batches.get(table, 0) + 1
        else:
            outcome.outcome = "failed" if outcome.error else "conflict"

    def _persist(
        self,
        table: str,
        index: IndexDescriptor,
        new_state: IndexState,
        marker: DivergenceMarker,
        outcome: TableOutcome,
        report: CycleReport
    ) -> bool:
        try:
            applied = self.ledger.compare_and_set_state(
                index.name,
                index.state,
                new_state,
                marker,
                expected_marker=index.marker
            )
        except (LedgerError, InvalidStateTransitionError) as e:
            logger.error(
                f"Unable to update index {index.name} to {new_state.value}: {e}",
                extra={"table": table, "index": index.name}
            )
            outcome.error = str(e)
            return False

        if not applied:
            self._conflict(table, index, outcome, report)
            return False

        self._transition(index.state, new_state)
        return True

    def _conflict(
        self,
        table: str,
        index: IndexDescriptor,
        outcome: TableOutcome,
        report: CycleReport
    ) -> None:
        logger.debug(
            f"Index {index.name} changed concurrently, retrying next cycle",
            extra={"table": table, "index": index.name}
        )
        report.conflicts += 1
        if self.metrics:
            self.metrics.record_conflict(table)

    def _clear_divergence(self, table: str) -> None:
        self._gauged_tables.discard(table)
        if self.metrics:
            self.metrics.update_divergence(table, 0, 0.0)

    def _transition(self, from_state: IndexState, to_state: IndexState) -> None:
        if self.metrics:
            self.metrics.record_transition(from_state.value, to_state.value)

    def _record_cycle(self, report: CycleReport) -> None:
        if self.metrics:
            self.metrics.record_cycle(report.status, report.duration_seconds, time.time())
