"""
Divergence Ledger

Persisted lifecycle state and divergence marker of every secondary index. The
external write path raises markers when index maintenance fails; the rebuild
scheduler advances or clears them. All updates are single-row compare-and-set
operations keyed by index name; there are no multi-row transactions.

Two implementations are provided:
- CassandraLedger: rows in a CQL table, updated with lightweight transactions
- InMemoryLedger: process-local dictionary, used for embedding and tests
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from cassandra import DriverException
from cassandra.cluster import NoHostAvailable

from src.index_rebuild.errors import InvalidStateTransitionError, LedgerError
from src.index_rebuild.models import DivergenceMarker, IndexDescriptor, IndexState

logger = logging.getLogger(__name__)

# (from, to) pairs the rebuild path may persist
ALLOWED_TRANSITIONS = {
    (IndexState.DISABLED, IndexState.INACTIVE),
    (IndexState.INACTIVE, IndexState.INACTIVE),
    (IndexState.INACTIVE, IndexState.ACTIVE),
    (IndexState.ACTIVE, IndexState.ACTIVE),
    (IndexState.ACTIVE, IndexState.INACTIVE),
    (IndexState.ACTIVE, IndexState.DISABLED),
    (IndexState.INACTIVE, IndexState.DISABLED),
    (IndexState.DISABLED, IndexState.DISABLED),
}


def validate_transition(
    index_name: str,
    current_state: IndexState,
    new_state: IndexState,
    new_marker: DivergenceMarker
) -> None:
    """
    Check a requested transition against the index lifecycle.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if (current_state, new_state) not in ALLOWED_TRANSITIONS:
        raise InvalidStateTransitionError(index_name, current_state.value, new_state.value)

    if new_state is IndexState.ACTIVE and new_marker.is_diverged:
        raise InvalidStateTransitionError(
            index_name,
            current_state.value,
            new_state.value,
            "Divergence marker has to be 0 when marking an index as active"
        )

    if new_state is IndexState.DISABLED and current_state is not IndexState.DISABLED \
            and new_marker.is_diverged:
        raise InvalidStateTransitionError(
            index_name,
            current_state.value,
            new_state.value,
            "Only the external write path may disable an index with a divergence marker"
        )

    if current_state is IndexState.INACTIVE and new_state is IndexState.INACTIVE \
            and not new_marker.is_diverged:
        raise InvalidStateTransitionError(
            index_name,
            current_state.value,
            new_state.value,
            "An inactive index keeps a divergence marker until it is made active"
        )


class DivergenceLedger(ABC):
    """Access layer for the divergence ledger."""

    @abstractmethod
    def list_indexes(self) -> List[IndexDescriptor]:
        """Return every index recorded in the ledger."""

    def list_diverged(self) -> List[IndexDescriptor]:
        """Return the indexes whose divergence marker is non-zero."""
        return [index for index in self.list_indexes() if index.is_diverged]

    @abstractmethod
    def get_index(self, name: str) -> Optional[IndexDescriptor]:
        """Return one index, or None if it is not recorded."""

    @abstractmethod
    def register_index(self, descriptor: IndexDescriptor) -> bool:
        """
        Provision an index as ACTIVE with a clear marker.

        Returns:
            True if the index was added, False if it already existed
        """

    def mark_diverged(
        self,
        name: str,
        state: IndexState,
        marker: DivergenceMarker
    ) -> None:
        """
        Record that an index diverged from its data table.

        Entry point of the external write path, and of operators re-arming an
        index whose automatic repair was abandoned.

        Raises:
            InvalidStateTransitionError: If state is ACTIVE or the marker is clear
            LedgerError: If the index does not exist or the write fails
        """
        if state is IndexState.ACTIVE or not marker.is_diverged:
            raise InvalidStateTransitionError(
                name,
                "*",
                state.value,
                "A diverged index must be INACTIVE or DISABLED with a non-zero marker"
            )
        self._write_divergence(name, state, marker)
        logger.info(f"Index {name} marked {state.value} with divergence marker {marker}")

    def compare_and_set_state(
        self,
        name: str,
        expected_state: IndexState,
        new_state: IndexState,
        new_marker: DivergenceMarker,
        expected_marker: Optional[DivergenceMarker] = None
    ) -> bool:
        """
        Atomically update one index if it is still in the expected state.

        Args:
            name: Index name
            expected_state: State the index must currently be in
            new_state: State to write
            new_marker: Divergence marker to write
            expected_marker: If given, the marker must also be unchanged

        Returns:
            True if applied, False on conflict (concurrent change or missing row)

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
            LedgerError: If the ledger cannot be reached
        """
        validate_transition(name, expected_state, new_state, new_marker)
        applied = self._compare_and_set(name, expected_state, new_state, new_marker, expected_marker)

        if applied:
            logger.debug(
                f"Index {name}: {expected_state.value} -> {new_state.value}, marker={new_marker}"
            )
        else:
            logger.debug(
                f"Index {name}: conflict updating {expected_state.value} -> {new_state.value}"
            )
        return applied

    @abstractmethod
    def _write_divergence(self, name: str, state: IndexState, marker: DivergenceMarker) -> None:
        pass

    @abstractmethod
    def _compare_and_set(
        self,
        name: str,
        expected_state: IndexState,
        new_state: IndexState,
        new_marker: DivergenceMarker,
        expected_marker: Optional[DivergenceMarker]
    ) -> bool:
        pass


class InMemoryLedger(DivergenceLedger):
    """Thread-safe, process-local ledger."""

    def __init__(self):
        self._indexes: Dict[str, IndexDescriptor] = {}
        self._lock = threading.Lock()

    def list_indexes(self) -> List[IndexDescriptor]:
        with self._lock:
            return list(self._indexes.values())

    def get_index(self, name: str) -> Optional[IndexDescriptor]:
        with self._lock:
            return self._indexes.get(name)

    def register_index(self, descriptor: IndexDescriptor) -> bool:
        with self._lock:
            if descriptor.name in self._indexes:
                return False
            self._indexes[descriptor.name] = descriptor.with_state(
                IndexState.ACTIVE, DivergenceMarker.clear()
            )
        return True

    def put(self, descriptor: IndexDescriptor) -> None:
        """Store a descriptor as-is, bypassing lifecycle checks."""
        with self._lock:
            self._indexes[descriptor.name] = descriptor

    def _write_divergence(self, name: str, state: IndexState, marker: DivergenceMarker) -> None:
        with self._lock:
            current = self._indexes.get(name)
            if current is None:
                raise LedgerError(f"Index not found in ledger: {name}")
            self._indexes[name] = current.with_state(state, marker)

    def _compare_and_set(
        self,
        name: str,
        expected_state: IndexState,
        new_state: IndexState,
        new_marker: DivergenceMarker,
        expected_marker: Optional[DivergenceMarker]
    ) -> bool:
        with self._lock:
            current = self._indexes.get(name)
            if current is None or current.state is not expected_state:
                return False
            if expected_marker is not None and current.marker != expected_marker:
                return False
            self._indexes[name] = current.with_state(new_state, new_marker)
            return True


class CassandraLedger(DivergenceLedger):
    """
    Ledger stored in a ScyllaDB / Cassandra table.

    The marker column holds the signed representation (negative = blocking) so
    that the external write path can keep writing a single bigint.
    """

    def __init__(self, session, keyspace: str = "index_rebuild", table: str = "index_ledger"):
        """
        Initialize the ledger.

        Args:
            session: cassandra-driver Session
            keyspace: Keyspace holding the ledger table
            table: Ledger table name
        """
        self.session = session
        self.keyspace = keyspace
        self.table = table
        self._statements = {}
        logger.debug(f"Initialized CassandraLedger on {self.table_ref}")

    @property
    def table_ref(self) -> str:
        return f"{self.keyspace}.{self.table}"

    def ensure_schema(self, replication_factor: int = 3) -> None:
        """Create the ledger keyspace and table if they do not exist."""
        self._execute(
            f"CREATE KEYSPACE IF NOT EXISTS {self.keyspace} WITH replication = "
            f"{{'class': 'SimpleStrategy', 'replication_factor': {int(replication_factor)}}}"
        )
        self._execute(
            f"CREATE TABLE IF NOT EXISTS {self.table_ref} ("
            "index_name text PRIMARY KEY, "
            "data_table text, "
            "index_state text, "
            "disable_timestamp bigint, "
            "indexed_columns list<text>, "
            "updated_at timestamp)"
        )
        logger.info(f"Ledger schema ready: {self.table_ref}")

    def list_indexes(self) -> List[IndexDescriptor]:
        rows = self._execute(
            f"SELECT index_name, data_table, index_state, disable_timestamp, indexed_columns "
            f"FROM {self.table_ref}"
        )
        indexes = []
        for row in rows:
            descriptor = self._row_to_descriptor(row)
            if descriptor is not None:
                indexes.append(descriptor)
        return indexes

    def get_index(self, name: str) -> Optional[IndexDescriptor]:
        statement = self._prepare(
            "get",
            f"SELECT index_name, data_table, index_state, disable_timestamp, indexed_columns "
            f"FROM {self.table_ref} WHERE index_name = ?"
        )
        row = self._execute(statement, (name,)).one()
        if row is None:
            return None
        return self._row_to_descriptor(row)

    def register_index(self, descriptor: IndexDescriptor) -> bool:
        statement = self._prepare(
            "register",
            f"INSERT INTO {self.table_ref} "
            "(index_name, data_table, index_state, disable_timestamp, indexed_columns, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) IF NOT EXISTS"
        )
        result = self._execute(statement, (
            descriptor.name,
            descriptor.data_table,
            IndexState.ACTIVE.value,
            0,
            list(descriptor.columns),
            datetime.now(timezone.utc),
        ))
        applied = result.was_applied
        if applied:
            logger.info(f"Registered index {descriptor.name} on {descriptor.data_table}")
        return applied

    def _write_divergence(self, name: str, state: IndexState, marker: DivergenceMarker) -> None:
        statement = self._prepare(
            "mark",
            f"UPDATE {self.table_ref} SET index_state = ?, disable_timestamp = ?, updated_at = ? "
            "WHERE index_name = ? IF EXISTS"
        )
        result = self._execute(statement, (
            state.value,
            marker.to_signed(),
            datetime.now(timezone.utc),
            name,
        ))
        if not result.was_applied:
            raise LedgerError(f"Index not found in ledger: {name}")

    def _compare_and_set(
        self,
        name: str,
        expected_state: IndexState,
        new_state: IndexState,
        new_marker: DivergenceMarker,
        expected_marker: Optional[DivergenceMarker]
    ) -> bool:
        update = (
            f"UPDATE {self.table_ref} SET index_state = ?, disable_timestamp = ?, updated_at = ? "
            "WHERE index_name = ? IF index_state = ?"
        )
        params = [
            new_state.value,
            new_marker.to_signed(),
            datetime.now(timezone.utc),
            name,
            expected_state.value,
        ]

        if expected_marker is None:
            statement = self._prepare("cas", update)
        else:
            statement = self._prepare("cas_marker", update + " AND disable_timestamp = ?")
            params.append(expected_marker.to_signed())

        return self._execute(statement, tuple(params)).was_applied

    def _row_to_descriptor(self, row) -> Optional[IndexDescriptor]:
        if not row.data_table or not row.index_state:
            # data table name and state are required to rebuild
            logger.debug(f"Skipping incomplete ledger row for index {row.index_name}")
            return None

        try:
            state = IndexState(row.index_state)
        except ValueError:
            logger.warning(f"Unknown index state {row.index_state!r} for index {row.index_name}")
            return None

        return IndexDescriptor(
            name=row.index_name,
            data_table=row.data_table,
            state=state,
            marker=DivergenceMarker.from_signed(row.disable_timestamp),
            columns=tuple(row.indexed_columns or ()),
        )

    def _prepare(self, key: str, query: str):
        if key not in self._statements:
            try:
                self._statements[key] = self.session.prepare(query)
            except (DriverException, NoHostAvailable) as e:
                raise LedgerError(f"Failed to prepare ledger statement: {e}") from e
        return self._statements[key]

    def _execute(self, statement, params=None):
        try:
            return self.session.execute(statement, params)
        except (DriverException, NoHostAvailable) as e:
            logger.warning(f"Ledger operation on {self.table_ref} failed: {e}")
            raise LedgerError(f"Ledger operation failed: {e}") from e
