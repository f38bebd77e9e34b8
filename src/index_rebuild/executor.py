"""
Replay Executor

Re-derives index rows from data table rows written inside a repair window and
writes them to the index tables. Replays re-derive rather than accumulate, so
running the same window twice leaves the indexes unchanged.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Sequence

from cassandra import DriverException
from cassandra.cluster import NoHostAvailable
from cassandra.concurrent import execute_concurrent_with_args
from cassandra.metadata import protect_name
from cassandra.query import SimpleStatement

from src.index_rebuild.errors import ReplayError
from src.index_rebuild.models import IndexDescriptor, RepairWindow, split_qualified_name

logger = logging.getLogger(__name__)


class ReplayExecutor(ABC):
    """Interface of the subsystem that replays data table history into indexes."""

    @abstractmethod
    def replay(
        self,
        data_table: str,
        indexes: Sequence[IndexDescriptor],
        window: RepairWindow
    ) -> int:
        """
        Replay data table rows written inside the window into the given indexes.

        Args:
            data_table: Qualified data table name
            indexes: Indexes of that table to rebuild
            window: Time range of data table writes to replay

        Returns:
            Number of data table rows read

        Raises:
            ReplayError: If the replay could not be completed
        """


class CqlReplayExecutor(ReplayExecutor):
    """
    Replays through CQL.

    Pages through the data table selecting the primary key, the indexed columns
    and WRITETIME of the indexed regular columns. A row belongs to the window
    when its newest indexed write falls inside it. Each index row is written with
    the data row's original write timestamp so that newer index writes win.

    Index entries made stale by the replayed writes are not deleted.
    """

    def __init__(
        self,
        session,
        fetch_size: int = 5000,
        concurrency: int = 50,
        request_timeout: float = 600.0
    ):
        """
        Args:
            session: cassandra-driver Session
            fetch_size: Page size of the data table scan; also the write batch size
            concurrency: In-flight index writes
            request_timeout: Per-request timeout in seconds
        """
        self.session = session
        self.fetch_size = fetch_size
        self.concurrency = concurrency
        self.request_timeout = request_timeout
        self._inserts = {}

    def replay(
        self,
        data_table: str,
        indexes: Sequence[IndexDescriptor],
        window: RepairWindow
    ) -> int:
        if not indexes:
            return 0

        table_meta = self._table_metadata(data_table)
        primary_key = [column.name for column in table_meta.primary_key]
        index_columns = self._index_row_columns(indexes, table_meta, primary_key)

        regular = []
        for columns in index_columns.values():
            for column in columns:
                if column not in primary_key and column not in regular:
                    regular.append(column)

        selected = primary_key + regular
        selectors = [protect_name(c) for c in selected]
        selectors += [f"WRITETIME({protect_name(c)})" for c in regular]
        keyspace, table = split_qualified_name(data_table)
        query = f"SELECT {', '.join(selectors)} FROM {protect_name(keyspace)}.{protect_name(table)}"

        inserts = {
            name: self._prepare_insert(name, columns, timestamped=bool(regular))
            for name, columns in index_columns.items()
        }
        pending: Dict[str, List[tuple]] = {name: [] for name in index_columns}

        logger.info(
            f"Replaying {data_table} window {window} into indexes {list(index_columns)}"
        )

        rows_read = 0
        try:
            result = self.session.execute(
                SimpleStatement(query, fetch_size=self.fetch_size),
                timeout=self.request_timeout
            )
            for row in result:
                values = dict(zip(selected, row[:len(selected)]))
                write_time = None
                if regular:
                    write_times = [wt for wt in row[len(selected):] if wt is not None]
                    if not write_times:
                        continue
                    write_time = max(write_times)
                    # WRITETIME is in microseconds
                    if not window.contains(write_time // 1000):
                        continue

                rows_read += 1
                for name, columns in index_columns.items():
                    params = [values[c] for c in columns]
                    if any(v is None for v in params):
                        continue
                    if write_time is not None:
                        params.append(write_time)
                    pending[name].append(tuple(params))
                    if len(pending[name]) >= self.fetch_size:
                        self._flush(inserts[name], pending[name])
                        pending[name] = []

            for name, params in pending.items():
                if params:
                    self._flush(inserts[name], params)

        except (DriverException, NoHostAvailable) as e:
            raise ReplayError(f"Replay of {data_table} window {window} failed: {e}") from e

        logger.info(f"Replay of {data_table} read {rows_read} data table rows")
        return rows_read

    def _table_metadata(self, data_table: str):
        keyspace, table = split_qualified_name(data_table)
        keyspace_meta = self.session.cluster.metadata.keyspaces.get(keyspace)
        if keyspace_meta is None or table not in keyspace_meta.tables:
            raise ReplayError(f"Data table not found: {data_table}")
        return keyspace_meta.tables[table]

    def _index_row_columns(self, indexes, table_meta, primary_key) -> Dict[str, List[str]]:
        """Columns of each index row: indexed columns, then the data row key."""
        index_columns = {}
        for index in indexes:
            if not index.columns:
                raise ReplayError(f"Index {index.name} has no indexed columns recorded")

            missing = [c for c in index.columns if c not in table_meta.columns]
            if missing:
                raise ReplayError(
                    f"Index {index.name} references unknown columns {missing} of {index.data_table}"
                )

            columns = list(index.columns)
            columns += [c for c in primary_key if c not in columns]
            index_columns[index.name] = columns
        return index_columns

    def _prepare_insert(self, index_name: str, columns: List[str], timestamped: bool):
        key = (index_name, tuple(columns), timestamped)
        if key not in self._inserts:
            keyspace, table = split_qualified_name(index_name)
            query = (
                f"INSERT INTO {protect_name(keyspace)}.{protect_name(table)} "
                f"({', '.join(protect_name(c) for c in columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})"
            )
            if timestamped:
                query += " USING TIMESTAMP ?"
            try:
                self._inserts[key] = self.session.prepare(query)
            except (DriverException, NoHostAvailable) as e:
                raise ReplayError(f"Cannot prepare index write for {index_name}: {e}") from e
        return self._inserts[key]

    def _flush(self, statement, params: List[tuple]) -> None:
        execute_concurrent_with_args(
            self.session,
            statement,
            params,
            concurrency=self.concurrency,
            raise_on_first_error=True
        )
        logger.debug(f"Wrote {len(params)} index rows")
