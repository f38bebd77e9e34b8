"""
Data Model for Index Rebuild

Describes secondary indexes as recorded in the divergence ledger, the marker
that records when (and why) an index fell behind its data table, and the
replay windows derived from those markers.

Timestamps are integer milliseconds since the epoch. MAX_TIMESTAMP stands for
"latest" and is the largest value the store's signed 64-bit cells can hold.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple


MAX_TIMESTAMP = 2 ** 63 - 1


class IndexState(Enum):
    """Lifecycle state of a secondary index."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DISABLED = "DISABLED"


class DivergenceCause(Enum):
    """
    Why an index diverged from its data table.

    BLOCKING: writes to the data table are rejected until the index is repaired.
    STALE_SERVING: writes flow through but the index is known to be stale.
    """
    BLOCKING = "BLOCKING"
    STALE_SERVING = "STALE_SERVING"


@dataclass(frozen=True)
class DivergenceMarker:
    """
    Point in time at which an index diverged, paired with the cause.

    The ledger persists the marker as one signed bigint: the absolute value is
    the timestamp, a negative sign means BLOCKING and a positive sign means
    STALE_SERVING. Zero means the index is not diverged.
    """

    timestamp: int = 0
    cause: Optional[DivergenceCause] = None

    def __post_init__(self):
        if self.timestamp < 0:
            raise ValueError(f"Divergence timestamp must be unsigned, got {self.timestamp}")
        if self.timestamp == 0 and self.cause is not None:
            raise ValueError("A clear divergence marker cannot carry a cause")
        if self.timestamp != 0 and self.cause is None:
            raise ValueError("A divergence marker needs a cause")

    @classmethod
    def clear(cls) -> "DivergenceMarker":
        return cls()

    @classmethod
    def from_signed(cls, value: Optional[int]) -> "DivergenceMarker":
        """Decode the persisted signed representation."""
        if not value:
            return cls()
        if value < 0:
            return cls(timestamp=-value, cause=DivergenceCause.BLOCKING)
        return cls(timestamp=value, cause=DivergenceCause.STALE_SERVING)

    def to_signed(self) -> int:
        """Encode for persistence."""
        if self.cause is DivergenceCause.BLOCKING:
            return -self.timestamp
        return self.timestamp

    @property
    def is_diverged(self) -> bool:
        return self.timestamp != 0

    def advanced_to(self, timestamp: int) -> "DivergenceMarker":
        """Return a marker at a later timestamp with the same cause."""
        if not self.is_diverged:
            raise ValueError("Cannot advance a clear divergence marker")
        return DivergenceMarker(timestamp=timestamp, cause=self.cause)

    def __str__(self) -> str:
        if not self.is_diverged:
            return "0"
        return f"{self.timestamp}({self.cause.value})"


@dataclass(frozen=True)
class IndexDescriptor:
    """
    One secondary index and its ledger state.

    Attributes:
        name: Qualified name (keyspace.table) of the index table
        data_table: Qualified name of the data table it indexes
        state: Lifecycle state
        marker: Divergence marker
        columns: Indexed columns of the data table, in index key order
    """

    name: str
    data_table: str
    state: IndexState = IndexState.ACTIVE
    marker: DivergenceMarker = field(default_factory=DivergenceMarker)
    columns: Tuple[str, ...] = ()

    @property
    def is_diverged(self) -> bool:
        return self.marker.is_diverged

    def with_state(
        self,
        state: IndexState,
        marker: Optional[DivergenceMarker] = None
    ) -> "IndexDescriptor":
        """Return a copy with a new state and, optionally, a new marker."""
        if marker is None:
            return replace(self, state=state)
        return replace(self, state=state, marker=marker)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "data_table": self.data_table,
            "state": self.state.value,
            "divergence_timestamp": self.marker.timestamp,
            "divergence_cause": self.marker.cause.value if self.marker.cause else None,
            "columns": list(self.columns),
        }


@dataclass(frozen=True)
class RepairWindow:
    """
    Range of data table history to replay.

    When is_final is set the window extends to "latest": the replay has no upper
    bound and the table is caught up once it succeeds. `end` then holds the time
    the decision was made.
    """

    start: int
    end: int
    is_final: bool

    def __post_init__(self):
        if self.start < 0:
            raise ValueError(f"Window start must not be negative, got {self.start}")
        if self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    @property
    def upper_bound(self) -> Optional[int]:
        """Exclusive upper bound for replay, or None when replaying to latest."""
        return None if self.is_final else self.end

    def contains(self, timestamp: int) -> bool:
        if timestamp < self.start:
            return False
        return self.is_final or timestamp < self.end

    def __str__(self) -> str:
        end = "LATEST" if self.is_final else str(self.end)
        return f"[{self.start}, {end})"


def split_qualified_name(name: str) -> Tuple[str, str]:
    """
    Split a keyspace-qualified table name.

    Args:
        name: Name of the form "keyspace.table"

    Returns:
        (keyspace, table)

    Raises:
        ValueError: If the name is not qualified
    """
    keyspace, sep, table = name.partition(".")
    if not sep or not keyspace or not table or "." in table:
        raise ValueError(f"Expected a qualified keyspace.table name, got: {name!r}")
    return keyspace, table
