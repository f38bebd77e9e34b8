"""
Repair Window Calculator

Decides, for the diverged indexes of one data table, whether repair is still
feasible and which slice of data table history the next replay should cover.
Pure computation: no clock reads, no ledger access.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from src.index_rebuild.models import (
    MAX_TIMESTAMP,
    DivergenceCause,
    IndexDescriptor,
    RepairWindow,
)

logger = logging.getLogger(__name__)


class DecisionAction(Enum):
    ABANDON = "ABANDON"
    REPLAY = "REPLAY"


@dataclass(frozen=True)
class Decision:
    """
    Outcome of a window computation.

    Attributes:
        action: ABANDON or REPLAY
        earliest: Earliest divergence timestamp across the group
        cause: Cause of the index holding the earliest timestamp
        window: Replay window (None when abandoning)
        mixed_causes: True when indexes sharing the earliest timestamp
            disagree on cause
    """

    action: DecisionAction
    earliest: int
    cause: DivergenceCause
    window: Optional[RepairWindow] = None
    mixed_causes: bool = False

    @property
    def is_abandon(self) -> bool:
        return self.action is DecisionAction.ABANDON

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "earliest": self.earliest,
            "cause": self.cause.value,
            "window": None if self.window is None else {
                "start": self.window.start,
                "end": self.window.end,
                "is_final": self.window.is_final,
            },
            "mixed_causes": self.mixed_causes,
        }


def compute_window(
    diverged: Sequence[IndexDescriptor],
    batches_so_far: Optional[int],
    now: int,
    overlap: int,
    batch_size: int,
    max_batches: int,
    abandon_threshold: int
) -> Decision:
    """
    Compute the repair decision for the diverged indexes of one data table.

    Args:
        diverged: Indexes of a single data table; clear markers are ignored
        batches_so_far: Bounded batches already replayed for this table, or None
        now: Current time in milliseconds
        overlap: Safety margin replayed before the earliest marker
        batch_size: Width of a bounded replay window
        max_batches: Bounded batches allowed before forcing a catch-up to latest
        abandon_threshold: Maximum age of a divergence that is still repaired

    Returns:
        Decision to abandon or to replay a window

    Raises:
        ValueError: If no index in the group is diverged
    """
    earliest = None
    cause = None
    mixed_causes = False

    for index in diverged:
        marker = index.marker
        if not marker.is_diverged:
            continue
        if earliest is None or marker.timestamp < earliest:
            earliest = marker.timestamp
            cause = marker.cause
            mixed_causes = False
        elif marker.timestamp == earliest and marker.cause is not cause:
            mixed_causes = True

    if earliest is None:
        raise ValueError("compute_window needs at least one diverged index")

    if mixed_causes:
        names = [index.name for index in diverged]
        logger.warning(
            f"Found unexpected mix of divergence causes at timestamp {earliest} "
            f"for indexes {names}; proceeding with {cause.value}"
        )

    if now - earliest > abandon_threshold:
        return Decision(
            action=DecisionAction.ABANDON,
            earliest=earliest,
            cause=cause,
            mixed_causes=mixed_causes
        )

    start = max(0, earliest - overlap)
    candidate_end = start + batch_size
    exhausted = batches_so_far is not None and batches_so_far >= max_batches

    if candidate_end > MAX_TIMESTAMP or candidate_end > now or exhausted:
        # A marker ahead of the local clock (skew) still yields a valid window.
        window = RepairWindow(start=start, end=max(now, start), is_final=True)
    else:
        window = RepairWindow(start=start, end=candidate_end, is_final=False)

    return Decision(
        action=DecisionAction.REPLAY,
        earliest=earliest,
        cause=cause,
        window=window,
        mixed_causes=mixed_causes
    )


class RepairWindowCalculator:
    """Binds the configured tuning parameters to compute_window."""

    def __init__(
        self,
        overlap: int,
        batch_size: int,
        max_batches: int,
        abandon_threshold: int
    ):
        if overlap < 0:
            raise ValueError(f"overlap must not be negative, got {overlap}")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if max_batches < 0:
            raise ValueError(f"max_batches must not be negative, got {max_batches}")
        if abandon_threshold < 0:
            raise ValueError(f"abandon_threshold must not be negative, got {abandon_threshold}")

        self.overlap = overlap
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.abandon_threshold = abandon_threshold

    @classmethod
    def from_config(cls, config) -> "RepairWindowCalculator":
        return cls(
            overlap=config.overlap_ms,
            batch_size=config.batch_size_ms,
            max_batches=config.max_batches_per_table,
            abandon_threshold=config.abandon_threshold_ms
        )

    def compute(
        self,
        diverged: Sequence[IndexDescriptor],
        batches_so_far: Optional[int],
        now: int
    ) -> Decision:
        return compute_window(
            diverged,
            batches_so_far=batches_so_far,
            now=now,
            overlap=self.overlap,
            batch_size=self.batch_size,
            max_batches=self.max_batches,
            abandon_threshold=self.abandon_threshold
        )
