"""
Exception hierarchy for the index rebuild service.

Ledger conflicts are not exceptions: compare-and-set returns False when another
writer got there first, and the scheduler simply retries next cycle.
"""


class IndexRebuildError(Exception):
    """Base class for index rebuild errors."""
    pass


class ConfigurationError(IndexRebuildError):
    """Raised when the service cannot be configured or started."""
    pass


class LedgerError(IndexRebuildError):
    """Raised when the divergence ledger cannot be read or written."""
    pass


class InvalidStateTransitionError(IndexRebuildError):
    """Raised when a ledger write would break the index lifecycle rules."""

    def __init__(self, index_name: str, current_state, requested_state, message: str = ""):
        self.index_name = index_name
        self.current_state = current_state
        self.requested_state = requested_state
        detail = f" {message}" if message else ""
        super().__init__(
            f"Invalid index state transition for {index_name}: "
            f"currentState={current_state}, requestedState={requested_state}.{detail}"
        )


class ReplayError(IndexRebuildError):
    """Raised when replaying data table history into indexes fails."""
    pass
