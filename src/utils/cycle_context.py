"""
Cycle Context for Index Rebuild

Every rebuild cycle gets an id that is attached to all log records emitted
while it runs, so that the decisions of one cycle can be followed across
modules and threads of the service.
"""

import contextvars
import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

_cycle_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'rebuild_cycle_id',
    default=None
)


def new_cycle_id() -> str:
    """Return a fresh UUID4 cycle id."""
    return str(uuid.uuid4())


def current_cycle_id() -> Optional[str]:
    """Return the id of the cycle running in this context, if any."""
    return _cycle_id.get()


class CycleContext:
    """
    Context manager binding a cycle id for the duration of one cycle.

    Nested contexts restore the outer id on exit.
    """

    def __init__(self, cycle_id: Optional[str] = None):
        self.cycle_id = cycle_id or new_cycle_id()
        self._token = None

    def __enter__(self) -> str:
        self._token = _cycle_id.set(self.cycle_id)
        logger.debug(f"Entered rebuild cycle {self.cycle_id}")
        return self.cycle_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _cycle_id.reset(self._token)
        self._token = None


class CycleIdFilter(logging.Filter):
    """Logging filter stamping records with the current cycle id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle_id = current_cycle_id() or "N/A"
        return True
