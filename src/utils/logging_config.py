"""
Logging setup for the index rebuild service.

Console output is human readable. With JSON logging enabled, every record is
also emitted as one JSON object carrying the cycle id and the table, index and
window fields passed through `extra`.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from src.utils.cycle_context import CycleIdFilter

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s - %(message)s'
CONSOLE_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

EXTRA_FIELDS = ('table', 'index', 'window', 'decision', 'rows', 'duration')


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with cycle id support."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'cycle_id': getattr(record, 'cycle_id', 'N/A'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(verbose: bool = False, json_output: Optional[bool] = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_output: Emit JSON lines; defaults to the JSON_LOGGING env var

    Returns:
        The configured root logger
    """
    if json_output is None:
        json_output = os.getenv('JSON_LOGGING', 'false').lower() == 'true'

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATE_FORMAT))
    handler.addFilter(CycleIdFilter())
    root.addHandler(handler)

    # the driver is chatty at DEBUG
    logging.getLogger('cassandra').setLevel(logging.WARNING)

    return root
