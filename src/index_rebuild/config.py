"""
Configuration for the index rebuild service.

Values are read once when the service starts. Precedence, lowest first:
built-in defaults, YAML file, environment variables, explicit overrides.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

import yaml

from src.index_rebuild.errors import ConfigurationError
from src.index_rebuild.models import MAX_TIMESTAMP

logger = logging.getLogger(__name__)

ENV_VARS = {
    "rebuild_enabled": "INDEX_REBUILD_ENABLED",
    "batch_size_ms": "INDEX_REBUILD_BATCH_SIZE_MS",
    "max_batches_per_table": "INDEX_REBUILD_MAX_BATCHES",
    "overlap_ms": "INDEX_REBUILD_OVERLAP_MS",
    "abandon_threshold_ms": "INDEX_REBUILD_ABANDON_THRESHOLD_MS",
    "cycle_period_ms": "INDEX_REBUILD_PERIOD_MS",
    "initial_delay_ms": "INDEX_REBUILD_INITIAL_DELAY_MS",
    "clock_skew_interval_ms": "INDEX_REBUILD_CLOCK_SKEW_MS",
    "replay_request_timeout_s": "INDEX_REBUILD_REPLAY_TIMEOUT_S",
    "replay_fetch_size": "INDEX_REBUILD_REPLAY_FETCH_SIZE",
    "replay_concurrency": "INDEX_REBUILD_REPLAY_CONCURRENCY",
    "scylla_hosts": "SCYLLA_HOSTS",
    "scylla_port": "SCYLLA_PORT",
    "ledger_keyspace": "INDEX_REBUILD_LEDGER_KEYSPACE",
    "ledger_table": "INDEX_REBUILD_LEDGER_TABLE",
    "metrics_port": "INDEX_REBUILD_METRICS_PORT",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class RebuildConfig:
    """
    Settings of the index rebuild service.

    Durations suffixed _ms are milliseconds; replay_request_timeout_s is seconds.
    The default batch size of MAX_TIMESTAMP disables batching: every repair
    replays straight to latest.
    """

    rebuild_enabled: bool = True
    batch_size_ms: int = MAX_TIMESTAMP
    max_batches_per_table: int = 10
    overlap_ms: int = 1
    abandon_threshold_ms: int = 30 * 60 * 1000
    cycle_period_ms: int = 10000
    initial_delay_ms: int = 10000
    clock_skew_interval_ms: int = 2000
    replay_request_timeout_s: float = 600.0
    replay_fetch_size: int = 5000
    replay_concurrency: int = 50
    scylla_hosts: List[str] = field(default_factory=lambda: ["localhost"])
    scylla_port: int = 9042
    ledger_keyspace: str = "index_rebuild"
    ledger_table: str = "index_ledger"
    metrics_port: int = 9090

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: If any value is out of range
        """
        errors = []

        if self.batch_size_ms <= 0:
            errors.append("batch_size_ms must be positive")
        if self.max_batches_per_table < 0:
            errors.append("max_batches_per_table must not be negative")
        if self.overlap_ms < 0:
            errors.append("overlap_ms must not be negative")
        if self.abandon_threshold_ms < 0:
            errors.append("abandon_threshold_ms must not be negative")
        if self.cycle_period_ms <= 0:
            errors.append("cycle_period_ms must be positive")
        if self.initial_delay_ms < 0:
            errors.append("initial_delay_ms must not be negative")
        if self.clock_skew_interval_ms < 0:
            errors.append("clock_skew_interval_ms must not be negative")
        if self.replay_request_timeout_s <= 0:
            errors.append("replay_request_timeout_s must be positive")
        if self.replay_fetch_size <= 0:
            errors.append("replay_fetch_size must be positive")
        if self.replay_concurrency <= 0:
            errors.append("replay_concurrency must be positive")
        if not self.scylla_hosts:
            errors.append("scylla_hosts must not be empty")
        if not 0 < self.scylla_port < 65536:
            errors.append("scylla_port must be a valid port")
        if not 0 < self.metrics_port < 65536:
            errors.append("metrics_port must be a valid port")
        if not self.ledger_keyspace or not self.ledger_table:
            errors.append("ledger_keyspace and ledger_table must be set")

        if errors:
            raise ConfigurationError("Invalid rebuild configuration: " + "; ".join(errors))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(name: str, value: Any, target: Any) -> Any:
    """Convert a raw value (string from env, or YAML scalar) to the field's type."""
    try:
        if isinstance(target, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if isinstance(target, int):
            return int(value)
        if isinstance(target, float):
            return float(value)
        if isinstance(target, list):
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            return [str(item) for item in value]
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {e}") from e


def _apply(config: RebuildConfig, values: Mapping[str, Any], source: str) -> None:
    known = {f.name for f in fields(RebuildConfig)}
    for name, value in values.items():
        if name not in known:
            raise ConfigurationError(f"Unknown configuration option {name!r} in {source}")
        if value is None:
            continue
        setattr(config, name, _coerce(name, value, getattr(config, name)))


def load_yaml(path: str) -> Dict[str, Any]:
    """Read configuration values from a YAML file."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")

    # Allow the options to live under a top-level index_rebuild key
    section = data.get("index_rebuild", data)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"index_rebuild section in {path} must contain a mapping")
    return section


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None
) -> RebuildConfig:
    """
    Build and validate the service configuration.

    Args:
        path: Optional YAML file
        env: Environment mapping (defaults to os.environ)
        overrides: Explicit values, e.g. from command line flags

    Returns:
        Validated RebuildConfig

    Raises:
        ConfigurationError: If a value cannot be parsed or is out of range
    """
    config = RebuildConfig()

    if path:
        _apply(config, load_yaml(path), path)
        logger.debug(f"Loaded configuration file: {path}")

    env = os.environ if env is None else env
    from_env = {name: env[var] for name, var in ENV_VARS.items() if var in env}
    _apply(config, from_env, "environment")

    if overrides:
        _apply(config, overrides, "overrides")

    config.validate()
    return config
