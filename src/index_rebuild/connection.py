"""ScyllaDB connection setup for the rebuild service."""

import logging
from typing import Dict, Optional, Tuple

from cassandra.auth import PlainTextAuthProvider
from cassandra.cluster import Cluster, NoHostAvailable

from src.index_rebuild.config import RebuildConfig
from src.index_rebuild.errors import ConfigurationError

logger = logging.getLogger(__name__)


def connect_scylla(
    config: RebuildConfig,
    credentials: Optional[Dict[str, str]] = None
) -> Tuple[Cluster, object]:
    """
    Connect to ScyllaDB.

    Args:
        config: Service configuration
        credentials: Optional dict with username and password

    Returns:
        (cluster, session); callers shut the cluster down

    Raises:
        ConfigurationError: If no host can be reached at startup
    """
    auth_provider = None
    if credentials and credentials.get("username"):
        auth_provider = PlainTextAuthProvider(
            username=credentials["username"],
            password=credentials.get("password", "")
        )

    logger.info(f"Connecting to ScyllaDB at {config.scylla_hosts}:{config.scylla_port}")
    cluster = Cluster(
        config.scylla_hosts,
        port=config.scylla_port,
        auth_provider=auth_provider
    )

    try:
        session = cluster.connect()
    except NoHostAvailable as e:
        cluster.shutdown()
        raise ConfigurationError(f"Cannot connect to ScyllaDB: {e}") from e

    session.default_timeout = config.replay_request_timeout_s
    return cluster, session
