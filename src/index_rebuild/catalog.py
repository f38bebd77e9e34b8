"""
Schema resolution and topology health for diverged indexes.

The scheduler consults a catalog before repairing an index: indexes whose data
table or index table no longer exists are treated as already removed, and
indexes whose replicas are not all reachable are left for a later cycle.
"""

import logging

from src.index_rebuild.models import IndexDescriptor, split_qualified_name

logger = logging.getLogger(__name__)


class PermissiveCatalog:
    """Catalog that resolves every index and reports every index available."""

    def resolve(self, index: IndexDescriptor) -> bool:
        return True

    def is_available(self, index: IndexDescriptor) -> bool:
        return True


class ClusterCatalog:
    """Catalog backed by cassandra-driver cluster metadata."""

    def __init__(self, cluster):
        """
        Args:
            cluster: Connected cassandra.cluster.Cluster
        """
        self.cluster = cluster

    def table_exists(self, qualified_name: str) -> bool:
        try:
            keyspace, table = split_qualified_name(qualified_name)
        except ValueError:
            return False

        keyspace_meta = self.cluster.metadata.keyspaces.get(keyspace)
        return keyspace_meta is not None and table in keyspace_meta.tables

    def resolve(self, index: IndexDescriptor) -> bool:
        """True if both the data table and the index table are still defined."""
        if not self.table_exists(index.data_table):
            logger.debug(f"Data table {index.data_table} of index {index.name} not found")
            return False
        if not self.table_exists(index.name):
            logger.debug(f"Index table {index.name} no longer exists on {index.data_table}")
            return False
        return True

    def is_available(self, index: IndexDescriptor) -> bool:
        """True if no known host of the cluster is marked down."""
        hosts = self.cluster.metadata.all_hosts()
        if not hosts:
            return False

        down = [host for host in hosts if host.is_up is False]
        if down:
            logger.debug(
                f"Index {index.name} unavailable: {len(down)} of {len(hosts)} hosts down"
            )
            return False
        return True
