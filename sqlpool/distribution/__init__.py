"""
Distribution and storage layer
"""

from .distributor import Distributor, stable_hash, hash_distributions, bucket_rows
from .partitioning import ScanPredicate, eliminate_partitions
from .storage import (RowContainer, HeapContainer, ClusteredIndexContainer,
                      ColumnstoreContainer, RowGroupState, create_container)
from .catalog import Catalog, DistributedTable

__all__ = ['Distributor', 'stable_hash', 'hash_distributions', 'bucket_rows',
           'ScanPredicate', 'eliminate_partitions',
           'RowContainer', 'HeapContainer', 'ClusteredIndexContainer',
           'ColumnstoreContainer', 'RowGroupState', 'create_container',
           'Catalog', 'DistributedTable']
