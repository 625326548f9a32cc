"""
Catalog of distributed tables
"""

import itertools
import logging
import math
import threading
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..core import TableDefinition, DistributionType, IndexType, coerce_row
from ..errors import ConfigurationError, ExecutionFailure
from .distributor import Distributor
from .partitioning import ScanPredicate
from .storage import RowContainer, ColumnstoreContainer, create_container

logger = logging.getLogger(__name__)

# (distribution id, partition index)
CellKey = Tuple[int, int]


class DistributedTable:
    """
    A table's rows spread across distributions and partitions

    Replicated tables keep one materialized copy (cell distribution 0)
    that every distribution reads.
    """

    def __init__(self, definition: TableDefinition, distributions: int,
                 compute_nodes: int = 1, storage_settings: Optional[Dict] = None,
                 version: int = 0):
        self.definition = definition
        self.distributions = distributions
        self.compute_nodes = max(1, compute_nodes)
        self.storage_settings = storage_settings or {}
        self.version = version
        self.distributor = Distributor(definition, distributions)

        partitions = definition.partition.partition_count if definition.partition else 1
        copies = 1 if self.is_replicated else distributions
        self._cells: Dict[CellKey, RowContainer] = {
            (dist, part): create_container(definition.storage, definition.columns,
                                           self.storage_settings)
            for dist in range(copies)
            for part in range(partitions)
        }
        self.partition_count = partitions

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def is_replicated(self) -> bool:
        return self.definition.distribution.type is DistributionType.REPLICATE

    def _partition_buckets(self, rows: Sequence[tuple]) -> Dict[int, List[tuple]]:
        spec = self.definition.partition
        if spec is None:
            return {0: list(rows)}
        idx = self.definition.column_index(spec.column)
        buckets: Dict[int, List[tuple]] = {}
        for row in rows:
            buckets.setdefault(spec.partition_for(row[idx]), []).append(row)
        return buckets

    def prepare_rows(self, rows: Iterable[Sequence]) -> List[tuple]:
        """
        Coerce rows to the column types and check NOT NULL constraints

        Raises:
            ExecutionFailure: Wrong width, unconvertible value or NULL in a
                NOT NULL column
        """
        rows = list(rows)
        width = len(self.definition.columns)
        if any(len(row) != width for row in rows):
            raise ExecutionFailure(f"Column count mismatch inserting into '{self.name}'")
        try:
            typed = [coerce_row(self.definition.columns, row) for row in rows]
        except (ValueError, TypeError) as e:
            raise ExecutionFailure(f"Conversion failed inserting into '{self.name}': {e}") from e

        for column_idx, column in enumerate(self.definition.columns):
            if not column.nullable and any(row[column_idx] is None for row in typed):
                raise ExecutionFailure(
                    f"Cannot insert NULL into column '{column.name}' of '{self.name}'"
                )
        return typed

    def insert(self, rows: Iterable[Sequence], prepared: bool = False) -> int:
        """
        Distribute and store rows

        Args:
            rows: Rows in column order
            prepared: Rows already went through prepare_rows()

        Returns:
            Number of rows inserted
        """
        typed = list(rows) if prepared else self.prepare_rows(rows)
        if self.is_replicated:
            per_distribution = [typed]
        else:
            per_distribution = self.distributor.assign(typed)

        for dist, bucket in enumerate(per_distribution):
            if not bucket:
                continue
            for part, part_rows in self._partition_buckets(bucket).items():
                self._cells[(dist, part)].insert(part_rows)
        return len(typed)

    def _source_distribution(self, distribution: int) -> int:
        return 0 if self.is_replicated else distribution

    def scan(self, distribution: int, partitions: Optional[Set[int]] = None,
             predicates: Sequence[ScanPredicate] = ()) -> List[tuple]:
        """
        Rows of one distribution after partition/segment elimination

        Args:
            distribution: Distribution id
            partitions: Partitions to read (None for all)
            predicates: Sargable predicates for seek / segment elimination
        """
        source = self._source_distribution(distribution)
        rows: List[tuple] = []
        for part in range(self.partition_count):
            if partitions is not None and part not in partitions:
                continue
            rows.extend(self._cells[(source, part)].scan(predicates))
        return rows

    def scan_all(self, partitions: Optional[Set[int]] = None,
                 predicates: Sequence[ScanPredicate] = ()) -> List[tuple]:
        """Rows of every distribution (a single copy for replicated tables)"""
        copies = 1 if self.is_replicated else self.distributions
        rows: List[tuple] = []
        for dist in range(copies):
            rows.extend(self.scan(dist, partitions, predicates))
        return rows

    def snapshot_cells(self) -> Dict[CellKey, List[tuple]]:
        """Live rows per cell, positions matching delete_rows()"""
        return {key: cell.snapshot() for key, cell in self._cells.items()}

    def delete_rows(self, positions: Dict[CellKey, Set[int]]) -> int:
        """Delete rows identified by cell and snapshot position"""
        deleted = 0
        for key, cell_positions in positions.items():
            if cell_positions:
                self._cells[key].delete_positions(cell_positions)
                deleted += len(cell_positions)
        return deleted

    def truncate(self):
        for cell in self._cells.values():
            cell.truncate()

    def rebuild(self):
        for cell in self._cells.values():
            cell.rebuild()

    @property
    def row_count(self) -> int:
        return sum(cell.row_count for cell in self._cells.values())

    def distribution_row_counts(self) -> np.ndarray:
        """Rows per distribution (replicated tables report the full copy everywhere)"""
        if self.is_replicated:
            return np.full(self.distributions, self.row_count, dtype=np.int64)
        counts = np.zeros(self.distributions, dtype=np.int64)
        for (dist, _), cell in self._cells.items():
            counts[dist] += cell.row_count
        return counts

    def skew_percentage(self) -> float:
        """100 * (1 - mean / max) over distribution row counts"""
        counts = self.distribution_row_counts()
        peak = counts.max() if counts.size else 0
        if peak == 0:
            return 0.0
        return float(100.0 * (1.0 - counts.mean() / peak))

    def space_used(self) -> List[Dict]:
        """
        Per-distribution space report

        Returns:
            One dict per distribution with rows, reserved_space, data_space,
            index_space, unused_space (KB), pdw_node_id and distribution_id
        """
        page = self.storage_settings.get('page_size_bytes', 8192)
        counts = self.distribution_row_counts()
        report = []
        for dist in range(self.distributions):
            source = self._source_distribution(dist)
            data = index = reserved = 0
            for part in range(self.partition_count):
                cell_data, cell_index = self._cells[(source, part)].size_bytes()
                data += cell_data
                index += cell_index
                reserved += (math.ceil(cell_data / page) + math.ceil(cell_index / page)) * page
            report.append({
                'rows': int(counts[dist]),
                'reserved_space': reserved // 1024,
                'data_space': math.ceil(data / 1024),
                'index_space': math.ceil(index / 1024),
                'unused_space': max(0, (reserved - data - index) // 1024),
                'pdw_node_id': dist % self.compute_nodes + 1,
                'distribution_id': dist + 1,
            })
        return report

    def row_groups(self) -> List[Dict]:
        """Columnstore row group physical stats (empty for rowstores)"""
        stats = []
        for (dist, part), cell in sorted(self._cells.items()):
            if not isinstance(cell, ColumnstoreContainer):
                continue
            for group in cell.row_groups():
                stats.append({
                    'distribution_id': dist + 1,
                    'partition_number': part + 1,
                    'row_group_id': group.row_group_id,
                    'state': group.state.value,
                    'total_rows': group.total_rows,
                    'deleted_rows': len(group.deleted),
                    'size_in_bytes': group.size_in_bytes,
                })
        return stats

    def partition_row_counts(self) -> List[int]:
        counts = [0] * self.partition_count
        for (_, part), cell in self._cells.items():
            counts[part] += cell.row_count
        return counts


class Catalog:
    """
    Registry of tables and their versions

    Every data or schema change draws a new version from a catalog-wide
    counter and notifies the registered listeners with the table key.
    """

    def __init__(self, distributions: int = 60, compute_nodes: int = 1,
                 storage_settings: Optional[Dict] = None):
        self.distributions = distributions
        self.compute_nodes = compute_nodes
        self.storage_settings = storage_settings or {}
        self._tables: Dict[str, DistributedTable] = {}
        self._versions = itertools.count(1)
        self._listeners: List[Callable[[str], None]] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: Callable[[str], None]):
        """Register a callback invoked with the table key after every change"""
        self._listeners.append(listener)

    def _notify(self, key: str):
        for listener in self._listeners:
            listener(key)

    def create_table(self, definition: TableDefinition) -> DistributedTable:
        """
        Create a table

        Raises:
            ConfigurationError: Name already used or definition invalid
        """
        definition = definition.with_partition_boundaries_coerced()
        definition.validate()
        with self._lock:
            if definition.key in self._tables:
                raise ConfigurationError(
                    f"There is already an object named '{definition.name}' in the database"
                )
            table = DistributedTable(definition, self.distributions, self.compute_nodes,
                                     self.storage_settings, next(self._versions))
            self._tables[definition.key] = table

        self._warn_small_cells(definition)
        logger.info("Created table %s", definition.describe())
        self._notify(definition.key)
        return table

    def _warn_small_cells(self, definition: TableDefinition):
        if definition.partition is None:
            return
        if definition.storage.index_type is not IndexType.CLUSTERED_COLUMNSTORE:
            return
        min_rows = self.storage_settings.get('min_rows_per_cell', 1000000)
        cells = definition.partition.partition_count * self.distributions
        logger.warning(
            "Table %s has %d partitions x %d distributions = %d cells; "
            "columnstore compression needs about %d rows for optimal row groups",
            definition.name, definition.partition.partition_count, self.distributions,
            cells, cells * min_rows,
        )

    def drop_table(self, name: str):
        """
        Drop a table

        Raises:
            ExecutionFailure: Table does not exist
        """
        key = name.lower()
        with self._lock:
            if key not in self._tables:
                raise ExecutionFailure(
                    f"Cannot drop the table '{name}', because it does not exist"
                )
            del self._tables[key]
        logger.info("Dropped table %s", name)
        self._notify(key)

    def get(self, name: str) -> DistributedTable:
        """
        Look up a table

        Raises:
            ExecutionFailure: Table does not exist
        """
        table = self._tables.get(name.lower())
        if table is None:
            raise ExecutionFailure(f"Invalid object name '{name}'")
        return table

    def exists(self, name: str) -> bool:
        return name.lower() in self._tables

    def tables(self) -> List[DistributedTable]:
        return list(self._tables.values())

    def mark_changed(self, name: str) -> int:
        """Bump a table's version after a data change and notify listeners"""
        table = self.get(name)
        with self._lock:
            table.version = next(self._versions)
        self._notify(table.definition.key)
        return table.version

    def versions(self, names: Iterable[str]) -> Dict[str, int]:
        """
        Current version of each named table

        Raises:
            ExecutionFailure: A table does not exist
        """
        return {name.lower(): self.get(name).version for name in names}
