"""
Per-distribution physical storage

Each (distribution, partition) cell of a table is held by one row
container whose type follows the table's storage organization:

- HeapContainer: rows in insertion order
- ClusteredIndexContainer: rows kept sorted by the index key; predicates
  on the leading key column seek instead of scanning
- ColumnstoreContainer: immutable compressed row groups plus an open delta
  row group; deletes go to a delete bitmap and compressed row groups carry
  per-column min/max metadata used for segment elimination
"""

import math
from abc import ABC, abstractmethod
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..core import Column, IndexType, StorageOrganization
from .partitioning import ScanPredicate


def estimate_value_bytes(value: Any) -> int:
    """Approximate on-disk size of a single value"""
    if value is None:
        return 1
    if isinstance(value, bool):
        return 1
    if isinstance(value, int):
        return 4 if -2 ** 31 <= value < 2 ** 31 else 8
    if isinstance(value, float):
        return 8
    if isinstance(value, Decimal):
        return 9
    if isinstance(value, datetime):
        return 8
    if isinstance(value, date):
        return 3
    if isinstance(value, str):
        return len(value.encode('utf-8')) + 2
    if isinstance(value, bytes):
        return len(value) + 2
    return len(str(value)) + 2


def estimate_row_bytes(row: Sequence[Any]) -> int:
    """Approximate row size including a fixed row header"""
    return 7 + sum(estimate_value_bytes(v) for v in row)


def estimate_compressed_bytes(rows: Sequence[tuple], column_count: int) -> int:
    """
    Dictionary-encoded size of a row group

    Every column segment stores one code per row (log2 of the distinct
    count bits) plus its dictionary.
    """
    n = len(rows)
    if n == 0:
        return 0
    total = 0
    for idx in range(column_count):
        encoded = np.array([repr(row[idx]) for row in rows])
        uniques = np.unique(encoded)
        bits = max(1, math.ceil(math.log2(len(uniques)))) if len(uniques) > 1 else 1
        total += math.ceil(n * bits / 8)
        total += int(np.char.str_len(uniques).sum())
    return total


def _sort_key(indexes: Sequence[int]):
    """Clustered index key: NULLs sort first"""
    def key(row):
        return tuple((False,) if row[i] is None else (True, row[i]) for i in indexes)
    return key


def _leading(value: Any) -> tuple:
    return (False,) if value is None else (True, value)


class RowContainer(ABC):
    """Rows of one (distribution, partition) cell"""

    index_type: IndexType

    def __init__(self, columns: Sequence[Column]):
        self.columns = list(columns)

    @abstractmethod
    def insert(self, rows: Sequence[tuple]):
        """Add rows"""

    @abstractmethod
    def snapshot(self) -> List[tuple]:
        """Live rows in a stable order (positions used by delete_positions)"""

    @abstractmethod
    def delete_positions(self, positions: Set[int]):
        """Delete rows by their position in snapshot()"""

    @abstractmethod
    def truncate(self):
        """Remove every row"""

    @property
    @abstractmethod
    def row_count(self) -> int:
        """Number of live rows"""

    def scan(self, predicates: Sequence[ScanPredicate] = ()) -> List[tuple]:
        """
        Rows that may satisfy the predicates

        Never drops a matching row; the engine still evaluates the full
        filter.
        """
        return self.snapshot()

    def rebuild(self):
        """Reorganize storage (no-op for rowstores)"""

    @abstractmethod
    def size_bytes(self) -> Tuple[int, int]:
        """(data bytes, index bytes)"""


class HeapContainer(RowContainer):
    """Unordered rowstore"""

    index_type = IndexType.HEAP

    def __init__(self, columns: Sequence[Column]):
        super().__init__(columns)
        self._rows: List[tuple] = []

    def insert(self, rows: Sequence[tuple]):
        self._rows.extend(rows)

    def snapshot(self) -> List[tuple]:
        return list(self._rows)

    def delete_positions(self, positions: Set[int]):
        self._rows = [row for i, row in enumerate(self._rows) if i not in positions]

    def truncate(self):
        self._rows = []

    @property
    def row_count(self) -> int:
        return len(self._rows)

    def size_bytes(self) -> Tuple[int, int]:
        return sum(estimate_row_bytes(row) for row in self._rows), 0


class ClusteredIndexContainer(RowContainer):
    """Rowstore kept sorted on the clustered index key"""

    index_type = IndexType.CLUSTERED_INDEX

    def __init__(self, columns: Sequence[Column], key_indexes: Sequence[int],
                 page_size_bytes: int = 8192):
        super().__init__(columns)
        self.key_indexes = list(key_indexes)
        self.page_size_bytes = page_size_bytes
        self._key = _sort_key(self.key_indexes)
        self._rows: List[tuple] = []
        self._leading: List[tuple] = []

    def insert(self, rows: Sequence[tuple]):
        self._rows.extend(rows)
        self._rows.sort(key=self._key)
        lead = self.key_indexes[0]
        self._leading = [_leading(row[lead]) for row in self._rows]

    def snapshot(self) -> List[tuple]:
        return list(self._rows)

    def delete_positions(self, positions: Set[int]):
        keep = [i for i in range(len(self._rows)) if i not in positions]
        self._rows = [self._rows[i] for i in keep]
        self._leading = [self._leading[i] for i in keep]

    def truncate(self):
        self._rows = []
        self._leading = []

    @property
    def row_count(self) -> int:
        return len(self._rows)

    def seek_range(self, predicate: ScanPredicate) -> Optional[List[Tuple[int, int]]]:
        """
        Index ranges [lo, hi) holding rows that may satisfy a predicate on
        the leading key column, or None if the predicate cannot seek
        """
        keys = self._leading
        first_value = bisect_right(keys, (False,))
        try:
            if predicate.op == '=':
                probe = _leading(predicate.value)
                return [(bisect_left(keys, probe), bisect_right(keys, probe))]
            if predicate.op == 'IN':
                ranges = []
                for value in sorted(set(predicate.values)):
                    probe = _leading(value)
                    ranges.append((bisect_left(keys, probe), bisect_right(keys, probe)))
                return ranges
            if predicate.op == '<':
                return [(first_value, bisect_left(keys, _leading(predicate.value)))]
            if predicate.op == '<=':
                return [(first_value, bisect_right(keys, _leading(predicate.value)))]
            if predicate.op == '>':
                return [(bisect_right(keys, _leading(predicate.value)), len(keys))]
            if predicate.op == '>=':
                return [(bisect_left(keys, _leading(predicate.value)), len(keys))]
            if predicate.op == 'BETWEEN':
                low, high = predicate.values
                return [(bisect_left(keys, _leading(low)), bisect_right(keys, _leading(high)))]
        except TypeError:
            return None
        return None

    def scan(self, predicates: Sequence[ScanPredicate] = ()) -> List[tuple]:
        lead_name = self.columns[self.key_indexes[0]].name.lower()
        for predicate in predicates:
            if predicate.column.lower() != lead_name:
                continue
            ranges = self.seek_range(predicate)
            if ranges is None:
                continue
            rows: List[tuple] = []
            for lo, hi in ranges:
                rows.extend(self._rows[lo:hi])
            return rows
        return self.snapshot()

    def size_bytes(self) -> Tuple[int, int]:
        data = sum(estimate_row_bytes(row) for row in self._rows)
        leaf_pages = math.ceil(data / self.page_size_bytes) if data else 0
        key_bytes = 6
        if self._rows:
            key_bytes += sum(estimate_value_bytes(self._rows[0][i]) for i in self.key_indexes)
        return data, leaf_pages * key_bytes


class RowGroupState(Enum):
    """Columnstore row group states"""
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    COMPRESSED = "COMPRESSED"


@dataclass
class RowGroup:
    """
    A columnstore row group

    Compressed row groups are immutable; deleted rows are tracked in
    `deleted` (offsets into `rows`).
    """
    row_group_id: int
    state: RowGroupState
    rows: List[tuple] = field(default_factory=list)
    deleted: Set[int] = field(default_factory=set)
    min_values: Tuple[Any, ...] = ()
    max_values: Tuple[Any, ...] = ()
    size_in_bytes: int = 0

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    @property
    def live_rows(self) -> int:
        return len(self.rows) - len(self.deleted)

    def live(self) -> List[tuple]:
        if not self.deleted:
            return list(self.rows)
        return [row for i, row in enumerate(self.rows) if i not in self.deleted]

    def might_match(self, column_index: int, predicate: ScanPredicate) -> bool:
        if not self.min_values:
            return True
        return predicate.might_match(self.min_values[column_index],
                                     self.max_values[column_index])


def _segment_bounds(rows: Sequence[tuple], column_count: int) -> Tuple[tuple, tuple]:
    mins, maxs = [], []
    for idx in range(column_count):
        values = [row[idx] for row in rows if row[idx] is not None]
        try:
            mins.append(min(values) if values else None)
            maxs.append(max(values) if values else None)
        except TypeError:
            return (), ()
    return tuple(mins), tuple(maxs)


class ColumnstoreContainer(RowContainer):
    """Clustered columnstore: compressed row groups plus a delta store"""

    index_type = IndexType.CLUSTERED_COLUMNSTORE

    def __init__(self, columns: Sequence[Column], max_rowgroup_rows: int = 1048576,
                 bulk_load_threshold: int = 102400):
        super().__init__(columns)
        self.max_rowgroup_rows = max_rowgroup_rows
        self.bulk_load_threshold = bulk_load_threshold
        self._groups: List[RowGroup] = []
        self._next_id = 0
        self._delta: Optional[RowGroup] = None

    def _new_group(self, state: RowGroupState) -> RowGroup:
        group = RowGroup(row_group_id=self._next_id, state=state)
        self._next_id += 1
        return group

    def _compress(self, rows: Sequence[tuple]) -> RowGroup:
        group = self._new_group(RowGroupState.COMPRESSED)
        group.rows = list(rows)
        group.min_values, group.max_values = _segment_bounds(group.rows, len(self.columns))
        group.size_in_bytes = estimate_compressed_bytes(group.rows, len(self.columns))
        return group

    def insert(self, rows: Sequence[tuple]):
        rows = list(rows)
        start = 0
        # Bulk loads large enough go straight to compressed row groups
        while len(rows) - start >= self.bulk_load_threshold:
            chunk = rows[start:start + self.max_rowgroup_rows]
            self._groups.append(self._compress(chunk))
            start += len(chunk)

        for row in rows[start:]:
            if self._delta is None:
                self._delta = self._new_group(RowGroupState.OPEN)
            self._delta.rows.append(row)
            if len(self._delta.rows) >= self.max_rowgroup_rows:
                self._delta.state = RowGroupState.CLOSED
                self._groups.append(self._delta)
                self._delta = None

        self._tuple_mover()

    def _tuple_mover(self):
        """Compress closed delta row groups"""
        for idx, group in enumerate(self._groups):
            if group.state is RowGroupState.CLOSED:
                compressed = self._compress(group.live())
                compressed.row_group_id = group.row_group_id
                self._groups[idx] = compressed

    def _all_groups(self) -> List[RowGroup]:
        groups = list(self._groups)
        if self._delta is not None:
            groups.append(self._delta)
        return groups

    def snapshot(self) -> List[tuple]:
        rows: List[tuple] = []
        for group in self._all_groups():
            rows.extend(group.live())
        return rows

    def delete_positions(self, positions: Set[int]):
        if not positions:
            return
        position = 0
        for group in self._all_groups():
            for offset in range(len(group.rows)):
                if offset in group.deleted:
                    continue
                if position in positions:
                    group.deleted.add(offset)
                position += 1
        if self._delta is not None and self._delta.deleted:
            # Delta store rows are physically removed
            self._delta.rows = self._delta.live()
            self._delta.deleted = set()
        self._groups = [g for g in self._groups if g.live_rows > 0]

    def truncate(self):
        self._groups = []
        self._delta = None

    @property
    def row_count(self) -> int:
        return sum(group.live_rows for group in self._all_groups())

    def scan(self, predicates: Sequence[ScanPredicate] = ()) -> List[tuple]:
        usable = []
        for predicate in predicates:
            for idx, column in enumerate(self.columns):
                if column.name.lower() == predicate.column.lower():
                    usable.append((idx, predicate))
        rows: List[tuple] = []
        for group in self._all_groups():
            if group.state is RowGroupState.COMPRESSED and any(
                    not group.might_match(idx, predicate) for idx, predicate in usable):
                continue
            rows.extend(group.live())
        return rows

    def rebuild(self):
        """Recompress every live row into full row groups"""
        rows = self.snapshot()
        self._groups = []
        self._delta = None
        for start in range(0, len(rows), self.max_rowgroup_rows):
            self._groups.append(self._compress(rows[start:start + self.max_rowgroup_rows]))

    def row_groups(self) -> List[RowGroup]:
        return self._all_groups()

    def size_bytes(self) -> Tuple[int, int]:
        data = 0
        index = 0
        for group in self._all_groups():
            if group.state is RowGroupState.COMPRESSED:
                data += group.size_in_bytes
            else:
                data += sum(estimate_row_bytes(row) for row in group.rows)
            index += 64 * len(self.columns) + math.ceil(len(group.deleted) / 8)
        return data, index


def create_container(storage: StorageOrganization, columns: Sequence[Column],
                     settings: Optional[Dict] = None) -> RowContainer:
    """
    Build the container for one cell

    Args:
        storage: Storage organization of the table
        columns: Table columns
        settings: 'storage' configuration section
    """
    settings = settings or {}
    if storage.index_type is IndexType.HEAP:
        return HeapContainer(columns)
    if storage.index_type is IndexType.CLUSTERED_INDEX:
        lowered = [c.name.lower() for c in columns]
        key_indexes = [lowered.index(name.lower()) for name in storage.columns]
        return ClusteredIndexContainer(columns, key_indexes,
                                       settings.get('page_size_bytes', 8192))
    columnstore = settings.get('columnstore', {})
    return ColumnstoreContainer(
        columns,
        max_rowgroup_rows=columnstore.get('max_rowgroup_rows', 1048576),
        bulk_load_threshold=columnstore.get('bulk_load_threshold', 102400),
    )
