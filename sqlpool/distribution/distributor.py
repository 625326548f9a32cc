"""
Row-to-distribution mapping
"""

import hashlib
import threading
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, List, Sequence, Iterable

import numpy as np

from ..core import TableDefinition, DistributionType

_NULL_TOKEN = b'\x00null'


def _canonical_bytes(value: Any) -> bytes:
    """
    Canonical encoding of a distribution key

    Values that compare equal across numeric types (1, 1.0, Decimal('1'))
    encode identically so they always land on the same distribution.
    """
    if value is None:
        return _NULL_TOKEN
    if isinstance(value, bool):
        return b'i' + str(int(value)).encode()
    if isinstance(value, int):
        return b'i' + str(value).encode()
    if isinstance(value, float):
        if value.is_integer():
            return b'i' + str(int(value)).encode()
        return b'f' + repr(value).encode()
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return b'i' + str(int(value)).encode()
        return b'f' + repr(float(value)).encode()
    if isinstance(value, (datetime, date, dt_time)):
        return b't' + value.isoformat().encode()
    if isinstance(value, bytes):
        return b'b' + value
    return b's' + str(value).encode('utf-8')


def stable_hash(value: Any) -> int:
    """Process-independent 64-bit hash of a distribution key value"""
    digest = hashlib.blake2b(_canonical_bytes(value), digest_size=8).digest()
    return int.from_bytes(digest, 'big')


def hash_distributions(values: Iterable[Any], distributions: int) -> np.ndarray:
    """Distribution id of every value (vectorized modulo over the hashes)"""
    values = list(values)
    hashes = np.fromiter((stable_hash(v) for v in values), dtype=np.uint64, count=len(values))
    return (hashes % np.uint64(distributions)).astype(np.int64)


def bucket_rows(rows: Sequence[tuple], distribution_ids: np.ndarray,
                distributions: int) -> List[List[tuple]]:
    """Split rows into one list per distribution, preserving input order"""
    buckets: List[List[tuple]] = [[] for _ in range(distributions)]
    if len(rows) == 0:
        return buckets
    order = np.argsort(distribution_ids, kind='stable')
    counts = np.bincount(distribution_ids, minlength=distributions)
    offsets = np.concatenate(([0], np.cumsum(counts)))
    for dist in np.flatnonzero(counts):
        positions = order[offsets[dist]:offsets[dist + 1]]
        buckets[dist] = [rows[i] for i in positions]
    return buckets


class Distributor:
    """
    Computes the owning distribution of rows for one table

    HASH tables map a row to stable_hash(key) mod N. ROUND_ROBIN tables
    rotate a per-table counter, so a row's distribution cannot be
    recomputed from its content. REPLICATE tables keep a single copy that
    every distribution reads and are never split.
    """

    def __init__(self, definition: TableDefinition, distributions: int):
        """
        Initialize distributor

        Args:
            definition: Table definition
            distributions: Total number of distributions
        """
        self.definition = definition
        self.distributions = distributions
        self._next = 0
        self._lock = threading.Lock()
        if definition.distribution.type is DistributionType.HASH:
            self._key_index = definition.column_index(definition.distribution.column)
        else:
            self._key_index = None

    @property
    def is_replicated(self) -> bool:
        return self.definition.distribution.type is DistributionType.REPLICATE

    def distribution_for(self, row: Sequence[Any]) -> int:
        """
        Owning distribution of a single row of a HASH table

        Raises:
            ValueError: Table is not hash-distributed
        """
        if self._key_index is None:
            raise ValueError(f"Table '{self.definition.name}' is not hash-distributed")
        return stable_hash(row[self._key_index]) % self.distributions

    def assign(self, rows: Sequence[tuple]) -> List[List[tuple]]:
        """
        Split rows into per-distribution buckets

        Returns:
            List of length `distributions`

        Raises:
            ValueError: Table is replicated (callers check is_replicated)
        """
        dist_type = self.definition.distribution.type
        if dist_type is DistributionType.REPLICATE:
            raise ValueError("Replicated tables are not split across distributions")

        if dist_type is DistributionType.HASH:
            ids = hash_distributions((row[self._key_index] for row in rows), self.distributions)
            return bucket_rows(rows, ids, self.distributions)

        with self._lock:
            start = self._next
            self._next = (self._next + len(rows)) % self.distributions
        ids = (np.arange(len(rows), dtype=np.int64) + start) % self.distributions
        return bucket_rows(rows, ids, self.distributions)
