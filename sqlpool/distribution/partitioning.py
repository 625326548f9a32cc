"""
Scan predicates, partition elimination and segment elimination
"""

from dataclasses import dataclass
from typing import Any, Optional, Set, Sequence, Tuple

from ..core import PartitionSpec

RANGE_OPERATORS = ('=', '<', '<=', '>', '>=', 'BETWEEN', 'IN')


@dataclass(frozen=True)
class ScanPredicate:
    """
    Sargable predicate on a single column with typed values

    Attributes:
        column: Column name
        op: One of RANGE_OPERATORS
        values: One value, two for BETWEEN, any number for IN
    """
    column: str
    op: str
    values: Tuple[Any, ...]

    @property
    def value(self) -> Any:
        return self.values[0]

    def matches(self, value: Any) -> bool:
        """Evaluate the predicate for one value (NULL never matches)"""
        if value is None:
            return False
        try:
            if self.op == '=':
                return value == self.value
            if self.op == '<':
                return value < self.value
            if self.op == '<=':
                return value <= self.value
            if self.op == '>':
                return value > self.value
            if self.op == '>=':
                return value >= self.value
            if self.op == 'BETWEEN':
                return self.values[0] <= value <= self.values[1]
            if self.op == 'IN':
                return value in self.values
        except TypeError:
            return True
        return True

    def might_match(self, low: Any, high: Any) -> bool:
        """
        Can any value in [low, high] satisfy the predicate

        Used for segment elimination; low/high of None means the segment
        holds only NULLs.
        """
        if low is None or high is None:
            return False
        try:
            if self.op == '=':
                return low <= self.value <= high
            if self.op == '<':
                return low < self.value
            if self.op == '<=':
                return low <= self.value
            if self.op == '>':
                return high > self.value
            if self.op == '>=':
                return high >= self.value
            if self.op == 'BETWEEN':
                return not (high < self.values[0] or low > self.values[1])
            if self.op == 'IN':
                return any(low <= v <= high for v in self.values)
        except TypeError:
            return True
        return True


def _partitions_for(spec: PartitionSpec, predicate: ScanPredicate) -> Optional[Set[int]]:
    """Partitions that may hold rows satisfying one predicate"""
    count = spec.partition_count
    try:
        if predicate.op == '=':
            return {spec.partition_for(predicate.value)}
        if predicate.op in ('<', '<='):
            return set(range(0, spec.partition_for(predicate.value) + 1))
        if predicate.op in ('>', '>='):
            return set(range(spec.partition_for(predicate.value), count))
        if predicate.op == 'BETWEEN':
            low, high = predicate.values
            if low > high:
                return set()
            return set(range(spec.partition_for(low), spec.partition_for(high) + 1))
        if predicate.op == 'IN':
            return {spec.partition_for(v) for v in predicate.values}
    except TypeError:
        return None
    return None


def eliminate_partitions(spec: Optional[PartitionSpec],
                         predicates: Sequence[ScanPredicate]) -> Optional[Set[int]]:
    """
    Partitions a scan must read

    Predicates are ANDed. The result is conservative: a partition is only
    skipped when no value in its range can satisfy every predicate.

    Returns:
        Set of 0-based partition indexes, or None when every partition is needed
    """
    if spec is None:
        return None

    selected: Optional[Set[int]] = None
    column = spec.column.lower()
    for predicate in predicates:
        if predicate.column.lower() != column:
            continue
        partitions = _partitions_for(spec, predicate)
        if partitions is None:
            continue
        selected = partitions if selected is None else selected & partitions

    return selected
