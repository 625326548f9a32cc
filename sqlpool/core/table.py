"""
Table definitions: columns, distribution, storage organization, partitioning
"""

import re
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, List, Tuple, Any, Sequence

from ..errors import ConfigurationError


# T-SQL type name -> engine type name
_TYPE_MAP = {
    'INT': 'INTEGER',
    'INTEGER': 'INTEGER',
    'BIGINT': 'BIGINT',
    'SMALLINT': 'SMALLINT',
    'TINYINT': 'TINYINT',
    'BIT': 'BOOLEAN',
    'BOOLEAN': 'BOOLEAN',
    'FLOAT': 'DOUBLE',
    'DOUBLE': 'DOUBLE',
    'REAL': 'REAL',
    'MONEY': 'DECIMAL(19,4)',
    'SMALLMONEY': 'DECIMAL(10,4)',
    'DATE': 'DATE',
    'TIME': 'TIME',
    'DATETIME': 'TIMESTAMP',
    'DATETIME2': 'TIMESTAMP',
    'SMALLDATETIME': 'TIMESTAMP',
    'TIMESTAMP': 'TIMESTAMP',
    'DATETIMEOFFSET': 'TIMESTAMPTZ',
    'UNIQUEIDENTIFIER': 'VARCHAR',
    'VARCHAR': 'VARCHAR',
    'NVARCHAR': 'VARCHAR',
    'CHAR': 'VARCHAR',
    'NCHAR': 'VARCHAR',
    'TEXT': 'VARCHAR',
    'STRING': 'VARCHAR',
    'VARBINARY': 'BLOB',
    'BINARY': 'BLOB',
    'BLOB': 'BLOB',
}

_INTEGER_TYPES = {'INTEGER', 'BIGINT', 'SMALLINT', 'TINYINT', 'HUGEINT',
                  'UINTEGER', 'UBIGINT', 'USMALLINT', 'UTINYINT'}


def engine_type(data_type: str) -> str:
    """
    Map a declared column type to the engine type

    DECIMAL/NUMERIC keep their precision and scale; unknown names are
    passed through unchanged so engine-native types round-trip.
    """
    text = data_type.strip().upper()
    match = re.match(r'^(\w+)\s*(\(.*\))?$', text)
    if not match:
        return text
    base, args = match.group(1), match.group(2)
    if base in ('DECIMAL', 'NUMERIC'):
        return f"DECIMAL{args.replace(' ', '')}" if args else 'DECIMAL(18,0)'
    return _TYPE_MAP.get(base, text)


def coerce_value(value: Any, data_type: str) -> Any:
    """
    Coerce a SQL literal to the Python type stored for a column

    Raises:
        ValueError: Literal cannot represent a value of the column type
    """
    if value is None:
        return None
    target = engine_type(data_type)
    if target in _INTEGER_TYPES:
        if isinstance(value, str):
            return int(value.strip())
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"{value!r} is not an integer")
        if isinstance(value, Decimal) and value != value.to_integral_value():
            raise ValueError(f"{value} is not an integer")
        return int(value)
    if target.startswith('DECIMAL'):
        try:
            return Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"{value!r} is not a decimal") from None
    if target in ('DOUBLE', 'REAL'):
        return float(value)
    if target == 'BOOLEAN':
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true')
        return bool(value)
    if target == 'DATE':
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        text = str(value).strip()
        if re.fullmatch(r'\d{8}', text):
            return datetime.strptime(text, '%Y%m%d').date()
        return date.fromisoformat(text[:10])
    if target.startswith('TIMESTAMP'):
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        return datetime.fromisoformat(str(value).strip())
    if target == 'TIME':
        if isinstance(value, dt_time):
            return value
        return dt_time.fromisoformat(str(value).strip())
    if target == 'VARCHAR':
        return str(value)
    return value


@dataclass(frozen=True)
class Column:
    """Column schema"""
    name: str
    data_type: str
    nullable: bool = True

    @property
    def engine_type(self) -> str:
        return engine_type(self.data_type)


class DistributionType(Enum):
    """How rows are spread across distributions"""
    ROUND_ROBIN = "ROUND_ROBIN"
    HASH = "HASH"
    REPLICATE = "REPLICATE"


@dataclass(frozen=True)
class DistributionStrategy:
    """Distribution type plus the hash column for HASH tables"""
    type: DistributionType
    column: Optional[str] = None

    @classmethod
    def round_robin(cls) -> "DistributionStrategy":
        return cls(DistributionType.ROUND_ROBIN)

    @classmethod
    def hash(cls, column: str) -> "DistributionStrategy":
        return cls(DistributionType.HASH, column)

    @classmethod
    def replicate(cls) -> "DistributionStrategy":
        return cls(DistributionType.REPLICATE)

    def __str__(self) -> str:
        if self.type is DistributionType.HASH:
            return f"HASH({self.column})"
        return self.type.value


class IndexType(Enum):
    """Physical organization of each distribution's rows"""
    HEAP = "HEAP"
    CLUSTERED_INDEX = "CLUSTERED INDEX"
    CLUSTERED_COLUMNSTORE = "CLUSTERED COLUMNSTORE INDEX"


@dataclass(frozen=True)
class StorageOrganization:
    """Index type plus key columns for clustered (rowstore) indexes"""
    index_type: IndexType = IndexType.CLUSTERED_COLUMNSTORE
    columns: Tuple[str, ...] = ()

    @classmethod
    def heap(cls) -> "StorageOrganization":
        return cls(IndexType.HEAP)

    @classmethod
    def clustered_index(cls, *columns: str) -> "StorageOrganization":
        return cls(IndexType.CLUSTERED_INDEX, tuple(columns))

    @classmethod
    def clustered_columnstore(cls) -> "StorageOrganization":
        return cls(IndexType.CLUSTERED_COLUMNSTORE)

    def __str__(self) -> str:
        if self.index_type is IndexType.CLUSTERED_INDEX:
            return f"CLUSTERED INDEX ({', '.join(self.columns)})"
        return self.index_type.value


class RangeSide(Enum):
    """Which partition a boundary value belongs to"""
    LEFT = "LEFT"
    RIGHT = "RIGHT"


@dataclass(frozen=True)
class PartitionSpec:
    """
    Range partitioning on a single column

    n ascending boundary values define n + 1 partitions. With RANGE LEFT a
    boundary value is the upper (inclusive) bound of its partition, with
    RANGE RIGHT the lower (inclusive) bound of the next one.
    """
    column: str
    boundaries: Tuple[Any, ...]
    side: RangeSide = RangeSide.RIGHT

    @property
    def partition_count(self) -> int:
        return len(self.boundaries) + 1

    def partition_for(self, value: Any) -> int:
        """0-based partition index of a value (NULL goes to the first one)"""
        if value is None:
            return 0
        if self.side is RangeSide.LEFT:
            return bisect_left(self.boundaries, value)
        return bisect_right(self.boundaries, value)

    def __str__(self) -> str:
        values = ', '.join(repr(b) for b in self.boundaries)
        return f"PARTITION ({self.column} RANGE {self.side.value} FOR VALUES ({values}))"


@dataclass
class TableDefinition:
    """
    Logical table: schema plus physical design

    Attributes:
        name: Table name (unique, case-insensitive)
        columns: Ordered column schema
        distribution: Exactly one distribution strategy
        storage: Storage organization of every distribution
        partition: Optional range partitioning
    """
    name: str
    columns: List[Column]
    distribution: DistributionStrategy = field(default_factory=DistributionStrategy.round_robin)
    storage: StorageOrganization = field(default_factory=StorageOrganization)
    partition: Optional[PartitionSpec] = None

    @property
    def key(self) -> str:
        return self.name.lower()

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    def column_index(self, name: str) -> int:
        """
        Position of a column (case-insensitive)

        Raises:
            KeyError: Column does not exist
        """
        lowered = name.lower()
        for idx, column in enumerate(self.columns):
            if column.name.lower() == lowered:
                return idx
        raise KeyError(name)

    def has_column(self, name: str) -> bool:
        return any(column.name.lower() == name.lower() for column in self.columns)

    def column(self, name: str) -> Column:
        return self.columns[self.column_index(name)]

    def validate(self):
        """
        Check the definition's invariants

        Raises:
            ConfigurationError: Definition is inconsistent
        """
        if not self.columns:
            raise ConfigurationError(f"Table '{self.name}' must have at least one column")

        seen = set()
        for column in self.columns:
            lowered = column.name.lower()
            if lowered in seen:
                raise ConfigurationError(
                    f"Column '{column.name}' is specified more than once in table '{self.name}'"
                )
            seen.add(lowered)

        if self.distribution.type is DistributionType.HASH:
            if not self.distribution.column or not self.has_column(self.distribution.column):
                raise ConfigurationError(
                    f"Distribution column '{self.distribution.column}' does not exist "
                    f"in table '{self.name}'"
                )

        if self.storage.index_type is IndexType.CLUSTERED_INDEX:
            if not self.storage.columns:
                raise ConfigurationError(f"Clustered index on '{self.name}' needs key columns")
            for name in self.storage.columns:
                if not self.has_column(name):
                    raise ConfigurationError(
                        f"Index column '{name}' does not exist in table '{self.name}'"
                    )

        if self.partition is not None:
            if not self.has_column(self.partition.column):
                raise ConfigurationError(
                    f"Partition column '{self.partition.column}' does not exist "
                    f"in table '{self.name}'"
                )
            boundaries = self.partition.boundaries
            try:
                ordered = all(a < b for a, b in zip(boundaries, boundaries[1:]))
            except TypeError:
                ordered = False
            if not ordered:
                raise ConfigurationError(
                    f"Partition boundary values of '{self.name}' must be unique and ascending"
                )

    def with_partition_boundaries_coerced(self) -> "TableDefinition":
        """Copy whose partition boundaries use the partition column's Python type"""
        if self.partition is None or not self.has_column(self.partition.column):
            return self
        data_type = self.column(self.partition.column).data_type
        try:
            boundaries = tuple(coerce_value(b, data_type) for b in self.partition.boundaries)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid partition boundary for column '{self.partition.column}': {e}"
            ) from e
        return TableDefinition(
            name=self.name,
            columns=list(self.columns),
            distribution=self.distribution,
            storage=self.storage,
            partition=PartitionSpec(self.partition.column, boundaries, self.partition.side),
        )

    def describe(self) -> str:
        parts = [f"DISTRIBUTION = {self.distribution}", str(self.storage)]
        if self.partition is not None:
            parts.append(str(self.partition))
        return f"{self.name} WITH ({', '.join(parts)})"


def coerce_row(columns: Sequence[Column], row: Sequence[Any]) -> tuple:
    """Coerce every value of a row to its column's type"""
    return tuple(coerce_value(value, column.data_type) for column, value in zip(columns, row))
