"""
Execution result models
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Any, Dict


class StepStatus(Enum):
    """Plan step status"""
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETE = "Complete"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class OperationType:
    """Plan step operation types"""
    ON = "OnOperation"
    SHUFFLE_MOVE = "ShuffleMoveOperation"
    BROADCAST_MOVE = "BroadcastMoveOperation"
    PARTITION_MOVE = "PartitionMoveOperation"
    ROUND_ROBIN_MOVE = "RoundRobinMoveOperation"
    COPY = "CopyOperation"
    RETURN = "ReturnOperation"


class LocationType:
    """Where a plan step runs"""
    COMPUTE = "Compute"
    CONTROL = "Control"
    DMS = "DMS"


@dataclass
class RequestStep:
    """
    One step of a distributed plan

    Attributes:
        step_index: Position in the plan (0-based)
        operation_type: One of OperationType
        location_type: One of LocationType
        command: Human readable description of the step
        status: Step status
        elapsed_time: Milliseconds spent in the step
        row_count: Rows produced or moved by the step
    """
    step_index: int
    operation_type: str
    location_type: str
    command: str
    status: StepStatus = StepStatus.PENDING
    elapsed_time: float = 0.0
    row_count: int = 0
    distribution_type: str = "AllDistributions"

    def to_dict(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        data = {
            'step_index': self.step_index,
            'operation_type': self.operation_type,
            'distribution_type': self.distribution_type,
            'location_type': self.location_type,
            'status': self.status.value,
            'elapsed_time': round(self.elapsed_time, 3),
            'row_count': self.row_count,
            'command': self.command,
        }
        if request_id is not None:
            data = {'request_id': request_id, **data}
        return data


@dataclass
class ResultSet:
    """
    Tabular query result

    Attributes:
        columns: Column names
        types: Engine type names, one per column
        rows: Result rows as tuples
        rows_affected: Rows written by DML (None for queries)
    """
    columns: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)
    rows: List[tuple] = field(default_factory=list)
    rows_affected: Optional[int] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def records(self) -> List[Dict[str, Any]]:
        """Rows as dictionaries keyed by column name"""
        return [dict(zip(self.columns, row)) for row in self.rows]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'columns': self.columns,
            'types': self.types,
            'rows': [list(row) for row in self.rows],
            'row_count': self.row_count,
        }
        if self.rows_affected is not None:
            data['rows_affected'] = self.rows_affected
        return data


@dataclass
class StatementResult:
    """
    Outcome returned to the caller of Warehouse.execute

    Attributes:
        request_id: Request identifier (QID<n>)
        status: Final request status value
        result: Result set (empty for admin statements)
        result_cache_hit: 1 hit, 0 miss, negative bypass code, None if not a query
        message: Informational message for admin statements
    """
    request_id: str
    status: str
    result: ResultSet = field(default_factory=ResultSet)
    result_cache_hit: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request_id': self.request_id,
            'status': self.status,
            'result_cache_hit': self.result_cache_hit,
            'message': self.message,
            **self.result.to_dict(),
        }
