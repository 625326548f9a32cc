"""
Distributed query planner

Decides where a query runs and which inputs have to move first.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from ..core import (RequestStep, OperationType, LocationType, DistributionType,
                    coerce_value)
from ..distribution import Catalog, DistributedTable, ScanPredicate, eliminate_partitions
from ..parser import ParsedQuery, ColumnRef

logger = logging.getLogger(__name__)

# (table key, lower-case column name)
ColumnNode = Tuple[str, str]


class ExecutionMode(Enum):
    CONTROL = "Control"
    DISTRIBUTED = "Distributed"
    SINGLE_DISTRIBUTION = "SingleDistribution"


class Placement(Enum):
    """How an input reaches the step that consumes it"""
    LOCAL = "Local"
    SHUFFLE = "Shuffle"
    BROADCAST = "Broadcast"
    REPLICATED = "Replicated"
    GATHER = "Gather"


class BroadcastPolicy(ABC):
    """Decides whether an input is small enough to copy to every distribution"""

    @abstractmethod
    def allows(self, row_count: int, distributions: int) -> bool:
        pass


class RowCountBroadcastPolicy(BroadcastPolicy):
    """Broadcast inputs of at most `threshold` rows"""

    def __init__(self, threshold: int = 100000):
        self.threshold = threshold

    def allows(self, row_count: int, distributions: int) -> bool:
        return row_count <= self.threshold


@dataclass
class InputPlan:
    """
    One table input of a plan

    Attributes:
        table: Source table
        placement: How the rows reach the consuming step
        shuffle_column: Column re-hashed by a shuffle move
        partitions: Partitions left after elimination (None reads all)
        predicates: Predicates used for index seek / segment elimination
    """
    table: DistributedTable
    placement: Placement
    shuffle_column: Optional[str] = None
    partitions: Optional[Set[int]] = None
    predicates: List[ScanPredicate] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def is_partitioned(self) -> bool:
        return self.placement in (Placement.LOCAL, Placement.SHUFFLE)


@dataclass
class ExecutionPlan:
    """
    Steps of a query

    Attributes:
        mode: Where the main operation runs
        sql: Statement every OnOperation executes
        inputs: User table inputs
        steps: Steps in execution order
        reason: Why the query runs on the control node
        cost: Estimated rows moved
    """
    mode: ExecutionMode
    sql: str
    inputs: List[InputPlan]
    steps: List[RequestStep]
    reason: Optional[str] = None
    cost: int = 0

    def step_of(self, operation_type: str) -> List[RequestStep]:
        return [s for s in self.steps if s.operation_type == operation_type]


@dataclass
class _Option:
    placements: Dict[str, Tuple[Placement, Optional[str]]]
    cost: int
    description: str


class DataMovementPlanner:
    """
    Data movement planner

    Queries that cannot be decomposed per distribution are gathered and
    run on the control node. Otherwise the planner looks for a column
    class the inputs can be co-located on (join-key equivalence classes,
    limited to classes holding a GROUP BY column when grouping) and picks
    the cheapest of:

        - align every partitioned input on the class, shuffling those not
          already hash-distributed on it (cost: rows shuffled) and
          broadcasting inputs outside the class
        - keep the largest input in place and broadcast the others

    A broadcast costs rows x distributions and needs the broadcast policy's
    approval. Replicated tables never move.
    """

    def __init__(self, distributions: int, broadcast_policy: Optional[BroadcastPolicy] = None):
        """
        Initialize planner

        Args:
            distributions: Total number of distributions
            broadcast_policy: Broadcast size policy (row count threshold by default)
        """
        self.distributions = distributions
        self.broadcast_policy = broadcast_policy or RowCountBroadcastPolicy()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def plan(self, parsed: ParsedQuery, catalog: Catalog) -> ExecutionPlan:
        """
        Plan a parsed query

        Raises:
            ExecutionFailure: A referenced table does not exist
        """
        tables: Dict[str, DistributedTable] = {key: catalog.get(key) for key in parsed.user_tables}

        reason = self.control_reason(parsed)
        if not tables or parsed.references_system_objects:
            return self._control_plan(parsed, tables, reason or 'no distributed input')

        if all(t.is_replicated for t in tables.values()):
            return self._single_plan(parsed, tables)

        if reason is not None:
            return self._control_plan(parsed, tables, reason)

        option = self._choose(parsed, tables)
        if option is None:
            return self._control_plan(parsed, tables, 'no co-location option')
        return self._distributed_plan(parsed, tables, option)

    def control_reason(self, parsed: ParsedQuery) -> Optional[str]:
        """Why a query cannot be decomposed per distribution, or None"""
        if not parsed.tables:
            return 'no table'
        if parsed.references_system_objects:
            return 'system view'
        checks = (
            (parsed.has_subquery, 'subquery'),
            (parsed.has_outer_join, 'outer join'),
            (parsed.has_self_join, 'self join'),
            (parsed.has_set_operation, 'set operation'),
            (parsed.has_distinct, 'DISTINCT'),
            (parsed.has_order_by, 'ORDER BY'),
            (parsed.has_limit, 'TOP / LIMIT'),
            (parsed.has_window, 'window function'),
            (parsed.has_aggregate and not parsed.group_by and parsed.group_by_resolvable,
             'aggregate without GROUP BY'),
            (not parsed.group_by_resolvable, 'GROUP BY expression'),
        )
        for failed, reason in checks:
            if failed:
                return reason
        return None

    # ------------------------------------------------------------------
    # Column resolution
    # ------------------------------------------------------------------

    def _resolve(self, parsed: ParsedQuery, ref: ColumnRef,
                 tables: Dict[str, DistributedTable]) -> Optional[ColumnNode]:
        column = ref.column.lower()
        if ref.qualifier is not None:
            reference = parsed.resolve(ref)
            if reference is None or reference.is_system or reference.key not in tables:
                return None
            if not tables[reference.key].definition.has_column(column):
                return None
            return reference.key, column
        owners = [key for key, table in tables.items() if table.definition.has_column(column)]
        if len(owners) == 1:
            return owners[0], column
        return None

    def _scan_predicates(self, parsed: ParsedQuery, key: str,
                         tables: Dict[str, DistributedTable]) -> List[ScanPredicate]:
        """Typed predicates of the WHERE clause that apply to one table"""
        definition = tables[key].definition
        predicates = []
        for predicate in parsed.predicates:
            node = self._resolve(parsed, predicate.column, tables)
            if node is None or node[0] != key:
                continue
            column = definition.column(node[1])
            try:
                values = tuple(coerce_value(v, column.data_type) for v in predicate.values)
            except (ValueError, TypeError, ArithmeticError):
                continue
            if any(v is None for v in values):
                continue
            predicates.append(ScanPredicate(column.name, predicate.op, values))
        return predicates

    def _input(self, parsed: ParsedQuery, key: str, tables: Dict[str, DistributedTable],
               placement: Placement, shuffle_column: Optional[str] = None) -> InputPlan:
        table = tables[key]
        predicates = self._scan_predicates(parsed, key, tables)
        partitions = eliminate_partitions(table.definition.partition, predicates)
        if partitions is not None:
            logger.debug("Partition elimination on %s: %d of %d partitions",
                         table.name, len(partitions), table.partition_count)
        return InputPlan(table, placement, shuffle_column, partitions, predicates)

    # ------------------------------------------------------------------
    # Option search
    # ------------------------------------------------------------------

    def _classes(self, parsed: ParsedQuery, tables: Dict[str, DistributedTable],
                 extra_nodes: List[ColumnNode]) -> List[FrozenSet[ColumnNode]]:
        """Join-key equivalence classes (union-find over equality edges)"""
        parent: Dict[ColumnNode, ColumnNode] = {}

        def find(node):
            parent.setdefault(node, node)
            while parent[node] != node:
                parent[node] = parent[parent[node]]
                node = parent[node]
            return node

        for join in parsed.joins:
            left = self._resolve(parsed, join.left, tables)
            right = self._resolve(parsed, join.right, tables)
            if left is None or right is None:
                continue
            parent[find(left)] = find(right)
        for node in extra_nodes:
            find(node)

        classes: Dict[ColumnNode, Set[ColumnNode]] = {}
        for node in list(parent):
            classes.setdefault(find(node), set()).add(node)
        return sorted((frozenset(c) for c in classes.values()), key=lambda c: sorted(c))

    def _class_option(self, cls: FrozenSet[ColumnNode], partitioned: List[str],
                      tables: Dict[str, DistributedTable]) -> Optional[_Option]:
        placements = {}
        cost = 0
        aligned = False
        for key in partitioned:
            table = tables[key]
            columns = sorted(column for table_key, column in cls if table_key == key)
            if columns:
                strategy = table.definition.distribution
                if strategy.type is DistributionType.HASH and strategy.column.lower() in columns:
                    placements[key] = (Placement.LOCAL, None)
                else:
                    placements[key] = (Placement.SHUFFLE, table.definition.column(columns[0]).name)
                    cost += table.row_count
                aligned = True
            else:
                if not self.broadcast_policy.allows(table.row_count, self.distributions):
                    return None
                placements[key] = (Placement.BROADCAST, None)
                cost += table.row_count * self.distributions
        if not aligned:
            return None
        description = ', '.join(f"{k}.{c}" for k, c in sorted(cls))
        return _Option(placements, cost, f"co-locate on {description}")

    def _local_broadcast_option(self, partitioned: List[str],
                                tables: Dict[str, DistributedTable]) -> Optional[_Option]:
        largest = max(partitioned, key=lambda k: (tables[k].row_count, k))
        placements = {largest: (Placement.LOCAL, None)}
        cost = 0
        for key in partitioned:
            if key == largest:
                continue
            table = tables[key]
            if not self.broadcast_policy.allows(table.row_count, self.distributions):
                return None
            placements[key] = (Placement.BROADCAST, None)
            cost += table.row_count * self.distributions
        return _Option(placements, cost, f"keep {largest} local, broadcast the rest")

    def _choose(self, parsed: ParsedQuery, tables: Dict[str, DistributedTable]) -> Optional[_Option]:
        partitioned = [key for key, table in tables.items() if not table.is_replicated]
        grouping = bool(parsed.group_by)

        if len(partitioned) == 1 and not grouping:
            return _Option({partitioned[0]: (Placement.LOCAL, None)}, 0, "single partitioned input")

        group_nodes = [node for node in (self._resolve(parsed, ref, tables) for ref in parsed.group_by)
                       if node is not None]
        options = []
        for cls in self._classes(parsed, tables, group_nodes):
            if grouping and not any(node in cls for node in group_nodes):
                continue
            option = self._class_option(cls, partitioned, tables)
            if option is not None:
                options.append(option)
        if not grouping:
            option = self._local_broadcast_option(partitioned, tables)
            if option is not None:
                options.append(option)

        if not options:
            return None
        best = min(enumerate(options), key=lambda item: (item[1].cost, item[0]))[1]
        logger.debug("Chose plan '%s' (cost %d) among %d option(s)",
                     best.description, best.cost, len(options))
        return best

    # ------------------------------------------------------------------
    # Plan construction
    # ------------------------------------------------------------------

    def _control_plan(self, parsed: ParsedQuery, tables: Dict[str, DistributedTable],
                      reason: str) -> ExecutionPlan:
        inputs = [self._input(parsed, key, tables, Placement.GATHER) for key in tables]
        steps = []
        for idx, item in enumerate(inputs):
            steps.append(RequestStep(len(steps), OperationType.PARTITION_MOVE, LocationType.DMS,
                                     f"GATHER {item.name} TO CONTROL NODE INTO [TEMP_ID_{idx}]"))
        steps.append(RequestStep(len(steps), OperationType.ON, LocationType.CONTROL,
                                 parsed.executable_sql, distribution_type="ControlNode"))
        steps.append(RequestStep(len(steps), OperationType.RETURN, LocationType.CONTROL,
                                 "RETURN RESULT ROWS", distribution_type="ControlNode"))
        return ExecutionPlan(ExecutionMode.CONTROL, parsed.executable_sql, inputs, steps, reason,
                             sum(t.row_count for t in tables.values()))

    def _single_plan(self, parsed: ParsedQuery,
                     tables: Dict[str, DistributedTable]) -> ExecutionPlan:
        inputs = [self._input(parsed, key, tables, Placement.REPLICATED) for key in tables]
        steps = [
            RequestStep(0, OperationType.ON, LocationType.COMPUTE, parsed.executable_sql,
                        distribution_type="SpecificDistributions"),
            RequestStep(1, OperationType.RETURN, LocationType.CONTROL, "RETURN RESULT ROWS",
                        distribution_type="ControlNode"),
        ]
        return ExecutionPlan(ExecutionMode.SINGLE_DISTRIBUTION, parsed.executable_sql, inputs, steps)

    def _distributed_plan(self, parsed: ParsedQuery, tables: Dict[str, DistributedTable],
                          option: _Option) -> ExecutionPlan:
        inputs = []
        steps = []
        for key, table in tables.items():
            if table.is_replicated:
                inputs.append(self._input(parsed, key, tables, Placement.REPLICATED))
                continue
            placement, column = option.placements[key]
            item = self._input(parsed, key, tables, placement, column)
            inputs.append(item)
            if placement is Placement.SHUFFLE:
                steps.append(RequestStep(len(steps), OperationType.SHUFFLE_MOVE, LocationType.DMS,
                                         f"SHUFFLE {item.name} ON {column} INTO [TEMP_ID_{len(steps)}]"))
            elif placement is Placement.BROADCAST:
                steps.append(RequestStep(len(steps), OperationType.BROADCAST_MOVE, LocationType.DMS,
                                         f"BROADCAST {item.name} INTO [TEMP_ID_{len(steps)}]"))
        steps.append(RequestStep(len(steps), OperationType.ON, LocationType.COMPUTE,
                                 parsed.executable_sql))
        steps.append(RequestStep(len(steps), OperationType.RETURN, LocationType.CONTROL,
                                 "RETURN RESULT ROWS", distribution_type="ControlNode"))
        return ExecutionPlan(ExecutionMode.DISTRIBUTED, parsed.executable_sql, inputs, steps,
                             None, option.cost)
