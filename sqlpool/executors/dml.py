"""
DDL and DML execution
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..core import (Column, Request, RequestStep, ResultSet, TableDefinition,
                    DistributionType, OperationType, LocationType)
from ..distribution import DistributedTable
from ..errors import ExecutionFailure, WarehouseError
from ..parser import Statement, StatementKind
from .base import TableData
from .engine import ExecutionEngine

logger = logging.getLogger(__name__)

_WRITE_OPERATIONS = {
    DistributionType.HASH: OperationType.SHUFFLE_MOVE,
    DistributionType.ROUND_ROBIN: OperationType.ROUND_ROBIN_MOVE,
    DistributionType.REPLICATE: OperationType.COPY,
}

# Row locator columns appended to the target of UPDATE / DELETE
_LOCATOR = [Column('__dist', 'INT'), Column('__part', 'INT'), Column('__pos', 'INT')]


class StatementExecutor:
    """
    Executes table DDL and DML through the execution engine

    Writes are routed by each table's distribution: rows of HASH tables are
    shuffled to their owning distribution, ROUND_ROBIN rows are dealt
    across distributions and REPLICATE rows are copied once. Every data
    change bumps the table version, which invalidates cached results.

    UPDATE and DELETE run on the control node against a copy of the target
    that carries a row locator per row; the difference between the copy
    before and after the statement is applied back to the stored cells.
    """

    def __init__(self, engine: ExecutionEngine):
        self.engine = engine
        self.catalog = engine.catalog

    async def execute(self, statement: Statement, request: Optional[Request] = None) -> ResultSet:
        """
        Execute a DDL / DML statement

        Args:
            statement: Parsed statement
            request: Request the steps are recorded on

        Returns:
            ResultSet with rows_affected for DML, empty otherwise

        Raises:
            ExecutionFailure: Unknown table, constraint violation or engine error
            ConfigurationError: Invalid table definition
        """
        handlers = {
            StatementKind.INSERT: self._insert,
            StatementKind.UPDATE: self._modify,
            StatementKind.DELETE: self._modify,
            StatementKind.TRUNCATE_TABLE: self._truncate,
            StatementKind.CREATE_TABLE: self._create_table,
            StatementKind.CREATE_TABLE_AS_SELECT: self._create_table_as_select,
            StatementKind.DROP_TABLE: self._drop_table,
            StatementKind.REBUILD_INDEX: self._rebuild,
        }
        handler = handlers.get(statement.kind)
        if handler is None:
            raise ExecutionFailure(f"{statement.kind.value} is not a table statement")
        return await handler(statement, request)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _step(self, request: Optional[Request], operation_type: str, location_type: str,
              command: str, distribution_type: str = "AllDistributions") -> RequestStep:
        steps = request.steps if request is not None else []
        step = RequestStep(len(steps), operation_type, location_type, command,
                           distribution_type=distribution_type)
        steps.append(step)
        return step

    async def _write(self, table: DistributedTable, rows: Sequence[tuple],
                     request: Optional[Request], prepared: bool = False) -> int:
        """Route rows to their distributions as one DMS write step"""
        dist_type = table.definition.distribution.type
        step = self._step(request, _WRITE_OPERATIONS[dist_type], LocationType.DMS,
                          f"INSERT INTO {table.name} ({dist_type.value})")
        count = await self.engine.run_step(step, asyncio.to_thread(table.insert, rows, prepared))
        step.row_count = count
        return count

    async def _gather(self, table: DistributedTable, request: Optional[Request],
                      extra: Sequence[Column] = ()) -> TableData:
        step = self._step(request, OperationType.PARTITION_MOVE, LocationType.DMS,
                          f"GATHER {table.name} TO CONTROL NODE")
        if extra:
            rows = await self.engine.run_step(step, asyncio.to_thread(self._located_rows, table))
        else:
            rows = await self.engine.run_step(step, asyncio.to_thread(table.scan_all))
        step.row_count = len(rows)
        return TableData(table.name, list(table.definition.columns) + list(extra), rows)

    @staticmethod
    def _located_rows(table: DistributedTable) -> List[tuple]:
        rows = []
        for (dist, part), cell_rows in sorted(table.snapshot_cells().items()):
            rows.extend(row + (dist, part, pos) for pos, row in enumerate(cell_rows))
        return rows

    # ------------------------------------------------------------------
    # DML
    # ------------------------------------------------------------------

    def _widen(self, table: DistributedTable, columns: Optional[List[str]],
               rows: Sequence[tuple]) -> List[tuple]:
        """Map rows given for an INSERT column list onto the full column order"""
        if columns is None:
            return list(rows)
        definition = table.definition
        indexes = []
        for name in columns:
            if not definition.has_column(name):
                raise ExecutionFailure(f"Invalid column name '{name}'")
            indexes.append(definition.column_index(name))
        width = len(definition.columns)
        widened = []
        for row in rows:
            if len(row) != len(indexes):
                raise ExecutionFailure(
                    f"Column count mismatch inserting into '{table.name}'"
                )
            full = [None] * width
            for idx, value in zip(indexes, row):
                full[idx] = value
            widened.append(tuple(full))
        return widened

    async def _insert(self, statement: Statement, request: Optional[Request]) -> ResultSet:
        table = self.catalog.get(statement.target)
        if statement.inserts_from_values:
            sql = f"SELECT * FROM ({statement.body}) AS v"
            step = self._step(request, OperationType.ON, LocationType.CONTROL, sql,
                              distribution_type="ControlNode")
            source = await self.engine.run_step(step, self.engine.control.execute(sql))
            step.row_count = source.row_count
        else:
            source = await self.engine.run_sql(statement.body, request)

        rows = self._widen(table, statement.columns, source.rows)
        count = await self._write(table, rows, request)
        self.catalog.mark_changed(table.name)
        logger.debug("Inserted %d row(s) into %s", count, table.name)
        return ResultSet(rows_affected=count)

    async def _modify(self, statement: Statement, request: Optional[Request]) -> ResultSet:
        table = self.catalog.get(statement.target)
        parsed = self.engine.parser.parse_query(statement.body)

        inputs = [await self._gather(table, request, _LOCATOR)]
        for key in parsed.user_tables:
            if key != table.definition.key:
                inputs.append(await self._gather(self.catalog.get(key), request))

        step = self._step(request, OperationType.ON, LocationType.CONTROL, statement.body,
                          distribution_type="ControlNode")
        affected, after = await self.engine.run_step(
            step, asyncio.to_thread(self.engine.control.apply, statement.body, inputs, table.name))

        positions, replacements = self._diff(inputs[0].rows, after)
        step.row_count = affected if affected is not None else sum(len(p) for p in positions.values())

        if positions:
            prepared = table.prepare_rows(replacements)
            await asyncio.to_thread(table.delete_rows, positions)
            if prepared:
                await self._write(table, prepared, request, prepared=True)
            self.catalog.mark_changed(table.name)
        return ResultSet(rows_affected=step.row_count)

    @staticmethod
    def _diff(before: Sequence[tuple], after: Sequence[tuple]
              ) -> Tuple[Dict[Tuple[int, int], Set[int]], List[tuple]]:
        """
        Compare located rows before and after a statement

        Returns:
            (positions to delete per cell, replacement rows to insert)
        """
        original = {row[-3:]: row[:-3] for row in before}
        current = {row[-3:]: row[:-3] for row in after}
        positions: Dict[Tuple[int, int], Set[int]] = {}
        replacements = []
        for locator, row in original.items():
            new_row = current.get(locator)
            if new_row is not None and new_row == row:
                continue
            dist, part, pos = locator
            positions.setdefault((dist, part), set()).add(pos)
            if new_row is not None:
                replacements.append(new_row)
        return positions, replacements

    async def _truncate(self, statement: Statement, request: Optional[Request]) -> ResultSet:
        table = self.catalog.get(statement.target)
        step = self._step(request, OperationType.ON, LocationType.COMPUTE,
                          f"TRUNCATE TABLE {table.name}")
        await self.engine.run_step(step, asyncio.to_thread(table.truncate))
        self.catalog.mark_changed(table.name)
        return ResultSet()

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    async def _create_table(self, statement: Statement, request: Optional[Request]) -> ResultSet:
        self.catalog.create_table(statement.definition)
        return ResultSet()

    async def _create_table_as_select(self, statement: Statement,
                                      request: Optional[Request]) -> ResultSet:
        if self.catalog.exists(statement.target):
            raise ExecutionFailure(
                f"There is already an object named '{statement.target}' in the database"
            )
        result = await self.engine.run_sql(statement.body, request)
        template = statement.definition
        definition = TableDefinition(
            name=template.name,
            columns=[Column(name, data_type) for name, data_type in zip(result.columns, result.types)],
            distribution=template.distribution,
            storage=template.storage,
            partition=template.partition,
        )
        table = self.catalog.create_table(definition)
        try:
            count = await self._write(table, result.rows, request)
        except (WarehouseError, asyncio.CancelledError):
            self.catalog.drop_table(table.name)
            raise
        self.catalog.mark_changed(table.name)
        return ResultSet(rows_affected=count)

    async def _drop_table(self, statement: Statement, request: Optional[Request]) -> ResultSet:
        if statement.options.get('IF_EXISTS') and not self.catalog.exists(statement.target):
            return ResultSet()
        self.catalog.drop_table(statement.target)
        return ResultSet()

    async def _rebuild(self, statement: Statement, request: Optional[Request]) -> ResultSet:
        table = self.catalog.get(statement.target)
        step = self._step(request, OperationType.ON, LocationType.COMPUTE,
                          f"ALTER INDEX ALL ON {table.name} REBUILD")
        await self.engine.run_step(step, asyncio.to_thread(table.rebuild))
        return ResultSet()
