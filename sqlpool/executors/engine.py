"""
Execution engine: runs distributed plans step by step
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..config import Config
from ..core import Request, RequestStep, StepStatus, ResultSet, LocationType
from ..distribution import Catalog
from ..parser import QueryParser, ParsedQuery
from .base import TableData
from .compute import ComputeExecutor
from .control import ControlExecutor
from .movement import DataMovementService
from .planner import (DataMovementPlanner, RowCountBroadcastPolicy, ExecutionPlan,
                      ExecutionMode, InputPlan, Placement)

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """
    Distributed execution engine

    Owns one compute executor per distribution, the control node executor
    and the data movement service. Plans come from DataMovementPlanner;
    every step records its status, elapsed time and row count on the
    request so the request-steps view can report progress.
    """

    def __init__(self, catalog: Catalog, config: Optional[Config] = None):
        """
        Initialize execution engine

        Args:
            catalog: Table catalog
            config: Configuration (execution.* settings)
        """
        config = config or Config(config_dir=None)
        self.catalog = catalog
        self.distributions = catalog.distributions
        threads = config.get('execution.engine_threads', 1)

        self.compute = [ComputeExecutor(d, catalog.compute_nodes, threads)
                        for d in range(self.distributions)]
        self.control = ControlExecutor(threads)
        self.dms = DataMovementService(self.distributions)
        self.planner = DataMovementPlanner(
            self.distributions,
            RowCountBroadcastPolicy(config.get('execution.broadcast_row_threshold', 100000)),
        )
        self.parser = QueryParser()

        logger.info("Execution engine ready: %d distributions on %d compute node(s)",
                    self.distributions, catalog.compute_nodes)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def plan(self, parsed: ParsedQuery) -> ExecutionPlan:
        return self.planner.plan(parsed, self.catalog)

    async def run_query(self, parsed: ParsedQuery, request: Optional[Request] = None,
                        system_tables: Sequence[TableData] = ()) -> ResultSet:
        """
        Plan and execute a query

        Args:
            parsed: Parsed query
            request: Request the steps are recorded on
            system_tables: Materialized system views the query reads

        Returns:
            Query result

        Raises:
            ExecutionFailure: Unknown table or engine error
        """
        plan = self.plan(parsed)
        if request is not None:
            offset = len(request.steps)
            for step in plan.steps:
                step.step_index += offset
            request.steps.extend(plan.steps)
            request.end_compile_time = datetime.now()

        logger.debug("Running %s plan with %d step(s)%s", plan.mode.value, len(plan.steps),
                     f" ({plan.reason})" if plan.reason else "")

        if plan.mode is ExecutionMode.CONTROL:
            return await self._run_control(plan, system_tables)
        if plan.mode is ExecutionMode.SINGLE_DISTRIBUTION:
            return await self._run_single(plan)
        return await self._run_distributed(plan)

    async def run_sql(self, sql: str, request: Optional[Request] = None) -> ResultSet:
        """Parse and run a SELECT (INSERT ... SELECT and CTAS sources)"""
        return await self.run_query(self.parser.parse_query(sql), request)

    async def run_step(self, step: RequestStep, awaitable):
        """
        Await one step's work while tracking its status and elapsed time

        Args:
            step: Step to track
            awaitable: The step's work

        Returns:
            Result of the awaitable
        """
        step.status = StepStatus.RUNNING
        start = time.perf_counter()
        try:
            result = await awaitable
        except asyncio.CancelledError:
            step.status = StepStatus.CANCELLED
            raise
        except Exception:
            step.status = StepStatus.FAILED
            raise
        finally:
            step.elapsed_time = (time.perf_counter() - start) * 1000.0
        step.status = StepStatus.COMPLETE
        return result

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def _scan_sources(self, item: InputPlan) -> List[List[tuple]]:
        """Rows of an input per source distribution (one copy for replicated)"""
        copies = 1 if item.table.is_replicated else self.distributions
        return [item.table.scan(d, item.partitions, item.predicates) for d in range(copies)]

    def _table_data(self, item: InputPlan, rows: List[tuple]) -> TableData:
        return TableData(item.name, item.table.definition.columns, rows)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _run_control(self, plan: ExecutionPlan,
                           system_tables: Sequence[TableData]) -> ResultSet:
        moves = [s for s in plan.steps if s.location_type == LocationType.DMS]
        on_step, return_step = plan.steps[-2], plan.steps[-1]

        inputs = list(system_tables)
        for item, step in zip(plan.inputs, moves):
            per_source = await asyncio.to_thread(self._scan_sources, item)
            rows = await self.run_step(step, self.dms.gather(per_source))
            step.row_count = len(rows)
            inputs.append(self._table_data(item, rows))

        result = await self.run_step(on_step, self.control.execute(plan.sql, inputs))
        on_step.row_count = result.row_count
        return await self._return(return_step, result)

    async def _run_single(self, plan: ExecutionPlan) -> ResultSet:
        on_step, return_step = plan.steps
        inputs = [self._table_data(item, item.table.scan(0, item.partitions, item.predicates))
                  for item in plan.inputs]
        result = await self.run_step(on_step, self.compute[0].execute(plan.sql, inputs))
        on_step.row_count = result.row_count
        return await self._return(return_step, result)

    async def _run_distributed(self, plan: ExecutionPlan) -> ResultSet:
        moves = iter([s for s in plan.steps if s.location_type == LocationType.DMS])
        on_step, return_step = plan.steps[-2], plan.steps[-1]

        # key -> rows per distribution (partitioned) or one shared list
        per_dist: Dict[str, List[List[tuple]]] = {}
        shared: Dict[str, List[tuple]] = {}
        for item in plan.inputs:
            if item.placement is Placement.REPLICATED:
                shared[item.name] = item.table.scan(0, item.partitions, item.predicates)
                continue
            per_source = await asyncio.to_thread(self._scan_sources, item)
            if item.placement is Placement.LOCAL:
                per_dist[item.name] = per_source
            elif item.placement is Placement.SHUFFLE:
                step = next(moves)
                key_index = item.table.definition.column_index(item.shuffle_column)
                targets = await self.run_step(step, self.dms.shuffle(per_source, key_index))
                step.row_count = sum(len(t) for t in targets)
                per_dist[item.name] = targets
            else:
                step = next(moves)
                rows = await self.run_step(step, self.dms.broadcast(per_source))
                step.row_count = len(rows) * self.distributions
                shared[item.name] = rows

        work = []
        for dist in range(self.distributions):
            # An empty co-located input makes the distribution's output empty;
            # distribution 0 always runs so the result keeps its schema.
            if dist != 0 and any(not rows[dist] for rows in per_dist.values()):
                continue
            inputs = []
            for item in plan.inputs:
                rows = per_dist[item.name][dist] if item.name in per_dist else shared[item.name]
                inputs.append(self._table_data(item, rows))
            work.append(self.compute[dist].execute(plan.sql, inputs))

        partials = await self.run_step(on_step, asyncio.gather(*work))
        on_step.row_count = sum(p.row_count for p in partials)
        logger.debug("OnOperation ran on %d of %d distributions", len(partials), self.distributions)

        merged = ResultSet(columns=partials[0].columns, types=partials[0].types)
        for partial in partials:
            merged.rows.extend(partial.rows)
        return await self._return(return_step, merged)

    async def _return(self, step: RequestStep, result: ResultSet) -> ResultSet:
        async def noop():
            return result
        await self.run_step(step, noop())
        step.row_count = result.row_count
        return result

    def get_service_info(self) -> Dict:
        """Get placement of the executors"""
        return {
            'distributions': self.distributions,
            'compute_nodes': self.catalog.compute_nodes,
            'control': self.control.get_service_info(),
            'compute': [e.get_service_info() for e in self.compute],
        }
