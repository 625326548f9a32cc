"""
Control node executor
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import duckdb

from ..core import LocationType
from ..errors import ExecutionFailure
from .base import BaseExecutor, TableData, quote_identifier


class ControlExecutor(BaseExecutor):
    """
    Executor on the control node

    Runs whatever cannot be split across distributions (queries over
    gathered inputs, system views, values lists) and computes the effect of
    UPDATE / DELETE statements.
    """

    location_type = LocationType.CONTROL

    def __init__(self, threads: int = 1):
        super().__init__("control", threads)

    def apply(self, statement: str, inputs: Sequence[TableData],
              target: str) -> Tuple[Optional[int], List[tuple]]:
        """
        Run a data-modifying statement and read back the target table

        Args:
            statement: UPDATE / DELETE text
            inputs: Target and source tables
            target: Name of the table to read back

        Returns:
            (rows reported affected by the engine, rows of the target after
            the statement)

        Raises:
            ExecutionFailure: Engine error
        """
        conn = self._connect()
        try:
            for table in inputs:
                self._load(conn, table)
            affected = conn.execute(statement).fetchone()
            rows = conn.execute(f"SELECT * FROM {quote_identifier(target)}").fetchall()
            return (int(affected[0]) if affected else None), rows
        except duckdb.Error as e:
            raise ExecutionFailure(f"[{self.name}] {e}") from e
        finally:
            conn.close()

    def get_capacity(self) -> Dict[str, Any]:
        return {'pdw_node_id': 0, 'threads': self.threads}
