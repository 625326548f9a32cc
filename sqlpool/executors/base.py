"""
Base executor interface
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import duckdb

from ..core import Column, ResultSet
from ..errors import ExecutionFailure

logger = logging.getLogger(__name__)

# T-SQL functions the engine does not know natively
_MACROS = (
    "CREATE OR REPLACE MACRO getdate() AS CAST(now() AS TIMESTAMP)",
    "CREATE OR REPLACE MACRO sysdatetime() AS CAST(now() AS TIMESTAMP)",
    "CREATE OR REPLACE MACRO newid() AS CAST(uuid() AS VARCHAR)",
)


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


@dataclass
class TableData:
    """
    Rows of one table materialized for a single execution

    Attributes:
        name: Table name as referenced by the query
        columns: Column schema
        rows: Rows in column order
        schema: Optional schema (e.g. 'sys' for system views)
    """
    name: str
    columns: List[Column]
    rows: List[tuple]
    schema: Optional[str] = None

    @property
    def qualified_name(self) -> str:
        if self.schema:
            return f"{quote_identifier(self.schema)}.{quote_identifier(self.name)}"
        return quote_identifier(self.name)


class BaseExecutor(ABC):
    """
    Base class for all executors

    Each execution gets a fresh in-memory DuckDB connection loaded with
    exactly the rows the plan routed to this executor.
    """

    location_type: str = ""

    def __init__(self, name: str, threads: int = 1):
        """
        Initialize executor

        Args:
            name: Executor name
            threads: Engine threads per connection
        """
        self.name = name
        self.threads = threads

    def _connect(self) -> duckdb.DuckDBPyConnection:
        conn = duckdb.connect(':memory:')
        conn.execute(f"SET threads = {int(self.threads)}")
        for macro in _MACROS:
            conn.execute(macro)
        return conn

    def _load(self, conn: duckdb.DuckDBPyConnection, table: TableData):
        if table.schema:
            conn.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(table.schema)}")
        columns = ', '.join(f"{quote_identifier(c.name)} {c.engine_type}" for c in table.columns)
        conn.execute(f"CREATE TABLE {table.qualified_name} ({columns})")
        if table.rows:
            placeholders = ', '.join('?' for _ in table.columns)
            conn.executemany(f"INSERT INTO {table.qualified_name} VALUES ({placeholders})",
                             [list(row) for row in table.rows])

    def run(self, sql: str, inputs: Sequence[TableData] = ()) -> ResultSet:
        """
        Execute one statement synchronously

        Args:
            sql: Statement text
            inputs: Tables to materialize first

        Returns:
            ResultSet (empty for statements without a result)

        Raises:
            ExecutionFailure: Engine error
        """
        conn = self._connect()
        try:
            for table in inputs:
                self._load(conn, table)
            relation = conn.sql(sql)
            if relation is None:
                return ResultSet()
            return ResultSet(
                columns=list(relation.columns),
                types=[str(t) for t in relation.types],
                rows=relation.fetchall(),
            )
        except duckdb.Error as e:
            raise ExecutionFailure(f"[{self.name}] {e}") from e
        finally:
            conn.close()

    async def execute(self, sql: str, inputs: Sequence[TableData] = ()) -> ResultSet:
        """Execute a statement in a worker thread"""
        return await asyncio.to_thread(self.run, sql, inputs)

    @abstractmethod
    def get_capacity(self) -> Dict[str, Any]:
        """
        Get executor placement and capacity

        Returns:
            Dict describing where the executor runs
        """
        pass

    def get_service_info(self) -> Dict[str, Any]:
        """Get executor information"""
        return {
            'location_type': self.location_type,
            'name': self.name,
            'capacity': self.get_capacity(),
        }
