"""
Executors: compute/control executors, data movement, planning and execution
"""

from .base import BaseExecutor, TableData, quote_identifier
from .compute import ComputeExecutor
from .control import ControlExecutor
from .movement import DataMovementService
from .planner import (DataMovementPlanner, ExecutionPlan, ExecutionMode, InputPlan, Placement,
                      BroadcastPolicy, RowCountBroadcastPolicy)
from .engine import ExecutionEngine
from .dml import StatementExecutor

__all__ = ['BaseExecutor', 'TableData', 'quote_identifier', 'ComputeExecutor',
           'ControlExecutor', 'DataMovementService', 'DataMovementPlanner', 'ExecutionPlan',
           'ExecutionMode', 'InputPlan', 'Placement', 'BroadcastPolicy',
           'RowCountBroadcastPolicy', 'ExecutionEngine', 'StatementExecutor']
