"""
Workload-aware admission, scheduling and result caching for a distributed SQL pool
"""

from .config import Config
from .core import (Importance, RequestStatus, Session, Request, ResultSet, RequestStep,
                   StatementResult, TableDefinition)
from .errors import (WarehouseError, ConfigurationError, SqlSyntaxError, AdmissionTimeout,
                     QueryTimeout, ExecutionFailure, CacheInconsistency, RequestCancelled,
                     WarehousePausedError)
from .scheduler import ResourceGovernor, WorkloadGroup, WorkloadClassifier, LockManager
from .cache import ResultSetCache, CacheOutcome
from .executors import ExecutionEngine, DataMovementPlanner
from .warehouse import Warehouse
from .server import WarehouseServer
from .client import WarehouseClient

__version__ = "0.1.0"

__all__ = [
    'Config',
    'Importance', 'RequestStatus', 'Session', 'Request', 'ResultSet', 'RequestStep',
    'StatementResult', 'TableDefinition',
    'WarehouseError', 'ConfigurationError', 'SqlSyntaxError', 'AdmissionTimeout',
    'QueryTimeout', 'ExecutionFailure', 'CacheInconsistency', 'RequestCancelled',
    'WarehousePausedError',
    'ResourceGovernor', 'WorkloadGroup', 'WorkloadClassifier', 'LockManager',
    'ResultSetCache', 'CacheOutcome',
    'ExecutionEngine', 'DataMovementPlanner',
    'Warehouse', 'WarehouseServer', 'WarehouseClient'
]
