"""
Core data models and types
"""

from .request import Importance, RequestStatus, Session, Request
from .result import (ResultSet, RequestStep, StepStatus, StatementResult,
                     OperationType, LocationType)
from .table import (Column, TableDefinition, DistributionStrategy, DistributionType,
                    StorageOrganization, IndexType, PartitionSpec, RangeSide,
                    engine_type, coerce_value, coerce_row)

__all__ = ['Importance', 'RequestStatus', 'Session', 'Request',
           'ResultSet', 'RequestStep', 'StepStatus', 'StatementResult',
           'OperationType', 'LocationType',
           'Column', 'TableDefinition', 'DistributionStrategy', 'DistributionType',
           'StorageOrganization', 'IndexType', 'PartitionSpec', 'RangeSide',
           'engine_type', 'coerce_value', 'coerce_row']
