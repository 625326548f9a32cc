"""
Workload management: classification, admission and locking
"""

from .groups import WorkloadGroup, FULL_RESOURCE, to_basis_points, to_percent, system_groups
from .governor import ResourceGovernor, AdmissionDecision, Grant, GroupUsage
from .classifier import WorkloadClassifier, WorkloadClassifierRegistry, Classification
from .locks import LockManager, LockMode

__all__ = ['WorkloadGroup', 'FULL_RESOURCE', 'to_basis_points', 'to_percent', 'system_groups',
           'ResourceGovernor', 'AdmissionDecision', 'Grant', 'GroupUsage',
           'WorkloadClassifier', 'WorkloadClassifierRegistry', 'Classification',
           'LockManager', 'LockMode']
