"""
Error taxonomy
"""

from typing import Optional


class WarehouseError(Exception):
    """Base class for all errors raised by the warehouse"""

    error_type = "WarehouseError"

    def to_dict(self):
        return {'type': self.error_type, 'error': str(self)}


class ConfigurationError(WarehouseError):
    """Invalid or conflicting workload group / classifier / table definition"""

    error_type = "ConfigurationError"


class SqlSyntaxError(WarehouseError):
    """Statement could not be parsed"""

    error_type = "SqlSyntaxError"


class AdmissionTimeout(WarehouseError):
    """
    Request waited in the admission queue past its group's timeout

    Attributes:
        request_id: Request that timed out
        group_name: Workload group it was queued for
        waited: Seconds spent waiting
    """

    error_type = "AdmissionTimeout"

    def __init__(self, request_id: str, group_name: str, waited: float):
        self.request_id = request_id
        self.group_name = group_name
        self.waited = waited
        super().__init__(
            f"Request {request_id} timed out after waiting {waited:.3f}s "
            f"for a resource grant in workload group '{group_name}'"
        )


class QueryTimeout(WarehouseError):
    """Running request exceeded its group's execution timeout"""

    error_type = "QueryTimeout"

    def __init__(self, request_id: str, group_name: str, elapsed: float):
        self.request_id = request_id
        self.group_name = group_name
        self.elapsed = elapsed
        super().__init__(
            f"Request {request_id} exceeded the query execution timeout of "
            f"workload group '{group_name}' after {elapsed:.3f}s"
        )


class ExecutionFailure(WarehouseError):
    """Engine-side fault while running a request"""

    error_type = "ExecutionFailure"


class CacheInconsistency(WarehouseError):
    """Cached entry no longer matches the versions of its tables"""

    error_type = "CacheInconsistency"

    def __init__(self, fingerprint: str, table: Optional[str] = None):
        self.fingerprint = fingerprint
        self.table = table
        super().__init__(
            f"Result cache entry {fingerprint[:12]} is stale"
            + (f" (table '{table}' changed)" if table else "")
        )


class RequestCancelled(WarehouseError):
    """Request was cancelled by the caller, KILL or pause"""

    error_type = "RequestCancelled"


class WarehousePausedError(WarehouseError):
    """Warehouse is paused and does not accept requests"""

    error_type = "WarehousePaused"
