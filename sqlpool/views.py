"""
System views

Snapshots of the warehouse's in-memory state materialized as tables in
the 'sys' schema, so they can be queried with ordinary SQL on the
control node.
"""

from typing import Any, Callable, Dict, Iterable, List, Tuple

from .core import Column
from .executors import TableData

_REQUESTS = [
    ('request_id', 'VARCHAR'), ('session_id', 'VARCHAR'), ('login_name', 'VARCHAR'),
    ('status', 'VARCHAR'), ('submit_time', 'TIMESTAMP'), ('start_time', 'TIMESTAMP'),
    ('end_compile_time', 'TIMESTAMP'), ('end_time', 'TIMESTAMP'),
    ('total_elapsed_time', 'DOUBLE'), ('command', 'VARCHAR'), ('label', 'VARCHAR'),
    ('importance', 'VARCHAR'), ('group_name', 'VARCHAR'), ('classifier_name', 'VARCHAR'),
    ('resource_allocation_percentage', 'DOUBLE'), ('result_cache_hit', 'INTEGER'),
    ('error_id', 'VARCHAR'),
]

_SESSIONS = [
    ('session_id', 'VARCHAR'), ('status', 'VARCHAR'), ('request_id', 'VARCHAR'),
    ('login_name', 'VARCHAR'), ('login_time', 'TIMESTAMP'), ('query_count', 'INTEGER'),
    ('app_name', 'VARCHAR'), ('wlm_context', 'VARCHAR'), ('is_result_set_caching_on', 'BOOLEAN'),
]

_STEPS = [
    ('request_id', 'VARCHAR'), ('step_index', 'INTEGER'), ('operation_type', 'VARCHAR'),
    ('distribution_type', 'VARCHAR'), ('location_type', 'VARCHAR'), ('status', 'VARCHAR'),
    ('elapsed_time', 'DOUBLE'), ('row_count', 'BIGINT'), ('command', 'VARCHAR'),
]

_GROUPS = [
    ('name', 'VARCHAR'), ('min_percentage_resource', 'DOUBLE'),
    ('cap_percentage_resource', 'DOUBLE'), ('request_min_resource_grant_percent', 'DOUBLE'),
    ('request_max_resource_grant_percent', 'DOUBLE'), ('importance', 'VARCHAR'),
    ('query_execution_timeout_sec', 'INTEGER'), ('is_system', 'BOOLEAN'),
    ('create_time', 'TIMESTAMP'), ('effective_min_percentage_resource', 'DOUBLE'),
    ('effective_cap_percentage_resource', 'DOUBLE'),
    ('effective_request_min_resource_grant_percent', 'DOUBLE'), ('max_concurrency', 'INTEGER'),
    ('granted_percentage_resource', 'DOUBLE'), ('running_requests', 'INTEGER'),
    ('queued_requests', 'INTEGER'),
]

_CLASSIFIERS = [
    ('name', 'VARCHAR'), ('group_name', 'VARCHAR'), ('member_name', 'VARCHAR'),
    ('wlm_label', 'VARCHAR'), ('wlm_context', 'VARCHAR'), ('start_time', 'VARCHAR'),
    ('end_time', 'VARCHAR'), ('importance', 'VARCHAR'), ('is_system', 'BOOLEAN'),
    ('create_time', 'TIMESTAMP'),
]

_DATABASES = [
    ('name', 'VARCHAR'), ('database_id', 'INTEGER'), ('is_result_set_caching_on', 'BOOLEAN'),
    ('state_desc', 'VARCHAR'),
]


def _table(name: str, spec: List[Tuple[str, str]], records: Iterable[Dict[str, Any]]) -> TableData:
    columns = [Column(column, data_type) for column, data_type in spec]
    rows = [tuple(record.get(column) for column, _ in spec) for record in records]
    return TableData(name, columns, rows, schema='sys')


class SystemViews:
    """
    Builders for the sys.* views

    Usage:
        views = SystemViews(warehouse)
        tables = views.materialize(['sys.dm_pdw_exec_requests'])
    """

    def __init__(self, warehouse):
        self.warehouse = warehouse
        self._builders: Dict[str, Callable[[], TableData]] = {
            'dm_pdw_exec_requests': self.exec_requests,
            'dm_pdw_exec_sessions': self.exec_sessions,
            'dm_pdw_request_steps': self.request_steps,
            'workload_management_workload_groups': self.workload_groups,
            'workload_management_workload_classifiers': self.workload_classifiers,
            'databases': self.databases,
        }

    @property
    def names(self) -> List[str]:
        return [f"sys.{name}" for name in self._builders]

    def exec_requests(self) -> TableData:
        return _table('dm_pdw_exec_requests', _REQUESTS,
                      (r.to_dict() for r in self.warehouse.requests()))

    def exec_sessions(self) -> TableData:
        records = []
        for session in self.warehouse.sessions():
            last = self.warehouse.last_request_id(session.session_id)
            records.append({
                'session_id': session.session_id,
                'status': session.status,
                'request_id': last,
                'login_name': session.login_name,
                'login_time': session.login_time,
                'query_count': session.query_count,
                'app_name': session.app_name,
                'wlm_context': session.wlm_context,
                'is_result_set_caching_on': self.warehouse.caching_enabled(session),
            })
        return _table('dm_pdw_exec_sessions', _SESSIONS, records)

    def request_steps(self) -> TableData:
        records = [step.to_dict(request.request_id)
                   for request in self.warehouse.requests()
                   for step in list(request.steps)]
        return _table('dm_pdw_request_steps', _STEPS, records)

    def workload_groups(self) -> TableData:
        return _table('workload_management_workload_groups', _GROUPS,
                      self.warehouse.governor.group_stats())

    def workload_classifiers(self) -> TableData:
        return _table('workload_management_workload_classifiers', _CLASSIFIERS,
                      (c.to_dict() for c in self.warehouse.classifiers.classifiers()))

    def databases(self) -> TableData:
        return _table('databases', _DATABASES, [{
            'name': self.warehouse.database_name,
            'database_id': 1,
            'is_result_set_caching_on': self.warehouse.result_set_caching,
            'state_desc': 'PAUSED' if self.warehouse.paused else 'ONLINE',
        }])

    def materialize(self, keys: Iterable[str]) -> List[TableData]:
        """
        Build the views a query references

        Args:
            keys: Schema-qualified names such as 'sys.databases'

        Raises:
            KeyError: Unknown view
        """
        tables = []
        for key in dict.fromkeys(k.lower() for k in keys):
            schema, _, name = key.partition('.')
            if schema != 'sys' or name not in self._builders:
                raise KeyError(key)
            tables.append(self._builders[name]())
        return tables
