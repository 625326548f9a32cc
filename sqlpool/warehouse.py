"""
Main warehouse class that coordinates all components
"""

import asyncio
import itertools
import logging
import time
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .cache import ResultSetCache, CacheOutcome
from .config import Config
from .core import Importance, Request, RequestStatus, Session, ResultSet, StatementResult
from .distribution import Catalog
from .errors import (WarehouseError, ConfigurationError, ExecutionFailure, QueryTimeout,
                     RequestCancelled, WarehousePausedError)
from .executors import ExecutionEngine, StatementExecutor
from .parser import QueryParser, ParsedQuery, Statement, StatementKind, parse_statement
from .scheduler import (ResourceGovernor, WorkloadClassifierRegistry, WorkloadGroup,
                        Classification, LockManager, LockMode, system_groups)
from .views import SystemViews

logger = logging.getLogger(__name__)

_EXCLUSIVE_KINDS = {
    StatementKind.INSERT, StatementKind.UPDATE, StatementKind.DELETE,
    StatementKind.TRUNCATE_TABLE, StatementKind.CREATE_TABLE,
    StatementKind.CREATE_TABLE_AS_SELECT, StatementKind.DROP_TABLE,
    StatementKind.REBUILD_INDEX,
}


class Warehouse:
    """
    Control node of a dedicated SQL pool

    Coordinates classifier, resource governor, lock manager, result cache
    and execution engine. Every statement becomes a Request; queries and
    DML go through

        classify -> admit -> lock -> cache lookup -> execute -> cache store -> release

    while administrative statements (workload management, caching
    switches, DBCC, KILL, session context) and system-view queries run
    directly on the control node.

    Usage:
        warehouse = Warehouse(Config())
        session = warehouse.open_session('ceo')
        result = await warehouse.execute(session.session_id, 'SELECT 1')
    """

    def __init__(self, config: Optional[Config] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize warehouse

        Args:
            config: Configuration (built-in defaults if None)
            clock: Time source for the result cache
        """
        self.config = config or Config()
        self.database_name = self.config.get('database.name', 'SQLPool01')
        self.result_set_caching = bool(self.config.get('database.result_set_caching', False))
        self.paused = False

        # Distribution and execution
        self.catalog = Catalog(
            distributions=self.config.get('distribution.distributions', 60),
            compute_nodes=self.config.get('distribution.compute_nodes', 1),
            storage_settings=self.config.get('storage', {}),
        )
        self.engine = ExecutionEngine(self.catalog, self.config)
        self.statements = StatementExecutor(self.engine)
        self.parser = QueryParser()

        # Workload management
        groups = system_groups(self.config.get('workload_management.system_groups', []))
        self.governor = ResourceGovernor(groups.values())
        self.classifiers = WorkloadClassifierRegistry(
            self.governor, self.config.get('workload_management.default_group', 'smallrc'))
        self.classifiers.install_system_classifiers([g.name for g in groups.values()])
        self.locks = LockManager()

        # Result cache: invalidated by every table version bump
        self.cache = ResultSetCache.from_config(self.config, clock)
        self.catalog.add_listener(self.cache.invalidate)

        self.views = SystemViews(self)

        self._sessions: Dict[str, Session] = {}
        self._role_members: Dict[str, Set[str]] = {}
        self._requests: "OrderedDict[str, Request]" = OrderedDict()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._last_request: Dict[str, str] = {}
        self._session_ids = itertools.count(1)
        self._request_ids = itertools.count(1)
        self._history = self.config.get('workload_management.request_history', 10000)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def open_session(self, login_name: str, roles: Iterable[str] = (),
                     app_name: Optional[str] = None) -> Session:
        """
        Open a session

        Args:
            login_name: Login the session authenticates as
            roles: Extra role memberships for this session
            app_name: Optional application name

        Returns:
            New session
        """
        if self.paused:
            raise WarehousePausedError(f"Database '{self.database_name}' is paused")
        members = self._role_members.get(login_name.lower(), set())
        session = Session(
            session_id=f"SID{next(self._session_ids)}",
            login_name=login_name,
            roles=set(roles) | members,
            app_name=app_name,
        )
        self._sessions[session.session_id] = session
        logger.info("Opened session %s for %s", session.session_id, login_name)
        return session

    def get_session(self, session_id: str) -> Session:
        """
        Raises:
            KeyError: Unknown or closed session
        """
        session = self._sessions.get(session_id)
        if session is None or session.status == "Closed":
            raise KeyError(f"Session '{session_id}' does not exist")
        return session

    async def close_session(self, session_id: str):
        """Close a session and cancel its active requests"""
        session = self.get_session(session_id)
        session.status = "Closed"
        active = [t for rid, t in self._tasks.items()
                  if not t.done() and self._requests[rid].session_id == session_id]
        for task in active:
            task.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)
        logger.info("Closed session %s", session_id)

    def sessions(self) -> List[Session]:
        return [s for s in self._sessions.values() if s.status != "Closed"]

    def caching_enabled(self, session: Session) -> bool:
        return self.result_set_caching and session.result_set_caching is not False

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def requests(self) -> List[Request]:
        return list(self._requests.values())

    def get_request(self, request_id: str) -> Request:
        """
        Raises:
            KeyError: Unknown or expired request
        """
        request = self._requests.get(request_id.upper())
        if request is None:
            raise KeyError(f"Request '{request_id}' does not exist")
        return request

    def last_request_id(self, session_id: str) -> Optional[str]:
        return self._last_request.get(session_id)

    def _new_request(self, session: Session, sql: str) -> Request:
        request = Request(
            request_id=f"QID{next(self._request_ids)}",
            session_id=session.session_id,
            login_name=session.login_name,
            command=sql,
            submit_time=datetime.now(),
        )
        request.sequence = int(request.request_id[3:])
        self._requests[request.request_id] = request
        self._last_request[session.session_id] = request.request_id
        session.query_count += 1
        return request

    def _finish(self, request: Request, status: RequestStatus,
                error: Optional[BaseException] = None):
        request.status = status
        request.end_time = datetime.now()
        if error is not None:
            request.error = str(error)
            request.error_type = getattr(error, 'error_type', type(error).__name__)
        self._expire_history()

    def _expire_history(self):
        """Drop the oldest finished requests beyond the history limit"""
        excess = len(self._requests) - self._history
        if excess <= 0:
            return
        for request_id in list(self._requests):
            if excess <= 0:
                break
            if self._requests[request_id].status.is_finished:
                del self._requests[request_id]
                self._tasks.pop(request_id, None)
                excess -= 1

    def _prepare(self, session_id: str, sql: str) -> Tuple[Request, Session, Statement,
                                                           Optional[ParsedQuery],
                                                           Optional[Classification]]:
        """
        Create the request and do everything that fails synchronously

        Raises:
            WarehousePausedError: Warehouse is paused
            KeyError: Unknown session
            SqlSyntaxError: Statement cannot be parsed
        """
        if self.paused:
            raise WarehousePausedError(f"Database '{self.database_name}' is paused")
        session = self.get_session(session_id)
        request = self._new_request(session, sql)
        try:
            statement = parse_statement(sql)
        except WarehouseError as e:
            self._finish(request, RequestStatus.FAILED, e)
            raise
        request.label = statement.label

        parsed = self.parser.parse_query(statement.body) if statement.is_query else None
        classification = None
        if not statement.bypasses_admission and not (parsed and parsed.references_system_objects):
            classification = self.classifiers.classify(session, statement.label)
            request.group_name = classification.group_name
            request.importance = classification.importance
            request.classifier_name = classification.classifier_name
        return request, session, statement, parsed, classification

    async def execute(self, session_id: str, sql: str) -> StatementResult:
        """
        Run a statement and wait for its result

        Args:
            session_id: Submitting session
            sql: Statement text

        Returns:
            StatementResult

        Raises:
            SqlSyntaxError, ConfigurationError, AdmissionTimeout, QueryTimeout,
            ExecutionFailure, RequestCancelled, WarehousePausedError
        """
        request_id = self.submit(session_id, sql)
        return await self.wait(request_id)

    def submit(self, session_id: str, sql: str) -> str:
        """
        Start a statement in the background

        Returns:
            Request id; the outcome is reported through the request record
            and wait()
        """
        request, session, statement, parsed, classification = self._prepare(session_id, sql)
        loop = asyncio.get_running_loop()
        task = loop.create_task(
            self._run(request, session, statement, parsed, classification, loop.time()))
        task.add_done_callback(_consume_result)
        self._tasks[request.request_id] = task
        return request.request_id

    async def wait(self, request_id: str, timeout: Optional[float] = None) -> StatementResult:
        """
        Wait for a submitted request

        Raises:
            KeyError: Unknown request
            RequestCancelled: The request was cancelled
        """
        request = self.get_request(request_id)
        task = self._tasks.get(request.request_id)
        if task is None:
            raise KeyError(f"Request '{request_id}' has no result")
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                raise RequestCancelled(f"Request {request.request_id} was cancelled") from None
            raise

    def cancel(self, request_id: str) -> bool:
        """
        Cancel a queued, suspended or running request

        Returns:
            True if the request was still active
        """
        task = self._tasks.get(request_id.upper())
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("Cancelling request %s", request_id.upper())
        return True

    async def _run(self, request: Request, session: Session, statement: Statement,
                   parsed: Optional[ParsedQuery], classification: Optional[Classification],
                   submitted: float) -> StatementResult:
        try:
            if classification is None:
                request.status = RequestStatus.RUNNING
                request.start_time = datetime.now()
                if statement.bypasses_admission:
                    result = await self._run_admin(request, session, statement)
                else:
                    result = await self._run_locked(request, session, statement, parsed)
            else:
                result = await self._run_admitted(request, session, statement, parsed,
                                                  classification, submitted)
        except asyncio.CancelledError:
            self._finish(request, RequestStatus.CANCELLED,
                         RequestCancelled(f"Request {request.request_id} was cancelled"))
            raise
        except Exception as e:
            self._finish(request, RequestStatus.FAILED, e)
            logger.info("Request %s failed: %s", request.request_id, e)
            raise
        self._finish(request, RequestStatus.COMPLETED)
        result.status = request.status.value
        return result

    async def _run_admitted(self, request: Request, session: Session, statement: Statement,
                            parsed: Optional[ParsedQuery], classification: Classification,
                            submitted: float) -> StatementResult:
        """
        Admission, then execution under the group's timeout

        One budget of QUERY_EXECUTION_TIMEOUT_SEC covers the whole request
        from submission: running out in the queue is an AdmissionTimeout,
        after admission a QueryTimeout.
        """
        group = self.governor.get_group(classification.group_name)
        budget = group.query_execution_timeout_sec or None
        loop = asyncio.get_running_loop()

        remaining = None if budget is None else max(0.0, budget - (loop.time() - submitted))
        await self.governor.acquire(request, group.name, classification.importance, remaining)
        try:
            request.status = RequestStatus.RUNNING
            request.start_time = datetime.now()
            remaining = None if budget is None else max(0.0, budget - (loop.time() - submitted))
            try:
                return await asyncio.wait_for(
                    self._run_locked(request, session, statement, parsed), remaining)
            except asyncio.TimeoutError:
                raise QueryTimeout(request.request_id, group.name,
                                   loop.time() - submitted) from None
        finally:
            self.governor.release(request.request_id)

    def _lock_requests(self, statement: Statement,
                       parsed: Optional[ParsedQuery]) -> List[Tuple[str, LockMode]]:
        """Shared locks on every table read, exclusive on the table written"""
        if parsed is not None:
            return [(name, LockMode.SHARED) for name in parsed.user_tables]
        requests = []
        if statement.body and not statement.inserts_from_values:
            sources = self.parser.parse_query(statement.body).user_tables
            requests.extend((name, LockMode.SHARED) for name in sources)
        if statement.kind in _EXCLUSIVE_KINDS and statement.target:
            requests.append((statement.target, LockMode.EXCLUSIVE))
        return requests

    async def _run_locked(self, request: Request, session: Session, statement: Statement,
                          parsed: Optional[ParsedQuery]) -> StatementResult:
        def suspended():
            request.status = RequestStatus.SUSPENDED

        try:
            await self.locks.acquire(request.request_id, self._lock_requests(statement, parsed),
                                     request.importance or Importance.NORMAL,
                                     request.submit_time, on_wait=suspended)
            request.status = RequestStatus.RUNNING
            if parsed is not None:
                return await self._run_query(request, session, parsed)
            result = await self.statements.execute(statement, request)
            return StatementResult(request.request_id, request.status.value, result)
        finally:
            self.locks.release(request.request_id)

    # ------------------------------------------------------------------
    # Queries and the result cache
    # ------------------------------------------------------------------

    def _bypass_outcome(self, session: Session, parsed: ParsedQuery) -> Optional[CacheOutcome]:
        """Why a query's result may not come from / go to the cache, or None"""
        if parsed.references_system_objects:
            return CacheOutcome.SYSTEM_OBJECT
        if not self.result_set_caching:
            return CacheOutcome.DATABASE_DISABLED
        if session.result_set_caching is False:
            return CacheOutcome.SESSION_DISABLED
        if not parsed.user_tables:
            return CacheOutcome.NO_DATA_SOURCE
        if not parsed.is_deterministic:
            return CacheOutcome.NON_DETERMINISTIC
        return None

    async def _run_query(self, request: Request, session: Session,
                         parsed: ParsedQuery) -> StatementResult:
        bypass = self._bypass_outcome(session, parsed)
        versions = None
        if bypass is None:
            versions = self.catalog.versions(parsed.user_tables)
            cached = self.cache.lookup(parsed.fingerprint, versions)
            if cached is not None:
                request.result_cache_hit = int(CacheOutcome.HIT)
                request.end_compile_time = datetime.now()
                logger.debug("Request %s served from the result cache", request.request_id)
                return StatementResult(request.request_id, request.status.value, cached,
                                       request.result_cache_hit)

        system_tables = []
        if parsed.references_system_objects:
            keys = [t.key for t in parsed.tables if t.is_system]
            try:
                system_tables = self.views.materialize(keys)
            except KeyError as e:
                raise ExecutionFailure(f"Invalid object name '{e.args[0]}'") from None

        result = await self.engine.run_query(parsed, request, system_tables)

        if bypass is None:
            stored = self.cache.store(parsed.fingerprint, request.command, result, versions)
            outcome = CacheOutcome.MISS if stored else CacheOutcome.RESULT_TOO_LARGE
        else:
            outcome = bypass
        request.result_cache_hit = int(outcome)
        return StatementResult(request.request_id, request.status.value, result,
                               request.result_cache_hit)

    # ------------------------------------------------------------------
    # Administrative statements
    # ------------------------------------------------------------------

    async def _run_admin(self, request: Request, session: Session,
                         statement: Statement) -> StatementResult:
        kind = statement.kind
        result = ResultSet()
        message = None

        if kind is StatementKind.CREATE_WORKLOAD_GROUP:
            self.governor.create_group(WorkloadGroup.from_options(statement.target, statement.options))
        elif kind is StatementKind.DROP_WORKLOAD_GROUP:
            referenced = self.classifiers.references(statement.target)
            if referenced:
                raise ConfigurationError(
                    f"Cannot drop workload group '{statement.target}': referenced by "
                    f"classifier(s) {', '.join(referenced)}")
            self.governor.drop_group(statement.target)
        elif kind is StatementKind.CREATE_WORKLOAD_CLASSIFIER:
            self.classifiers.create(statement.target, statement.options)
        elif kind is StatementKind.DROP_WORKLOAD_CLASSIFIER:
            self.classifiers.drop(statement.target)
        elif kind is StatementKind.SET_DATABASE_CACHING:
            self._set_database_caching(statement.target, statement.options['ENABLED'])
        elif kind is StatementKind.SET_SESSION_CACHING:
            session.result_set_caching = statement.options['ENABLED']
        elif kind is StatementKind.DROP_RESULT_CACHE:
            message = f"Dropped {self.cache.drop_all()} cached result(s)"
        elif kind is StatementKind.SHOW_RESULT_CACHE_SPACE:
            space = self.cache.space_used()
            result = ResultSet(columns=list(space), types=['BIGINT'] * len(space),
                               rows=[tuple(space.values())])
        elif kind is StatementKind.SHOW_SPACE_USED:
            report = self.catalog.get(statement.target).space_used()
            columns = list(report[0]) if report else []
            result = ResultSet(columns=columns, types=['BIGINT'] * len(columns),
                               rows=[tuple(r.values()) for r in report])
        elif kind is StatementKind.KILL:
            if statement.target.upper() == request.request_id:
                raise ExecutionFailure("Cannot use KILL to kill your own request")
            if not self.cancel(statement.target):
                raise ExecutionFailure(f"Request '{statement.target}' is not active")
            message = f"Request {statement.target.upper()} cancelled"
        elif kind is StatementKind.SET_SESSION_CONTEXT:
            key = str(statement.options['KEY'])
            if key.lower() == 'wlm_context':
                value = statement.options['VALUE']
                session.wlm_context = str(value) if value is not None else None
            else:
                logger.debug("Ignoring session context key %s", key)
        elif kind in (StatementKind.ADD_ROLE_MEMBER, StatementKind.DROP_ROLE_MEMBER):
            self._change_role_member(statement.target, statement.options['MEMBER'],
                                     kind is StatementKind.ADD_ROLE_MEMBER)
        else:
            raise ExecutionFailure(f"Unsupported statement {kind.value}")

        return StatementResult(request.request_id, request.status.value, result, message=message)

    def _set_database_caching(self, database: str, enabled: bool):
        if database.lower() != self.database_name.lower():
            raise ExecutionFailure(f"Database '{database}' does not exist")
        self.result_set_caching = enabled
        if not enabled:
            self.cache.drop_all()
        logger.info("RESULT_SET_CACHING %s for database %s", 'ON' if enabled else 'OFF',
                    self.database_name)

    def _change_role_member(self, role: str, member: str, add: bool):
        roles = self._role_members.setdefault(member.lower(), set())
        sessions = [s for s in self._sessions.values() if s.login_name.lower() == member.lower()]
        if add:
            roles.add(role)
            for session in sessions:
                session.roles.add(role)
        else:
            roles.discard(role)
            for session in sessions:
                session.roles = {r for r in session.roles if r.lower() != role.lower()}

    # ------------------------------------------------------------------
    # Pause / resume / maintenance
    # ------------------------------------------------------------------

    async def pause(self) -> int:
        """
        Pause compute: cancel every active request and reject new ones

        The result cache is kept.

        Returns:
            Number of requests cancelled
        """
        self.paused = True
        active = [t for t in self._tasks.values() if not t.done()]
        for task in active:
            task.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)
        logger.info("Paused database %s (%d request(s) cancelled)", self.database_name, len(active))
        return len(active)

    def resume(self):
        self.paused = False
        logger.info("Resumed database %s", self.database_name)

    def purge_cache(self) -> int:
        """Remove expired and stale result cache entries"""
        return self.cache.purge_expired()

    def get_status(self) -> Dict:
        """Get warehouse status"""
        statuses: Dict[str, int] = {}
        for request in self._requests.values():
            statuses[request.status.value] = statuses.get(request.status.value, 0) + 1
        return {
            'database': self.database_name,
            'paused': self.paused,
            'result_set_caching': self.result_set_caching,
            'sessions': len(self.sessions()),
            'requests': statuses,
            'queued': len(self.governor.queued_requests()),
            'tables': len(self.catalog.tables()),
            'distributions': self.catalog.distributions,
            'compute_nodes': self.catalog.compute_nodes,
            'cache': self.cache.stats_dict(),
        }


def _consume_result(task: asyncio.Task):
    """Mark a background task's exception as retrieved; it lives on the request record"""
    if not task.cancelled():
        task.exception()
