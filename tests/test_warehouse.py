import asyncio
from datetime import datetime
from decimal import Decimal

import pytest

from sqlpool.cache import CacheOutcome
from sqlpool.core import Importance, OperationType, Request, RequestStatus
from sqlpool.errors import (AdmissionTimeout, ConfigurationError, ExecutionFailure, QueryTimeout,
                            RequestCancelled, SqlSyntaxError, WarehousePausedError)
from sqlpool.scheduler import LockMode
from sqlpool.warehouse import Warehouse

from conftest import FakeClock, load_sales, run, small_config

BY_REGION = "SELECT region_id, SUM(amount) AS total, COUNT(*) AS n FROM FactSales GROUP BY region_id"


async def wait_for_status(warehouse, request_id, status):
    for _ in range(200):
        if warehouse.get_request(request_id).status is status:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{request_id} never reached {status.value}")


async def enable_caching(warehouse, session):
    await run(warehouse, session, "ALTER DATABASE SQLPool01 SET RESULT_SET_CACHING ON")


class TestQueries:

    async def test_distributed_and_control_results_agree(self, warehouse, admin):
        await load_sales(warehouse, admin)
        distributed = await run(warehouse, admin, BY_REGION)
        control = await run(warehouse, admin, BY_REGION + " ORDER BY region_id")
        assert sorted(distributed.result.rows) == control.result.rows
        assert [row[2] for row in control.result.rows] == [50, 50, 50, 50]

        steps = warehouse.get_request(distributed.request_id).steps
        assert [s.operation_type for s in steps] == [
            OperationType.SHUFFLE_MOVE, OperationType.ON, OperationType.RETURN]
        assert steps[0].row_count == 200
        steps = warehouse.get_request(control.request_id).steps
        assert [s.operation_type for s in steps] == [
            OperationType.PARTITION_MOVE, OperationType.ON, OperationType.RETURN]

    @pytest.mark.parametrize('sql', [
        "SELECT l.id, r.id FROM LeftRows l, RightRows r WHERE l.k = r.k OR l.z = 1",
        "SELECT l.id, r.id FROM LeftRows l JOIN RightRows r ON l.k = r.k + 1",
        "SELECT l.id, r.id, CASE WHEN l.k = r.k THEN 1 ELSE 0 END AS same "
        "FROM LeftRows l JOIN RightRows r ON l.z = r.z",
    ])
    async def test_join_predicates_agree_with_control_node(self, warehouse, admin, sql):
        for name in ('LeftRows', 'RightRows'):
            await run(warehouse, admin, f"CREATE TABLE {name} (id INT NOT NULL, k INT, z INT) "
                                        "WITH (DISTRIBUTION = ROUND_ROBIN, HEAP)")
            values = ', '.join(f"({i}, {i % 7}, {i % 5})" for i in range(1, 41))
            await run(warehouse, admin, f"INSERT INTO {name} VALUES {values}")

        distributed = await run(warehouse, admin, sql)
        control = await run(warehouse, admin, sql + " ORDER BY 1, 2")
        assert distributed.result.rows
        assert sorted(distributed.result.rows) == sorted(control.result.rows)

        operations = [s.operation_type for s in warehouse.get_request(distributed.request_id).steps]
        assert OperationType.PARTITION_MOVE not in operations
        operations = [s.operation_type for s in warehouse.get_request(control.request_id).steps]
        assert OperationType.PARTITION_MOVE in operations

    async def test_join_with_replicated_dimension(self, warehouse, admin):
        await load_sales(warehouse, admin)
        result = await run(warehouse, admin, """
            SELECT r.region_name, COUNT(*) AS n
            FROM FactSales f JOIN DimRegion r ON f.region_id = r.region_id
            GROUP BY r.region_name""")
        assert dict(result.result.rows) == {'North': 50, 'South': 50, 'East': 50, 'West': 50}

    async def test_partition_filter(self, warehouse, admin):
        await load_sales(warehouse, admin)
        result = await run(warehouse, admin,
                           "SELECT COUNT(*) FROM FactSales WHERE sale_year >= 2023")
        assert result.result.rows == [(100,)]

    async def test_request_record(self, warehouse, admin):
        await load_sales(warehouse, admin)
        result = await run(warehouse, admin,
                           "SELECT COUNT(*) FROM FactSales OPTION (LABEL = 'count sales')")
        assert result.status == 'Completed'
        request = warehouse.get_request(result.request_id.lower())
        assert request.label == 'count sales'
        assert request.group_name == 'smallrc'
        assert request.importance is Importance.NORMAL
        assert request.resource_allocation_percentage == 3.0
        assert request.start_time is not None and request.end_time is not None
        assert warehouse.governor.usage('smallrc').running == 0

    async def test_syntax_error_is_recorded(self, warehouse, admin):
        with pytest.raises(SqlSyntaxError):
            await run(warehouse, admin, "MERGE INTO t USING s ON 1 = 1")
        request = warehouse.requests()[-1]
        assert request.status is RequestStatus.FAILED
        assert request.error_type == 'SqlSyntaxError'

    async def test_unknown_table(self, warehouse, admin):
        with pytest.raises(ExecutionFailure):
            await run(warehouse, admin, "SELECT * FROM Missing")
        assert warehouse.requests()[-1].status is RequestStatus.FAILED

    async def test_unknown_session(self, warehouse):
        with pytest.raises(KeyError):
            await warehouse.execute('SID999', 'SELECT 1')


class TestTableStatements:

    async def test_insert_records_write_steps(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        result = await run(warehouse, admin,
                           "INSERT INTO FactSales (sale_id, region_id) VALUES (500, 2)")
        assert result.result.rows_affected == 1
        steps = warehouse.get_request(result.request_id).steps
        assert [s.operation_type for s in steps] == [OperationType.ON, OperationType.SHUFFLE_MOVE]
        assert warehouse.catalog.get('FactSales').row_count == 11

    async def test_insert_select(self, warehouse, admin):
        await load_sales(warehouse, admin)
        result = await run(warehouse, admin, """
            INSERT INTO FactSales
            SELECT sale_id + 1000, region_id, customer_id, amount, sale_year FROM FactSales""")
        assert result.result.rows_affected == 200
        count = await run(warehouse, admin, "SELECT COUNT(*) FROM FactSales")
        assert count.result.rows == [(400,)]

    async def test_not_null_violation(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        with pytest.raises(ExecutionFailure):
            await run(warehouse, admin, "INSERT INTO FactSales (region_id) VALUES (1)")
        assert warehouse.catalog.get('FactSales').row_count == 10

    async def test_update_delete_truncate(self, warehouse, admin):
        await load_sales(warehouse, admin)
        updated = await run(warehouse, admin, "UPDATE FactSales SET amount = 0 WHERE region_id = 1")
        assert updated.result.rows_affected == 50
        total = await run(warehouse, admin,
                          "SELECT SUM(amount) FROM FactSales WHERE region_id = 1")
        assert total.result.rows == [(Decimal('0.00'),)]

        deleted = await run(warehouse, admin, "DELETE FROM FactSales WHERE sale_year = 2021")
        assert deleted.result.rows_affected == 50
        count = await run(warehouse, admin, "SELECT COUNT(*) FROM FactSales")
        assert count.result.rows == [(150,)]

        await run(warehouse, admin, "TRUNCATE TABLE FactSales")
        assert warehouse.catalog.get('FactSales').row_count == 0

    async def test_update_moves_rows_between_distributions(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=20)
        await run(warehouse, admin, "UPDATE FactSales SET sale_id = sale_id + 100")
        table = warehouse.catalog.get('FactSales')
        for row in table.scan_all():
            assert row[0] > 100
        found = await run(warehouse, admin, "SELECT region_id FROM FactSales WHERE sale_id = 105")
        assert found.result.rows == [(2,)]

    async def test_ctas_and_drop(self, warehouse, admin):
        await load_sales(warehouse, admin)
        result = await run(warehouse, admin, """
            CREATE TABLE RegionTotals WITH (DISTRIBUTION = HASH(region_id), HEAP)
            AS SELECT region_id, COUNT(*) AS n FROM FactSales GROUP BY region_id""")
        assert result.result.rows_affected == 4
        totals = await run(warehouse, admin, "SELECT n FROM RegionTotals WHERE region_id = 3")
        assert totals.result.rows == [(50,)]
        with pytest.raises(ExecutionFailure):
            await run(warehouse, admin, "CREATE TABLE RegionTotals AS SELECT 1 AS x")
        await run(warehouse, admin, "DROP TABLE RegionTotals")
        assert not warehouse.catalog.exists('RegionTotals')
        await run(warehouse, admin, "DROP TABLE IF EXISTS RegionTotals")

    async def test_space_used(self, warehouse, admin):
        await load_sales(warehouse, admin)
        result = await run(warehouse, admin, "DBCC PDW_SHOWSPACEUSED('dbo.FactSales')")
        assert len(result.result.rows) == 8
        assert sum(result.result.records()[i]['rows'] for i in range(8)) == 200


class TestResultCache:

    async def test_hit_after_miss_and_invalidation(self, warehouse, admin):
        await load_sales(warehouse, admin)
        await enable_caching(warehouse, admin)

        first = await run(warehouse, admin, BY_REGION)
        second = await run(warehouse, admin, BY_REGION)
        assert first.result_cache_hit == CacheOutcome.MISS
        assert second.result_cache_hit == CacheOutcome.HIT
        assert sorted(second.result.rows) == sorted(first.result.rows)
        assert warehouse.get_request(second.request_id).steps == []

        await run(warehouse, admin, "INSERT INTO FactSales VALUES (1000, 1, 1, 1.00, 2024)")
        third = await run(warehouse, admin, BY_REGION)
        assert third.result_cache_hit == CacheOutcome.MISS
        assert dict((r[0], r[2]) for r in third.result.rows)[1] == 51
        fourth = await run(warehouse, admin, BY_REGION)
        assert fourth.result_cache_hit == CacheOutcome.HIT

    async def test_label_and_whitespace_share_an_entry(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await enable_caching(warehouse, admin)
        await run(warehouse, admin, "SELECT COUNT(*) FROM FactSales")
        again = await run(warehouse, admin,
                          "SELECT COUNT(*)\n   FROM  FactSales OPTION (LABEL = 'again')")
        assert again.result_cache_hit == CacheOutcome.HIT

    async def test_caching_off_by_default(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        result = await run(warehouse, admin, BY_REGION)
        assert result.result_cache_hit == CacheOutcome.DATABASE_DISABLED
        assert len(warehouse.cache) == 0

    async def test_session_opt_out(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await enable_caching(warehouse, admin)
        other = warehouse.open_session('analyst')
        await run(warehouse, other, "SET RESULT_SET_CACHING OFF")
        assert (await run(warehouse, other, BY_REGION)).result_cache_hit == \
            CacheOutcome.SESSION_DISABLED
        assert (await run(warehouse, admin, BY_REGION)).result_cache_hit == CacheOutcome.MISS

    @pytest.mark.parametrize('sql, outcome', [
        ("SELECT 1 AS one", CacheOutcome.NO_DATA_SOURCE),
        ("SELECT sale_id, GETDATE() AS ts FROM FactSales WHERE sale_id = 1",
         CacheOutcome.NON_DETERMINISTIC),
        ("SELECT COUNT(*) FROM sys.dm_pdw_exec_requests", CacheOutcome.SYSTEM_OBJECT),
    ])
    async def test_bypass_codes(self, warehouse, admin, sql, outcome):
        await load_sales(warehouse, admin, rows=10)
        await enable_caching(warehouse, admin)
        result = await run(warehouse, admin, sql)
        assert result.result_cache_hit == outcome
        assert warehouse.get_request(result.request_id).result_cache_hit == int(outcome)
        assert len(warehouse.cache) == 0

    async def test_result_too_large(self, clock):
        warehouse = Warehouse(small_config(cache={'max_result_bytes': 64}), clock=clock)
        admin = warehouse.open_session('sqladmin')
        await load_sales(warehouse, admin)
        await enable_caching(warehouse, admin)
        result = await run(warehouse, admin, "SELECT * FROM FactSales")
        assert result.result_cache_hit == CacheOutcome.RESULT_TOO_LARGE

    async def test_expiry_and_maintenance(self, warehouse, admin, clock):
        await load_sales(warehouse, admin, rows=10)
        await enable_caching(warehouse, admin)
        await run(warehouse, admin, BY_REGION)
        clock.advance(48 * 3600)
        assert warehouse.purge_cache() == 1
        assert (await run(warehouse, admin, BY_REGION)).result_cache_hit == CacheOutcome.MISS

    async def test_turning_caching_off_drops_entries(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await enable_caching(warehouse, admin)
        await run(warehouse, admin, BY_REGION)
        space = await run(warehouse, admin, "DBCC SHOWRESULTCACHESPACEUSED")
        assert space.result.columns == ['reserved_space', 'data_space', 'index_space',
                                        'unused_space']
        assert space.result.rows[0][0] > 0
        await run(warehouse, admin, "ALTER DATABASE SQLPool01 SET RESULT_SET_CACHING OFF")
        assert len(warehouse.cache) == 0

    async def test_drop_result_cache(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await enable_caching(warehouse, admin)
        await run(warehouse, admin, BY_REGION)
        result = await run(warehouse, admin, "DBCC DROPRESULTSETCACHE")
        assert result.message == "Dropped 1 cached result(s)"
        with pytest.raises(ExecutionFailure):
            await run(warehouse, admin, "ALTER DATABASE OtherDb SET RESULT_SET_CACHING ON")


class TestWorkloadManagement:

    async def create_ceo_demo(self, warehouse, admin):
        await run(warehouse, admin, """
            CREATE WORKLOAD GROUP CEODemo WITH (MIN_PERCENTAGE_RESOURCE = 26,
                CAP_PERCENTAGE_RESOURCE = 100, REQUEST_MIN_RESOURCE_GRANT_PERCENT = 3.25)""")
        await run(warehouse, admin, """
            CREATE WORKLOAD CLASSIFIER wcCEO WITH (WORKLOAD_GROUP = 'CEODemo',
                MEMBERNAME = 'ceo', IMPORTANCE = HIGH)""")

    async def test_classified_request(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await self.create_ceo_demo(warehouse, admin)
        ceo = warehouse.open_session('ceo')
        result = await run(warehouse, ceo, BY_REGION)
        request = warehouse.get_request(result.request_id)
        assert request.group_name == 'CEODemo'
        assert request.classifier_name == 'wcCEO'
        assert request.importance is Importance.HIGH
        assert request.resource_allocation_percentage == 3.25

        groups = await run(warehouse, admin, """
            SELECT max_concurrency, effective_cap_percentage_resource
            FROM sys.workload_management_workload_groups WHERE name = 'CEODemo'""")
        assert groups.result.rows == [(30, 100.0)]

    async def test_drop_rules(self, warehouse, admin):
        await self.create_ceo_demo(warehouse, admin)
        with pytest.raises(ConfigurationError):
            await run(warehouse, admin, "DROP WORKLOAD GROUP CEODemo")
        await run(warehouse, admin, "DROP WORKLOAD CLASSIFIER wcCEO")
        await run(warehouse, admin, "DROP WORKLOAD GROUP CEODemo")
        assert not warehouse.governor.has_group('CEODemo')
        with pytest.raises(ConfigurationError):
            await run(warehouse, admin, "DROP WORKLOAD GROUP smallrc")

    async def test_role_membership_changes_classification(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        loader = warehouse.open_session('loader')
        await run(warehouse, admin, "EXEC sp_addrolemember 'largerc', 'loader'")
        result = await run(warehouse, loader, BY_REGION)
        assert warehouse.get_request(result.request_id).group_name == 'largerc'
        later = warehouse.open_session('loader')
        result = await run(warehouse, later, BY_REGION)
        assert warehouse.get_request(result.request_id).resource_allocation_percentage == 22.0
        await run(warehouse, admin, "EXEC sp_droprolemember 'largerc', 'loader'")
        result = await run(warehouse, loader, BY_REGION)
        assert warehouse.get_request(result.request_id).group_name == 'smallrc'

    async def test_session_context_classifier(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await run(warehouse, admin, """
            CREATE WORKLOAD CLASSIFIER wcDash WITH (WORKLOAD_GROUP = 'mediumrc',
                MEMBERNAME = 'public', WLM_CONTEXT = 'dashboard')""")
        session = warehouse.open_session('viewer')
        await run(warehouse, session,
                  "EXEC sp_set_session_context @key = 'wlm_context', @value = 'dashboard'")
        result = await run(warehouse, session, BY_REGION)
        assert warehouse.get_request(result.request_id).group_name == 'mediumrc'

    async def test_admission_timeout(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await run(warehouse, admin, """
            CREATE WORKLOAD GROUP Tiny WITH (MIN_PERCENTAGE_RESOURCE = 0,
                CAP_PERCENTAGE_RESOURCE = 10, REQUEST_MIN_RESOURCE_GRANT_PERCENT = 10,
                QUERY_EXECUTION_TIMEOUT_SEC = 1)""")
        await run(warehouse, admin, """
            CREATE WORKLOAD CLASSIFIER wcTiny WITH (WORKLOAD_GROUP = 'Tiny', MEMBERNAME = 'tiny')""")
        blocker = Request('QID-BLOCKER', 'SID0', 'x', 'SELECT 1', datetime.now())
        warehouse.governor.try_admit(blocker, 'Tiny', Importance.NORMAL)

        session = warehouse.open_session('tiny')
        with pytest.raises(AdmissionTimeout):
            await run(warehouse, session, BY_REGION)
        request = warehouse.requests()[-1]
        assert request.status is RequestStatus.FAILED
        assert request.start_time is None
        assert warehouse.governor.queued_requests() == []

    async def test_query_timeout(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await run(warehouse, admin, """
            CREATE WORKLOAD GROUP Quick WITH (MIN_PERCENTAGE_RESOURCE = 0,
                CAP_PERCENTAGE_RESOURCE = 50, REQUEST_MIN_RESOURCE_GRANT_PERCENT = 5,
                QUERY_EXECUTION_TIMEOUT_SEC = 1)""")
        await run(warehouse, admin, """
            CREATE WORKLOAD CLASSIFIER wcQuick WITH (WORKLOAD_GROUP = 'Quick',
                MEMBERNAME = 'impatient')""")
        await warehouse.locks.acquire('holder', [('FactSales', LockMode.EXCLUSIVE)])

        session = warehouse.open_session('impatient')
        with pytest.raises(QueryTimeout):
            await run(warehouse, session, BY_REGION)
        assert warehouse.governor.usage('Quick').running == 0
        assert warehouse.locks.waiting('FactSales') == []
        warehouse.locks.release('holder')


class TestCancellation:

    async def blocked_query(self, warehouse, admin):
        await load_sales(warehouse, admin, rows=10)
        await warehouse.locks.acquire('holder', [('FactSales', LockMode.EXCLUSIVE)])
        request_id = warehouse.submit(admin.session_id, BY_REGION)
        await wait_for_status(warehouse, request_id, RequestStatus.SUSPENDED)
        return request_id

    async def test_kill_releases_grant(self, warehouse, admin):
        request_id = await self.blocked_query(warehouse, admin)
        assert warehouse.governor.usage('smallrc').running == 1

        other = warehouse.open_session('sqladmin')
        result = await run(warehouse, other, f"KILL '{request_id}'")
        assert result.message == f"Request {request_id} cancelled"
        with pytest.raises(RequestCancelled):
            await warehouse.wait(request_id)
        assert warehouse.get_request(request_id).status is RequestStatus.CANCELLED
        assert warehouse.governor.usage('smallrc').running == 0

        with pytest.raises(ExecutionFailure):
            await run(warehouse, other, f"KILL '{request_id}'")
        warehouse.locks.release('holder')

    async def test_pause_keeps_cache_and_rejects_work(self, warehouse, admin):
        await enable_caching(warehouse, admin)
        await load_sales(warehouse, admin, rows=10)
        await run(warehouse, admin, "SELECT COUNT(*) FROM DimRegion")
        await warehouse.locks.acquire('holder', [('FactSales', LockMode.EXCLUSIVE)])
        request_id = warehouse.submit(admin.session_id, BY_REGION)
        await wait_for_status(warehouse, request_id, RequestStatus.SUSPENDED)

        assert await warehouse.pause() == 1
        assert warehouse.get_request(request_id).status is RequestStatus.CANCELLED
        with pytest.raises(WarehousePausedError):
            await run(warehouse, admin, "SELECT COUNT(*) FROM DimRegion")
        with pytest.raises(WarehousePausedError):
            warehouse.open_session('late')
        assert len(warehouse.cache) == 1

        warehouse.resume()
        warehouse.locks.release('holder')
        again = await run(warehouse, admin, "SELECT COUNT(*) FROM DimRegion")
        assert again.result_cache_hit == CacheOutcome.HIT

    async def test_close_session_cancels_requests(self, warehouse, admin):
        request_id = await self.blocked_query(warehouse, admin)
        await warehouse.close_session(admin.session_id)
        assert warehouse.get_request(request_id).status is RequestStatus.CANCELLED
        with pytest.raises(KeyError):
            warehouse.get_session(admin.session_id)
        warehouse.locks.release('holder')


class TestSystemViews:

    async def test_requests_and_steps(self, warehouse, admin):
        await load_sales(warehouse, admin)
        done = await run(warehouse, admin, BY_REGION)
        requests = await run(warehouse, admin, f"""
            SELECT status, group_name, result_cache_hit FROM sys.dm_pdw_exec_requests
            WHERE request_id = '{done.request_id}'""")
        assert requests.result.rows == [('Completed', 'smallrc', CacheOutcome.DATABASE_DISABLED)]

        steps = await run(warehouse, admin, f"""
            SELECT step_index, operation_type, location_type, status FROM sys.dm_pdw_request_steps
            WHERE request_id = '{done.request_id}' ORDER BY step_index""")
        assert steps.result.rows == [
            (0, 'ShuffleMoveOperation', 'DMS', 'Complete'),
            (1, 'OnOperation', 'Compute', 'Complete'),
            (2, 'ReturnOperation', 'Control', 'Complete'),
        ]

    async def test_sessions_and_databases(self, warehouse, admin):
        warehouse.open_session('analyst', app_name='notebook')
        sessions = await run(warehouse, admin, """
            SELECT login_name, app_name FROM sys.dm_pdw_exec_sessions ORDER BY session_id""")
        assert sessions.result.rows == [('sqladmin', None), ('analyst', 'notebook')]
        databases = await run(warehouse, admin,
                              "SELECT name, is_result_set_caching_on, state_desc FROM sys.databases")
        assert databases.result.rows == [('SQLPool01', False, 'ONLINE')]

    async def test_classifier_view(self, warehouse, admin):
        classifiers = await run(warehouse, admin, """
            SELECT name FROM sys.workload_management_workload_classifiers WHERE is_system
            ORDER BY name""")
        assert [r[0] for r in classifiers.result.rows] == ['largerc', 'mediumrc', 'smallrc',
                                                           'xlargerc']

    async def test_unknown_view(self, warehouse, admin):
        with pytest.raises(ExecutionFailure):
            await run(warehouse, admin, "SELECT * FROM sys.no_such_view")


def test_clock_is_shared_with_the_cache():
    clock = FakeClock(now=5.0)
    warehouse = Warehouse(small_config(), clock=clock)
    assert warehouse.cache.clock is clock
