import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from sqlpool.client import WarehouseClient, split_batches
from sqlpool.server import WarehouseServer

from conftest import small_config

SCRIPT = """
CREATE TABLE Orders (order_id INT NOT NULL, customer_id INT)
WITH (DISTRIBUTION = HASH(order_id), HEAP);
-- seed rows
INSERT INTO Orders VALUES (1, 10), (2, 10), (3, 20);
GO
SELECT customer_id, COUNT(*) AS n FROM Orders GROUP BY customer_id ORDER BY customer_id
"""


@pytest.fixture
async def http():
    server = WarehouseServer(config=small_config())
    async with TestClient(TestServer(server.app)) as client:
        yield client


@pytest.fixture
async def server_url():
    server = WarehouseServer(config=small_config())
    test_server = TestServer(server.app)
    await test_server.start_server()
    yield f"http://{test_server.host}:{test_server.port}"
    await test_server.close()


async def open_session(http, login='sqladmin'):
    response = await http.post('/sessions', json={'login_name': login})
    assert response.status == 200
    return (await response.json())['session_id']


async def execute(http, session_id, sql, **extra):
    return await http.post(f"/sessions/{session_id}/execute", json={'sql': sql, **extra})


def test_split_batches():
    assert split_batches(SCRIPT) == [
        "CREATE TABLE Orders (order_id INT NOT NULL, customer_id INT)\n"
        "WITH (DISTRIBUTION = HASH(order_id), HEAP)",
        "INSERT INTO Orders VALUES (1, 10), (2, 10), (3, 20)",
        "SELECT customer_id, COUNT(*) AS n FROM Orders GROUP BY customer_id ORDER BY customer_id",
    ]


async def test_health(http):
    response = await http.get('/health')
    assert await response.json() == {'status': 'ok', 'running': True, 'paused': False}


async def test_execute_round_trip(http):
    session_id = await open_session(http)
    for statement in split_batches(SCRIPT)[:2]:
        response = await execute(http, session_id, statement)
        assert response.status == 200
    response = await execute(http, session_id, split_batches(SCRIPT)[2])
    data = await response.json()
    assert data['columns'] == ['customer_id', 'n']
    assert data['rows'] == [[10, 2], [20, 1]]
    assert data['result_cache_hit'] == -1
    assert data['status'] == 'Completed'

    steps = await http.get(f"/requests/{data['request_id']}/steps")
    assert [s['operation_type'] for s in await steps.json()][-1] == 'ReturnOperation'


async def test_error_statuses(http):
    session_id = await open_session(http)
    response = await execute(http, session_id, "MERGE INTO t USING s ON 1 = 1")
    assert response.status == 400
    assert (await response.json())['type'] == 'SqlSyntaxError'

    response = await http.post(f"/sessions/{session_id}/execute", json={})
    assert response.status == 400

    response = await execute(http, 'SID999', "SELECT 1")
    assert response.status == 404
    assert (await response.json())['type'] == 'NotFound'

    response = await http.post('/sessions', json={})
    assert response.status == 400

    response = await http.get('/requests/QID999')
    assert response.status == 404


async def test_submit_and_poll(http):
    session_id = await open_session(http)
    response = await execute(http, session_id, "SELECT 1 AS one", wait=False)
    request_id = (await response.json())['request_id']
    for _ in range(100):
        record = await (await http.get(f"/requests/{request_id}")).json()
        if record['status'] == 'Completed':
            break
        await asyncio.sleep(0.01)
    assert record['status'] == 'Completed'
    assert record['group_name'] == 'smallrc'
    listed = await (await http.get('/requests')).json()
    assert request_id in [r['request_id'] for r in listed]


async def test_pause_and_resume(http):
    session_id = await open_session(http)
    response = await http.post('/pause')
    assert await response.json() == {'status': 'paused', 'cancelled': 0}
    response = await execute(http, session_id, "SELECT 1")
    assert response.status == 503
    await http.post('/resume')
    response = await execute(http, session_id, "SELECT 1")
    assert response.status == 200


async def test_workload_groups_and_cache(http):
    groups = await (await http.get('/workload-groups')).json()
    smallrc = next(g for g in groups if g['name'] == 'smallrc')
    assert smallrc['max_concurrency'] == 33
    space = await (await http.get('/cache/space')).json()
    assert space['reserved_space'] == 0 and space['entries'] == 0
    dropped = await (await http.post('/cache/drop')).json()
    assert dropped == {'dropped': 0}
    status = await (await http.get('/status')).json()
    assert status['database'] == 'SQLPool01'
    assert status['distributions'] == 8


async def test_client(server_url):
    client = WarehouseClient(server_url, login_name='analyst', app_name='tests')
    assert await client.health_check()
    with pytest.raises(RuntimeError):
        await client.execute("SELECT 1")
    await client.open_session()
    results = await client.execute_script(SCRIPT)
    assert results[-1]['rows'] == [[10, 2], [20, 1]]

    request_id = await client.submit("SELECT COUNT(*) FROM Orders")
    assert client.get_submitted_count() == 1
    for _ in range(100):
        if (await client.get_request(request_id))['status'] == 'Completed':
            break
        await asyncio.sleep(0.01)
    steps = await client.get_request_steps(request_id)
    assert steps[0]['operation_type'] == 'PartitionMoveOperation'
    assert not await client.cancel(request_id)
    with pytest.raises(RuntimeError):
        await client.execute("SELECT * FROM Missing")
    await client.close_session()
    assert client.session_id is None


async def test_client_health_check_without_server():
    client = WarehouseClient("http://127.0.0.1:9")
    assert not await client.health_check()
