"""
Warehouse server with HTTP API
"""

import asyncio
import json
import logging
from functools import partial
from typing import Optional

from aiohttp import web

from .config import Config
from .errors import (WarehouseError, ConfigurationError, SqlSyntaxError, AdmissionTimeout,
                     QueryTimeout, ExecutionFailure, RequestCancelled, WarehousePausedError)
from .warehouse import Warehouse

logger = logging.getLogger(__name__)

# Error type -> HTTP status
_STATUS = {
    SqlSyntaxError: 400,
    ConfigurationError: 400,
    ExecutionFailure: 400,
    RequestCancelled: 409,
    WarehousePausedError: 503,
    AdmissionTimeout: 504,
    QueryTimeout: 504,
}

_dumps = partial(json.dumps, default=str)


def json_response(data, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def error_response(error: Exception) -> web.Response:
    """Map an error to {"error", "type"} with its HTTP status"""
    if isinstance(error, KeyError):
        return json_response({'error': str(error.args[0]) if error.args else 'Not found',
                              'type': 'NotFound'}, status=404)
    status = 500
    for error_class, code in _STATUS.items():
        if isinstance(error, error_class):
            status = code
            break
    return json_response(error.to_dict(), status=status)


class WarehouseServer:
    """
    Warehouse server

    Continuously runs and serves multiple clients via HTTP API; a
    background task purges expired result cache entries.
    """

    def __init__(self, config_dir: Optional[str] = "config",
                 host: Optional[str] = None, port: Optional[int] = None,
                 config: Optional[Config] = None):
        """
        Initialize warehouse server

        Args:
            config_dir: Configuration directory
            host: Server host address (server.host by default)
            port: Server port (server.port by default)
            config: Ready-made configuration (overrides config_dir)
        """
        self.config = config or Config(config_dir)
        self.host = host or self.config.get('server.host', '0.0.0.0')
        self.port = port or self.config.get('server.port', 8080)
        self.warehouse = Warehouse(self.config)
        self.running = False
        self.runner = None
        self.maintenance_task = None
        self.app = self._setup_routes()

    def _setup_routes(self) -> web.Application:
        """Setup HTTP API routes"""
        app = web.Application()
        warehouse = self.warehouse

        async def read_json(request) -> dict:
            if not request.can_read_body:
                return {}
            try:
                return await request.json()
            except json.JSONDecodeError:
                raise SqlSyntaxError("Request body is not valid JSON") from None

        # Health check
        async def health(request):
            return json_response({"status": "ok", "running": self.running,
                                  "paused": warehouse.paused})

        async def open_session(request):
            try:
                data = await read_json(request)
                if 'login_name' not in data:
                    return json_response({"error": "Missing 'login_name'", "type": "BadRequest"},
                                         status=400)
                session = warehouse.open_session(data['login_name'], data.get('roles', ()),
                                                 data.get('app_name'))
                return json_response({"session_id": session.session_id,
                                      "login_name": session.login_name})
            except WarehouseError as e:
                return error_response(e)

        async def close_session(request):
            try:
                await warehouse.close_session(request.match_info['session_id'])
                return json_response({"status": "closed"})
            except (KeyError, WarehouseError) as e:
                return error_response(e)

        async def execute(request):
            try:
                data = await read_json(request)
                if 'sql' not in data:
                    return json_response({"error": "Missing 'sql'", "type": "BadRequest"},
                                         status=400)
                session_id = request.match_info['session_id']
                if data.get('wait', True):
                    result = await warehouse.execute(session_id, data['sql'])
                    return json_response(result.to_dict())
                request_id = warehouse.submit(session_id, data['sql'])
                return json_response({"request_id": request_id, "status": "submitted"})
            except (KeyError, WarehouseError) as e:
                return error_response(e)

        async def list_requests(request):
            return json_response([r.to_dict() for r in warehouse.requests()])

        async def get_request(request):
            try:
                found = warehouse.get_request(request.match_info['request_id'])
                return json_response(found.to_dict())
            except KeyError as e:
                return error_response(e)

        async def get_steps(request):
            try:
                found = warehouse.get_request(request.match_info['request_id'])
                return json_response([s.to_dict(found.request_id) for s in found.steps])
            except KeyError as e:
                return error_response(e)

        async def cancel_request(request):
            try:
                found = warehouse.get_request(request.match_info['request_id'])
                return json_response({"request_id": found.request_id,
                                      "cancelled": warehouse.cancel(found.request_id)})
            except KeyError as e:
                return error_response(e)

        async def workload_groups(request):
            return json_response(warehouse.governor.group_stats())

        async def cache_space(request):
            return json_response({**warehouse.cache.space_used(),
                                  **warehouse.cache.stats_dict()})

        async def drop_cache(request):
            return json_response({"dropped": warehouse.cache.drop_all()})

        async def pause(request):
            cancelled = await warehouse.pause()
            return json_response({"status": "paused", "cancelled": cancelled})

        async def resume(request):
            warehouse.resume()
            return json_response({"status": "online"})

        async def get_status(request):
            return json_response(warehouse.get_status())

        app.router.add_get('/health', health)
        app.router.add_post('/sessions', open_session)
        app.router.add_delete('/sessions/{session_id}', close_session)
        app.router.add_post('/sessions/{session_id}/execute', execute)
        app.router.add_get('/requests', list_requests)
        app.router.add_get('/requests/{request_id}', get_request)
        app.router.add_get('/requests/{request_id}/steps', get_steps)
        app.router.add_post('/requests/{request_id}/cancel', cancel_request)
        app.router.add_get('/workload-groups', workload_groups)
        app.router.add_get('/cache/space', cache_space)
        app.router.add_post('/cache/drop', drop_cache)
        app.router.add_post('/pause', pause)
        app.router.add_post('/resume', resume)
        app.router.add_get('/status', get_status)

        app.on_startup.append(self._start_background)
        app.on_cleanup.append(self._stop_background)
        return app

    async def _start_background(self, app):
        self.running = True
        self.maintenance_task = asyncio.create_task(self._run_maintenance())

    async def _stop_background(self, app):
        self.running = False
        if self.maintenance_task:
            self.maintenance_task.cancel()
            await asyncio.gather(self.maintenance_task, return_exceptions=True)
            self.maintenance_task = None

    async def _run_maintenance(self):
        """Purge expired and stale result cache entries periodically"""
        interval = self.config.get('cache.maintenance_interval_seconds', 60)
        while self.running:
            await asyncio.sleep(interval)
            removed = self.warehouse.purge_cache()
            if removed:
                logger.info("Cache maintenance removed %d entries", removed)

    async def start(self):
        """Start the warehouse server"""
        if self.running:
            print("Server is already running")
            return

        print("=" * 80)
        print("Dedicated SQL Pool Server Started")
        print("=" * 80)
        print(f"Database: {self.warehouse.database_name}")
        print(f"Distributions: {self.warehouse.catalog.distributions} on "
              f"{self.warehouse.catalog.compute_nodes} compute node(s)")
        print(f"Workload groups: {', '.join(g.name for g in self.warehouse.governor.groups())}")
        print(f"\nHTTP API: http://{self.host}:{self.port}")
        print("  Sessions:")
        print("    - POST   /sessions                 - Open session")
        print("    - DELETE /sessions/{id}            - Close session")
        print("    - POST   /sessions/{id}/execute    - Execute statement")
        print("  Requests:")
        print("    - GET  /requests                   - List requests")
        print("    - GET  /requests/{id}              - Get request")
        print("    - GET  /requests/{id}/steps        - Get request steps")
        print("    - POST /requests/{id}/cancel       - Cancel request")
        print("  Warehouse:")
        print("    - GET  /workload-groups            - Workload group usage")
        print("    - GET  /cache/space                - Result cache space")
        print("    - POST /cache/drop                 - Drop result cache")
        print("    - POST /pause | /resume            - Pause / resume compute")
        print("    - GET  /health | /status           - Health / status")
        print()

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()

        print(f"Server is running on http://{self.host}:{self.port}")
        print("Press Ctrl+C to stop\n")

        while self.running:
            await asyncio.sleep(1)

    async def stop(self):
        """Stop the warehouse server"""
        self.running = False
        await self.warehouse.pause()
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        print("Server stopped")
