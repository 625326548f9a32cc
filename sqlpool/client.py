"""
Client for executing statements on the warehouse server
"""

import asyncio
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiohttp


def split_batches(text: str) -> List[str]:
    """
    Split a script into statements

    Statements are separated by a line holding only GO, or by a semicolon
    at the end of a line.
    """
    statements = []
    for batch in re.split(r'^\s*GO\s*$', text, flags=re.IGNORECASE | re.MULTILINE):
        for part in re.split(r';\s*$', batch, flags=re.MULTILINE):
            lines = [line for line in part.splitlines() if not line.strip().startswith('--')]
            statement = '\n'.join(lines).strip()
            if statement:
                statements.append(statement)
    return statements


class WarehouseClient:
    """
    Client for the warehouse HTTP API

    Opens a session for one login and runs statements through it.

    Usage:
        client = WarehouseClient("http://localhost:8080", login_name="ceo")
        await client.open_session()
        result = await client.execute("SELECT COUNT(*) FROM FactSales GROUP BY region")
    """

    def __init__(self, server_url: str = "http://localhost:8080",
                 login_name: str = "sqladmin", roles: Sequence[str] = (),
                 app_name: Optional[str] = None):
        """
        Initialize client

        Args:
            server_url: Server URL (e.g., http://localhost:8080)
            login_name: Login the session authenticates as
            roles: Extra roles for the session
            app_name: Optional application name
        """
        self.server_url = server_url.rstrip('/')
        self.login_name = login_name
        self.roles = list(roles)
        self.app_name = app_name
        self.session_id: Optional[str] = None
        self.submitted_requests: List[str] = []

    async def _call(self, method: str, path: str, payload: Optional[Dict] = None) -> Any:
        url = f"{self.server_url}{path}"
        async with aiohttp.ClientSession() as session:
            async with session.request(method, url, json=payload) as response:
                if response.status == 200:
                    return await response.json()
                error = await response.text()
                raise RuntimeError(f"{method} {path} failed ({response.status}): {error}")

    def _require_session(self) -> str:
        if self.session_id is None:
            raise RuntimeError("No open session; call open_session() first")
        return self.session_id

    async def open_session(self) -> str:
        """
        Open a session on the server

        Returns:
            Session ID
        """
        data = await self._call('POST', '/sessions', {
            'login_name': self.login_name,
            'roles': self.roles,
            'app_name': self.app_name,
        })
        self.session_id = data['session_id']
        return self.session_id

    async def close_session(self):
        if self.session_id is not None:
            await self._call('DELETE', f"/sessions/{self.session_id}")
            self.session_id = None

    async def execute(self, sql: str) -> Dict:
        """
        Execute a statement and wait for its result

        Returns:
            Result dictionary (columns, rows, result_cache_hit, ...)
        """
        session_id = self._require_session()
        return await self._call('POST', f"/sessions/{session_id}/execute", {'sql': sql})

    async def submit(self, sql: str) -> str:
        """
        Start a statement without waiting for it

        Returns:
            Request ID
        """
        session_id = self._require_session()
        data = await self._call('POST', f"/sessions/{session_id}/execute",
                                {'sql': sql, 'wait': False})
        self.submitted_requests.append(data['request_id'])
        return data['request_id']

    async def execute_script(self, text: str) -> List[Dict]:
        """Execute every statement of a script in order"""
        return [await self.execute(statement) for statement in split_batches(text)]

    def load_statements_from_file(self, file_path: str) -> List[str]:
        return split_batches(Path(file_path).read_text())

    async def get_request(self, request_id: str) -> Dict:
        return await self._call('GET', f"/requests/{request_id}")

    async def get_request_steps(self, request_id: str) -> List[Dict]:
        return await self._call('GET', f"/requests/{request_id}/steps")

    async def list_requests(self) -> List[Dict]:
        return await self._call('GET', '/requests')

    async def cancel(self, request_id: str) -> bool:
        data = await self._call('POST', f"/requests/{request_id}/cancel")
        return data['cancelled']

    async def get_workload_groups(self) -> List[Dict]:
        return await self._call('GET', '/workload-groups')

    async def get_cache_space(self) -> Dict:
        return await self._call('GET', '/cache/space')

    async def get_server_status(self) -> Dict:
        return await self._call('GET', '/status')

    async def health_check(self) -> bool:
        """
        Check if server is running

        Returns:
            True if server is healthy, False otherwise
        """
        url = f"{self.server_url}/health"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=2)) as response:
                    if response.status == 200:
                        data = await response.json()
                        return data.get('running', False)
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    def get_submitted_count(self) -> int:
        """Get number of submitted requests"""
        return len(self.submitted_requests)
