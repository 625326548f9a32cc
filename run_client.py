#!/usr/bin/env python3
"""
Dedicated SQL pool client - supports both interactive and one-time modes
"""

import asyncio
import argparse
from typing import Dict

from sqlpool.client import WarehouseClient


def print_result(result: Dict):
    """Print a statement result as a table"""
    if result.get('message'):
        print(result['message'])
    columns = result.get('columns') or []
    rows = result.get('rows') or []
    if columns:
        widths = [len(str(c)) for c in columns]
        for row in rows:
            widths = [max(w, len(str(v))) for w, v in zip(widths, row)]
        print("  ".join(str(c).ljust(w) for c, w in zip(columns, widths)))
        print("  ".join("-" * w for w in widths))
        for row in rows:
            print("  ".join(str(v).ljust(w) for v, w in zip(row, widths)))
        print(f"\n({len(rows)} row(s))")
    elif result.get('rows_affected') is not None:
        print(f"({result['rows_affected']} row(s) affected)")
    print(f"[{result.get('request_id')}] {result.get('status')}"
          f"  result_cache_hit={result.get('result_cache_hit')}")


class InteractiveCLI:
    """Interactive command-line interface"""

    def __init__(self, client: WarehouseClient):
        self.client = client
        self.running = True

    def print_banner(self):
        """Print welcome banner"""
        print("=" * 80)
        print("Dedicated SQL Pool Client - Interactive Mode")
        print("=" * 80)
        print(f"Login: {self.client.login_name}")
        print(f"Server: {self.client.server_url}")
        print(f"Session: {self.client.session_id}")
        print("\nType 'help' for available commands")
        print("=" * 80)

    def print_help(self):
        """Print help message"""
        print("\nAvailable commands:")
        print("  sql <statement>                - Execute a statement and wait")
        print("  submit <statement>             - Start a statement in the background")
        print("  script <file>                  - Execute a script file")
        print("  requests                       - List requests")
        print("  steps <request_id>             - Show the steps of a request")
        print("  cancel <request_id>            - Cancel a request")
        print("  groups                         - Show workload group usage")
        print("  cache                          - Show result cache space")
        print("  status                         - Get server status")
        print("  help                           - Show this help")
        print("  exit / quit                    - Exit")
        print("\nAnything else is executed as SQL.")
        print("\nExamples:")
        print("  sql SELECT COUNT(*) FROM FactSales")
        print("  script demo.sql")

    async def cmd_sql(self, text):
        """Execute a statement"""
        if not text:
            print("Error: Usage: sql <statement>")
            return
        print_result(await self.client.execute(text))

    async def cmd_submit(self, text):
        """Submit a statement without waiting"""
        if not text:
            print("Error: Usage: submit <statement>")
            return
        request_id = await self.client.submit(text)
        print(f"Submitted → {request_id}")

    async def cmd_script(self, args):
        """Execute a script file"""
        if len(args) < 1:
            print("Error: Usage: script <file>")
            return
        statements = self.client.load_statements_from_file(args[0])
        print(f"Executing {len(statements)} statement(s) from {args[0]}...")
        print("-" * 80)
        for i, statement in enumerate(statements, 1):
            print(f"\n[{i}/{len(statements)}] {statement.splitlines()[0][:70]}")
            try:
                print_result(await self.client.execute(statement))
            except RuntimeError as e:
                print(f"ERROR: {e}")

    async def cmd_requests(self, args):
        """List requests"""
        requests = await self.client.list_requests()
        print(f"\nRequests: {len(requests)}")
        print("-" * 80)
        for r in requests[-20:]:
            print(f"  {r['request_id']:<8} {r['status']:<10} {str(r.get('group_name')):<12} "
                  f"{str(r.get('importance')):<12} {r['command'][:40]}")

    async def cmd_steps(self, args):
        """Show the steps of a request"""
        if len(args) < 1:
            print("Error: Usage: steps <request_id>")
            return
        steps = await self.client.get_request_steps(args[0])
        for s in steps:
            print(f"  {s['step_index']:>3} {s['operation_type']:<16} {s['location_type']:<8} "
                  f"{s['status']:<10} {s['row_count']:>8}  {s['command'][:40]}")

    async def cmd_cancel(self, args):
        """Cancel a request"""
        if len(args) < 1:
            print("Error: Usage: cancel <request_id>")
            return
        cancelled = await self.client.cancel(args[0])
        print(f"{args[0]}: {'cancelled' if cancelled else 'not active'}")

    async def cmd_groups(self, args):
        """Show workload group usage"""
        groups = await self.client.get_workload_groups()
        print("\nWorkload groups:")
        print("-" * 80)
        for g in groups:
            print(f"  {g['name']:<14} min={g['effective_min_percentage_resource']:>6}% "
                  f"cap={g['effective_cap_percentage_resource']:>6}% "
                  f"grant={g['effective_request_min_resource_grant_percent']:>6}% "
                  f"running={g['running_requests']} queued={g['queued_requests']}")

    async def cmd_cache(self, args):
        """Show result cache space"""
        space = await self.client.get_cache_space()
        print("\nResult cache:")
        print("-" * 80)
        for key, value in space.items():
            print(f"  {key}: {value}")

    async def cmd_status(self, args):
        """Get server status"""
        status = await self.client.get_server_status()
        print("\nServer Status:")
        print("-" * 80)
        print(f"Database: {status.get('database')}  paused={status.get('paused')}")
        print(f"Result set caching: {status.get('result_set_caching')}")
        print(f"Sessions: {status.get('sessions', 0)}")
        print(f"Requests: {status.get('requests', {})}")
        print(f"Queued: {status.get('queued', 0)}")

    async def process_command(self, line):
        """Process a command line"""
        line = line.strip()
        if not line:
            return

        parts = line.split()
        cmd = parts[0].lower()
        args = parts[1:]
        rest = line[len(parts[0]):].strip()

        if cmd in ['exit', 'quit']:
            self.running = False
            print("\nGoodbye!")
        elif cmd == 'help':
            self.print_help()
        elif cmd == 'sql':
            await self.cmd_sql(rest)
        elif cmd == 'submit':
            await self.cmd_submit(rest)
        elif cmd == 'script':
            await self.cmd_script(args)
        elif cmd == 'requests':
            await self.cmd_requests(args)
        elif cmd == 'steps':
            await self.cmd_steps(args)
        elif cmd == 'cancel':
            await self.cmd_cancel(args)
        elif cmd == 'groups':
            await self.cmd_groups(args)
        elif cmd == 'cache':
            await self.cmd_cache(args)
        elif cmd == 'status':
            await self.cmd_status(args)
        else:
            await self.cmd_sql(line.rstrip(';'))

    async def run(self):
        """Run interactive mode"""
        self.print_banner()

        while self.running:
            try:
                loop = asyncio.get_event_loop()
                line = await loop.run_in_executor(None, input, "\n> ")
                await self.process_command(line)
            except KeyboardInterrupt:
                print("\n\nUse 'exit' or 'quit' to exit")
            except EOFError:
                self.running = False
                print("\nGoodbye!")
            except (RuntimeError, KeyError) as e:
                print(f"Error: {e}")


async def run_interactive_mode(client: WarehouseClient):
    """Run client in interactive mode"""
    cli = InteractiveCLI(client)
    await cli.run()


async def run_onetime_mode(client: WarehouseClient, script: str):
    """Run client in one-time script mode"""
    print("=" * 80)
    print(f"Dedicated SQL Pool Client - {script}")
    print("=" * 80)
    print(f"\nLogin: {client.login_name}")
    print(f"Server: {client.server_url}")

    statements = client.load_statements_from_file(script)
    if not statements:
        print("ERROR: No statements found")
        return
    print(f"Loaded {len(statements)} statement(s)")

    print(f"\nExecuting statements...")
    print("-" * 80)
    for i, statement in enumerate(statements, 1):
        print(f"\n[{i}/{len(statements)}] {statement.splitlines()[0][:70]}")
        try:
            print_result(await client.execute(statement))
        except RuntimeError as e:
            print(f"ERROR: {e}")

    print("\n" + "=" * 80)
    print("Server Status")
    print("=" * 80)
    status = await client.get_server_status()
    print(f"Requests: {status['requests']}")
    print(f"Result cache: {status['cache']}")


async def main():
    parser = argparse.ArgumentParser(description="Dedicated SQL Pool Client")
    parser.add_argument('script', nargs='?',
                       help='SQL script to execute (omit for interactive mode)')
    parser.add_argument('--server', default='http://localhost:8080',
                       help='Server URL (default: http://localhost:8080)')
    parser.add_argument('--login', default='sqladmin',
                       help='Login name (default: sqladmin)')
    parser.add_argument('--role', action='append', default=[],
                       help='Role membership for the session (repeatable)')
    parser.add_argument('--app-name', default=None,
                       help='Application name')
    parser.add_argument('-i', '--interactive', action='store_true',
                       help='Start in interactive mode')

    args = parser.parse_args()

    # Create client
    client = WarehouseClient(
        server_url=args.server,
        login_name=args.login,
        roles=args.role,
        app_name=args.app_name
    )

    # Check server health
    if not await client.health_check():
        print("ERROR: Server is not reachable or not running")
        print("Please start the server first: python run_server.py")
        return

    await client.open_session()
    try:
        if args.interactive or not args.script:
            await run_interactive_mode(client)
        else:
            await run_onetime_mode(client, args.script)
    finally:
        await client.close_session()


if __name__ == "__main__":
    asyncio.run(main())
