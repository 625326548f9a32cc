#!/usr/bin/env python3
"""
Start the dedicated SQL pool server
"""

import asyncio
import argparse
import logging

from sqlpool.config import Config
from sqlpool.server import WarehouseServer


async def main():
    parser = argparse.ArgumentParser(description="Dedicated SQL Pool Server")
    parser.add_argument('--config', default='config',
                       help='Configuration directory (default: config)')
    parser.add_argument('--host', default=None,
                       help='Server host (default: server.host from config)')
    parser.add_argument('--port', type=int, default=None,
                       help='Server port (default: server.port from config)')
    parser.add_argument('--log-level', default=None,
                       help='Logging level (default: logging.level from config)')

    args = parser.parse_args()

    config = Config(args.config)
    logging.basicConfig(
        level=(args.log_level or config.get('logging.level', 'INFO')).upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Create and start server
    server = WarehouseServer(
        host=args.host,
        port=args.port,
        config=config
    )

    try:
        await server.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n\nReceived shutdown signal")
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
