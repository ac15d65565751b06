#!/usr/bin/env python3
"""
Klip Server Main Entry Point
Builds the application context, starts the background loops and serves the UI
"""
import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import websockets

from klip import __version__
from klip.config import ConfigManager
from klip.context import AppContext

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 5 * 1024 * 1024


class KlipServer:
    """Main server application"""

    def __init__(self, config: ConfigManager):
        self.config = config
        self.context = AppContext(config)
        self._stop: Optional[asyncio.Event] = None

    async def start_websocket_server(self):
        """Serve the UI until a shutdown signal arrives"""
        server_config = self.config.config.server
        loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        self.context.websocket_service.attach_loop(loop)

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._request_stop, signum)

        logger.info(f"Starting WebSocket server on ws://{server_config.host}:{server_config.port}")
        async with websockets.serve(
            self.context.websocket_service.websocket_handler,
            server_config.host,
            server_config.port,
            max_size=MAX_MESSAGE_SIZE,
        ):
            await self._stop.wait()

    def _request_stop(self, signum):
        logger.info(f"Received signal {signum}, shutting down...")
        if self._stop is not None:
            self._stop.set()

    def start(self):
        """Start the Klip server"""
        self.context.start()
        try:
            asyncio.run(self.start_websocket_server())
        finally:
            self.context.close()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="klip", description="Clipboard history server")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yml")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    config = ConfigManager(args.config)
    logging.getLogger().setLevel(config.log_level)
    logger.info(f"Klip {__version__} starting (data in {config.data_dir})")

    server = KlipServer(config)
    server.start()


if __name__ == "__main__":
    main()
