"""Service main entry point.

Runs the HTTP API server until SIGINT or SIGTERM, then shuts it down
gracefully.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import TYPE_CHECKING, Any

from natfwd.daemon.api_server import APIServer
from natfwd.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from natfwd.models import Config
    from natfwd.nat.client import NATPMPClient

logger = get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ServiceMain:
    """Owns the API server for the lifetime of the process."""

    def __init__(self, config: Config, client: NATPMPClient | None = None):
        self.config = config
        self.server = APIServer(config, client)
        self._shutdown_event = asyncio.Event()

    def request_shutdown(self) -> None:
        """Ask the main loop to stop."""
        self._shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int, _frame: Any = None) -> None:
            logger.info("Received signal %d, initiating shutdown", signum)
            loop.call_soon_threadsafe(self.request_shutdown)

        for sig in SHUTDOWN_SIGNALS:
            if sys.platform == "win32":
                signal.signal(sig, signal_handler)
            else:
                loop.add_signal_handler(sig, signal_handler, sig)

    def remove_signal_handlers(self) -> None:
        """Restore default signal handling."""
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    async def start(self) -> None:
        """Start serving."""
        await self.server.start()
        gateway = self.config.gateway
        if self.config.server.token is None:
            logger.warning(
                "Serving on %s:%d for gateway %s:%d without authentication "
                "(no token configured)",
                self.server.host,
                self.server.port,
                gateway.address,
                gateway.port,
            )
        else:
            logger.info(
                "Serving on %s:%d for gateway %s:%d",
                self.server.host,
                self.server.port,
                gateway.address,
                gateway.port,
            )

    async def stop(self) -> None:
        """Stop accepting connections and drain in-flight requests."""
        logger.info("Shutting down server")
        await self.server.stop()
        logger.info("Server shutdown complete")

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Run until shutdown is requested."""
        await self.start()
        if install_signal_handlers:
            self.setup_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            if install_signal_handlers:
                self.remove_signal_handlers()
            await self.stop()


async def run_server(config: Config, client: NATPMPClient | None = None) -> None:
    """Run the HTTP server until SIGINT/SIGTERM.

    Args:
        config: Validated service configuration
        client: NAT-PMP client (default: built from ``config.gateway``)

    """
    await ServiceMain(config, client).run()
