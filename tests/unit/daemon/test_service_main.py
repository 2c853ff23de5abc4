"""Tests for the service lifecycle."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from unittest.mock import Mock, patch

import pytest

from natfwd.daemon.main import ServiceMain
from natfwd.nat.client import NATPMPClient


def logged(mock_logger, method: str) -> list[str]:
    return [c.args[0] % c.args[1:] for c in getattr(mock_logger, method).call_args_list]


async def wait_until_serving(main: ServiceMain) -> None:
    for _ in range(200):
        if main.server.runner is not None and main.server.port != 0:
            return
        await asyncio.sleep(0.01)
    pytest.fail("server did not start")


@pytest.mark.asyncio
async def test_run_until_shutdown(config_factory):
    config = config_factory(server={"bind_address": "127.0.0.1", "port": 0})
    main = ServiceMain(config, Mock(spec=NATPMPClient))

    with patch("natfwd.daemon.main.logger") as mock_logger:
        task = asyncio.create_task(main.run(install_signal_handlers=False))
        await wait_until_serving(main)
        main.request_shutdown()
        await asyncio.wait_for(task, 5.0)

    assert main.server.runner is None
    assert "Server shutdown complete" in logged(mock_logger, "info")


@pytest.mark.asyncio
async def test_warns_without_token(config_factory):
    config = config_factory(server={"bind_address": "127.0.0.1", "port": 0})
    main = ServiceMain(config, Mock(spec=NATPMPClient))

    with patch("natfwd.daemon.main.logger") as mock_logger:
        await main.start()
        await main.stop()

    warnings = logged(mock_logger, "warning")
    assert len(warnings) == 1
    assert "without authentication" in warnings[0]


@pytest.mark.asyncio
async def test_no_warning_with_token(config_factory):
    config = config_factory(
        server={"bind_address": "127.0.0.1", "port": 0, "token": "t0k"}
    )
    main = ServiceMain(config, Mock(spec=NATPMPClient))

    with patch("natfwd.daemon.main.logger") as mock_logger:
        await main.start()
        await main.stop()

    mock_logger.warning.assert_not_called()


@pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers are POSIX only")
@pytest.mark.asyncio
async def test_sigterm_requests_shutdown(config_factory):
    main = ServiceMain(config_factory(), Mock(spec=NATPMPClient))
    main.setup_signal_handlers()
    try:
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(main._shutdown_event.wait(), 2.0)
    finally:
        main.remove_signal_handlers()
