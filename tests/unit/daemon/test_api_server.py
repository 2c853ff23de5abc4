"""Tests for the HTTP API server."""

from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from natfwd.daemon.api_protocol import CORRELATION_HEADER
from natfwd.daemon.api_server import SHUTDOWN_GRACE, APIServer
from natfwd.nat.client import NATPMPClient
from natfwd.nat.exceptions import (
    GatewayRejectedError,
    NoResponseError,
    TransportError,
)
from natfwd.nat.natpmp import MappingResponse, Protocol
from natfwd.nat.retry import RetryPolicy


def granted(protocol=Protocol.TCP, internal=8080, external=45000, lifetime=300):
    return MappingResponse(
        protocol=protocol,
        internal_port=internal,
        external_port=external,
        granted_lifetime_seconds=lifetime,
        result_code=0,
        server_epoch=1000,
    )


@pytest.fixture
def nat_client():
    client = Mock(spec=NATPMPClient)
    client.request_mapping = AsyncMock(return_value=granted())
    return client


@pytest_asyncio.fixture
async def make_api():
    """Start an APIServer app under aiohttp's test server."""
    started: list[TestClient] = []

    async def factory(config, client) -> TestClient:
        server = APIServer(config, client)
        test_client = TestClient(TestServer(server.app))
        await test_client.start_server()
        started.append(test_client)
        return test_client

    yield factory

    for test_client in started:
        await test_client.close()


@pytest.mark.asyncio
async def test_health(make_api, config_factory, nat_client):
    api = await make_api(config_factory(server={"token": "t0k"}), nat_client)

    resp = await api.get("/health")

    assert resp.status == 200
    body = await resp.json()
    assert body["status"] == "healthy"
    assert datetime.fromisoformat(body["timestamp"]).tzinfo is not None


@pytest.mark.asyncio
async def test_forward_success(make_api, config_factory, nat_client):
    api = await make_api(config_factory(), nat_client)

    resp = await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "tcp", "duration": 300}
    )

    assert resp.status == 200
    assert await resp.json() == {
        "internal_port": 8080,
        "external_port": 45000,
        "protocol": "tcp",
        "duration": 300,
    }
    nat_client.request_mapping.assert_awaited_once_with(
        Protocol.TCP, 8080, requested_external_port=0, lifetime=300
    )


@pytest.mark.asyncio
async def test_forward_reports_granted_lifetime(make_api, config_factory, nat_client):
    nat_client.request_mapping.return_value = granted(lifetime=120)
    api = await make_api(config_factory(), nat_client)

    resp = await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "tcp", "duration": 300}
    )

    assert (await resp.json())["duration"] == 120


@pytest.mark.asyncio
async def test_forward_protocol_case_insensitive(make_api, config_factory, nat_client):
    nat_client.request_mapping.return_value = granted(protocol=Protocol.UDP)
    api = await make_api(config_factory(), nat_client)

    resp = await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "UDP", "duration": 60}
    )

    assert resp.status == 200
    assert (await resp.json())["protocol"] == "udp"
    assert nat_client.request_mapping.await_args.args[0] is Protocol.UDP


@pytest.mark.asyncio
async def test_forward_passes_external_port(make_api, config_factory, nat_client):
    api = await make_api(config_factory(), nat_client)

    await api.post(
        "/forward",
        json={
            "internal_port": 8080,
            "protocol": "tcp",
            "duration": 60,
            "external_port": 8443,
        },
    )

    assert nat_client.request_mapping.await_args.kwargs["requested_external_port"] == 8443


@pytest.mark.asyncio
async def test_duration_clamped_to_maximum(make_api, config_factory, nat_client):
    api = await make_api(config_factory(server={"max_duration": 300}), nat_client)

    await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "tcp", "duration": 3600}
    )

    assert nat_client.request_mapping.await_args.kwargs["lifetime"] == 300


@pytest.mark.asyncio
async def test_duration_unlimited(make_api, config_factory, nat_client):
    api = await make_api(config_factory(server={"max_duration": -1}), nat_client)

    await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "tcp", "duration": 86400}
    )

    assert nat_client.request_mapping.await_args.kwargs["lifetime"] == 86400


@pytest.mark.asyncio
async def test_invalid_protocol(make_api, config_factory, nat_client):
    api = await make_api(config_factory(), nat_client)

    resp = await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "sctp", "duration": 60}
    )

    assert resp.status == 400
    assert (await resp.json())["error"] == "protocol must be tcp or udp"
    nat_client.request_mapping.assert_not_awaited()


@pytest.mark.asyncio
async def test_internal_port_zero(make_api, config_factory):
    """Rejected by the real client before any socket is opened."""
    factory = Mock(side_effect=AssertionError("no transport expected"))
    client = NATPMPClient("127.0.0.1", transport_factory=factory)
    api = await make_api(config_factory(), client)

    resp = await api.post(
        "/forward", json={"internal_port": 0, "protocol": "tcp", "duration": 60}
    )

    assert resp.status == 400
    body = await resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "internal_port" in body["error"]
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_malformed_json(make_api, config_factory, nat_client):
    api = await make_api(config_factory(), nat_client)

    resp = await api.post(
        "/forward", data="{not json", headers={"Content-Type": "application/json"}
    )

    assert resp.status == 400
    assert (await resp.json())["code"] == "INVALID_JSON"


@pytest.mark.parametrize(
    "payload",
    [
        {"protocol": "tcp", "duration": 60},
        {"internal_port": "8080", "protocol": "tcp", "duration": 60},
        {"internal_port": 8080, "protocol": "tcp", "duration": -1},
        {"internal_port": 70000, "protocol": "tcp", "duration": 60},
        {"internal_port": 8080, "protocol": 6, "duration": 60},
        [8080, "tcp", 60],
    ],
)
@pytest.mark.asyncio
async def test_invalid_fields(make_api, config_factory, nat_client, payload):
    api = await make_api(config_factory(), nat_client)

    resp = await api.post("/forward", json=payload)

    assert resp.status == 400
    assert (await resp.json())["code"] == "VALIDATION_ERROR"
    nat_client.request_mapping.assert_not_awaited()


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (NoResponseError("No response from NAT-PMP gateway after 9 attempts"), "NO_RESPONSE"),
        (GatewayRejectedError(2), "GATEWAY_REJECTED"),
        (TransportError("Failed to send"), "TRANSPORT_ERROR"),
    ],
)
@pytest.mark.asyncio
async def test_client_failures_are_500(make_api, config_factory, nat_client, error, code):
    nat_client.request_mapping.side_effect = error
    api = await make_api(config_factory(), nat_client)

    resp = await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "tcp", "duration": 60}
    )

    assert resp.status == 500
    body = await resp.json()
    assert body["code"] == code
    assert body["error"] == error.message


@pytest.mark.asyncio
async def test_gateway_rejection_details(make_api, config_factory, nat_client):
    nat_client.request_mapping.side_effect = GatewayRejectedError(4)
    api = await make_api(config_factory(), nat_client)

    resp = await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "tcp", "duration": 60}
    )

    assert (await resp.json())["details"] == {
        "result_code": 4,
        "result": "OUT_OF_RESOURCES",
    }


@pytest.mark.asyncio
async def test_unexpected_error_is_500(make_api, config_factory, nat_client):
    nat_client.request_mapping.side_effect = RuntimeError("boom")
    api = await make_api(config_factory(), nat_client)

    resp = await api.post(
        "/forward", json={"internal_port": 8080, "protocol": "tcp", "duration": 60}
    )

    assert resp.status == 500
    body = await resp.json()
    assert body["code"] == "INTERNAL_ERROR"
    assert body["error"] == "boom"


@pytest.mark.parametrize("header", [None, "Bearer wrong", "t0k", "Basic t0k"])
@pytest.mark.asyncio
async def test_unauthorized(make_api, config_factory, nat_client, header):
    api = await make_api(config_factory(server={"token": "t0k"}), nat_client)
    headers = {"Authorization": header} if header else {}

    resp = await api.post(
        "/forward",
        json={"internal_port": 8080, "protocol": "tcp", "duration": 60},
        headers=headers,
    )

    assert resp.status == 401
    assert (await resp.json())["error"] == "Unauthorized"
    nat_client.request_mapping.assert_not_awaited()


@pytest.mark.asyncio
async def test_authorized(make_api, config_factory, nat_client):
    api = await make_api(config_factory(server={"token": "t0k"}), nat_client)

    resp = await api.post(
        "/forward",
        json={"internal_port": 8080, "protocol": "tcp", "duration": 60},
        headers={"Authorization": "Bearer t0k"},
    )

    assert resp.status == 200


@pytest.mark.asyncio
async def test_correlation_id_echoed(make_api, config_factory, nat_client):
    api = await make_api(config_factory(), nat_client)

    resp = await api.get("/health", headers={CORRELATION_HEADER: "req-42"})
    generated = await api.get("/health")

    assert resp.headers[CORRELATION_HEADER] == "req-42"
    assert generated.headers[CORRELATION_HEADER]


@pytest.mark.asyncio
async def test_wrong_method(make_api, config_factory, nat_client):
    api = await make_api(config_factory(), nat_client)

    resp = await api.get("/forward")

    assert resp.status == 405


@pytest.mark.asyncio
async def test_start_and_stop_on_ephemeral_port(config_factory, nat_client):
    server = APIServer(
        config_factory(server={"bind_address": "127.0.0.1", "port": 0}), nat_client
    )
    await server.start()
    try:
        assert server.port != 0
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://127.0.0.1:{server.port}/health") as resp:
                assert resp.status == 200
    finally:
        await server.stop()

    assert server.runner is None


@pytest.mark.asyncio
async def test_start_bind_failure(config_factory, nat_client):
    first = APIServer(
        config_factory(server={"bind_address": "127.0.0.1", "port": 0}), nat_client
    )
    await first.start()
    try:
        second = APIServer(
            config_factory(server={"bind_address": "127.0.0.1", "port": first.port}),
            nat_client,
        )
        with pytest.raises(RuntimeError, match="failed to bind"):
            await second.start()
    finally:
        await first.stop()


@pytest.mark.asyncio
async def test_unexpected_error_is_logged(make_api, config_factory, nat_client):
    error = RuntimeError("boom")
    nat_client.request_mapping.side_effect = error
    api = await make_api(config_factory(), nat_client)

    with patch("natfwd.daemon.api_server.log_exception") as mock_log:
        resp = await api.post(
            "/forward", json={"internal_port": 8080, "protocol": "tcp", "duration": 60}
        )

    assert resp.status == 500
    mock_log.assert_called_once()
    assert mock_log.call_args.args[1] is error
    assert "POST /forward" in mock_log.call_args.args[2]


@pytest.mark.asyncio
async def test_unknown_path_is_404_with_token(make_api, config_factory, nat_client):
    api = await make_api(config_factory(server={"token": "t0k"}), nat_client)

    resp = await api.post("/nope", json={})

    assert resp.status == 404


@pytest.mark.asyncio
async def test_wrong_method_is_405_with_token(make_api, config_factory, nat_client):
    api = await make_api(config_factory(server={"token": "t0k"}), nat_client)

    resp = await api.get("/forward")

    assert resp.status == 405


def test_shutdown_timeout_covers_retry_window(config_factory):
    policy = RetryPolicy()
    client = NATPMPClient("127.0.0.1", policy=policy)

    server = APIServer(config_factory(), client)

    assert server.shutdown_timeout == policy.total_wait + SHUTDOWN_GRACE
    assert server.shutdown_timeout > 127.75


def test_shutdown_timeout_from_gateway_config(config_factory, nat_client):
    config = config_factory(gateway={"initial_timeout": 1.0, "max_attempts": 3})

    server = APIServer(config, nat_client)

    assert server.shutdown_timeout == 7.0 + SHUTDOWN_GRACE


@pytest.mark.asyncio
async def test_runner_uses_shutdown_timeout(config_factory, nat_client):
    server = APIServer(
        config_factory(server={"bind_address": "127.0.0.1", "port": 0}), nat_client
    )

    with patch.object(web, "AppRunner", wraps=web.AppRunner) as runner_cls:
        await server.start()
        await server.stop()

    assert runner_cls.call_args.kwargs["shutdown_timeout"] == server.shutdown_timeout


@pytest.mark.asyncio
async def test_stop_lets_in_flight_forward_finish(config_factory, nat_client):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_mapping(*args, **kwargs):
        entered.set()
        await release.wait()
        return granted()

    nat_client.request_mapping.side_effect = slow_mapping
    server = APIServer(
        config_factory(server={"bind_address": "127.0.0.1", "port": 0}), nat_client
    )
    await server.start()
    url = f"http://127.0.0.1:{server.port}/forward"

    async with aiohttp.ClientSession() as session:

        async def forward():
            async with session.post(
                url, json={"internal_port": 8080, "protocol": "tcp", "duration": 300}
            ) as resp:
                return resp.status, await resp.json()

        request = asyncio.create_task(forward())
        await asyncio.wait_for(entered.wait(), timeout=5)
        stopping = asyncio.create_task(server.stop())
        await asyncio.sleep(0.1)
        assert not stopping.done()

        release.set()
        status, body = await asyncio.wait_for(request, timeout=5)
        await asyncio.wait_for(stopping, timeout=5)

    assert status == 200
    assert body["external_port"] == 45000
    assert server.runner is None
