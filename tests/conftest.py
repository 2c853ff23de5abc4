"""Pytest configuration and shared fixtures for natfwd tests."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import struct
from typing import Callable

import pytest
import pytest_asyncio

from natfwd.models import Config

# A reply builder returns the datagrams to send back for one request
ReplyFn = Callable[[bytes], "list[bytes]"]


def pytest_configure(config):
    """Register project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async"),
        ("slow", "marks tests as slow (deselect with '-m \"not slow\"')"),
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _clear_natpmp_env(monkeypatch):
    """Keep the developer's NATPMP_* environment out of config tests."""
    for name in list(os.environ):
        if name.startswith("NATPMP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


def mapping_response(
    opcode: int = 0x82,
    result: int = 0,
    epoch: int = 1000,
    internal_port: int = 8080,
    external_port: int = 45000,
    lifetime: int = 300,
    version: int = 0,
) -> bytes:
    """Build a 16-byte NAT-PMP mapping response."""
    return struct.pack(
        "!BBHIHHI",
        version,
        opcode,
        result,
        epoch,
        internal_port,
        external_port,
        lifetime,
    )


def public_address_response(
    address: str = "203.0.113.7",
    result: int = 0,
    epoch: int = 1000,
) -> bytes:
    """Build a 12-byte NAT-PMP public address response."""
    return struct.pack(
        "!BBHII", 0, 0x80, result, epoch, int(ipaddress.IPv4Address(address))
    )


def echo_mapping(external_port: int = 45000, result: int = 0) -> ReplyFn:
    """Reply builder granting every mapping request on ``external_port``.

    The granted lifetime echoes the requested one, as real gateways do.
    """

    def reply(request: bytes) -> list[bytes]:
        if len(request) == 2:
            return [public_address_response()]
        _, opcode, _, internal, _, lifetime = struct.unpack("!BBHHHI", request)
        return [
            mapping_response(
                opcode=opcode | 0x80,
                result=result,
                internal_port=internal,
                external_port=external_port if lifetime else 0,
                lifetime=lifetime,
            )
        ]

    return reply


class MockGatewayProtocol(asyncio.DatagramProtocol):
    """Localhost NAT-PMP gateway answering from a scripted reply builder."""

    def __init__(self, reply: ReplyFn):
        self.reply = reply
        self.requests: list[bytes] = []
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.requests.append(data)
        for datagram in self.reply(data):
            self.transport.sendto(datagram, addr)


class MockGateway:
    """Handle on a running mock gateway."""

    def __init__(self, transport: asyncio.DatagramTransport, protocol: MockGatewayProtocol):
        self.transport = transport
        self.protocol = protocol
        self.host, self.port = transport.get_extra_info("sockname")[:2]

    @property
    def requests(self) -> list[bytes]:
        return self.protocol.requests

    def set_reply(self, reply: ReplyFn) -> None:
        self.protocol.reply = reply

    def close(self) -> None:
        self.transport.close()


async def start_mock_gateway(reply: ReplyFn | None = None) -> MockGateway:
    """Start a mock gateway on an ephemeral localhost port."""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: MockGatewayProtocol(reply or echo_mapping()),
        local_addr=("127.0.0.1", 0),
    )
    return MockGateway(transport, protocol)


@pytest_asyncio.fixture
async def mock_gateway():
    """Mock NAT-PMP gateway granting mappings on external port 45000."""
    gateway = await start_mock_gateway()
    yield gateway
    gateway.close()


@pytest.fixture
def config_factory():
    """Build a validated Config from nested overrides."""

    def factory(**sections) -> Config:
        data = {"gateway": {"address": "127.0.0.1"}}
        for section, values in sections.items():
            data.setdefault(section, {}).update(values)
        return Config(**data)

    return factory
