"""Async UDP transport for a single NAT-PMP exchange."""

from __future__ import annotations

import asyncio
import ipaddress
import logging

from natfwd.nat.exceptions import TransportError
from natfwd.nat.natpmp import NAT_PMP_PORT

logger = logging.getLogger(__name__)

_ERROR_TRANSPORT_NOT_OPEN = "UDP transport is not open"
_ERROR_TRANSPORT_CLOSED = "UDP transport closed while waiting for a reply"


class UDPTransport:
    """UDP socket bound to an ephemeral port and connected to the gateway.

    Owned exclusively by one exchange. ``recv`` suspends only the calling
    task and signals an expired wait with ``None`` rather than an exception,
    so callers can tell "no reply yet" apart from a broken socket.
    """

    def __init__(
        self,
        gateway: ipaddress.IPv4Address | str,
        port: int = NAT_PMP_PORT,
    ):
        """Initialize UDP transport.

        Args:
            gateway: Gateway IPv4 address
            port: Gateway NAT-PMP port

        """
        self.gateway = ipaddress.IPv4Address(str(gateway))
        self.port = port
        self.transport: asyncio.DatagramTransport | None = None
        self._queue: asyncio.Queue[bytes | BaseException] = asyncio.Queue()
        self._closed = False

    @property
    def is_open(self) -> bool:
        """Whether the socket is open."""
        return self.transport is not None and not self._closed

    @property
    def local_address(self) -> tuple[str, int] | None:
        """Local (host, port) the socket is bound to."""
        if self.transport is None:
            return None
        return self.transport.get_extra_info("sockname")

    async def open(self) -> UDPTransport:
        """Create the UDP socket."""
        if self.transport is not None:
            return self
        loop = asyncio.get_running_loop()
        try:
            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: NATPMPDatagramProtocol(self),
                local_addr=("0.0.0.0", 0),  # nosec B104 - ephemeral client socket
                remote_addr=(str(self.gateway), self.port),
            )
        except OSError as e:
            msg = f"Failed to open UDP socket to {self.gateway}:{self.port}: {e}"
            raise TransportError(msg) from e
        logger.debug(
            "Opened NAT-PMP socket %s -> %s:%s",
            self.local_address,
            self.gateway,
            self.port,
        )
        return self

    def send(self, datagram: bytes) -> None:
        """Send a datagram to the gateway."""
        if not self.is_open:
            raise TransportError(_ERROR_TRANSPORT_NOT_OPEN)
        try:
            self.transport.sendto(datagram)  # type: ignore[union-attr]
        except OSError as e:
            msg = f"Failed to send to {self.gateway}:{self.port}: {e}"
            raise TransportError(msg) from e

    async def recv(self, timeout: float) -> bytes | None:
        """Wait up to ``timeout`` seconds for a datagram from the gateway.

        Returns:
            The datagram, or None if the wait expired

        Raises:
            TransportError: Socket not open, or closed while waiting

        """
        if self.transport is None or (self._closed and self._queue.empty()):
            raise TransportError(_ERROR_TRANSPORT_NOT_OPEN)
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return None
        if isinstance(item, BaseException):
            raise TransportError(_ERROR_TRANSPORT_CLOSED) from item
        return item

    def close(self) -> None:
        """Close the socket; wakes any pending ``recv``."""
        if self._closed:
            return
        self._closed = True
        if self.transport is not None:
            self.transport.close()
        self._queue.put_nowait(ConnectionAbortedError("transport closed"))

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        """Queue a datagram if it came from the gateway's NAT-PMP port."""
        host, port = addr[0], addr[1]
        if host != str(self.gateway) or port != self.port:
            logger.debug("Ignoring datagram from unexpected source %s:%s", host, port)
            return
        self._queue.put_nowait(data)

    def connection_lost(self, exc: Exception | None) -> None:
        """Wake any waiter once the socket is gone."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(exc or ConnectionAbortedError("connection lost"))

    async def __aenter__(self) -> UDPTransport:
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class NATPMPDatagramProtocol(asyncio.DatagramProtocol):
    """UDP protocol handler feeding a ``UDPTransport``."""

    def __init__(self, owner: UDPTransport):
        """Initialize UDP protocol handler."""
        self.owner = owner

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        """Handle incoming UDP datagram."""
        self.owner.datagram_received(data, addr)

    def error_received(self, exc: Exception) -> None:
        """Handle UDP error (e.g. ICMP port unreachable); retries continue."""
        logger.debug("UDP error from %s: %s", self.owner.gateway, exc)

    def connection_lost(self, exc: Exception | None) -> None:
        """Handle socket closure."""
        self.owner.connection_lost(exc)
