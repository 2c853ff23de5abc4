"""Async NAT-PMP client: one request/response exchange per call."""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING, Callable

from natfwd.nat.exceptions import GatewayRejectedError, InvalidArgumentError
from natfwd.nat.natpmp import (
    NAT_PMP_PORT,
    MappingRequest,
    MappingResponse,
    NATPMPResult,
    Protocol,
    PublicAddressResponse,
    decode_public_address_response,
    decode_response,
    encode_public_address_request,
    encode_request,
)
from natfwd.nat.retry import RetryPolicy, exchange
from natfwd.nat.transport import UDPTransport

if TYPE_CHECKING:  # pragma: no cover
    from natfwd.models import GatewayConfig


class NATPMPClient:
    """NAT-PMP client for a single gateway.

    Holds no per-exchange state: every call opens its own UDP socket and
    closes it when the exchange ends, so concurrent calls are independent.
    """

    def __init__(
        self,
        gateway: ipaddress.IPv4Address | str,
        policy: RetryPolicy | None = None,
        port: int = NAT_PMP_PORT,
        transport_factory: Callable[..., UDPTransport] = UDPTransport,
    ):
        """Initialize NAT-PMP client.

        Args:
            gateway: Gateway IPv4 address
            policy: Retransmission schedule (default: RFC 6886)
            port: Gateway NAT-PMP port
            transport_factory: Builds the per-exchange transport

        """
        try:
            self.gateway = ipaddress.IPv4Address(str(gateway))
        except ValueError as e:
            msg = f"Invalid IPv4 gateway address: {gateway}"
            raise InvalidArgumentError(msg) from e
        self.policy = policy or RetryPolicy()
        self.port = port
        self.transport_factory = transport_factory
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: GatewayConfig) -> NATPMPClient:
        """Build a client from gateway configuration."""
        return cls(
            config.address,
            policy=RetryPolicy(
                initial_timeout=config.initial_timeout,
                max_attempts=config.max_attempts,
            ),
            port=config.port,
        )

    async def _exchange(self, datagram: bytes, accept: Callable[[bytes], object]):
        transport = self.transport_factory(self.gateway, self.port)
        await transport.open()
        try:
            return await exchange(transport, datagram, accept, self.policy)
        finally:
            transport.close()

    async def request_mapping(
        self,
        protocol: Protocol | str,
        internal_port: int,
        requested_external_port: int = 0,
        lifetime: int = 3600,
    ) -> MappingResponse:
        """Request a port mapping (RFC 6886 section 3.3).

        Args:
            protocol: "tcp" or "udp"
            internal_port: Internal port (must be nonzero)
            requested_external_port: Preferred external port (0 for any)
            lifetime: Requested lifetime in seconds (0 deletes the mapping)

        Returns:
            The gateway's successful response

        Raises:
            InvalidArgumentError: Arguments rejected before any network I/O
            GatewayRejectedError: Gateway answered with a nonzero result code
            NoResponseError: Gateway never answered
            TransportError: Socket failure

        """
        request = MappingRequest(
            protocol=Protocol.parse(protocol),
            internal_port=internal_port,
            requested_external_port=requested_external_port,
            lifetime_seconds=lifetime,
        )

        response: MappingResponse = await self._exchange(
            encode_request(request),
            lambda data: decode_response(
                data, request.opcode, deleting=request.lifetime_seconds == 0
            ),
        )

        if response.result_code != NATPMPResult.SUCCESS:
            self.logger.warning(
                "Gateway %s rejected %s mapping for port %s: %s",
                self.gateway,
                request.protocol.value,
                request.internal_port,
                response.result,
            )
            raise GatewayRejectedError(response.result_code)

        if lifetime:
            self.logger.info(
                "Mapped %s port %s -> %s (lifetime: %s s)",
                response.protocol.value,
                response.internal_port,
                response.external_port,
                response.granted_lifetime_seconds,
            )
        return response

    async def delete_mapping(
        self,
        protocol: Protocol | str,
        internal_port: int,
    ) -> MappingResponse:
        """Delete a port mapping by requesting 0 lifetime (RFC 6886 section 3.4)."""
        response = await self.request_mapping(protocol, internal_port, 0, 0)
        self.logger.info(
            "Deleted %s port mapping for port %s",
            response.protocol.value,
            internal_port,
        )
        return response

    async def get_external_address(self) -> PublicAddressResponse:
        """Ask the gateway for its public address (RFC 6886 section 3.2).

        Raises:
            GatewayRejectedError: Gateway answered with a nonzero result code
            NoResponseError: Gateway never answered
            TransportError: Socket failure

        """
        response: PublicAddressResponse = await self._exchange(
            encode_public_address_request(),
            decode_public_address_response,
        )
        if response.result_code != NATPMPResult.SUCCESS:
            raise GatewayRejectedError(response.result_code)
        self.logger.info(
            "Gateway %s reports external address %s",
            self.gateway,
            response.external_address,
        )
        return response


async def request_mapping(
    gateway: ipaddress.IPv4Address | str,
    protocol: Protocol | str,
    internal_port: int,
    requested_external_port: int = 0,
    lifetime: int = 3600,
    policy: RetryPolicy | None = None,
    port: int = NAT_PMP_PORT,
) -> MappingResponse:
    """Request a port mapping from ``gateway`` in one call."""
    client = NATPMPClient(gateway, policy=policy, port=port)
    return await client.request_mapping(
        protocol, internal_port, requested_external_port, lifetime
    )
