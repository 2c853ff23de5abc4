"""NAT-PMP client.

Provides the RFC 6886 wire codec, a per-exchange UDP transport, the
exponential retransmission engine and the client tying them together.
"""

from natfwd.nat.client import NATPMPClient, request_mapping
from natfwd.nat.exceptions import (
    CodecError,
    GatewayRejectedError,
    InvalidArgumentError,
    NATError,
    NATPMPError,
    NoResponseError,
    TransportError,
)
from natfwd.nat.natpmp import MappingRequest, MappingResponse, Protocol
from natfwd.nat.retry import RetryPolicy

__all__ = [
    "CodecError",
    "GatewayRejectedError",
    "InvalidArgumentError",
    "MappingRequest",
    "MappingResponse",
    "NATError",
    "NATPMPClient",
    "NATPMPError",
    "NoResponseError",
    "Protocol",
    "RetryPolicy",
    "TransportError",
    "request_mapping",
]
