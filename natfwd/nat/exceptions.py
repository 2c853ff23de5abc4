"""NAT traversal exceptions."""

from __future__ import annotations

from natfwd.utils.exceptions import NatfwdError


class NATError(NatfwdError):
    """Base exception for NAT traversal errors."""


class InvalidArgumentError(NATError):
    """Caller supplied a port, lifetime or protocol the protocol cannot carry."""


class NATPMPError(NATError):
    """NAT-PMP specific error."""


class CodecError(NATPMPError):
    """A datagram could not be decoded as the expected NAT-PMP response."""


class TruncatedResponseError(CodecError):
    """Response datagram shorter than the fixed layout."""


class UnsupportedVersionError(CodecError):
    """Response carries a protocol version other than 0."""


class OpcodeMismatchError(CodecError):
    """Response opcode does not answer the request that was sent."""


class InvalidResponseError(CodecError):
    """Response fields violate the protocol (e.g. success without a port)."""


class TransportError(NATPMPError):
    """UDP socket could not be created, used or was closed underneath us."""


class NoResponseError(NATPMPError):
    """Gateway never answered within the retransmission schedule."""


class GatewayRejectedError(NATPMPError):
    """Gateway answered with a nonzero result code."""

    def __init__(self, code: int, message: str | None = None):
        """Initialize with the gateway's result code."""
        from natfwd.nat.natpmp import result_name

        self.code = code
        self.result = result_name(code)
        super().__init__(
            message or f"NAT-PMP gateway rejected request: {self.result}",
            details={"result_code": code, "result": self.result},
        )
