"""NAT-PMP (NAT Port Mapping Protocol) wire codec per RFC 6886."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from enum import Enum, IntEnum

from natfwd.nat.exceptions import (
    InvalidArgumentError,
    InvalidResponseError,
    OpcodeMismatchError,
    TruncatedResponseError,
    UnsupportedVersionError,
)

# RFC 6886 constants
NAT_PMP_PORT = 5351
NAT_PMP_VERSION = 0
NAT_PMP_RESPONSE_FLAG = 0x80

MAX_PORT = 0xFFFF
MAX_LIFETIME = 0xFFFFFFFF

# version(1), opcode(1), reserved(2), internal_port(2), external_port(2), lifetime(4)
_MAPPING_REQUEST = struct.Struct("!BBHHHI")
# version(1), opcode(1), result(2), epoch(4), internal_port(2), external_port(2), lifetime(4)
_MAPPING_RESPONSE = struct.Struct("!BBHIHHI")
# version(1), opcode(1), result(2), epoch(4), external_ip(4)
_PUBLIC_ADDRESS_RESPONSE = struct.Struct("!BBHII")


class NATPMPOpcode(IntEnum):
    """NAT-PMP opcodes from RFC 6886."""

    PUBLIC_ADDRESS_REQUEST = 0
    UDP_MAPPING_REQUEST = 1
    TCP_MAPPING_REQUEST = 2

    @property
    def response(self) -> int:
        """Opcode the gateway uses to answer this request."""
        return self.value | NAT_PMP_RESPONSE_FLAG


class NATPMPResult(IntEnum):
    """NAT-PMP result codes from RFC 6886 section 3.5."""

    SUCCESS = 0
    UNSUPPORTED_VERSION = 1
    NOT_AUTHORIZED = 2  # e.g., gateway firewall disallows
    NETWORK_FAILURE = 3
    OUT_OF_RESOURCES = 4
    UNSUPPORTED_OPCODE = 5


class Protocol(str, Enum):
    """Transport protocol of a port mapping."""

    TCP = "tcp"
    UDP = "udp"

    @classmethod
    def parse(cls, value: Protocol | str) -> Protocol:
        """Parse a protocol name case-insensitively."""
        if isinstance(value, Protocol):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            msg = "protocol must be tcp or udp"
            raise InvalidArgumentError(msg, details={"protocol": value}) from None

    @property
    def opcode(self) -> NATPMPOpcode:
        """Mapping request opcode for this protocol."""
        if self is Protocol.TCP:
            return NATPMPOpcode.TCP_MAPPING_REQUEST
        return NATPMPOpcode.UDP_MAPPING_REQUEST


def result_name(code: int) -> str:
    """Name of a NAT-PMP result code, ``Unknown(<n>)`` outside the table."""
    try:
        return NATPMPResult(code).name
    except ValueError:
        return f"Unknown({code})"


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"{name} must be an integer"
        raise InvalidArgumentError(msg, details={name: value})
    if not low <= value <= high:
        msg = f"{name} must be between {low} and {high}"
        raise InvalidArgumentError(msg, details={name: value})


@dataclass(frozen=True)
class MappingRequest:
    """A port mapping request (RFC 6886 section 3.3).

    A lifetime of 0 asks the gateway to delete the mapping.
    """

    protocol: Protocol
    internal_port: int
    requested_external_port: int = 0
    lifetime_seconds: int = 3600

    def __post_init__(self) -> None:
        object.__setattr__(self, "protocol", Protocol.parse(self.protocol))
        _check_range("internal_port", self.internal_port, 1, MAX_PORT)
        _check_range(
            "requested_external_port", self.requested_external_port, 0, MAX_PORT
        )
        _check_range("lifetime_seconds", self.lifetime_seconds, 0, MAX_LIFETIME)

    @property
    def opcode(self) -> NATPMPOpcode:
        """Opcode used on the wire for this request."""
        return self.protocol.opcode


@dataclass(frozen=True)
class MappingResponse:
    """A decoded port mapping response."""

    protocol: Protocol
    internal_port: int
    external_port: int
    granted_lifetime_seconds: int
    result_code: int
    server_epoch: int

    @property
    def succeeded(self) -> bool:
        """Whether the gateway granted the mapping."""
        return self.result_code == NATPMPResult.SUCCESS

    @property
    def result(self) -> str:
        """Name of the result code."""
        return result_name(self.result_code)


@dataclass(frozen=True)
class PublicAddressResponse:
    """A decoded public address response."""

    external_address: ipaddress.IPv4Address
    result_code: int
    server_epoch: int


# Message encoding/decoding functions


def encode_request(req: MappingRequest) -> bytes:
    """Encode port mapping request (RFC 6886 section 3.3).

    Args:
        req: Validated mapping request

    Returns:
        12-byte NAT-PMP request datagram

    """
    return _MAPPING_REQUEST.pack(
        NAT_PMP_VERSION,
        req.opcode,
        0,  # reserved
        req.internal_port,
        req.requested_external_port,
        req.lifetime_seconds,
    )


def decode_response(
    data: bytes,
    expected_opcode: NATPMPOpcode | int | None = None,
    deleting: bool = False,
) -> MappingResponse:
    """Decode port mapping response (RFC 6886 section 3.3).

    Nonzero result codes decode successfully; the caller inspects
    ``result_code``.

    Args:
        data: Response datagram
        expected_opcode: Request opcode the response must answer; when None
            any mapping response opcode is accepted
        deleting: The request asked for lifetime 0, so a successful reply
            may carry external port 0

    Returns:
        MappingResponse

    Raises:
        TruncatedResponseError: Fewer than 16 bytes
        UnsupportedVersionError: Version byte is not 0
        OpcodeMismatchError: Opcode does not answer the expected request
        InvalidResponseError: Success without an external port to a request
            that was not a deletion

    """
    if len(data) < _MAPPING_RESPONSE.size:
        msg = "Response too short"
        raise TruncatedResponseError(msg, details={"length": len(data)})

    version, opcode, result, epoch, internal, external, lifetime = (
        _MAPPING_RESPONSE.unpack_from(data)
    )
    if version != NAT_PMP_VERSION:
        msg = "Unsupported NAT-PMP version in response"
        raise UnsupportedVersionError(msg, details={"version": version})

    if expected_opcode is None:
        accepted = {
            NATPMPOpcode.UDP_MAPPING_REQUEST.response,
            NATPMPOpcode.TCP_MAPPING_REQUEST.response,
        }
    else:
        accepted = {NATPMPOpcode(expected_opcode).response}
    if opcode not in accepted:
        msg = "Response opcode does not match request"
        raise OpcodeMismatchError(
            msg, details={"opcode": opcode, "expected": sorted(accepted)}
        )

    # A granted mapping always has an external port; only deletions answer with 0
    if result == NATPMPResult.SUCCESS and external == 0 and not deleting:
        msg = "Successful response without external port"
        raise InvalidResponseError(msg, details={"lifetime": lifetime})

    protocol = (
        Protocol.TCP
        if opcode == NATPMPOpcode.TCP_MAPPING_REQUEST.response
        else Protocol.UDP
    )
    return MappingResponse(
        protocol=protocol,
        internal_port=internal,
        external_port=external,
        granted_lifetime_seconds=lifetime,
        result_code=result,
        server_epoch=epoch,
    )


def encode_public_address_request() -> bytes:
    """Encode public address request (RFC 6886 section 3.2)."""
    return struct.pack("!BB", NAT_PMP_VERSION, NATPMPOpcode.PUBLIC_ADDRESS_REQUEST)


def decode_public_address_response(data: bytes) -> PublicAddressResponse:
    """Decode public address response (RFC 6886 section 3.2).

    Raises:
        TruncatedResponseError: Fewer than 12 bytes
        UnsupportedVersionError: Version byte is not 0
        OpcodeMismatchError: Not a public address response

    """
    if len(data) < _PUBLIC_ADDRESS_RESPONSE.size:
        msg = "Response too short"
        raise TruncatedResponseError(msg, details={"length": len(data)})

    version, opcode, result, epoch, ip_int = _PUBLIC_ADDRESS_RESPONSE.unpack_from(
        data
    )
    if version != NAT_PMP_VERSION:
        msg = "Unsupported NAT-PMP version in response"
        raise UnsupportedVersionError(msg, details={"version": version})
    if opcode != NATPMPOpcode.PUBLIC_ADDRESS_REQUEST.response:
        msg = "Response opcode does not match request"
        raise OpcodeMismatchError(msg, details={"opcode": opcode})

    return PublicAddressResponse(
        external_address=ipaddress.IPv4Address(ip_int),
        result_code=result,
        server_epoch=epoch,
    )
