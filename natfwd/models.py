"""Pydantic models for natfwd.

Provides the validated, immutable configuration handed to the protocol
client and the HTTP server at startup.
"""

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

NO_DURATION_LIMIT = -1


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class GatewayConfig(BaseModel):
    """NAT-PMP gateway configuration."""

    model_config = ConfigDict(frozen=True)

    address: ipaddress.IPv4Address = Field(
        ...,
        description="IPv4 address of the NAT-PMP gateway",
    )
    port: int = Field(
        default=5351,
        ge=1,
        le=65535,
        description="NAT-PMP server port on the gateway",
    )
    initial_timeout: float = Field(
        default=0.25,
        gt=0.0,
        le=60.0,
        description="Wait for the first reply in seconds, doubled on every retry",
    )
    max_attempts: int = Field(
        default=9,
        ge=1,
        le=16,
        description="Number of request transmissions before giving up",
    )

    @field_validator("address", mode="before")
    @classmethod
    def _reject_ipv6(cls, v: Any) -> Any:
        """Reject IPv6 gateways with a readable message."""
        if isinstance(v, str):
            try:
                parsed = ipaddress.ip_address(v.strip())
            except ValueError as e:
                msg = f"Invalid gateway address: {v!r}"
                raise ValueError(msg) from e
            if parsed.version != 4:
                msg = "IPv6 gateways are not supported"
                raise ValueError(msg)
            return parsed
        if isinstance(v, ipaddress.IPv6Address):
            msg = "IPv6 gateways are not supported"
            raise ValueError(msg)
        return v


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(frozen=True)

    bind_address: str = Field(
        default="0.0.0.0",  # nosec B104 - service is meant to be reachable in-cluster
        description="Address the HTTP server binds to",
    )
    port: int = Field(default=8080, ge=0, le=65535, description="HTTP server port")
    max_duration: int = Field(
        default=300,
        ge=NO_DURATION_LIMIT,
        le=0xFFFFFFFF,
        description="Maximum mapping lifetime in seconds (-1 disables the limit)",
    )
    token: str | None = Field(
        default=None,
        description="Shared secret expected in 'Authorization: Bearer <token>'",
    )

    @field_validator("bind_address")
    @classmethod
    def _validate_bind_address(cls, v: str) -> str:
        ipaddress.ip_address(v)
        return v

    @field_validator("token")
    @classmethod
    def _empty_token_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v

    @property
    def duration_limit(self) -> int | None:
        """Maximum mapping lifetime, or None when unlimited."""
        if self.max_duration == NO_DURATION_LIMIT:
            return None
        return self.max_duration

    def clamp_duration(self, duration: int) -> int:
        """Clamp a requested lifetime to the configured maximum."""
        limit = self.duration_limit
        if limit is None:
            return duration
        return min(duration, limit)


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Write JSON records instead of plain text to the log file",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v


class Config(BaseModel):
    """Top-level natfwd configuration."""

    model_config = ConfigDict(frozen=True)

    gateway: GatewayConfig
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
