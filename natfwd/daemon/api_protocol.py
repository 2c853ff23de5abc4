"""HTTP API definitions for the port forwarding service.

Defines constants and request/response models for the REST endpoints.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# API Constants
FORWARD_PATH = "/forward"
HEALTH_PATH = "/health"
AUTHORIZATION_HEADER = "Authorization"
BEARER_PREFIX = "Bearer "
CORRELATION_HEADER = "X-Correlation-ID"

# Error codes
ERROR_INVALID_JSON = "INVALID_JSON"
ERROR_VALIDATION = "VALIDATION_ERROR"
ERROR_UNAUTHORIZED = "UNAUTHORIZED"
ERROR_NO_RESPONSE = "NO_RESPONSE"
ERROR_GATEWAY_REJECTED = "GATEWAY_REJECTED"
ERROR_TRANSPORT = "TRANSPORT_ERROR"
ERROR_INTERNAL = "INTERNAL_ERROR"


class ForwardRequest(BaseModel):
    """Request to open a port mapping on the gateway."""

    model_config = ConfigDict(extra="ignore", strict=True)

    internal_port: int = Field(..., ge=0, le=65535, description="Internal port")
    protocol: str = Field(..., description="'tcp' or 'udp'")
    duration: int = Field(..., ge=0, le=0xFFFFFFFF, description="Lifetime in seconds")
    external_port: int = Field(
        0,
        ge=0,
        le=65535,
        description="Suggested external port (0 lets the gateway choose)",
    )


class ForwardResponse(BaseModel):
    """Mapping granted by the gateway."""

    internal_port: int = Field(..., description="Internal port")
    external_port: int = Field(..., description="External port assigned by the gateway")
    protocol: str = Field(..., description="'tcp' or 'udp'")
    duration: int = Field(..., description="Lifetime granted by the gateway in seconds")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field("healthy", description="Service status")
    timestamp: str = Field(..., description="Current time (RFC 3339, UTC)")


class ErrorResponse(BaseModel):
    """Error response."""

    error: str = Field(..., description="Error message")
    code: str = Field(..., description="Error code")
    details: dict[str, Any] | None = Field(None, description="Additional error details")
