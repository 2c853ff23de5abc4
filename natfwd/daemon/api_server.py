"""HTTP API server for the port forwarding service.

Exposes ``POST /forward``, which asks the configured NAT-PMP gateway for a
port mapping, and an unauthenticated ``GET /health`` probe.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from natfwd.daemon.api_protocol import (
    AUTHORIZATION_HEADER,
    BEARER_PREFIX,
    CORRELATION_HEADER,
    ERROR_GATEWAY_REJECTED,
    ERROR_INTERNAL,
    ERROR_INVALID_JSON,
    ERROR_NO_RESPONSE,
    ERROR_TRANSPORT,
    ERROR_UNAUTHORIZED,
    ERROR_VALIDATION,
    FORWARD_PATH,
    HEALTH_PATH,
    ErrorResponse,
    ForwardRequest,
    ForwardResponse,
    HealthResponse,
)
from natfwd.nat.client import NATPMPClient
from natfwd.nat.exceptions import (
    GatewayRejectedError,
    InvalidArgumentError,
    NATError,
    NoResponseError,
    TransportError,
)
from natfwd.nat.natpmp import Protocol
from natfwd.nat.retry import RetryPolicy
from natfwd.utils.logging_config import (
    LoggingContext,
    log_exception,
    set_correlation_id,
)

if TYPE_CHECKING:  # pragma: no cover
    from aiohttp.web_request import Request
    from aiohttp.web_response import Response

    from natfwd.models import Config

logger = logging.getLogger(__name__)

# Extra time on top of the retry window for in-flight requests at shutdown
SHUTDOWN_GRACE = 5.0

# Client failures surfaced as 500, most specific first
_NAT_ERROR_CODES: tuple[tuple[type[NATError], str], ...] = (
    (NoResponseError, ERROR_NO_RESPONSE),
    (GatewayRejectedError, ERROR_GATEWAY_REJECTED),
    (TransportError, ERROR_TRANSPORT),
)


def _error_response(
    error: str,
    code: str,
    status: int,
    details: dict[str, Any] | None = None,
) -> Response:
    return web.json_response(
        ErrorResponse(error=error, code=code, details=details).model_dump(),
        status=status,
    )


class APIServer:
    """aiohttp server forwarding HTTP requests to a NAT-PMP client."""

    def __init__(self, config: Config, client: NATPMPClient | None = None):
        """Initialize API server.

        Args:
            config: Validated service configuration
            client: NAT-PMP client (default: built from ``config.gateway``)

        """
        self.config = config
        self.client = client or NATPMPClient.from_config(config.gateway)
        self.host = config.server.bind_address
        self.port = config.server.port
        self.token = config.server.token
        self.shutdown_timeout = self._retry_window() + SHUTDOWN_GRACE

        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

        self._setup_middleware()
        self._setup_routes()

    def _retry_window(self) -> float:
        """Worst-case duration of one NAT-PMP exchange."""
        policy = getattr(self.client, "policy", None)
        if not isinstance(policy, RetryPolicy):
            policy = RetryPolicy(
                initial_timeout=self.config.gateway.initial_timeout,
                max_attempts=self.config.gateway.max_attempts,
            )
        return policy.total_wait

    def _setup_middleware(self) -> None:
        """Set up middleware for error handling and authentication."""

        @web.middleware
        async def error_middleware(request: Request, handler: Any) -> Response:
            """Assign a correlation ID and turn unexpected errors into 500s."""
            corr_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
            try:
                response = await handler(request)
            except asyncio.CancelledError:
                raise
            except web.HTTPException:
                raise
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    f"Error handling request {request.method} {request.path} "
                    f"from {request.remote}",
                )
                response = _error_response(str(e), ERROR_INTERNAL, 500)
            response.headers[CORRELATION_HEADER] = corr_id
            return response

        @web.middleware
        async def auth_middleware(request: Request, handler: Any) -> Response:
            """Require the bearer token when one is configured."""
            if self.token is None or request.path == HEALTH_PATH:
                return await handler(request)
            # Unrouted requests get their 404/405 before auth is checked
            if request.match_info.http_exception is not None:
                return await handler(request)

            expected = f"{BEARER_PREFIX}{self.token}"
            provided = request.headers.get(AUTHORIZATION_HEADER, "")
            if not hmac.compare_digest(provided.encode(), expected.encode()):
                logger.warning(
                    "Unauthorized request %s %s from %s",
                    request.method,
                    request.path,
                    request.remote,
                )
                return _error_response("Unauthorized", ERROR_UNAUTHORIZED, 401)
            return await handler(request)

        # First middleware wraps the rest
        self.app.middlewares.append(error_middleware)
        self.app.middlewares.append(auth_middleware)

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get(HEALTH_PATH, self._handle_health)
        self.app.router.add_post(FORWARD_PATH, self._handle_forward)

    async def _handle_health(self, _request: Request) -> Response:
        """Handle GET /health."""
        health = HealthResponse(timestamp=datetime.now(timezone.utc).isoformat())
        return web.json_response(health.model_dump())

    async def _handle_forward(self, request: Request) -> Response:
        """Handle POST /forward."""
        try:
            data = await request.json()
        except ValueError as json_error:
            logger.warning(
                "Invalid JSON in forward request from %s: %s",
                request.remote,
                json_error,
            )
            return _error_response(
                f"Invalid JSON: {json_error}", ERROR_INVALID_JSON, 400
            )

        try:
            req = ForwardRequest.model_validate(data)
        except PydanticValidationError as validation_error:
            logger.warning(
                "Invalid forward request from %s: %s",
                request.remote,
                validation_error,
            )
            return _error_response(
                f"Invalid request data: {validation_error}",
                ERROR_VALIDATION,
                400,
                details={
                    "errors": [
                        {"loc": list(err["loc"]), "msg": err["msg"]}
                        for err in validation_error.errors()
                    ]
                },
            )

        duration = self.config.server.clamp_duration(req.duration)
        if duration != req.duration:
            logger.debug("Clamped duration %s -> %s", req.duration, duration)

        try:
            protocol = Protocol.parse(req.protocol)
            with LoggingContext(
                "port_mapping",
                logger=logger,
                internal_port=req.internal_port,
                protocol=req.protocol,
            ):
                mapping = await self.client.request_mapping(
                    protocol,
                    req.internal_port,
                    requested_external_port=req.external_port,
                    lifetime=duration,
                )
        except InvalidArgumentError as e:
            return _error_response(e.message, ERROR_VALIDATION, 400, e.details or None)
        except NATError as e:
            for error_type, code in _NAT_ERROR_CODES:
                if isinstance(e, error_type):
                    return _error_response(e.message, code, 500, e.details or None)
            raise

        return web.json_response(
            ForwardResponse(
                internal_port=mapping.internal_port,
                external_port=mapping.external_port,
                protocol=mapping.protocol.value,
                duration=mapping.granted_lifetime_seconds,
            ).model_dump()
        )

    async def start(self) -> None:
        """Start the API server."""
        self.runner = web.AppRunner(self.app, shutdown_timeout=self.shutdown_timeout)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        try:
            await self.site.start()
        except OSError as e:
            logger.exception(
                "Failed to start API server on %s:%d", self.host, self.port
            )
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            msg = f"API server failed to bind to {self.host}:{self.port}: {e}"
            raise RuntimeError(msg) from e

        # Get actual port (in case port 0 was used for random port)
        if self.site._server and self.site._server.sockets:  # noqa: SLF001
            self.port = self.site._server.sockets[0].getsockname()[1]  # noqa: SLF001

        logger.info("API server listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Stop the API server, letting in-flight requests finish."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        self.site = None
        self.runner = None
        logger.info("API server stopped")
