"""natfwd command line interface.

``natfwd serve`` runs the HTTP forwarding service. ``map``, ``unmap`` and
``external-ip`` talk to a NAT-PMP gateway directly for one-shot use.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable, TypeVar

import click
from rich.console import Console
from rich.table import Table

from natfwd import __version__
from natfwd.config.config import ConfigManager
from natfwd.daemon.main import run_server
from natfwd.nat.client import NATPMPClient
from natfwd.nat.exceptions import NATError
from natfwd.utils.exceptions import NatfwdError
from natfwd.utils.logging_config import setup_logging

if TYPE_CHECKING:  # pragma: no cover
    from natfwd.models import Config
    from natfwd.nat.natpmp import MappingResponse

F = TypeVar("F", bound=Callable[..., Any])

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _common_options(func: F) -> F:
    """Options shared by every command."""
    func = click.option(
        "--log-level",
        type=click.Choice(LOG_LEVELS, case_sensitive=False),
        default=None,
        help="Log level (overrides config and NATPMP_LOG_LEVEL)",
    )(func)
    return click.option(
        "--config",
        "config_file",
        type=click.Path(dir_okay=False),
        default=None,
        help="Path to a TOML configuration file",
    )(func)


def _gateway_options(func: F) -> F:
    """Options selecting the gateway and the mapped port."""
    func = click.option(
        "--internal-port",
        type=click.IntRange(0, 65535),
        required=True,
        help="Internal port to map",
    )(func)
    func = click.option(
        "--protocol",
        type=click.Choice(["tcp", "udp"], case_sensitive=False),
        required=True,
        help="Transport protocol",
    )(func)
    return click.option(
        "--gateway",
        default=None,
        help="NAT-PMP gateway IPv4 address",
    )(func)


def _load(config_file: str | None, overrides: dict[str, Any]) -> Config:
    """Load configuration and set up logging, or fail the command."""
    try:
        config = ConfigManager(config_file, overrides).config
    except NatfwdError as e:
        raise click.ClickException(str(e)) from e
    setup_logging(config.observability)
    return config


def _run(coro: Any) -> Any:
    """Run a client coroutine, turning client errors into CLI errors."""
    try:
        return asyncio.run(coro)
    except NATError as e:
        raise click.ClickException(e.message) from e


def _print_mapping(console: Console, mapping: MappingResponse) -> None:
    table = Table(title="NAT-PMP Port Mapping")
    table.add_column("Protocol", style="cyan")
    table.add_column("Internal Port", style="magenta")
    table.add_column("External Port", style="yellow")
    table.add_column("Lifetime (s)", style="blue")
    table.add_column("Gateway Epoch", style="green")
    table.add_row(
        mapping.protocol.value.upper(),
        str(mapping.internal_port),
        str(mapping.external_port),
        str(mapping.granted_lifetime_seconds),
        str(mapping.server_epoch),
    )
    console.print(table)


@click.group()
@click.version_option(__version__, prog_name="natfwd")
def cli() -> None:
    """Forward ports on a NAT-PMP gateway."""


@cli.command("serve")
@click.option("--gateway", default=None, help="NAT-PMP gateway IPv4 address")
@click.option("--bind-address", default=None, help="HTTP bind address")
@click.option("--port", type=click.IntRange(0, 65535), default=None, help="HTTP port")
@click.option(
    "--max-duration",
    type=click.IntRange(min=-1),
    default=None,
    help="Maximum mapping lifetime in seconds (-1 for no limit)",
)
@click.option("--log-file", default=None, help="Also write logs to this file")
@_common_options
def serve(
    gateway: str | None,
    bind_address: str | None,
    port: int | None,
    max_duration: int | None,
    log_file: str | None,
    config_file: str | None,
    log_level: str | None,
) -> None:
    """Run the HTTP port forwarding service."""
    config = _load(
        config_file,
        {
            "gateway.address": gateway,
            "server.bind_address": bind_address,
            "server.port": port,
            "server.max_duration": max_duration,
            "observability.log_level": log_level,
            "observability.log_file": log_file,
        },
    )
    try:
        asyncio.run(run_server(config))
    except RuntimeError as e:
        raise click.ClickException(str(e)) from e
    except KeyboardInterrupt:  # pragma: no cover - signal handlers normally catch this
        pass


@cli.command("map")
@_gateway_options
@click.option(
    "--external-port",
    type=click.IntRange(0, 65535),
    default=0,
    show_default=True,
    help="Suggested external port (0 lets the gateway choose)",
)
@click.option(
    "--lifetime",
    type=click.IntRange(0, 0xFFFFFFFF),
    default=3600,
    show_default=True,
    help="Requested lifetime in seconds",
)
@_common_options
def map_port(
    gateway: str | None,
    protocol: str,
    internal_port: int,
    external_port: int,
    lifetime: int,
    config_file: str | None,
    log_level: str | None,
) -> None:
    """Request a port mapping from the gateway."""
    config = _load(
        config_file,
        {"gateway.address": gateway, "observability.log_level": log_level},
    )
    client = NATPMPClient.from_config(config.gateway)
    mapping = _run(
        client.request_mapping(protocol, internal_port, external_port, lifetime)
    )
    _print_mapping(Console(), mapping)


@cli.command("unmap")
@_gateway_options
@_common_options
def unmap_port(
    gateway: str | None,
    protocol: str,
    internal_port: int,
    config_file: str | None,
    log_level: str | None,
) -> None:
    """Delete a port mapping on the gateway."""
    config = _load(
        config_file,
        {"gateway.address": gateway, "observability.log_level": log_level},
    )
    client = NATPMPClient.from_config(config.gateway)
    _run(client.delete_mapping(protocol, internal_port))
    Console().print(
        f"[green]Deleted {protocol.upper()} mapping for port {internal_port}[/green]"
    )


@cli.command("external-ip")
@click.option("--gateway", default=None, help="NAT-PMP gateway IPv4 address")
@_common_options
def external_ip(
    gateway: str | None,
    config_file: str | None,
    log_level: str | None,
) -> None:
    """Show the gateway's public IPv4 address."""
    config = _load(
        config_file,
        {"gateway.address": gateway, "observability.log_level": log_level},
    )
    client = NATPMPClient.from_config(config.gateway)
    response = _run(client.get_external_address())
    Console().print(f"[green]External IP:[/green] {response.external_address}")


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
