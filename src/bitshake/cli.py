"""Command-line interface for the handshake client."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError

from bitshake import __version__
from bitshake.config import CUSTOM_NETWORK, ConfigFile
from bitshake.errors import (
    EncodingError,
    HandshakeError,
    HandshakeTimeoutError,
    PeerConnectionError,
    UnexpectedTerminationError,
)
from bitshake.handshake import handshake_with_peer
from bitshake.messages import DEFAULT_PORTS, NETWORK_MAGICS

EXIT_OK = 0
EXIT_PROTOCOL = 1
EXIT_CONNECTION = 3
EXIT_TIMEOUT = 4
EXIT_CONFIG = 5

logger = logging.getLogger(__name__)


def exit_code_for(error: Exception) -> int:
    """Map a handshake failure to the process exit code"""
    if isinstance(error, HandshakeTimeoutError):
        return EXIT_TIMEOUT
    if isinstance(error, (PeerConnectionError, UnexpectedTerminationError)):
        return EXIT_CONNECTION
    if isinstance(error, (EncodingError, ValidationError, ValueError)):
        return EXIT_CONFIG
    return EXIT_PROTOCOL


def setup_logging(debug: bool, timestamps: bool = True) -> None:
    fmt = "%(levelname)s %(name)s: %(message)s"
    if timestamps:
        fmt = "%(asctime)s " + fmt
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=fmt,
        stream=sys.stderr,
        force=True,
    )


def _parse_magic(ctx, param, value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value, 16)
    except ValueError:
        raise click.BadParameter(f"not a hex number: {value}") from None


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """bitshake - Bitcoin P2P version handshake client."""
    pass


@cli.command()
@click.argument("host")
@click.option("--port", type=int, default=None, help="Peer port (default: network port)")
@click.option(
    "--network",
    type=click.Choice([*NETWORK_MAGICS, CUSTOM_NETWORK]),
    default=None,
    help="Network to handshake on",
)
@click.option("--magic", callback=_parse_magic, default=None, help="Custom network magic, hex")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Config file (default: ~/.bitshake/bitshake.conf)",
)
@click.option("--user-agent", default=None, help="User agent to advertise")
@click.option("--start-height", type=int, default=None, help="Block height to advertise")
@click.option("--relay/--no-relay", default=None, help="Ask the peer to relay transactions")
@click.option("--timeout", type=float, default=None, help="Handshake timeout in seconds")
@click.option("--max-payload", type=int, default=None, help="Largest payload accepted, bytes")
@click.option("--no-check-magic", is_flag=True, help="Accept frames carrying another magic")
@click.option("--debug", is_flag=True, help="Verbose logging")
def handshake(
    host: str,
    port: Optional[int],
    network: Optional[str],
    magic: Optional[int],
    config_path: Optional[Path],
    user_agent: Optional[str],
    start_height: Optional[int],
    relay: Optional[bool],
    timeout: Optional[float],
    max_payload: Optional[int],
    no_check_magic: bool,
    debug: bool,
) -> None:
    """Perform a version/verack handshake with HOST."""
    config_file = ConfigFile(str(config_path) if config_path else None)
    setup_logging(
        debug or config_file.getboolean('debug'),
        config_file.getboolean('logtimestamps'),
    )

    try:
        config = config_file.to_config(
            remote_host=host,
            remote_port=port,
            network=network,
            magic=magic,
            user_agent=user_agent,
            start_height=start_height,
            relay=relay,
            timeout=timeout,
            max_payload_length=max_payload,
            check_magic=False if no_check_magic else None,
        )
    except (ValidationError, ValueError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(EXIT_CONFIG)

    logger.debug(f"Using config {config.model_dump()}")
    click.echo(f"Handshaking with {config.remote_host}:{config.peer_port}")
    click.echo(f"  Network: {config.network} (magic {config.network_magic:08x})")

    try:
        result = asyncio.run(handshake_with_peer(config))
    except HandshakeError as e:
        click.echo(f"Handshake failed: {type(e).__name__}: {e}", err=True)
        sys.exit(exit_code_for(e))

    click.echo(f"✓ Handshake completed in {result.elapsed:.3f}s")
    peer = result.peer_version
    if peer is not None:
        click.echo(f"  Peer version: {peer.version}")
        click.echo(f"  User agent: {peer.user_agent}")
        click.echo(f"  Services: {peer.services:#x}")
        click.echo(f"  Start height: {peer.start_height}")
    if result.ignored_commands:
        click.echo(f"  Ignored: {', '.join(result.ignored_commands)}")


@cli.command()
def networks() -> None:
    """List known networks."""
    for name, magic in NETWORK_MAGICS.items():
        click.echo(f"{name:<8} magic {magic:08x}  port {DEFAULT_PORTS[name]}")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
