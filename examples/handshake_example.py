#!/usr/bin/env python3
"""Example demonstrating the handshake client.

This example shows how to:
- Build and inspect version/verack frames
- Run a handshake against a local scripted peer
- Run a handshake against a real node (pass HOST [network] on the command line)
"""

import asyncio
import struct
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bitshake import (
    FrameReader,
    HandshakeConfig,
    HandshakeError,
    NetworkAddress,
    NetworkMessage,
    StreamTransport,
    VersionMessage,
    decode_header,
    handshake_with_peer,
)
from bitshake.messages import MAGIC_REGTEST, verack_message


def example_frames():
    """Show the bytes of a version and a verack frame."""
    print("\n" + "=" * 60)
    print("Example 1: Frame encoding")
    print("=" * 60)

    version = VersionMessage(
        timestamp=1700000000,
        addr_recv=NetworkAddress.from_ipv4("127.0.0.1", 18444),
        addr_from=NetworkAddress.from_ipv4("0.0.0.0", 18444),
        nonce=0xDEADBEEF,
    )
    for frame in (version.to_network_message(MAGIC_REGTEST), verack_message(MAGIC_REGTEST)):
        data = frame.serialize()
        header = decode_header(data[:24])
        print(f"{header.command}: {len(data)} bytes, magic {header.magic:08x}")
        print(f"  header:  {data[:24].hex()}")
        print(f"  payload: {data[24:].hex() or '(empty)'}")


async def scripted_peer(reader, writer):
    """A regtest peer that answers version with version, ping and verack."""
    transport = StreamTransport(reader, writer, peername="client")
    frame = await FrameReader(transport).read_frame()
    print(f"  peer received {frame.command}")

    reply = VersionMessage(
        version=70016,
        timestamp=1700000000,
        nonce=42,
        user_agent="/scripted-peer:1.0/",
        start_height=200,
    )
    await transport.write(reply.to_network_message(MAGIC_REGTEST).serialize())
    await transport.write(NetworkMessage("ping", struct.pack("<Q", 1), MAGIC_REGTEST).serialize())
    await transport.write(verack_message(MAGIC_REGTEST).serialize())

    frame = await FrameReader(transport).read_frame()
    print(f"  peer received {frame.command}")
    transport.close()


async def example_local_peer():
    """Handshake with a peer served on localhost."""
    print("\n" + "=" * 60)
    print("Example 2: Handshake with a local scripted peer")
    print("=" * 60)

    server = await asyncio.start_server(scripted_peer, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    async with server:
        config = HandshakeConfig(network="regtest", remote_host="127.0.0.1", remote_port=port, timeout=5)
        result = await handshake_with_peer(config)

    print(f"✓ Handshake completed in {result.elapsed:.3f}s")
    print(f"  Peer user agent: {result.peer_version.user_agent}")
    print(f"  Peer height: {result.peer_version.start_height}")
    print(f"  Ignored before verack: {result.ignored_commands}")


async def example_remote_peer(host: str, network: str):
    """Handshake with a real node."""
    print("\n" + "=" * 60)
    print(f"Example 3: Handshake with {host} on {network}")
    print("=" * 60)

    config = HandshakeConfig(network=network, remote_host=host, timeout=15)
    try:
        result = await handshake_with_peer(config)
    except HandshakeError as e:
        print(f"✗ {type(e).__name__}: {e}")
        return
    print(f"✓ {result.peer_version.user_agent} at height {result.peer_version.start_height}")


def main():
    """Run all examples."""
    example_frames()
    asyncio.run(example_local_peer())
    if len(sys.argv) > 1:
        network = sys.argv[2] if len(sys.argv) > 2 else "mainnet"
        asyncio.run(example_remote_peer(sys.argv[1], network))


if __name__ == "__main__":
    main()
