"""
Byte-stream transport used by the handshake.

The handshake core only needs write, read-exactly and close. Connection
establishment lives here too, but as a helper for callers: the core
never dials anything itself.
"""

import asyncio
import logging
from typing import Optional, Protocol

from bitshake.errors import (
    HandshakeTimeoutError,
    PeerConnectionError,
    UnexpectedTerminationError,
)

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Duplex byte stream exclusively owned by one handshake"""

    async def write(self, data: bytes) -> int:
        ...

    async def read_exactly(self, n: int) -> bytes:
        ...

    def close(self) -> None:
        ...


class StreamTransport:
    """Transport over an asyncio StreamReader/StreamWriter pair"""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Optional[asyncio.StreamWriter] = None,
        peername: str = "peer",
    ):
        self.reader = reader
        self.writer = writer
        self.peername = peername
        self._closed = False

    async def write(self, data: bytes) -> int:
        """
        Write all of data and wait for the buffer to drain.

        Raises:
            PeerConnectionError: If the transport is closed or the write fails
        """
        if self._closed or self.writer is None:
            raise PeerConnectionError(f"Cannot write to {self.peername}: transport closed")
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise PeerConnectionError(f"Write to {self.peername} failed: {e}") from e
        return len(data)

    async def read_exactly(self, n: int) -> bytes:
        """
        Read exactly n bytes.

        Raises:
            UnexpectedTerminationError: If the stream ends first
            PeerConnectionError: If the read fails
        """
        if self._closed:
            raise UnexpectedTerminationError(
                f"Transport to {self.peername} already closed", expected=n
            )

        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise UnexpectedTerminationError(
                f"Connection to {self.peername} closed after {len(e.partial)} of {n} bytes",
                partial=e.partial,
                expected=n,
            ) from None
        except (ConnectionError, OSError) as e:
            raise PeerConnectionError(f"Read from {self.peername} failed: {e}") from e

    def close(self) -> None:
        """Close the underlying stream; pending reads see end of stream"""
        if self._closed:
            return
        self._closed = True
        if self.writer is not None:
            try:
                self.writer.close()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing connection to {self.peername}: {e}")
        else:
            self.reader.feed_eof()

    async def wait_closed(self) -> None:
        if self.writer is None:
            return
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing connection to {self.peername}: {e}")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"StreamTransport({self.peername}, {state})"


async def open_transport(host: str, port: int, timeout: float = 10.0) -> StreamTransport:
    """
    Open a TCP connection to a peer.

    Args:
        host: Peer hostname or IP address
        port: Peer port number
        timeout: Connect timeout in seconds

    Raises:
        HandshakeTimeoutError: If the connection is not established in time
        PeerConnectionError: If the connection is refused or unreachable
    """
    logger.info(f"Connecting to {host}:{port}")
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise HandshakeTimeoutError(
            f"Connection to {host}:{port} timed out after {timeout}s"
        ) from None
    except OSError as e:
        raise PeerConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

    logger.debug(f"Connected to {host}:{port}")
    return StreamTransport(reader, writer, peername=f"{host}:{port}")
