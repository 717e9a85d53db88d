"""
Version handshake state machine.

The state machine itself does no I/O: start() returns the frame to send,
receive() consumes one peer frame and returns the reply, if any.
perform_handshake() drives it over a transport until it reaches a
terminal state.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from bitshake.config import HandshakeConfig
from bitshake.errors import (
    HandshakeError,
    HandshakeTimeoutError,
    NetworkMismatchError,
    ProtocolViolationError,
    SelfConnectionError,
)
from bitshake.frame_reader import FrameReader
from bitshake.messages import (
    NODE_NETWORK,
    NetworkAddress,
    NetworkMessage,
    VersionMessage,
    decode_version,
    verack_message,
)
from bitshake.transport import Transport, open_transport

logger = logging.getLogger(__name__)

NonceSource = Callable[[], int]
Clock = Callable[[], float]


class HandshakeState(Enum):
    """Handshake progress"""
    IDLE = 0
    VERSION_SENT = 1
    COMPLETED = 2
    FAILED = 3


def random_nonce() -> int:
    """Generate random 64-bit nonce"""
    return random.randint(0, 2**64 - 1)


@dataclass
class HandshakeResult:
    """Outcome of a completed handshake"""
    nonce: int
    magic: int
    peer_version: Optional[VersionMessage] = None
    ignored_commands: List[str] = field(default_factory=list)
    elapsed: float = 0.0


class HandshakeStateMachine:
    """Tracks one handshake attempt from the first version to verack"""

    def __init__(
        self,
        config: HandshakeConfig,
        nonce_source: Optional[NonceSource] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            config: Handshake parameters
            nonce_source: Returns the version nonce (random by default)
            clock: Returns the current Unix time (time.time by default)
        """
        self.config = config
        self.magic = config.network_magic
        self._nonce_source = nonce_source or random_nonce
        self._clock = clock or time.time

        self.state = HandshakeState.IDLE
        self.nonce: Optional[int] = None
        self.peer_version: Optional[VersionMessage] = None
        self.ignored_commands: List[str] = []
        self.error: Optional[HandshakeError] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (HandshakeState.COMPLETED, HandshakeState.FAILED)

    def build_version(self) -> VersionMessage:
        """Build our version message for this attempt"""
        config = self.config
        return VersionMessage(
            version=config.protocol_version,
            services=config.services,
            timestamp=int(self._clock()),
            addr_recv=NetworkAddress.from_host(
                config.remote_host, config.peer_port, services=NODE_NETWORK
            ),
            addr_from=NetworkAddress.from_host(
                config.local_host, config.advertised_port, services=config.services
            ),
            nonce=self._nonce_source(),
            user_agent=config.user_agent,
            start_height=config.start_height,
            relay=config.relay,
        )

    def start(self) -> NetworkMessage:
        """
        Leave IDLE and return the version frame to send.

        Raises:
            ProtocolViolationError: If the handshake was already started
            EncodingError: If our version message cannot be encoded
        """
        if self.state != HandshakeState.IDLE:
            self._raise(ProtocolViolationError(f"Handshake already started (state {self.state.name})"))

        version = self.build_version()
        try:
            frame = version.to_network_message(self.magic)
        except HandshakeError as e:
            self._raise(e)

        self.nonce = version.nonce
        self.state = HandshakeState.VERSION_SENT
        return frame

    def receive(self, frame: NetworkMessage) -> Optional[NetworkMessage]:
        """
        Handle one frame from the peer.

        Returns:
            A frame to send back, or None

        Raises:
            NetworkMismatchError: If magic checking is on and the frame's
                magic is not ours
            SelfConnectionError: If the peer's nonce equals ours
            ProtocolViolationError: If no frame is expected in this state
            MalformedPayloadError: If the peer's version cannot be decoded
        """
        try:
            return self._receive(frame)
        except HandshakeError as e:
            self._raise(e)

    def _receive(self, frame: NetworkMessage) -> Optional[NetworkMessage]:
        if self.state != HandshakeState.VERSION_SENT:
            raise ProtocolViolationError(
                f"Unexpected {frame.command} in state {self.state.name}"
            )

        if self.config.check_magic and frame.magic != self.magic:
            raise NetworkMismatchError(expected=self.magic, received=frame.magic)

        if frame.command == "version":
            return self._on_version(frame)

        if frame.command == "verack":
            self.state = HandshakeState.COMPLETED
            logger.debug("Received verack, handshake complete")
            return None

        # Peers may send e.g. sendheaders or ping before verack
        logger.debug(f"Ignoring {frame.command} before verack")
        self.ignored_commands.append(frame.command)
        return None

    def _on_version(self, frame: NetworkMessage) -> Optional[NetworkMessage]:
        if self.peer_version is not None:
            logger.warning("Ignoring duplicate version from peer")
            self.ignored_commands.append(frame.command)
            return None

        version = decode_version(frame.payload)
        if self.nonce and version.nonce == self.nonce:
            raise SelfConnectionError(f"Peer echoed our nonce {self.nonce:016x}")

        self.peer_version = version
        logger.info(
            f"Peer version {version.version} {version.user_agent} "
            f"height {version.start_height}"
        )
        return verack_message(self.magic)

    def fail(self, error: HandshakeError) -> None:
        """Move to FAILED, keeping the first error seen"""
        if self.error is None:
            self.error = error
        self.state = HandshakeState.FAILED

    def _raise(self, error: HandshakeError):
        self.fail(error)
        raise error

    def result(self, elapsed: float = 0.0) -> HandshakeResult:
        if self.state != HandshakeState.COMPLETED:
            raise ProtocolViolationError(f"Handshake not complete (state {self.state.name})")
        return HandshakeResult(
            nonce=self.nonce,
            magic=self.magic,
            peer_version=self.peer_version,
            ignored_commands=list(self.ignored_commands),
            elapsed=elapsed,
        )

    def __repr__(self) -> str:
        return f"HandshakeStateMachine(magic={self.magic:08x}, state={self.state.name})"


async def _run(machine: HandshakeStateMachine, transport: Transport, reader: FrameReader) -> None:
    frame = machine.start()
    await transport.write(frame.serialize())
    logger.debug(f"Sent version ({len(frame.payload)} bytes)")

    while not machine.is_terminal:
        reply = machine.receive(await reader.read_frame())
        if reply is not None:
            await transport.write(reply.serialize())
            logger.debug(f"Sent {reply.command}")


async def perform_handshake(
    transport: Transport,
    config: HandshakeConfig,
    *,
    nonce_source: Optional[NonceSource] = None,
    clock: Optional[Clock] = None,
) -> HandshakeResult:
    """
    Run one version/verack handshake over an open transport.

    The transport is not closed here; it belongs to the caller, which
    can also abort a blocked handshake by closing it.

    Args:
        transport: Connected byte stream
        config: Handshake parameters
        nonce_source: Returns the version nonce (random by default)
        clock: Returns the current Unix time (time.time by default)

    Returns:
        HandshakeResult describing the peer

    Raises:
        HandshakeError: The specific failure kind
    """
    machine = HandshakeStateMachine(config, nonce_source=nonce_source, clock=clock)
    reader = FrameReader(transport, max_payload_length=config.max_payload_length)
    started = time.monotonic()

    try:
        await asyncio.wait_for(_run(machine, transport, reader), timeout=config.timeout)
    except HandshakeError as e:
        machine.fail(e)
        logger.warning(f"Handshake failed: {type(e).__name__}: {e}")
        raise
    except asyncio.TimeoutError:
        error = HandshakeTimeoutError(
            f"Handshake not completed within {config.timeout}s "
            f"(state {machine.state.name})"
        )
        machine.fail(error)
        logger.warning(str(error))
        raise error from None

    elapsed = time.monotonic() - started
    logger.info(f"Handshake completed in {elapsed:.3f}s")
    return machine.result(elapsed)


async def handshake_with_peer(
    config: HandshakeConfig,
    *,
    nonce_source: Optional[NonceSource] = None,
) -> HandshakeResult:
    """
    Connect to config.remote_host, run the handshake and disconnect.

    Raises:
        HandshakeError: The specific failure kind, including connection
            failures while dialling
    """
    transport = await open_transport(config.remote_host, config.peer_port, timeout=config.timeout)
    try:
        return await perform_handshake(transport, config, nonce_source=nonce_source)
    finally:
        transport.close()
        await transport.wait_closed()
