"""
Incremental frame extraction from a byte stream.

TCP has no message boundaries, so frames are read as a fixed-size header
followed by exactly the number of payload bytes the header declares.
"""

import logging

from bitshake.errors import MalformedHeaderError, UnexpectedTerminationError
from bitshake.messages import (
    HEADER_SIZE,
    MAX_PAYLOAD_LENGTH,
    NetworkMessage,
    decode_header,
    verify_payload,
)
from bitshake.transport import Transport

logger = logging.getLogger(__name__)


class FrameReader:
    """Reads complete frames off a transport, one per call"""

    def __init__(self, transport: Transport, max_payload_length: int = MAX_PAYLOAD_LENGTH):
        """
        Args:
            transport: Stream to read from
            max_payload_length: Largest payload length accepted from the peer
        """
        if max_payload_length < 0:
            raise ValueError(f"max_payload_length must be >= 0, got {max_payload_length}")
        self.transport = transport
        self.max_payload_length = max_payload_length
        self.frames_read = 0

    async def read_frame(self) -> NetworkMessage:
        """
        Read the next frame.

        Returns:
            NetworkMessage with the peer's magic, command and payload

        Raises:
            UnexpectedTerminationError: If the stream ends
            MalformedHeaderError: If the header is invalid, the declared
                length exceeds the limit or the checksum does not match
            PeerConnectionError: If the transport fails
        """
        return await self._read_body(await self.transport.read_exactly(HEADER_SIZE))

    async def _read_body(self, header_bytes: bytes) -> NetworkMessage:
        header = decode_header(header_bytes)

        # Checked before reading so a hostile length never sizes a buffer
        if header.length > self.max_payload_length:
            raise MalformedHeaderError(
                f"Payload too large for {header.command}: {header.length} bytes "
                f"(max {self.max_payload_length})"
            )

        payload = b''
        if header.length > 0:
            payload = await self.transport.read_exactly(header.length)

        frame = verify_payload(header, payload)
        self.frames_read += 1
        logger.debug(f"Read {frame.command} frame ({len(payload)} bytes)")
        return frame

    def __aiter__(self):
        return self

    async def __anext__(self) -> NetworkMessage:
        try:
            header_bytes = await self.transport.read_exactly(HEADER_SIZE)
        except UnexpectedTerminationError as e:
            # Clean close between frames ends iteration, mid-header does not
            if not e.partial:
                raise StopAsyncIteration from None
            raise
        return await self._read_body(header_bytes)
