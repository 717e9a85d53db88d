"""
Handshake error hierarchy.

Every failure the handshake core can report derives from HandshakeError,
so callers can catch one type and still branch on the specific kind.
"""

from typing import Optional


class HandshakeError(Exception):
    """Base class for all handshake failures"""


class PeerConnectionError(HandshakeError, ConnectionError):
    """Transport-level failure while connecting, reading or writing"""


class MalformedHeaderError(HandshakeError):
    """Peer sent a header that cannot be accepted"""


class ChecksumMismatchError(MalformedHeaderError):
    """Payload does not match the checksum declared in its header"""


class MalformedPayloadError(MalformedHeaderError):
    """Payload of a known command could not be decoded"""


class EncodingError(HandshakeError, ValueError):
    """A local message failed validation while being serialized"""


class UnexpectedTerminationError(HandshakeError):
    """Stream closed before the handshake completed"""

    def __init__(self, message: str, partial: bytes = b"", expected: Optional[int] = None):
        super().__init__(message)
        self.partial = partial
        self.expected = expected


class HandshakeTimeoutError(HandshakeError, TimeoutError):
    """Peer did not complete the handshake before the deadline"""


class NetworkMismatchError(HandshakeError):
    """Peer frames carry a magic that belongs to another network"""

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"Network magic mismatch: expected {expected:08x}, got {received:08x}"
        )
        self.expected = expected
        self.received = received


class SelfConnectionError(HandshakeError):
    """Peer echoed our own version nonce back, so we dialled ourselves"""


class ProtocolViolationError(HandshakeError):
    """A frame arrived in a state where no frame is allowed"""
