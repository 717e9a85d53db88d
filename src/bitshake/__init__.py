"""bitshake - Bitcoin P2P version/verack handshake in Python."""

__version__ = "0.1.0"

from bitshake.config import ConfigFile, HandshakeConfig
from bitshake.errors import (
    ChecksumMismatchError,
    EncodingError,
    HandshakeError,
    HandshakeTimeoutError,
    MalformedHeaderError,
    MalformedPayloadError,
    NetworkMismatchError,
    PeerConnectionError,
    ProtocolViolationError,
    SelfConnectionError,
    UnexpectedTerminationError,
)
from bitshake.frame_reader import FrameReader
from bitshake.handshake import (
    HandshakeResult,
    HandshakeState,
    HandshakeStateMachine,
    handshake_with_peer,
    perform_handshake,
)
from bitshake.messages import (
    NetworkAddress,
    NetworkMessage,
    VersionMessage,
    decode_header,
    decode_version,
    encode_frame,
    encode_version,
)
from bitshake.transport import StreamTransport, Transport, open_transport

__all__ = [
    "__version__",
    "ConfigFile",
    "HandshakeConfig",
    "ChecksumMismatchError",
    "EncodingError",
    "HandshakeError",
    "HandshakeTimeoutError",
    "MalformedHeaderError",
    "MalformedPayloadError",
    "NetworkMismatchError",
    "PeerConnectionError",
    "ProtocolViolationError",
    "SelfConnectionError",
    "UnexpectedTerminationError",
    "FrameReader",
    "HandshakeResult",
    "HandshakeState",
    "HandshakeStateMachine",
    "handshake_with_peer",
    "perform_handshake",
    "NetworkAddress",
    "NetworkMessage",
    "VersionMessage",
    "decode_header",
    "decode_version",
    "encode_frame",
    "encode_version",
    "StreamTransport",
    "Transport",
    "open_transport",
]
