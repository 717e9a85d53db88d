"""
Bitcoin P2P wire format for the version handshake.

This module implements the message header framing and the `version`
payload codec. Everything here is pure: no sockets, no clocks, no
randomness. The network magic is always an input, never assumed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple
import hashlib
import ipaddress
import struct

from bitshake.errors import (
    ChecksumMismatchError,
    EncodingError,
    MalformedHeaderError,
    MalformedPayloadError,
)

# Bitcoin P2P magic bytes for different networks
MAGIC_MAINNET = 0xD9B4BEF9
MAGIC_TESTNET = 0x0709110B
MAGIC_REGTEST = 0xDAB5BFFA
MAGIC_SIGNET = 0x40CF030A

NETWORK_MAGICS: Dict[str, int] = {
    "mainnet": MAGIC_MAINNET,
    "testnet": MAGIC_TESTNET,
    "regtest": MAGIC_REGTEST,
    "signet": MAGIC_SIGNET,
}

DEFAULT_PORTS: Dict[str, int] = {
    "mainnet": 8333,
    "testnet": 18333,
    "regtest": 18444,
    "signet": 38333,
}

PROTOCOL_VERSION = 70015
NODE_NETWORK = 1

HEADER_SIZE = 24
COMMAND_SIZE = 12
MAX_USER_AGENT_LENGTH = 255
MAX_PAYLOAD_LENGTH = 32 * 1024 * 1024

_HEADER_STRUCT = struct.Struct('<I12sI4s')
_IPV4_MAPPED_PREFIX = b'\x00' * 10 + b'\xff\xff'


def get_magic(network: str) -> int:
    """
    Get magic bytes for a named network.

    Raises:
        ValueError: If the network name is unknown
    """
    try:
        return NETWORK_MAGICS[network.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown network {network!r}, expected one of {', '.join(NETWORK_MAGICS)}"
        ) from None


def network_for_magic(magic: int) -> str:
    """Reverse lookup of a magic value, 'custom' when it is not a known network"""
    for name, value in NETWORK_MAGICS.items():
        if value == magic:
            return name
    return "custom"


def calculate_checksum(payload: bytes) -> bytes:
    """Calculate message checksum (first 4 bytes of double SHA256)"""
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]


def _is_printable_ascii(data: bytes) -> bool:
    return all(0x20 <= b <= 0x7e for b in data)


def command_to_bytes(command: str) -> bytes:
    """Convert command string to 12-byte null-padded bytes"""
    try:
        cmd_bytes = command.encode('ascii')
    except UnicodeEncodeError:
        raise EncodingError(f"Command is not ASCII: {command!r}") from None
    if not cmd_bytes:
        raise EncodingError("Command must not be empty")
    if len(cmd_bytes) > COMMAND_SIZE:
        raise EncodingError(f"Command too long ({len(cmd_bytes)} > {COMMAND_SIZE}): {command}")
    if not _is_printable_ascii(cmd_bytes):
        raise EncodingError(f"Command contains non-printable characters: {command!r}")
    return cmd_bytes.ljust(COMMAND_SIZE, b'\x00')


def _pack(fmt: str, value: int, name: str) -> bytes:
    try:
        return struct.pack(fmt, value)
    except struct.error as e:
        raise EncodingError(f"Field {name} out of range: {value!r} ({e})") from None


@dataclass(frozen=True)
class MessageHeader:
    """Decoded 24-byte message header"""
    magic: int
    command: str
    length: int
    checksum: bytes


@dataclass(frozen=True)
class NetworkMessage:
    """One complete frame: header fields plus payload"""
    command: str
    payload: bytes = b''
    magic: int = MAGIC_MAINNET

    def serialize(self) -> bytes:
        """Serialize to header + payload bytes"""
        return encode_frame(self.magic, self.command, self.payload)

    def checksum(self) -> bytes:
        """Calculate message checksum"""
        return calculate_checksum(self.payload)


def encode_frame(magic: int, command: str, payload: bytes) -> bytes:
    """
    Wrap a payload in a message header.

    Format:
    - Magic (4 bytes, little-endian)
    - Command (12 bytes, null-padded)
    - Payload length (4 bytes, little-endian)
    - Checksum (4 bytes, first 4 bytes of double SHA256)
    - Payload

    Raises:
        EncodingError: If the magic or command cannot be encoded
    """
    data = _pack('<I', magic, 'magic')
    data += command_to_bytes(command)
    data += _pack('<I', len(payload), 'length')
    data += calculate_checksum(payload)
    data += payload
    return data


def decode_header(data: bytes) -> MessageHeader:
    """
    Decode a 24-byte message header.

    The magic is returned as data; deciding whether it belongs to the
    expected network is left to the caller.

    Raises:
        MalformedHeaderError: If the buffer size or command field is invalid
    """
    if len(data) != HEADER_SIZE:
        raise MalformedHeaderError(
            f"Header must be {HEADER_SIZE} bytes, got {len(data)}"
        )

    magic, cmd_field, length, checksum = _HEADER_STRUCT.unpack(data)

    name, _, padding = cmd_field.partition(b'\x00')
    if not name:
        raise MalformedHeaderError(f"Empty command field: {cmd_field.hex()}")
    if not _is_printable_ascii(name):
        raise MalformedHeaderError(f"Command is not printable ASCII: {cmd_field.hex()}")
    if padding.strip(b'\x00'):
        raise MalformedHeaderError(f"Non-zero bytes after command padding: {cmd_field.hex()}")

    return MessageHeader(
        magic=magic,
        command=name.decode('ascii'),
        length=length,
        checksum=checksum,
    )


def verify_payload(header: MessageHeader, payload: bytes) -> NetworkMessage:
    """
    Check a payload against its header and build the frame.

    Raises:
        MalformedHeaderError: If the payload size differs from the header
        ChecksumMismatchError: If the checksum does not match
    """
    if len(payload) != header.length:
        raise MalformedHeaderError(
            f"Payload length mismatch for {header.command}: "
            f"header says {header.length}, got {len(payload)}"
        )
    actual = calculate_checksum(payload)
    if actual != header.checksum:
        raise ChecksumMismatchError(
            f"Invalid checksum for {header.command}: "
            f"expected {header.checksum.hex()}, got {actual.hex()}"
        )
    return NetworkMessage(command=header.command, payload=payload, magic=header.magic)


def verack_message(magic: int) -> NetworkMessage:
    """Build an empty verack frame"""
    return NetworkMessage(command="verack", payload=b'', magic=magic)


@dataclass(frozen=True)
class NetworkAddress:
    """Bitcoin network address (IP + port) as carried in a version message"""
    services: int = 0
    ip: bytes = b'\x00' * 16  # IPv6 (IPv4 mapped to IPv6)
    port: int = 0

    def __post_init__(self):
        if len(self.ip) != 16:
            raise EncodingError(f"Address must be 16 bytes, got {len(self.ip)}")

    @classmethod
    def from_ipv4(cls, ip: str, port: int, services: int = NODE_NETWORK) -> 'NetworkAddress':
        """
        Create network address from IPv4 address.

        Args:
            ip: IPv4 address as string (e.g., "192.168.1.1")
            port: Port number
            services: Services flags

        Returns:
            NetworkAddress instance with IPv4-mapped IPv6 address
        """
        try:
            ipv4_bytes = ipaddress.IPv4Address(ip).packed
        except ipaddress.AddressValueError:
            raise ValueError(f"Invalid IPv4 address: {ip}") from None
        return cls(services=services, ip=_IPV4_MAPPED_PREFIX + ipv4_bytes, port=port)

    @classmethod
    def from_host(cls, host: str, port: int, services: int = NODE_NETWORK) -> 'NetworkAddress':
        """
        Create network address from an IPv4/IPv6 literal or a hostname.

        Hostnames are not resolved here; they map to the all-zero address.
        """
        try:
            addr = ipaddress.ip_address(host)
        except ValueError:
            return cls(services=services, ip=b'\x00' * 16, port=port)
        if addr.version == 4:
            return cls(services=services, ip=_IPV4_MAPPED_PREFIX + addr.packed, port=port)
        return cls(services=services, ip=addr.packed, port=port)

    @property
    def host(self) -> str:
        """Printable form of the address"""
        if self.ip.startswith(_IPV4_MAPPED_PREFIX):
            return str(ipaddress.IPv4Address(self.ip[12:]))
        return str(ipaddress.IPv6Address(self.ip))

    def serialize(self) -> bytes:
        """Serialize network address"""
        data = _pack('<Q', self.services, 'services')  # Services (8 bytes)
        data += self.ip  # IP (16 bytes)
        data += _pack('>H', self.port, 'port')  # Port (2 bytes, big-endian)
        return data

    @classmethod
    def decode(cls, data: bytes, offset: int = 0) -> Tuple['NetworkAddress', int]:
        """Deserialize network address, returns (address, bytes_consumed)"""
        if len(data) < offset + 26:
            raise MalformedPayloadError("Not enough data for network address")

        services = struct.unpack_from('<Q', data, offset)[0]
        ip = bytes(data[offset + 8:offset + 24])
        port = struct.unpack_from('>H', data, offset + 24)[0]

        return cls(services=services, ip=ip, port=port), 26


@dataclass
class VersionMessage:
    """Version message for handshake"""
    version: int = PROTOCOL_VERSION
    services: int = NODE_NETWORK
    timestamp: int = 0
    addr_recv: NetworkAddress = field(default_factory=NetworkAddress)
    addr_from: NetworkAddress = field(default_factory=NetworkAddress)
    nonce: int = 0
    user_agent: str = "/bitshake:0.1.0/"
    start_height: int = 0
    relay: bool = False

    def to_network_message(self, magic: int) -> NetworkMessage:
        """Convert to network message"""
        return NetworkMessage(command="version", payload=encode_version(self), magic=magic)


def encode_version(msg: VersionMessage) -> bytes:
    """
    Serialize a version message payload.

    Raises:
        EncodingError: If the user agent is longer than 255 bytes or not
            ASCII, or an integer field does not fit its wire width
    """
    try:
        user_agent_bytes = msg.user_agent.encode('ascii')
    except UnicodeEncodeError:
        raise EncodingError(f"User agent is not ASCII: {msg.user_agent!r}") from None
    if len(user_agent_bytes) > MAX_USER_AGENT_LENGTH:
        raise EncodingError(
            f"User agent too long: {len(user_agent_bytes)} bytes "
            f"(max {MAX_USER_AGENT_LENGTH})"
        )

    data = _pack('<i', msg.version, 'version')  # Version (4 bytes)
    data += _pack('<Q', msg.services, 'services')  # Services (8 bytes)
    data += _pack('<q', msg.timestamp, 'timestamp')  # Timestamp (8 bytes)
    data += msg.addr_recv.serialize()  # Address receiving (26 bytes)
    data += msg.addr_from.serialize()  # Address from (26 bytes)
    data += _pack('<Q', msg.nonce, 'nonce')  # Nonce (8 bytes)
    data += bytes([len(user_agent_bytes)])
    data += user_agent_bytes
    data += _pack('<i', msg.start_height, 'start_height')  # Start height (4 bytes)
    data += b'\x01' if msg.relay else b'\x00'
    return data


def decode_version(payload: bytes) -> VersionMessage:
    """
    Parse a version payload received from a peer.

    A missing relay byte is read as True, which is what peers that
    predate the relay field mean.

    Raises:
        MalformedPayloadError: If the payload is truncated
    """
    try:
        version, services, timestamp = struct.unpack_from('<iQq', payload, 0)
        offset = 20

        addr_recv, consumed = NetworkAddress.decode(payload, offset)
        offset += consumed
        addr_from, consumed = NetworkAddress.decode(payload, offset)
        offset += consumed

        nonce = struct.unpack_from('<Q', payload, offset)[0]
        offset += 8

        ua_length = struct.unpack_from('<B', payload, offset)[0]
        offset += 1
        if offset + ua_length > len(payload):
            raise MalformedPayloadError(
                f"User agent truncated: need {ua_length} bytes, have {len(payload) - offset}"
            )
        user_agent = bytes(payload[offset:offset + ua_length]).decode('ascii', errors='replace')
        offset += ua_length

        start_height = struct.unpack_from('<i', payload, offset)[0]
        offset += 4
    except struct.error as e:
        raise MalformedPayloadError(f"Version payload truncated: {e}") from None

    relay = True
    if offset < len(payload):
        relay = payload[offset] != 0

    return VersionMessage(
        version=version,
        services=services,
        timestamp=timestamp,
        addr_recv=addr_recv,
        addr_from=addr_from,
        nonce=nonce,
        user_agent=user_agent,
        start_height=start_height,
        relay=relay,
    )
