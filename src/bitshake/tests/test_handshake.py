"""
Test the handshake state machine and perform_handshake.

Peers are scripted: their frames are queued on an in-memory stream and
everything we write is recorded for inspection.
"""

import asyncio
import struct
import sys
import unittest
from pathlib import Path
from typing import List

# Add src to path
src_dir = Path(__file__).parent.parent.parent
sys.path.insert(0, str(src_dir))

from bitshake.config import HandshakeConfig
from bitshake.errors import (
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
from bitshake.handshake import (
    HandshakeResult,
    HandshakeState,
    HandshakeStateMachine,
    perform_handshake,
)
from bitshake.messages import (
    MAGIC_REGTEST,
    MAGIC_TESTNET,
    NetworkAddress,
    NetworkMessage,
    VersionMessage,
    decode_header,
    decode_version,
    encode_frame,
)
from bitshake.transport import StreamTransport

OUR_NONCE = 0x1122334455667788
PEER_NONCE = 0x8877665544332211
NOW = 1700000000


def make_config(**kwargs) -> HandshakeConfig:
    fields = dict(network="regtest", remote_host="10.0.0.2", timeout=5.0)
    fields.update(kwargs)
    return HandshakeConfig(**fields)


def peer_version(magic: int = MAGIC_REGTEST, nonce: int = PEER_NONCE) -> NetworkMessage:
    return VersionMessage(
        version=70016,
        services=0x409,
        timestamp=NOW + 1,
        addr_recv=NetworkAddress.from_ipv4("10.0.0.1", 18444),
        addr_from=NetworkAddress.from_ipv4("10.0.0.2", 18444),
        nonce=nonce,
        user_agent="/Satoshi:27.0.0/",
        start_height=123,
        relay=True,
    ).to_network_message(magic)


def peer_verack(magic: int = MAGIC_REGTEST) -> NetworkMessage:
    return NetworkMessage("verack", b"", magic)


def peer_ping(magic: int = MAGIC_REGTEST) -> NetworkMessage:
    return NetworkMessage("ping", struct.pack("<Q", 99), magic)


class RecordingTransport(StreamTransport):
    """In-memory transport: inbound bytes are pre-queued, writes are recorded"""

    def __init__(self, inbound: bytes = b"", eof: bool = True):
        reader = asyncio.StreamReader()
        if inbound:
            reader.feed_data(inbound)
        if eof:
            reader.feed_eof()
        super().__init__(reader, None, peername="scripted")
        self.written: List[bytes] = []

    async def write(self, data: bytes) -> int:
        self.written.append(data)
        return len(data)

    def sent_commands(self) -> List[str]:
        return [decode_header(data[:24]).command for data in self.written]


async def run_handshake(frames, eof: bool = True, **config_kwargs):
    inbound = b"".join(f.serialize() for f in frames)
    transport = RecordingTransport(inbound, eof=eof)
    config = make_config(**config_kwargs)
    try:
        result = await perform_handshake(
            transport, config, nonce_source=lambda: OUR_NONCE, clock=lambda: NOW
        )
    except HandshakeError as e:
        return transport, e
    return transport, result


class TestStateMachine(unittest.TestCase):
    """Test HandshakeStateMachine transitions without I/O"""

    def setUp(self):
        self.machine = HandshakeStateMachine(
            make_config(), nonce_source=lambda: OUR_NONCE, clock=lambda: NOW
        )

    def test_initial_state(self):
        self.assertEqual(self.machine.state, HandshakeState.IDLE)
        self.assertFalse(self.machine.is_terminal)

    def test_start_builds_version(self):
        frame = self.machine.start()
        self.assertEqual(self.machine.state, HandshakeState.VERSION_SENT)
        self.assertEqual(frame.command, "version")
        self.assertEqual(frame.magic, MAGIC_REGTEST)

        version = decode_version(frame.payload)
        self.assertEqual(version.nonce, OUR_NONCE)
        self.assertEqual(version.timestamp, NOW)
        self.assertEqual(version.version, 70015)
        self.assertEqual(version.user_agent, "/bitshake:0.1.0/")
        self.assertEqual(version.addr_recv.host, "10.0.0.2")
        self.assertEqual(version.addr_recv.port, 18444)
        self.assertEqual(version.addr_from.port, 18444)
        self.assertFalse(version.relay)

    def test_start_twice(self):
        self.machine.start()
        with self.assertRaises(ProtocolViolationError):
            self.machine.start()
        self.assertEqual(self.machine.state, HandshakeState.FAILED)

    def test_version_then_verack(self):
        self.machine.start()

        reply = self.machine.receive(peer_version())
        self.assertEqual(reply.command, "verack")
        self.assertEqual(reply.payload, b"")
        self.assertEqual(reply.magic, MAGIC_REGTEST)
        self.assertEqual(self.machine.state, HandshakeState.VERSION_SENT)
        self.assertEqual(self.machine.peer_version.user_agent, "/Satoshi:27.0.0/")

        self.assertIsNone(self.machine.receive(peer_verack()))
        self.assertEqual(self.machine.state, HandshakeState.COMPLETED)
        self.assertTrue(self.machine.is_terminal)

    def test_unknown_command_ignored(self):
        self.machine.start()
        self.assertIsNone(self.machine.receive(peer_ping()))
        self.assertIsNone(self.machine.receive(NetworkMessage("sendheaders", b"", MAGIC_REGTEST)))
        self.assertEqual(self.machine.state, HandshakeState.VERSION_SENT)
        self.assertEqual(self.machine.ignored_commands, ["ping", "sendheaders"])

    def test_duplicate_version_ignored(self):
        self.machine.start()
        self.assertIsNotNone(self.machine.receive(peer_version()))
        self.assertIsNone(self.machine.receive(peer_version()))
        self.assertEqual(self.machine.state, HandshakeState.VERSION_SENT)

    def test_frame_before_start(self):
        with self.assertRaises(ProtocolViolationError):
            self.machine.receive(peer_version())
        self.assertEqual(self.machine.state, HandshakeState.FAILED)

    def test_frame_after_completion(self):
        self.machine.start()
        self.machine.receive(peer_verack())
        with self.assertRaises(ProtocolViolationError):
            self.machine.receive(peer_ping())

    def test_magic_mismatch(self):
        self.machine.start()
        with self.assertRaises(NetworkMismatchError) as ctx:
            self.machine.receive(peer_version(magic=MAGIC_TESTNET))
        self.assertEqual(ctx.exception.expected, MAGIC_REGTEST)
        self.assertEqual(ctx.exception.received, MAGIC_TESTNET)
        self.assertEqual(self.machine.state, HandshakeState.FAILED)
        self.assertIs(self.machine.error, ctx.exception)

    def test_magic_mismatch_not_malformed(self):
        self.assertFalse(issubclass(NetworkMismatchError, MalformedHeaderError))

    def test_self_connection(self):
        self.machine.start()
        with self.assertRaises(SelfConnectionError):
            self.machine.receive(peer_version(nonce=OUR_NONCE))

    def test_garbled_peer_version(self):
        self.machine.start()
        with self.assertRaises(MalformedPayloadError) as ctx:
            self.machine.receive(NetworkMessage("version", b"\x00" * 10, MAGIC_REGTEST))
        self.assertIsInstance(ctx.exception, MalformedHeaderError)
        self.assertEqual(self.machine.state, HandshakeState.FAILED)

    def test_truncated_version_fails_handshake_as_malformed(self):
        frames = [NetworkMessage("version", b"\x00" * 10, MAGIC_REGTEST), peer_verack()]
        _, error = asyncio.run(run_handshake(frames))
        self.assertIsInstance(error, MalformedHeaderError)

    def test_fail_keeps_first_error(self):
        first = HandshakeError("first")
        self.machine.fail(first)
        self.machine.fail(HandshakeError("second"))
        self.assertIs(self.machine.error, first)
        self.assertEqual(self.machine.state, HandshakeState.FAILED)

    def test_oversized_user_agent_fails_start(self):
        machine = HandshakeStateMachine(make_config(user_agent="x" * 256))
        with self.assertRaises(EncodingError):
            machine.start()
        self.assertEqual(machine.state, HandshakeState.FAILED)

    def test_random_nonce_per_attempt(self):
        nonces = {
            decode_version(HandshakeStateMachine(make_config()).start().payload).nonce
            for _ in range(4)
        }
        self.assertGreater(len(nonces), 1)


class TestPerformHandshake(unittest.TestCase):
    """Test perform_handshake over a scripted transport"""

    def test_version_then_verack(self):
        transport, result = asyncio.run(run_handshake([peer_version(), peer_verack()]))

        self.assertIsInstance(result, HandshakeResult)
        self.assertEqual(result.nonce, OUR_NONCE)
        self.assertEqual(result.magic, MAGIC_REGTEST)
        self.assertEqual(result.peer_version.start_height, 123)
        self.assertEqual(result.ignored_commands, [])
        # version first, verack after the peer's version, nothing after verack
        self.assertEqual(transport.sent_commands(), ["version", "verack"])

    def test_stops_reading_after_verack(self):
        """Frames after the peer's verack stay unread"""
        frames = [peer_version(), peer_verack(), peer_ping()]
        transport, result = asyncio.run(run_handshake(frames))
        self.assertIsInstance(result, HandshakeResult)
        self.assertEqual(result.ignored_commands, [])
        self.assertEqual(transport.sent_commands(), ["version", "verack"])

    def test_ping_before_verack_ignored(self):
        frames = [peer_version(), peer_ping(), peer_verack()]
        transport, result = asyncio.run(run_handshake(frames))
        self.assertIsInstance(result, HandshakeResult)
        self.assertEqual(result.ignored_commands, ["ping"])
        self.assertEqual(transport.sent_commands(), ["version", "verack"])

    def test_verack_without_version(self):
        transport, result = asyncio.run(run_handshake([peer_verack()]))
        self.assertIsInstance(result, HandshakeResult)
        self.assertIsNone(result.peer_version)
        self.assertEqual(transport.sent_commands(), ["version"])

    def test_immediate_close(self):
        transport, error = asyncio.run(run_handshake([]))
        self.assertIsInstance(error, UnexpectedTerminationError)
        self.assertEqual(transport.sent_commands(), ["version"])

    def test_close_after_version(self):
        transport, error = asyncio.run(run_handshake([peer_version()]))
        self.assertIsInstance(error, UnexpectedTerminationError)
        self.assertEqual(transport.sent_commands(), ["version", "verack"])

    def test_magic_mismatch(self):
        frames = [peer_version(MAGIC_TESTNET), peer_verack(MAGIC_TESTNET)]
        _, error = asyncio.run(run_handshake(frames))
        self.assertIsInstance(error, NetworkMismatchError)

    def test_magic_check_disabled(self):
        frames = [peer_version(MAGIC_TESTNET), peer_verack(MAGIC_TESTNET)]
        transport, result = asyncio.run(run_handshake(frames, check_magic=False))
        self.assertIsInstance(result, HandshakeResult)
        # our verack still carries our own magic
        self.assertEqual(decode_header(transport.written[1][:24]).magic, MAGIC_REGTEST)

    def test_custom_magic(self):
        frames = [peer_version(0xCAFEBABE), peer_verack(0xCAFEBABE)]
        transport, result = asyncio.run(
            run_handshake(frames, network="custom", magic=0xCAFEBABE)
        )
        self.assertEqual(result.magic, 0xCAFEBABE)
        self.assertEqual(decode_header(transport.written[0][:24]).magic, 0xCAFEBABE)

    def test_oversized_frame(self):
        header = struct.pack("<I12sI4s", MAGIC_REGTEST, b"block", 0xFFFFFFFF, b"\x00" * 4)

        async def run():
            transport = RecordingTransport(header, eof=False)
            return await perform_handshake(transport, make_config(), nonce_source=lambda: 1)

        with self.assertRaises(MalformedHeaderError):
            asyncio.run(run())

    def test_malformed_header(self):
        bad = bytearray(encode_frame(MAGIC_REGTEST, "verack", b""))
        bad[5] = 0xFF

        async def run():
            transport = RecordingTransport(bytes(bad))
            return await perform_handshake(transport, make_config())

        with self.assertRaises(MalformedHeaderError):
            asyncio.run(run())

    def test_timeout(self):
        """A silent peer trips the handshake deadline"""
        _, error = asyncio.run(run_handshake([peer_version()], eof=False, timeout=0.05))
        self.assertIsInstance(error, HandshakeTimeoutError)
        self.assertIsInstance(error, TimeoutError)

    def test_encoding_error_sends_nothing(self):
        transport, error = asyncio.run(run_handshake([], user_agent="u" * 300))
        self.assertIsInstance(error, EncodingError)
        self.assertEqual(transport.written, [])

    def test_write_failure(self):
        class FailingTransport(RecordingTransport):
            async def write(self, data):
                raise PeerConnectionError("broken pipe")

        async def run():
            return await perform_handshake(FailingTransport(), make_config())

        with self.assertRaises(PeerConnectionError):
            asyncio.run(run())

    def test_close_aborts_handshake(self):
        """The caller can abort a blocked handshake by closing the transport"""
        async def run():
            transport = RecordingTransport(peer_version().serialize(), eof=False)
            task = asyncio.create_task(perform_handshake(transport, make_config()))
            await asyncio.sleep(0.01)
            transport.close()
            return await asyncio.wait_for(task, timeout=1.0)

        with self.assertRaises(UnexpectedTerminationError):
            asyncio.run(run())


if __name__ == '__main__':
    unittest.main()
