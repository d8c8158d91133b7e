"""
test_peer_server.py — Integration Tests for the Peer Protocol
================================================================
Drives a live PeerServer over localhost, both with raw sockets and
through PeerClient.
"""

import asyncio
import io

import pytest
from hashsync.core import wire
from hashsync.core.hashing import sha256_hash
from hashsync.services.peer_client import PeerClient, PeerProtocolError, parse_address
from hashsync.services.peer_server import CommandRouter, PeerServer

from conftest import Node


async def _open(node):
    return await asyncio.open_connection("127.0.0.1", node.server.port)


class TestList:
    @pytest.mark.asyncio
    async def test_raw_list(self, node_a):
        """List returns a u32-prefixed, newline-joined inventory."""
        result = node_a.store.store_text("hello", "notes")
        reader, writer = await _open(node_a)
        writer.write(bytes([wire.CMD_LIST]))
        await writer.drain()

        payload = await wire.read_bytes(reader)
        assert await reader.read() == b""
        writer.close()

        paths = set(payload.decode("utf-8").split("\n"))
        assert paths == node_a.paths()
        assert result.index_path in paths

    @pytest.mark.asyncio
    async def test_empty_list(self, node_a):
        """An empty node sends a zero-length inventory."""
        assert await PeerClient(node_a.address).list_files() == []


class TestGetFile:
    @pytest.mark.asyncio
    async def test_get_existing(self, node_a, tmp_path):
        """Success status, u64 size, then the exact bytes."""
        payload = bytes(range(256)) * 300
        h = node_a.store.store(payload, "bin", "blob.bin", "cat").content_hash

        target = tmp_path / "download.bin"
        with open(target, "wb") as sink:
            received = await PeerClient(node_a.address, buffer_size=1000).get_file(
                f"data/{h}/{h}.bin", sink
            )
        assert received == len(payload)
        assert target.read_bytes() == payload

    @pytest.mark.asyncio
    async def test_get_missing(self, node_a):
        """A missing path gets the Error status and a message, then EOF."""
        reader, writer = await _open(node_a)
        writer.write(bytes([wire.CMD_GET_FILE]) + wire.pack_bytes(b"data/nope/nope.txt"))
        await writer.drain()

        assert await wire.read_u8(reader) == wire.STATUS_ERROR
        message = await wire.read_text(reader)
        assert message.startswith("Error opening file:")
        assert await reader.read() == b""
        writer.close()

    @pytest.mark.asyncio
    async def test_get_outside_root(self, node_a, tmp_path):
        """Paths escaping the node root are refused."""
        (tmp_path / "secret.txt").write_text("secret")
        with pytest.raises(PeerProtocolError, match="outside storage root"):
            await PeerClient(node_a.address).get_file("../secret.txt", io.BytesIO())


class TestPutFile:
    @pytest.mark.asyncio
    async def test_put_then_list(self, node_a, tmp_path):
        """A pushed file is stored by hash and shows up in List."""
        local = tmp_path / "upload.txt"
        local.write_bytes(b"pushed content")
        h = sha256_hash(b"pushed content")

        client = PeerClient(node_a.address)
        message = await client.put_file("data/x/x.txt", local)
        assert message == f"File saved successfully with hash: {h}"

        paths = await client.list_files()
        assert f"data/{h}/{h}.txt" in paths
        category = sha256_hash(b"x.txt")
        assert f"data/{category}/index.html" in paths
        stored = node_a.root / "data" / h / f"{h}.txt"
        assert stored.read_bytes() == b"pushed content"

    @pytest.mark.asyncio
    async def test_put_large_body(self, node_a, tmp_path):
        """Multi-megabyte bodies arrive intact and can be fetched back."""
        payload = bytes(range(256)) * 8192
        local = tmp_path / "big.bin"
        local.write_bytes(payload)
        h = sha256_hash(payload)

        client = PeerClient(node_a.address)
        await client.put_file("data/big/big.bin", local)

        fetched = io.BytesIO()
        assert await client.get_file(f"data/{h}/{h}.bin", fetched) == len(payload)
        assert fetched.getvalue() == payload

    @pytest.mark.asyncio
    async def test_put_rejected_by_policy(self, tmp_path):
        """A rejecting authorizer answers Error and stores nothing."""
        calls = []

        def deny(peer, path, size):
            calls.append((path, size))
            return "Pushes are disabled on this node"

        node = await Node(tmp_path / "locked").start(authorize_put=deny)
        try:
            local = tmp_path / "upload.txt"
            local.write_bytes(b"nope")
            with pytest.raises(PeerProtocolError, match="Pushes are disabled"):
                await PeerClient(node.address).put_file("data/y/y.txt", local)
            assert calls == [("data/y/y.txt", 4)]
            assert node.paths() == set()
        finally:
            await node.stop()


class TestConnectionHandling:
    @pytest.mark.asyncio
    async def test_unknown_command_closes(self, node_a):
        """An unregistered command byte closes the connection silently."""
        reader, writer = await _open(node_a)
        writer.write(bytes([42]))
        await writer.drain()
        assert await reader.read() == b""
        writer.close()

    @pytest.mark.asyncio
    async def test_server_survives_aborted_request(self, node_a):
        """A peer vanishing mid-request does not take the listener down."""
        reader, writer = await _open(node_a)
        writer.write(bytes([wire.CMD_GET_FILE]) + wire.pack_u32(100))
        await writer.drain()
        writer.close()

        assert await PeerClient(node_a.address).list_files() == []


class TestCommandRouter:
    def test_register_and_resolve(self):
        async def handler(reader, writer, peer):
            return None

        router = CommandRouter()
        router.register(7, handler)
        assert 7 in router
        assert router.resolve(7) is handler
        assert router.resolve(8) is None


class TestParseAddress:
    def test_host_port(self):
        assert parse_address("127.0.0.1:8080") == ("127.0.0.1", 8080)

    def test_ipv6(self):
        assert parse_address("[::1]:9000") == ("::1", 9000)

    @pytest.mark.parametrize("bad", ["localhost", ":8080", "host:", "host:port"])
    def test_invalid(self, bad):
        with pytest.raises(ValueError):
            parse_address(bad)


async def _start_fake_peer(handler):
    """Bare listener driving the server side of the protocol by hand."""
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    return server, f"127.0.0.1:{server.sockets[0].getsockname()[1]}"


class TestClientTimeouts:
    """PEER_TIMEOUT bounds each read, never a whole transfer."""

    @pytest.mark.asyncio
    async def test_slow_body_within_per_read_timeout(self):
        """Chunks arriving steadily finish even when the total exceeds the timeout."""

        async def trickle(reader, writer):
            await wire.read_u8(reader)
            await wire.read_bytes(reader)
            writer.write(bytes([wire.STATUS_SUCCESS]) + wire.pack_u64(40))
            for _ in range(4):
                await writer.drain()
                await asyncio.sleep(0.3)
                writer.write(b"x" * 10)
            await writer.drain()
            writer.close()

        server, address = await _start_fake_peer(trickle)
        try:
            sink = io.BytesIO()
            received = await PeerClient(address, buffer_size=10, timeout=0.5).get_file(
                "data/a/a.bin", sink
            )
        finally:
            server.close()
            await server.wait_closed()

        assert received == 40
        assert sink.getvalue() == b"x" * 40

    @pytest.mark.asyncio
    async def test_stalled_body_times_out(self):
        """A peer that stops sending mid-body trips the timeout."""
        release = asyncio.Event()

        async def stall(reader, writer):
            await wire.read_u8(reader)
            await wire.read_bytes(reader)
            writer.write(bytes([wire.STATUS_SUCCESS]) + wire.pack_u64(40) + b"x" * 10)
            await writer.drain()
            await release.wait()
            writer.close()

        server, address = await _start_fake_peer(stall)
        try:
            with pytest.raises(asyncio.TimeoutError):
                await PeerClient(address, buffer_size=10, timeout=0.3).get_file(
                    "data/a/a.bin", io.BytesIO()
                )
        finally:
            release.set()
            server.close()
            await server.wait_closed()


class TestConnectionCeiling:
    """PeerServer(max_connections=N) serves at most N connections at once."""

    @staticmethod
    def _counting_router(stats):
        async def slow(reader, writer, peer):
            stats["active"] += 1
            stats["peak"] = max(stats["peak"], stats["active"])
            await asyncio.sleep(0.2)
            stats["active"] -= 1
            stats["served"] += 1

        router = CommandRouter()
        router.register(9, slow)
        return router

    async def _hit(self, port):
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(bytes([9]))
        await writer.drain()
        await reader.read()
        writer.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,expected_peak", [(1, 1), (2, 2)])
    async def test_ceiling_respected(self, limit, expected_peak):
        """Concurrent requests beyond the ceiling wait their turn."""
        stats = {"active": 0, "peak": 0, "served": 0}
        server = PeerServer(self._counting_router(stats), "127.0.0.1", 0, max_connections=limit)
        await server.start()
        try:
            await asyncio.gather(*(self._hit(server.port) for _ in range(4)))
        finally:
            await server.close()

        assert stats["served"] == 4
        assert stats["peak"] == expected_peak

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_closes_writer(self):
        """A connection cancelled while queued for a slot is still closed."""

        class RecordingWriter:
            closed = False

            def get_extra_info(self, name):
                return ("127.0.0.1", 1)

            def close(self):
                self.closed = True

            async def wait_closed(self):
                return None

        server = PeerServer(CommandRouter(), "127.0.0.1", 0, max_connections=1)
        await server._limit.acquire()
        writer = RecordingWriter()
        task = asyncio.create_task(server._handle_connection(asyncio.StreamReader(), writer))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        server._limit.release()

        assert writer.closed
        assert not server._limit.locked()
