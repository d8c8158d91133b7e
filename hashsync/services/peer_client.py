"""
peer_client.py — Peer Protocol Client
========================================
Client side of the binary peer protocol. Every call opens its own
TCP connection, issues one command and closes the connection.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import IO, AsyncIterator, List, Optional, Tuple

from hashsync.core import wire

logger = logging.getLogger(__name__)


class PeerProtocolError(Exception):
    """Raised when the remote node answers with the Error status."""


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a ``host:port`` peer address.

    Raises:
        ValueError: If the address has no usable port.
    """
    host, sep, port = address.strip().rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Invalid peer address '{address}' (expected host:port)")
    return host.strip("[]"), int(port)


class PeerClient:
    """
    Client for a single remote node.

    Provides methods to list the remote inventory, fetch a stored
    file and push a local file.
    """

    def __init__(
        self,
        address: str,
        buffer_size: int = wire.BUFFER_SIZE,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the peer client.

        Args:
            address: Remote node as ``host:port``.
            buffer_size: Transfer chunk size in bytes.
            timeout: Optional connect/read timeout in seconds.
        """
        self.address = address
        self.host, self.port = parse_address(address)
        self.buffer_size = buffer_size
        self.timeout = timeout or None

    @asynccontextmanager
    async def _connect(
        self,
    ) -> AsyncIterator[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), self.timeout
        )
        try:
            yield reader, writer
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _read(self, coro):
        return await asyncio.wait_for(coro, self.timeout)

    async def _raise_remote_error(self, reader: asyncio.StreamReader) -> None:
        message = await self._read(wire.read_text(reader))
        raise PeerProtocolError(message)

    async def list_files(self) -> List[str]:
        """
        Fetch the remote inventory.

        Returns:
            Remote paths in the order the peer sent them (blanks removed).
        """
        async with self._connect() as (reader, writer):
            writer.write(bytes([wire.CMD_LIST]))
            await writer.drain()
            payload = await self._read(wire.read_bytes(reader))

        paths = [p for p in payload.decode("utf-8").split("\n") if p.strip()]
        logger.debug("Peer %s listed %d paths", self.address, len(paths))
        return paths

    async def get_file(self, path: str, sink: IO[bytes]) -> int:
        """
        Download one remote file into a writable binary sink.

        Args:
            path: Remote inventory path.
            sink: Binary file object receiving the bytes.

        Returns:
            Number of bytes received.

        Raises:
            PeerProtocolError: If the peer reports an error for the path.
            asyncio.TimeoutError: If the peer stalls on any single read.
        """
        encoded = path.encode("utf-8")
        async with self._connect() as (reader, writer):
            writer.write(bytes([wire.CMD_GET_FILE]) + wire.pack_bytes(encoded))
            await writer.drain()

            status = await self._read(wire.read_u8(reader))
            if status == wire.STATUS_ERROR:
                await self._raise_remote_error(reader)

            size = await self._read(wire.read_u64(reader))
            received = await wire.copy_stream(
                reader, size, sink.write, self.buffer_size, timeout=self.timeout
            )

        if received < size:
            logger.warning(
                "Short read for %s from %s: %d of %d bytes",
                path, self.address, received, size,
            )
        return received

    async def put_file(self, path: str, local_file: Path) -> str:
        """
        Push a local file to the peer under the given inventory path.

        Args:
            path: Inventory path announced to the peer.
            local_file: File on disk to stream.

        Returns:
            The peer's confirmation message.

        Raises:
            PeerProtocolError: If the peer refuses or fails to store it.
        """
        size = local_file.stat().st_size
        encoded = path.encode("utf-8")

        async with self._connect() as (reader, writer):
            writer.write(
                bytes([wire.CMD_PUT_FILE])
                + wire.pack_bytes(encoded)
                + wire.pack_u64(size)
            )
            await writer.drain()

            status = await self._read(wire.read_u8(reader))
            if status == wire.STATUS_ERROR:
                await self._raise_remote_error(reader)

            with open(local_file, "rb") as f:
                while True:
                    chunk = await asyncio.to_thread(f.read, self.buffer_size)
                    if not chunk:
                        break
                    writer.write(chunk)
                    await writer.drain()

            final_status = await self._read(wire.read_u8(reader))
            message = await self._read(wire.read_text(reader))

        if final_status == wire.STATUS_ERROR:
            raise PeerProtocolError(message)
        return message
