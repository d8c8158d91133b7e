"""
peer_server.py — Peer Protocol Server
========================================
Listens for inbound peer connections. Each connection carries one
command byte followed by its request body:

    1  List     — return the local inventory
    2  GetFile  — stream a stored file
    3  PutFile  — receive a file and hand it to the content store

Commands are dispatched through a CommandRouter built at startup.
Every connection runs on its own task, so a slow peer never stalls
the accept loop.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, Optional

from hashsync.core import wire
from hashsync.services.content_store import ContentStore, StorageError
from hashsync.services.inventory import Inventory, split_inventory_name

logger = logging.getLogger(__name__)

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter, str], Awaitable[None]]

# (peer, path, size) -> rejection reason, or None to accept
PutAuthorizer = Callable[[str, str, int], Optional[str]]


def accept_all(peer: str, path: str, size: int) -> Optional[str]:
    """Default PutFile policy: every push is accepted."""
    return None


class CommandRouter:
    """Maps protocol command bytes to connection handlers."""

    def __init__(self):
        self._routes: Dict[int, Handler] = {}

    def register(self, command: int, handler: Handler) -> None:
        self._routes[command] = handler

    def resolve(self, command: int) -> Optional[Handler]:
        return self._routes.get(command)

    def __contains__(self, command: int) -> bool:
        return command in self._routes


class PeerHandlers:
    """
    Server-side implementation of the List, GetFile and PutFile commands.
    """

    def __init__(
        self,
        store: ContentStore,
        inventory: Inventory,
        buffer_size: int = wire.BUFFER_SIZE,
        authorize_put: PutAuthorizer = accept_all,
    ):
        """
        Initialize the handlers.

        Args:
            store: Content store that receives pushed files.
            inventory: Scanner answering List requests.
            buffer_size: Transfer chunk size in bytes.
            authorize_put: Hook deciding whether a PutFile is accepted.
        """
        self.store = store
        self.inventory = inventory
        self.buffer_size = buffer_size
        self.authorize_put = authorize_put

    async def handle_list(self, reader, writer, peer: str) -> None:
        paths = await asyncio.to_thread(lambda: list(self.inventory.scan()))
        payload = "\n".join(paths).encode("utf-8")
        writer.write(wire.pack_bytes(payload))
        await writer.drain()
        logger.info("Sent inventory of %d paths to %s", len(paths), peer)

    async def handle_get_file(self, reader, writer, peer: str) -> None:
        path = (await wire.read_bytes(reader)).decode("utf-8", errors="replace")
        logger.debug("GetFile %s from %s", path, peer)

        try:
            local = self.store.resolve_path(path)
            f = await asyncio.to_thread(open, local, "rb")
        except (ValueError, OSError) as e:
            logger.warning("GetFile %s from %s failed: %s", path, peer, e)
            writer.write(wire.pack_message(wire.STATUS_ERROR, f"Error opening file: {e}"))
            await writer.drain()
            return

        with f:
            size = os.fstat(f.fileno()).st_size
            writer.write(bytes([wire.STATUS_SUCCESS]) + wire.pack_u64(size))
            while True:
                chunk = await asyncio.to_thread(f.read, self.buffer_size)
                if not chunk:
                    break
                writer.write(chunk)
                await writer.drain()
        logger.info("Sent %s (%d bytes) to %s", path, size, peer)

    async def handle_put_file(self, reader, writer, peer: str) -> None:
        path = (await wire.read_bytes(reader)).decode("utf-8", errors="replace")
        size = await wire.read_u64(reader)

        reason = self.authorize_put(peer, path, size)
        if reason:
            logger.warning("Rejected PutFile %s from %s: %s", path, peer, reason)
            writer.write(wire.pack_message(wire.STATUS_ERROR, reason))
            await writer.drain()
            return

        writer.write(bytes([wire.STATUS_SUCCESS]))
        await writer.drain()

        # store() hashes the whole body, so it is collected in memory
        body = bytearray()
        received = await wire.copy_stream(reader, size, body.extend, self.buffer_size)
        if received < size:
            logger.warning(
                "PutFile %s from %s truncated: %d of %d bytes",
                path, peer, received, size,
            )
        data = bytes(body)

        name, extension, _ = split_inventory_name(path)
        try:
            result = await asyncio.to_thread(
                self.store.store, data, extension, name, name
            )
        except StorageError as e:
            writer.write(
                wire.pack_message(
                    wire.STATUS_ERROR, f"Error saving file with hash pattern: {e}"
                )
            )
            await writer.drain()
            return

        writer.write(
            wire.pack_message(
                wire.STATUS_SUCCESS,
                f"File saved successfully with hash: {result.content_hash}",
            )
        )
        await writer.drain()
        logger.info(
            "Received %s from %s, stored as %s...",
            path, peer, result.content_hash[:16],
        )


def build_router(handlers: PeerHandlers) -> CommandRouter:
    """Wire the standard commands to their handlers."""
    router = CommandRouter()
    router.register(wire.CMD_LIST, handlers.handle_list)
    router.register(wire.CMD_GET_FILE, handlers.handle_get_file)
    router.register(wire.CMD_PUT_FILE, handlers.handle_put_file)
    return router


class PeerServer:
    """
    TCP listener for the peer protocol.

    One connection = one request: read the command byte, dispatch it
    through the router, close the connection.
    """

    def __init__(
        self,
        router: CommandRouter,
        host: str,
        port: int,
        max_connections: int = 0,
    ):
        """
        Initialize the peer server.

        Args:
            router: Command dispatch table.
            host: Interface to bind.
            port: Port to bind (0 picks a free port).
            max_connections: Ceiling on connections served at once,
                             0 for no limit.
        """
        self.router = router
        self.host = host
        self.port = port
        self._limit = asyncio.Semaphore(max_connections) if max_connections > 0 else None
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        """Bind the listener. Bind failures propagate to the caller."""
        self._server = await asyncio.start_server(
            self._handle_connection, self.host, self.port
        )
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Peer server listening on %s:%d", self.host, self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Peer server stopped")

    async def _dispatch(self, reader, writer, peer: str) -> None:
        command = await wire.read_u8(reader)
        handler = self.router.resolve(command)
        if handler is None:
            logger.warning("Unknown command %d from %s", command, peer)
            return
        await handler(reader, writer, peer)

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peername = writer.get_extra_info("peername")
        peer = f"{peername[0]}:{peername[1]}" if peername else "unknown"

        try:
            if self._limit is None:
                await self._dispatch(reader, writer, peer)
            else:
                async with self._limit:
                    await self._dispatch(reader, writer, peer)
        except asyncio.IncompleteReadError:
            logger.warning("Peer %s closed the connection mid-request", peer)
        except (ConnectionError, OSError) as e:
            logger.error("Connection error with %s: %s", peer, e)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
