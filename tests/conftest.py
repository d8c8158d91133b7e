"""
conftest.py — Shared Test Fixtures
=====================================
Nodes backed by temporary directories, with peer servers bound to
an ephemeral localhost port.
"""

from pathlib import Path

import pytest
import pytest_asyncio

from hashsync.services.content_store import ContentStore
from hashsync.services.inventory import Inventory
from hashsync.services.peer_server import PeerHandlers, PeerServer, build_router


class Node:
    """A store, its inventory and (once started) its peer server."""

    def __init__(self, root: Path):
        self.root = root
        self.store = ContentStore(str(root))
        self.store.ensure_layout()
        self.inventory = Inventory(str(root))
        self.server = None

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.server.port}"

    async def start(self, inventory=None, **handler_options) -> "Node":
        handlers = PeerHandlers(
            self.store, inventory or self.inventory, **handler_options
        )
        self.server = PeerServer(build_router(handlers), "127.0.0.1", 0)
        await self.server.start()
        return self

    async def stop(self) -> None:
        if self.server is not None:
            await self.server.close()

    def paths(self) -> set:
        return set(self.inventory.scan())


@pytest.fixture
def store(tmp_path):
    """A content store rooted in a fresh temporary directory."""
    content_store = ContentStore(str(tmp_path))
    content_store.ensure_layout()
    return content_store


@pytest_asyncio.fixture
async def node_a(tmp_path):
    node = await Node(tmp_path / "node-a").start()
    yield node
    await node.stop()


@pytest_asyncio.fixture
async def node_b(tmp_path):
    node = await Node(tmp_path / "node-b").start()
    yield node
    await node.stop()
