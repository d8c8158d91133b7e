"""
peer_sync.py — Peer Synchronization
======================================
Reconciles the local store with a list of peers.

Strategy, per peer:
    1. Fetch the remote inventory (List)
    2. Download every remote path and store it locally (GetFile)
    3. Upload every local path the peer did not list (PutFile)
    4. Report what moved and what failed in a SyncResult

Peers are contacted concurrently; transfers with a single peer are
sequential, each on its own connection.
"""

import asyncio
import io
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Iterable, List, Optional

from hashsync.core import wire
from hashsync.services.content_store import ContentStore, StorageError
from hashsync.services.inventory import Inventory, split_inventory_name
from hashsync.services.peer_client import PeerClient, PeerProtocolError

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_ERROR = "error"

# Failures that only abort the current file or peer
TRANSFER_ERRORS = (
    OSError,
    asyncio.IncompleteReadError,
    asyncio.TimeoutError,
    PeerProtocolError,
    ValueError,
)


@dataclass
class SyncResult:
    """Outcome of one synchronization run against one peer."""

    server: str
    status: str = STATUS_ERROR
    downloaded: List[str] = field(default_factory=list)
    uploaded: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def elapsed_time(self) -> str:
        return f"{self.elapsed_seconds:.3f}s"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["elapsed_time"] = self.elapsed_time
        return data


class PeerSync:
    """
    Orchestrates inventory exchange and bidirectional transfer
    between this node and a set of peers.
    """

    def __init__(
        self,
        store: ContentStore,
        inventory: Inventory,
        buffer_size: int = wire.BUFFER_SIZE,
        max_concurrency: int = 0,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the sync orchestrator.

        Args:
            store: Local content store receiving downloads.
            inventory: Scanner for the local side of the diff.
            buffer_size: Transfer chunk size in bytes.
            max_concurrency: Peers synced at once, 0 for no limit.
            timeout: Optional per-operation network timeout in seconds.
        """
        self.store = store
        self.inventory = inventory
        self.buffer_size = buffer_size
        self.max_concurrency = max_concurrency
        self.timeout = timeout or None
        logger.info(
            "PeerSync initialized (max_concurrency=%s)",
            max_concurrency or "unbounded",
        )

    async def sync_all(self, addresses: Iterable[str]) -> List[SyncResult]:
        """
        Synchronize with every non-blank address.

        Every peer is attempted and all runs are joined before
        returning; one failing peer never affects the others.

        Returns:
            One SyncResult per peer, in the order given.
        """
        peers = [a.strip() for a in addresses if a.strip()]
        if not peers:
            return []

        limit = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency > 0 else None

        async def _run(address: str) -> SyncResult:
            if limit is None:
                return await self.sync_with_peer(address)
            async with limit:
                return await self.sync_with_peer(address)

        results = await asyncio.gather(*(_run(p) for p in peers))
        logger.info(
            "Sync finished with %d peers (%d ok)",
            len(results),
            sum(1 for r in results if r.status == STATUS_SUCCESS),
        )
        return list(results)

    async def sync_with_peer(self, address: str) -> SyncResult:
        """
        Run one full reconciliation against a single peer.

        Args:
            address: Peer as ``host:port``.

        Returns:
            The SyncResult for this peer.
        """
        result = SyncResult(server=address)
        started = time.monotonic()

        try:
            client = PeerClient(address, self.buffer_size, self.timeout)
            remote_paths = await client.list_files()
        except TRANSFER_ERRORS as e:
            logger.warning("Sync with %s failed at listing: %s", address, e)
            result.errors.append(f"Error connecting: {e}")
            result.elapsed_seconds = time.monotonic() - started
            return result

        logger.info("Peer %s lists %d paths", address, len(remote_paths))

        for path in remote_paths:
            await self._download(client, path, result)

        remote_set = set(remote_paths)
        local_paths = await asyncio.to_thread(lambda: list(self.inventory.scan()))
        for path in local_paths:
            if path not in remote_set:
                await self._upload(client, path, result)

        result.status = STATUS_PARTIAL if result.errors else STATUS_SUCCESS
        result.elapsed_seconds = time.monotonic() - started
        logger.info(
            "Sync with %s: %s (%d down, %d up, %d errors) in %s",
            address,
            result.status,
            len(result.downloaded),
            len(result.uploaded),
            len(result.errors),
            result.elapsed_time,
        )
        return result

    async def _download(self, client: PeerClient, path: str, result: SyncResult) -> None:
        """Fetch one remote path and store it locally."""
        name, extension, category = split_inventory_name(path)
        try:
            # store() needs the whole body in memory to hash it
            buffer = io.BytesIO()
            await client.get_file(path, buffer)
            stored = await asyncio.to_thread(
                self.store.store, buffer.getvalue(), extension, name, category
            )
        except StorageError as e:
            result.errors.append(f"Error saving downloaded file {path}: {e}")
            return
        except TRANSFER_ERRORS as e:
            result.errors.append(f"Error downloading {path}: {e}")
            return

        result.downloaded.append(f"{path} (saved as {stored.content_hash})")
        logger.debug("Downloaded %s as %s...", path, stored.content_hash[:16])

    async def _upload(self, client: PeerClient, path: str, result: SyncResult) -> None:
        """Push one local path the peer does not have."""
        try:
            local = self.store.resolve_path(path)
            await client.put_file(path, local)
        except TRANSFER_ERRORS as e:
            result.errors.append(f"Error uploading {path}: {e}")
            return

        result.uploaded.append(path)
        logger.debug("Uploaded %s to %s", path, client.address)
