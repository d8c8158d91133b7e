"""
routes.py — Node HTTP API Endpoints
======================================
Thin HTTP surface over the content store and the peer sync
orchestrator.

Endpoints:
    POST /upload        — Store a file or a text snippet under a category
    GET  /search        — Resolve a hash or category to its index page
    POST /sync          — Synchronize with a list of peers
    GET  /inventory     — List local paths as exchanged with peers
    GET  /health        — Health check
    GET  /{asset}       — Default page assets referenced by index pages
"""

import asyncio
import logging
from pathlib import PurePosixPath
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse

from hashsync.api.schemas import (
    HealthResponse,
    InventoryResponse,
    SearchResponse,
    SyncRequest,
    SyncResponse,
    SyncResultResponse,
    UploadResponse,
)
from hashsync.config import settings
from hashsync.services.content_store import (
    DEFAULT_ASSETS,
    ContentStore,
    Metadata,
    StorageError,
)
from hashsync.services.inventory import Inventory
from hashsync.services.peer_sync import PeerSync

logger = logging.getLogger(__name__)

router = APIRouter()

BLOCKED_EXTENSIONS = {"php"}

# ── Service Instances (initialized lazily) ─────────────
_content_store: Optional[ContentStore] = None
_inventory: Optional[Inventory] = None
_peer_sync: Optional[PeerSync] = None


def get_content_store() -> ContentStore:
    """Get or create the content store singleton."""
    global _content_store
    if _content_store is None:
        _content_store = ContentStore(settings.ROOT_DIR)
    return _content_store


def get_inventory() -> Inventory:
    """Get or create the inventory scanner singleton."""
    global _inventory
    if _inventory is None:
        _inventory = Inventory(settings.ROOT_DIR)
    return _inventory


def get_peer_sync() -> PeerSync:
    """Get or create the peer sync singleton."""
    global _peer_sync
    if _peer_sync is None:
        _peer_sync = PeerSync(
            store=get_content_store(),
            inventory=get_inventory(),
            buffer_size=settings.BUFFER_SIZE,
            max_concurrency=settings.SYNC_MAX_CONCURRENCY,
            timeout=settings.PEER_TIMEOUT,
        )
    return _peer_sync


# ── Upload Endpoint ────────────────────────────────────

@router.post("/upload", response_model=UploadResponse)
async def upload(
    category: str = Form(""),
    text_content: str = Form(""),
    uploaded_file: Optional[UploadFile] = File(None),
    btc: str = Form(""),
    user: str = Form(""),
    title: str = Form(""),
    description: str = Form(""),
    url: str = Form(""),
    store: ContentStore = Depends(get_content_store),
):
    """
    Store an uploaded file or a text snippet.

    A file takes precedence over text. Text is stored as ``txt`` and
    named after its first 50 characters plus a timestamp. Owner
    (``btc``) and metadata fields are optional; metadata is kept
    only when all four fields are given.
    """
    if not category:
        raise HTTPException(
            status_code=400,
            detail="Please select a file or enter text content and provide a category.",
        )

    metadata = Metadata(user=user, title=title, description=description, url=url)

    if uploaded_file is not None and uploaded_file.filename:
        content = await uploaded_file.read()
        name = PurePosixPath(uploaded_file.filename).name
        extension = PurePosixPath(name).suffix[1:]
    elif text_content:
        content = text_content.encode("utf-8")
        name = None
        extension = "txt"
    else:
        raise HTTPException(
            status_code=400, detail="Please select a file or enter text content."
        )

    if not content:
        raise HTTPException(status_code=400, detail="No content to process.")
    if extension.lower() in BLOCKED_EXTENSIONS:
        raise HTTPException(
            status_code=400, detail="Error: PHP files are not allowed!"
        )
    if category == text_content:
        raise HTTPException(
            status_code=400,
            detail="Error: Category can't be the same of text contents.",
        )

    try:
        if name is None:
            result = await asyncio.to_thread(
                store.store_text, text_content, category, btc, metadata
            )
        else:
            result = await asyncio.to_thread(
                store.store, content, extension, name, category, btc, metadata
            )
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(
        "Upload stored as %s... in %s", result.content_hash[:16], result.index_path
    )
    return UploadResponse(
        content_hash=result.content_hash, index_path=result.index_path
    )


# ── Search Endpoint ────────────────────────────────────

@router.get("/search", response_model=SearchResponse)
async def search(
    q: str = Query(..., min_length=1, description="Hash or category label"),
    store: ContentStore = Depends(get_content_store),
):
    """Resolve a hash or category label to its index page."""
    index_path = store.find_index(q)
    if index_path is None:
        raise HTTPException(status_code=404, detail="File don't exists!")
    return SearchResponse(query=q, index_path=index_path)


# ── Sync Endpoint ──────────────────────────────────────

@router.post("/sync", response_model=SyncResponse)
async def sync(
    request: SyncRequest,
    peer_sync: PeerSync = Depends(get_peer_sync),
):
    """
    Synchronize with every listed peer (``host:port``).

    Blocks until every peer has finished, successfully or not.
    """
    results = await peer_sync.sync_all(request.addresses())
    return SyncResponse(
        total_peers=len(results),
        results=[SyncResultResponse(**r.to_dict()) for r in results],
    )


# ── Inventory / Health ─────────────────────────────────

@router.get("/inventory", response_model=InventoryResponse)
async def inventory(scanner: Inventory = Depends(get_inventory)):
    """List every local path as it is announced to peers."""
    files = await asyncio.to_thread(lambda: list(scanner.scan()))
    return InventoryResponse(total_files=len(files), files=files)


@router.get("/health", response_model=HealthResponse)
async def health_check(scanner: Inventory = Depends(get_inventory)):
    """Health check endpoint for the node."""
    files = await asyncio.to_thread(lambda: list(scanner.scan()))
    return HealthResponse(
        status="healthy",
        service="hashsync-node",
        root_dir=str(scanner.root),
        p2p_port=settings.P2P_PORT,
        stored_files=len(files),
    )


@router.get("/{asset}", include_in_schema=False)
async def default_asset(
    asset: str, store: ContentStore = Depends(get_content_store)
):
    """Serve the stylesheet and scripts referenced by index pages."""
    path = store.root / asset
    if asset not in DEFAULT_ASSETS or not path.is_file():
        raise HTTPException(status_code=404, detail="Not found")
    return FileResponse(path)
