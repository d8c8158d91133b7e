"""
main.py — Node Service Entrypoint
====================================
Runs the HTTP API and, alongside it, the peer protocol listener
that other nodes synchronize against.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from hashsync.api.routes import get_content_store, get_inventory, router
from hashsync.config import settings
from hashsync.services.content_store import DATA_DIR
from hashsync.services.peer_server import PeerHandlers, PeerServer, build_router

# ── Logging Configuration ─────────────────────────────────
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("hashsync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: prepare storage and run the peer listener."""
    logger.info(
        "Node starting (root=%s, http=%s:%d, p2p=%s:%d)",
        settings.ROOT_DIR,
        settings.HTTP_HOST,
        settings.HTTP_PORT,
        settings.P2P_HOST,
        settings.P2P_PORT,
    )
    store = get_content_store()
    store.ensure_layout()

    handlers = PeerHandlers(
        store=store,
        inventory=get_inventory(),
        buffer_size=settings.BUFFER_SIZE,
    )
    peer_server = PeerServer(
        build_router(handlers),
        settings.P2P_HOST,
        settings.P2P_PORT,
        max_connections=settings.PEER_MAX_CONNECTIONS,
    )
    # A bind failure here is fatal and aborts startup
    await peer_server.start()
    serve_task = asyncio.create_task(peer_server.serve_forever())

    yield

    # Cleanup
    serve_task.cancel()
    try:
        await serve_task
    except asyncio.CancelledError:
        pass
    await peer_server.close()
    logger.info("Node shutting down")


# ── FastAPI Application ───────────────────────────────────
app = FastAPI(
    title="hashsync — Content Replication Node",
    description=(
        "Content-addressable storage with category indexes, replicated "
        "between nodes over a binary peer protocol.\n\n"
        "**Store:** bytes → SHA-256 → data/<hash>/ + category marker "
        "+ index pages\n\n"
        "**Sync:** List → GetFile every remote path → PutFile every "
        "local path the peer lacks"
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)
app.mount(
    f"/{DATA_DIR}",
    StaticFiles(directory=Path(settings.ROOT_DIR) / DATA_DIR, check_dir=False),
    name="data",
)


def run() -> None:
    """Console entrypoint: serve the HTTP API with uvicorn."""
    uvicorn.run(app, host=settings.HTTP_HOST, port=settings.HTTP_PORT)


if __name__ == "__main__":
    run()
