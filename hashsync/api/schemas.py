"""
schemas.py — Pydantic Request/Response Models
=================================================
Data models for the node's HTTP API.
"""

from typing import List, Union

from pydantic import BaseModel


class UploadResponse(BaseModel):
    """Response returned after content is stored."""

    content_hash: str
    index_path: str              # Category index page, relative to the node root
    message: str = "Content processed successfully!"


class SearchResponse(BaseModel):
    """Resolved index page for a search term."""

    query: str
    index_path: str


class SyncRequest(BaseModel):
    """Peers to synchronize with: newline-separated text or a list."""

    servers: Union[str, List[str]]

    def addresses(self) -> List[str]:
        if isinstance(self.servers, str):
            return self.servers.split("\n")
        return list(self.servers)


class SyncResultResponse(BaseModel):
    """Outcome of synchronizing with one peer."""

    server: str
    status: str
    downloaded: List[str]
    uploaded: List[str]
    errors: List[str]
    elapsed_seconds: float
    elapsed_time: str


class SyncResponse(BaseModel):
    """Results of one synchronization run."""

    total_peers: int
    results: List[SyncResultResponse]


class InventoryResponse(BaseModel):
    """Local inventory as exchanged with peers."""

    total_files: int
    files: List[str]


class HealthResponse(BaseModel):
    """Node health check response."""

    status: str
    service: str
    root_dir: str
    p2p_port: int
    stored_files: int
