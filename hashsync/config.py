"""
config.py — Node Configuration
================================
Loads settings from environment variables with sensible defaults.
"""

import os


class Settings:
    """Node configuration loaded from environment."""

    ROOT_DIR: str = os.getenv("HASHSYNC_ROOT_DIR", ".")
    HTTP_HOST: str = os.getenv("HASHSYNC_HTTP_HOST", "0.0.0.0")
    HTTP_PORT: int = int(os.getenv("HASHSYNC_HTTP_PORT", "8081"))
    P2P_HOST: str = os.getenv("HASHSYNC_P2P_HOST", "0.0.0.0")
    P2P_PORT: int = int(os.getenv("HASHSYNC_P2P_PORT", "8080"))
    BUFFER_SIZE: int = int(os.getenv("HASHSYNC_BUFFER_SIZE", "32768"))  # 32 KB
    SYNC_MAX_CONCURRENCY: int = int(os.getenv("SYNC_MAX_CONCURRENCY", "0"))
    PEER_MAX_CONNECTIONS: int = int(os.getenv("PEER_MAX_CONNECTIONS", "0"))
    PEER_TIMEOUT: float = float(os.getenv("PEER_TIMEOUT", "0"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
