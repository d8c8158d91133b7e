"""
content_store.py — Content-Addressable Storage
=================================================
Persists content under its SHA-256 hash and files it under
category buckets on the local filesystem.

Layout (relative to the node root):
    data/<hash>/<hash>.<ext>        content bytes
    data/<hash>/index.html          back-link index for that content
    data/<category>/<hash>.<ext>    zero-length category marker
    data/<category>/index.html      category index
    owners/<hash>                   owner text (first write wins)
    metadata/<hash>.json            metadata record (first write wins)
"""

import html
import json
import logging
import threading
import weakref
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import NamedTuple, Optional

from hashsync.core.hashing import resolve_label_hash, sha256_hash

logger = logging.getLogger(__name__)

DATA_DIR = "data"
OWNERS_DIR = "owners"
METADATA_DIR = "metadata"
INDEX_NAME = "index.html"

INDEX_HEADER = (
    "<link rel='stylesheet' href='../../default.css'>"
    "<script src='../../default.js'></script>"
    "<script src='../../ads.js'></script>"
    "<div id='ads' name='ads' class='ads'></div>"
    "<div id='default' name='default' class='default'></div>"
)

DEFAULT_ASSETS = {
    "default.css": (
        "\nbody {\n    font-family: Arial, sans-serif;\n    line-height: 1.6;\n"
        "    margin: 0;\n    padding: 20px;\n    color: #333;\n}\n\n"
        "a {\n    color: #0066cc;\n    text-decoration: none;\n}\n\n"
        "a:hover {\n    text-decoration: underline;\n}\n\n"
        ".ads, .default {\n    margin-bottom: 20px;\n}\n"
    ),
    "default.js": (
        "\ndocument.addEventListener('DOMContentLoaded', function() {\n"
        "    console.log('Page loaded');\n});\n"
    ),
    "ads.js": "\n// Placeholder for ads\n",
}

TEXT_NAME_LIMIT = 50


class StorageError(OSError):
    """Raised when content cannot be written to disk."""


class StoreResult(NamedTuple):
    content_hash: str
    index_path: str  # root-relative path of the category index page


@dataclass
class Metadata:
    """Optional descriptive record attached to a content hash."""

    user: str = ""
    title: str = ""
    description: str = ""
    url: str = ""

    def is_complete(self) -> bool:
        return all((self.user, self.title, self.description, self.url))

    def to_dict(self) -> dict:
        return asdict(self)


def text_display_name(text: str, now: Optional[datetime] = None) -> str:
    """Display name for submitted text: first 50 chars plus a timestamp."""
    stamp = (now or datetime.now()).strftime("%Y.%m.%d %H:%M:%S")
    return f"{text[:TEXT_NAME_LIMIT]} ({stamp})"


class ContentStore:
    """
    Manages content-addressable storage on the local filesystem.

    Content is deduplicated by hash: submitting the same bytes twice
    rewrites the same file and leaves every index page unchanged.
    """

    def __init__(self, root_dir: str):
        """
        Initialize the content store.

        Args:
            root_dir: Node root under which data/, owners/ and
                      metadata/ live.
        """
        self.root = Path(root_dir)
        self.data_dir = self.root / DATA_DIR
        self.owners_dir = self.root / OWNERS_DIR
        self.metadata_dir = self.root / METADATA_DIR
        # entries vanish once no caller holds the lock
        self._locks: "weakref.WeakValueDictionary[Path, threading.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()
        logger.info("ContentStore initialized at %s", self.root)

    def ensure_layout(self) -> None:
        """Create the storage directories and default page assets."""
        for directory in (self.data_dir, self.owners_dir, self.metadata_dir):
            directory.mkdir(parents=True, exist_ok=True, mode=0o777)
        for name, content in DEFAULT_ASSETS.items():
            asset = self.root / name
            if not asset.exists():
                asset.write_text(content, encoding="utf-8")
                logger.info("Created default asset %s", asset)

    # ── Store ──────────────────────────────────────────────

    def store(
        self,
        data: bytes,
        extension: str,
        display_name: str,
        category: str,
        owner_info: Optional[str] = None,
        metadata: Optional[Metadata] = None,
    ) -> StoreResult:
        """
        Store content under its hash and file it under a category.

        Args:
            data: Raw content bytes.
            extension: File extension without the leading dot.
            display_name: Human-readable name shown in index pages.
            category: Category label or a 64-hex category hash.
            owner_info: Optional owner text (e.g. a payment address).
            metadata: Optional metadata, saved only when complete.

        Returns:
            StoreResult with the content hash and the category index path.

        Raises:
            StorageError: If any filesystem write fails.
        """
        content_hash = sha256_hash(data)
        category_hash = resolve_label_hash(category)
        stored_name = f"{content_hash}.{extension}" if extension else content_hash

        content_dir = self.data_dir / content_hash
        category_dir = self.data_dir / category_hash

        try:
            content_dir.mkdir(parents=True, exist_ok=True, mode=0o777)
            category_dir.mkdir(parents=True, exist_ok=True, mode=0o777)

            (content_dir / stored_name).write_bytes(data)

            if owner_info:
                self._write_once(self.owners_dir / content_hash, owner_info)

            if metadata is not None and metadata.is_complete():
                self._write_once(
                    self.metadata_dir / f"{content_hash}.json",
                    json.dumps(metadata.to_dict(), indent=2),
                )

            # touch() never truncates, so a marker that lands on the
            # content file itself (category == content hash) is harmless
            (category_dir / stored_name).touch(exist_ok=True)

            name = html.escape(display_name)
            self._append_link(
                content_dir / INDEX_NAME,
                self._link(content_hash, stored_name, name),
            )
            self._append_link(
                category_dir / INDEX_NAME,
                self._link(content_hash, f"../{content_hash}/{stored_name}", name),
            )
        except OSError as e:
            logger.error("Failed to store %s: %s", content_hash[:16], e)
            raise StorageError(f"Error saving content: {e}") from e

        logger.info(
            "Stored %s... (%d bytes) under category %s...",
            content_hash[:16],
            len(data),
            category_hash[:16],
        )
        return StoreResult(
            content_hash=content_hash,
            index_path=f"{DATA_DIR}/{category_hash}/{INDEX_NAME}",
        )

    def store_text(
        self,
        text: str,
        category: str,
        owner_info: Optional[str] = None,
        metadata: Optional[Metadata] = None,
        now: Optional[datetime] = None,
    ) -> StoreResult:
        """Store submitted text as a ``txt`` object named after its start."""
        return self.store(
            text.encode("utf-8"),
            "txt",
            text_display_name(text, now),
            category,
            owner_info=owner_info,
            metadata=metadata,
        )

    # ── Lookup ─────────────────────────────────────────────

    def find_index(self, label: str) -> Optional[str]:
        """
        Resolve a search term to an existing index page.

        Args:
            label: A content/category hash or a category label.

        Returns:
            Root-relative index path, or None if nothing is filed there.
        """
        address = resolve_label_hash(label.strip())
        if (self.data_dir / address / INDEX_NAME).is_file():
            return f"{DATA_DIR}/{address}/{INDEX_NAME}"
        return None

    def resolve_path(self, relative: str) -> Path:
        """
        Map a root-relative inventory path to a file under the root.

        Raises:
            ValueError: If the path escapes the node root.
        """
        root = self.root.resolve()
        path = (root / relative).resolve()
        if path == root or root not in path.parents:
            raise ValueError(f"Path outside storage root: {relative}")
        return path

    # ── Internals ──────────────────────────────────────────

    @staticmethod
    def _link(content_hash: str, target: str, name: str) -> str:
        return (
            f'<a href="../../?reply={content_hash}">[ Reply ]</a> '
            f'<a href="../{content_hash}/index.html">[ Open ]</a> '
            f'<a href="{target}">{name}</a><br>'
        )

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(path)
            if lock is None:
                lock = self._locks[path] = threading.Lock()
            return lock

    def _append_link(self, index_path: Path, link: str) -> bool:
        """Append a link to an index page unless it is already there."""
        with self._lock_for(index_path):
            if index_path.exists():
                content = index_path.read_text(encoding="utf-8")
            else:
                content = INDEX_HEADER
            if link in content:
                return False
            index_path.write_text(content + link, encoding="utf-8")
            return True

    @staticmethod
    def _write_once(path: Path, text: str) -> bool:
        """Write a record unless one already exists (first write wins)."""
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o777)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(text)
        except FileExistsError:
            logger.debug("Record %s already exists, keeping it", path.name)
            return False
        return True
