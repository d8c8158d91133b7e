"""
inventory.py — Local Inventory Scanner
=========================================
Enumerates every stored file (content, markers, index pages,
metadata and owner records) as root-relative POSIX paths. The
same strings are exchanged with peers, so both sides must agree
on the layout.
"""

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Iterator, Tuple

from hashsync.services.content_store import DATA_DIR, METADATA_DIR, OWNERS_DIR

logger = logging.getLogger(__name__)

SCANNED_DIRS = (DATA_DIR, METADATA_DIR, OWNERS_DIR)


class Inventory:
    """Walks the storage roots of a node."""

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)

    def scan(self) -> Iterator[str]:
        """
        Yield every regular file under data/, metadata/ and owners/.

        Order follows the filesystem walk and is not sorted. The
        returned generator is consumed once; call again to re-scan.
        """
        for top in SCANNED_DIRS:
            base = self.root / top
            if not base.is_dir():
                logger.debug("Skipping missing directory %s", base)
                continue
            for dirpath, _dirnames, filenames in os.walk(base):
                for filename in filenames:
                    full = Path(dirpath) / filename
                    if full.is_file():
                        yield full.relative_to(self.root).as_posix()


def split_inventory_name(path: str) -> Tuple[str, str, str]:
    """
    Break an inventory path into the parts used when storing it.

    Returns:
        (base name, extension without dot, base name without extension)
    """
    pure = PurePosixPath(path)
    return pure.name, pure.suffix[1:], pure.stem
