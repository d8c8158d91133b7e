"""
hashing.py — SHA-256 Addressing Module
========================================
Computes content identifiers and maps category labels onto the
same 64-character hex address space.
"""

import hashlib
import logging
import re

logger = logging.getLogger(__name__)

_SHA256_PATTERN = re.compile(r"^[a-fA-F0-9]{64}$")


def sha256_hash(data: bytes) -> str:
    """
    Compute the SHA-256 hash of the given data.

    Args:
        data: Raw bytes to hash.

    Returns:
        Hexadecimal string of the SHA-256 digest (64 characters).

    Raises:
        TypeError: If data is not bytes.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(f"Expected bytes, got {type(data).__name__}")

    digest = hashlib.sha256(data).hexdigest()
    logger.debug("SHA-256: %s... (%d bytes)", digest[:16], len(data))
    return digest


def is_sha256(label: str) -> bool:
    """Check whether a string already looks like a hex SHA-256 digest."""
    return bool(_SHA256_PATTERN.match(label))


def resolve_label_hash(label: str) -> str:
    """
    Resolve a category label to its storage address.

    A label that is already a 64-character hex digest is treated as a
    pre-computed address and returned unchanged; anything else is
    hashed as UTF-8 text.
    """
    if is_sha256(label):
        return label
    return sha256_hash(label.encode("utf-8"))
