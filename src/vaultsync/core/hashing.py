"""Content hashing helpers.

Local and remote content is compared by SHA-256 hex digest. Remote stores
that report a hash must use the same scheme for it to be trusted.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

HASH_BLOCK_SIZE = 64 * 1024


def compute_content_hash(data: bytes) -> str:
    """Compute the SHA-256 hash of in-memory content.

    Args:
        data: Content bytes.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    return hashlib.sha256(data).hexdigest()


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file, reading it in blocks.

    Args:
        path: Path to the file.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while block := f.read(HASH_BLOCK_SIZE):
            hasher.update(block)
    return hasher.hexdigest()
