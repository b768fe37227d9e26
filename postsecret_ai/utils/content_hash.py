"""
Content hash utility for exact-duplicate detection.

Uses a full-file SHA-256 so that two uploads are treated as the same
secret only when every byte matches.
"""

import hashlib
from pathlib import Path

CHUNK_SIZE = 1024 * 1024  # 1MB


def compute_content_hash(file_path) -> str:
    """
    Compute the SHA-256 of a file's full contents.

    Args:
        file_path: Path to the file (str or Path)

    Returns:
        64-character lowercase hex string
    """
    h = hashlib.sha256()
    with open(Path(file_path), 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            h.update(chunk)
    return h.hexdigest()


def hash_text(text: str) -> str:
    """SHA-256 hex digest of a UTF-8 string."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()
