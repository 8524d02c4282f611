from __future__ import annotations

import hashlib


EMPTY_BLOB_SHA = "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"


def git_blob_sha(content: bytes) -> str:
    """Git blob object id: SHA-1 over ``blob <len>\\0`` followed by the raw bytes."""
    digest = hashlib.sha1(f"blob {len(content)}\0".encode("ascii"))
    digest.update(content)
    return digest.hexdigest()
