"""Cheap identity fingerprints used to short-circuit duplicate uploads.

The default fingerprint only looks at (name, size, mtime): two different files
that share all three collide, and re-saving a file changes it even when the
bytes are identical. ``compute_content_fingerprint`` hashes the bytes instead
and is selected with ``fingerprint_mode = "content"``.
"""

from __future__ import annotations

import hashlib
from datetime import datetime


def _mtime_millis(modified_at: datetime | float | int) -> int:
    if isinstance(modified_at, datetime):
        return int(modified_at.timestamp() * 1000)
    return int(float(modified_at) * 1000)


def compute_fingerprint(
    name: str,
    size_bytes: int,
    modified_at: datetime | float | int,
) -> str:
    raw = f"{name}:{size_bytes}:{_mtime_millis(modified_at)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def compute_content_fingerprint(content: bytes) -> str:
    return "sha256:" + hashlib.sha256(content).hexdigest()
