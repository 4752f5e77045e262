"""Collision-resistant hash-based identifiers."""

import hashlib
import secrets
import time
from collections.abc import Callable

DEFAULT_ID_LENGTH = 8
MAX_GENERATION_ATTEMPTS = 16


class IdCollisionError(Exception):
    """Raised when no unused id could be generated."""

    def __init__(self, prefix: str, attempts: int):
        self.prefix = prefix
        self.attempts = attempts
        super().__init__(f"Could not generate unique {prefix} id after {attempts} attempts")


def generate_id(
    prefix: str,
    exists: Callable[[str], bool] | None = None,
    length: int = DEFAULT_ID_LENGTH,
) -> str:
    """Hash a nanosecond timestamp with a random 64-bit value into <prefix>-<hex>.

    Regenerates while ``exists`` reports the candidate as taken.
    """
    if not prefix:
        raise ValueError("prefix is required")
    if length <= 0 or length > 64:
        raise ValueError("length must be between 1 and 64")

    for _ in range(MAX_GENERATION_ATTEMPTS):
        hasher = hashlib.sha256()
        hasher.update(time.time_ns().to_bytes(16, "little"))
        hasher.update(secrets.randbits(64).to_bytes(8, "little"))
        candidate = f"{prefix}-{hasher.hexdigest()[:length]}"
        if exists is None or not exists(candidate):
            return candidate

    raise IdCollisionError(prefix, MAX_GENERATION_ATTEMPTS)


def child_id(parent_id: str, index: int) -> str:
    """Id of the index-th child of parent_id."""
    if not parent_id:
        raise ValueError("parent_id is required")
    if index < 0:
        raise ValueError("index must be non-negative")
    return f"{parent_id}.{index}"
