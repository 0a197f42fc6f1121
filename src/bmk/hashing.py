from __future__ import annotations

import hashlib
from typing import Callable

DEFAULT_SALT = "BMK_DEFAULT_STATIC_SALT"
DEFAULT_STRETCHING = 1000


def sha256_hex(data: str, *, salt: str = "", stretching: int = 1) -> str:
    """
    Return the salted, stretched SHA-256 digest of ``data`` as lowercase hex.

    Each round digests the previous bytes followed by the salt bytes, so the
    first round hashes ``data + salt`` and every further round hashes
    ``digest + salt``.
    """
    if stretching < 1:
        raise ValueError(f"stretching must be at least 1 (got {stretching})")
    salt_bytes = salt.encode("utf-8")
    digest = data.encode("utf-8")
    for _ in range(stretching):
        digest = hashlib.sha256(digest + salt_bytes).digest()
    return digest.hex()


def make_filename_hasher(
    salt: str = DEFAULT_SALT,
    stretching: int = DEFAULT_STRETCHING,
) -> Callable[[str], str]:
    """Bind ``salt`` and ``stretching`` into a ``(filename) -> hash`` callable."""
    if stretching < 1:
        raise ValueError(f"stretching must be at least 1 (got {stretching})")

    def _hash(filename: str) -> str:
        return sha256_hex(filename, salt=salt, stretching=stretching)

    return _hash


__all__ = ["DEFAULT_SALT", "DEFAULT_STRETCHING", "make_filename_hasher", "sha256_hex"]
