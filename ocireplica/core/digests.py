"""Digest helpers for content addressing.

Digests use the ``<algorithm>:<hex>`` form.  sha256 is the default; sha512
is accepted when verifying content produced elsewhere.
"""

from __future__ import annotations

import hashlib

from ocireplica.core.errors import DigestMismatchError, InvalidReferenceError

_ALGORITHMS = {"sha256": 64, "sha512": 128}


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    """Content-address raw bytes as ``<algorithm>:<hex>``."""
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def split_digest(digest: str) -> tuple[str, str]:
    """Split and validate a digest into ``(algorithm, encoded)``."""
    algorithm, sep, encoded = digest.partition(":")
    expected_len = _ALGORITHMS.get(algorithm)
    if (
        not sep
        or expected_len is None
        or len(encoded) != expected_len
        or any(c not in "0123456789abcdef" for c in encoded)
    ):
        raise InvalidReferenceError(f"invalid digest {digest!r}")
    return algorithm, encoded


def verify_content(data: bytes, digest: str, size: int | None = None) -> None:
    """Raise ``DigestMismatchError`` unless *data* matches digest and size."""
    if size is not None and len(data) != size:
        raise DigestMismatchError(
            f"content size mismatch for {digest}: expected {size}, got {len(data)}"
        )
    algorithm, _ = split_digest(digest)
    actual = compute_digest(data, algorithm)
    if actual != digest:
        raise DigestMismatchError(f"content digest mismatch: expected {digest}, got {actual}")
