"""Hash helper utilities."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import BinaryIO, Optional, Tuple

SUPPORTED_ALGORITHMS = {"md5", "sha1", "sha256", "sha512"}

# Hex digest length -> algorithm, used when a declared hash has no prefix.
_DIGEST_LENGTHS = {32: "md5", 40: "sha1", 64: "sha256", 128: "sha512"}
_HEX_RE = re.compile(r"^[0-9a-f]+$")

_DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1 MiB


def new_hasher(algorithm: str) -> "hashlib._Hash":
    """Return a configured :mod:`hashlib` object for ``algorithm``."""

    algorithm = algorithm.lower()
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")
    return hashlib.new(algorithm)


def parse_expected_hash(value: str) -> Tuple[str, str]:
    """Split a declared hash into ``(algorithm, hex digest)``.

    Accepts ``sha256:<hex>`` style prefixes as well as bare hex digests whose
    algorithm is inferred from their length.
    """

    text = value.strip().lower()
    algorithm: Optional[str] = None
    if ":" in text:
        algorithm, _, text = text.partition(":")
        algorithm = algorithm.strip().replace("-", "")
        text = text.strip()

    if not text or not _HEX_RE.match(text):
        raise ValueError(f"Expected hash is not a hex digest: {value!r}")

    if algorithm is None:
        algorithm = _DIGEST_LENGTHS.get(len(text))
        if algorithm is None:
            raise ValueError(f"Cannot infer hash algorithm for digest of length {len(text)}")

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")
    return algorithm, text


def compute_stream_hash(
    stream: BinaryIO,
    *,
    algorithm: str = "sha256",
    chunk_size: int = _DEFAULT_CHUNK_SIZE,
) -> str:
    """Hash the contents of ``stream`` in a memory efficient manner.

    The caller remains responsible for rewinding or closing ``stream``.
    """

    if chunk_size <= 0:
        raise ValueError("chunk_size must be a positive integer")

    hasher = new_hasher(algorithm)
    for chunk in iter(lambda: stream.read(chunk_size), b""):
        hasher.update(chunk)
    return hasher.hexdigest()


def compute_hash(
    path: Path, algorithm: str = "sha256", *, chunk_size: int = _DEFAULT_CHUNK_SIZE
) -> str:
    """Compute the hash of ``path`` using ``algorithm`` with streaming I/O."""

    with Path(path).open("rb") as handle:
        return compute_stream_hash(handle, algorithm=algorithm, chunk_size=chunk_size)


def file_matches_hash(path: Path, expected_hash: str) -> bool:
    """Return whether ``path`` hashes to the declared ``expected_hash``."""

    algorithm, digest = parse_expected_hash(expected_hash)
    return compute_hash(path, algorithm) == digest


__all__ = [
    "SUPPORTED_ALGORITHMS",
    "compute_hash",
    "compute_stream_hash",
    "file_matches_hash",
    "new_hasher",
    "parse_expected_hash",
]
