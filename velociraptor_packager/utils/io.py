"""I/O helper utilities."""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(value: str, *, fallback: str = "unnamed") -> str:
    """Return ``value`` reduced to a portable file name component."""

    cleaned = _UNSAFE_CHARS.sub("_", value.strip()).strip("._")
    return cleaned or fallback


def write_bytes(path: Path, content: bytes) -> None:
    """Write ``content`` to ``path`` creating parent directories."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


def write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write ``content`` to ``path`` creating parent directories."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding=encoding, newline="\n") as handle:
        handle.write(content)


def make_temp_path(directory: Path, prefix: str, suffix: str = ".part") -> Path:
    """Create an empty temporary file inside ``directory`` and return its path.

    Keeping the temporary file next to its destination makes the final
    :func:`os.replace` an atomic rename on the same filesystem.
    """

    directory.mkdir(parents=True, exist_ok=True)
    handle, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
    os.close(handle)
    return Path(name)


__all__ = ["make_temp_path", "safe_filename", "write_bytes", "write_text"]
