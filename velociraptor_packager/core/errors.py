"""Exception hierarchy for the packager pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional


class PackagerError(RuntimeError):
    """Base class for every error raised by the packager."""


class SourceNotFound(PackagerError):
    """Raised when the artifact corpus root does not exist."""

    def __init__(self, path: Path):
        super().__init__(f"Artifact source not found: {path}")
        self.path = Path(path)


class ExtractionFailed(PackagerError):
    """Raised when an archive corpus cannot be extracted completely."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Failed to extract {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class FetchError(PackagerError):
    """Tool-level fetch failure. Recorded on the tool, never fatal to a run."""

    def __init__(self, tool: str, message: str, *, attempts: int = 0):
        super().__init__(f"{tool}: {message}")
        self.tool = tool
        self.attempts = attempts


class DownloadFailed(FetchError):
    """All download attempts for a tool were exhausted."""

    def __init__(self, tool: str, attempts: int, last_error: Optional[str] = None):
        message = f"download failed after {attempts} attempt(s)"
        if last_error:
            message += f" ({last_error})"
        super().__init__(tool, message, attempts=attempts)
        self.last_error = last_error


class HashMismatch(FetchError):
    """Downloaded content does not match the declared expected hash."""

    def __init__(
        self, tool: str, algorithm: str, expected: str, actual: str, *, attempts: int = 0
    ):
        super().__init__(
            tool,
            f"{algorithm} mismatch (expected {expected}, got {actual})",
            attempts=attempts,
        )
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual


class FetchCancelled(PackagerError):
    """A download was aborted because cancellation was requested."""

    def __init__(self, tool: str):
        super().__init__(f"Fetch of {tool} cancelled")
        self.tool = tool


class IncompletePackage(PackagerError):
    """Strict validation was requested and required tools are missing."""

    def __init__(self, failed_tools: Iterable[str]):
        self.failed_tools = sorted(failed_tools)
        super().__init__(
            "Package incomplete, failed tools: " + ", ".join(self.failed_tools)
        )


__all__ = [
    "DownloadFailed",
    "ExtractionFailed",
    "FetchCancelled",
    "FetchError",
    "HashMismatch",
    "IncompletePackage",
    "PackagerError",
    "SourceNotFound",
]
