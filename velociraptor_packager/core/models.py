#!/usr/bin/env python3
"""
Packager Data Model
Artifact, tool and package records shared by every pipeline stage
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

UNCATEGORIZED = "Uncategorized"
DEFAULT_ARTIFACT_TYPE = "CLIENT"


def normalize_tool_name(name: str) -> str:
    """Return the identity key of a tool name (trimmed, case-insensitive)."""

    return name.strip().casefold()


def infer_category(artifact_name: str) -> str:
    """Infer the artifact category from the first dotted name segment."""

    head, dot, _ = artifact_name.strip().partition(".")
    if not dot or not head:
        return UNCATEGORIZED
    return head


class DownloadStatus(Enum):
    """Tool download state"""

    PENDING = "pending"
    DOWNLOADED = "downloaded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PackageKind(Enum):
    """Deployment bundle flavours"""

    SERVER = "server"
    CLIENT = "client"

    @property
    def directory_name(self) -> str:
        return f"velociraptor-{self.value}-package"

    @classmethod
    def expand(cls, value: str) -> Tuple["PackageKind", ...]:
        """Translate ``server``/``client``/``both`` into package kinds."""

        lowered = value.strip().lower()
        if lowered == "both":
            return (cls.SERVER, cls.CLIENT)
        try:
            return (cls(lowered),)
        except ValueError:
            raise ValueError(f"Unknown package kind: {value}") from None


class ToolPolicy(Enum):
    """How tool binaries are carried by a package"""

    BUNDLED = "bundled"
    MANIFEST_ONLY = "manifest-only"


@dataclass(frozen=True)
class ToolReference:
    """A tool dependency exactly as declared by an artifact document."""

    name: str
    url: Optional[str] = None
    version: Optional[str] = None
    expected_hash: Optional[str] = None
    serve_locally: bool = True

    @property
    def key(self) -> str:
        return normalize_tool_name(self.name)


@dataclass(frozen=True)
class ArtifactRecord:
    """A single artifact definition document and its declared tools."""

    name: str
    category: str
    artifact_type: str
    tools: Tuple[ToolReference, ...]
    relative_path: str
    origin: str
    content: bytes = field(repr=False, compare=False)

    @property
    def tool_names(self) -> List[str]:
        return [tool.name for tool in self.tools]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "type": self.artifact_type,
            "tools": self.tool_names,
            "path": self.relative_path,
            "origin": self.origin,
        }


@dataclass
class ToolRecord:
    """Canonical, deduplicated view of one tool across the corpus."""

    key: str
    name: str
    url: Optional[str] = None
    version: Optional[str] = None
    expected_hash: Optional[str] = None
    serve_locally: bool = True
    status: DownloadStatus = DownloadStatus.PENDING
    cache_path: Optional[Path] = None
    error: Optional[str] = None
    attempts: int = 0
    artifacts: List[str] = field(default_factory=list)

    def add_reference(self, artifact_name: str) -> None:
        if artifact_name not in self.artifacts:
            self.artifacts.append(artifact_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "url": self.url,
            "version": self.version,
            "expected_hash": self.expected_hash,
            "serve_locally": self.serve_locally,
            "status": self.status.value,
            "cache_path": str(self.cache_path) if self.cache_path else None,
            "error": self.error,
            "attempts": self.attempts,
            "artifacts": list(self.artifacts),
        }


class ToolDatabase:
    """
    Registry of unique tools keyed by normalized name

    Records are only ever added, never removed. Status transitions happen
    through :meth:`claim`, :meth:`resolve` and :meth:`release` which
    serialise access so that a record is mutated by at most one worker.
    """

    def __init__(self) -> None:
        self._records: Dict[str, ToolRecord] = {}
        self._claims: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ToolRecord]:
        return iter(list(self._records.values()))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_tool_name(name) in self._records

    def get(self, name: str) -> Optional[ToolRecord]:
        return self._records.get(normalize_tool_name(name))

    def keys(self) -> List[str]:
        return list(self._records)

    def add(self, record: ToolRecord) -> ToolRecord:
        """Insert ``record``; an existing key is never replaced."""

        with self._lock:
            if record.key in self._records:
                raise KeyError(f"Tool already registered: {record.key}")
            self._records[record.key] = record
            return record

    def sorted_records(self) -> List[ToolRecord]:
        return [self._records[key] for key in sorted(self._records)]

    def with_status(self, status: DownloadStatus) -> List[ToolRecord]:
        return [record for record in self.sorted_records() if record.status is status]

    def pending_keys(self) -> List[str]:
        return [record.key for record in self.with_status(DownloadStatus.PENDING)]

    def claim(self, key: str) -> bool:
        """Reserve a pending record for exclusive processing."""

        with self._lock:
            record = self._records.get(key)
            if record is None or record.status is not DownloadStatus.PENDING:
                return False
            if key in self._claims:
                return False
            self._claims.add(key)
            return True

    def is_claimed(self, key: str) -> bool:
        with self._lock:
            return key in self._claims

    def resolve(
        self,
        key: str,
        status: DownloadStatus,
        *,
        cache_path: Optional[Path] = None,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> ToolRecord:
        """Apply a status transition to a claimed record."""

        with self._lock:
            if key not in self._claims:
                raise RuntimeError(f"Tool {key} must be claimed before it is updated")
            record = self._records[key]
            record.status = status
            record.cache_path = cache_path
            record.error = error
            if attempts is not None:
                record.attempts = attempts
            return record

    def release(self, key: str) -> None:
        with self._lock:
            self._claims.discard(key)

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in DownloadStatus}
        for record in self._records.values():
            counts[record.status.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {record.key: record.to_dict() for record in self.sorted_records()}


@dataclass(frozen=True)
class Package:
    """A fully assembled deployment bundle."""

    kind: PackageKind
    root: Path
    artifacts: Tuple[str, ...]
    tool_policy: ToolPolicy
    tools: Tuple[str, ...]
    config_path: Path
    deploy_script_path: Path
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "path": str(self.root),
            "tool_policy": self.tool_policy.value,
            "artifact_count": len(self.artifacts),
            "tool_count": len(self.tools),
            "tools": list(self.tools),
            "config": str(self.config_path),
            "deploy_script": str(self.deploy_script_path),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ParseWarning:
    """A document that was skipped or only partially understood."""

    path: str
    reason: str

    def __str__(self) -> str:
        return f"{self.path}: {self.reason}"

    def to_dict(self) -> Dict[str, str]:
        return {"kind": "parse", "path": self.path, "message": self.reason}


@dataclass(frozen=True)
class AmbiguousDependency:
    """Two artifacts disagree about a tool attribute; the first one won."""

    tool: str
    artifact: str
    attribute: str
    canonical: str
    declared: str

    def __str__(self) -> str:
        return (
            f"{self.tool}: {self.artifact} declares {self.attribute} "
            f"{self.declared!r}, keeping {self.canonical!r}"
        )

    def to_dict(self) -> Dict[str, str]:
        return {"kind": "ambiguous_dependency", "tool": self.tool, "message": str(self)}


@dataclass
class BuildReport:
    """Aggregated statistics of a packaging run."""

    generated_at: str
    totals: Dict[str, Any]
    categories: Dict[str, Dict[str, int]]
    artifacts: List[Dict[str, Any]] = field(default_factory=list)
    tools: List[Dict[str, Any]] = field(default_factory=list)
    packages: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "totals": self.totals,
            "categories": self.categories,
            "artifacts": self.artifacts,
            "tools": self.tools,
            "packages": self.packages,
            "warnings": self.warnings,
        }


__all__ = [
    "AmbiguousDependency",
    "ArtifactRecord",
    "BuildReport",
    "DEFAULT_ARTIFACT_TYPE",
    "DownloadStatus",
    "Package",
    "PackageKind",
    "ParseWarning",
    "ToolDatabase",
    "ToolPolicy",
    "ToolRecord",
    "ToolReference",
    "UNCATEGORIZED",
    "infer_category",
    "normalize_tool_name",
]
