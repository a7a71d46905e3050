"""Velociraptor artifact tool packager and SDK exports."""

from importlib.metadata import PackageNotFoundError, version

from .core.config import PackagerConfig, get_config
from .core.errors import (
    DownloadFailed,
    ExtractionFailed,
    FetchCancelled,
    HashMismatch,
    IncompletePackage,
    PackagerError,
    SourceNotFound,
)
from .core.models import (
    ArtifactRecord,
    BuildReport,
    DownloadStatus,
    Package,
    PackageKind,
    ToolDatabase,
    ToolPolicy,
    ToolRecord,
    ToolReference,
)
from .core.pipeline import BuildPipeline, BuildResult
from .corpus import build_tool_database, load_corpus
from .fetch import ToolFetcher
from .packaging import PackageAssembler
from .reporting import build_report, export_report

__all__ = [
    "__version__",
    "ArtifactRecord",
    "BuildPipeline",
    "BuildReport",
    "BuildResult",
    "DownloadFailed",
    "DownloadStatus",
    "ExtractionFailed",
    "FetchCancelled",
    "HashMismatch",
    "IncompletePackage",
    "Package",
    "PackageAssembler",
    "PackageKind",
    "PackagerConfig",
    "PackagerError",
    "SourceNotFound",
    "ToolDatabase",
    "ToolFetcher",
    "ToolPolicy",
    "ToolRecord",
    "ToolReference",
    "build_report",
    "build_tool_database",
    "export_report",
    "get_config",
    "load_corpus",
]

try:  # pragma: no cover - depends on package metadata
    __version__ = version("velociraptor-packager")
except PackageNotFoundError:  # pragma: no cover - local development fallback
    __version__ = "0.1.0-dev"
