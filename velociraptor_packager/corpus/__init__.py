"""Artifact corpus loading and tool dependency indexing."""

from .index import IndexResult, build_tool_database
from .loader import (
    CorpusLoadResult,
    ParsedArtifact,
    UnparsableArtifact,
    load_corpus,
    parse_artifact_document,
)

__all__ = [
    "CorpusLoadResult",
    "IndexResult",
    "ParsedArtifact",
    "UnparsableArtifact",
    "build_tool_database",
    "load_corpus",
    "parse_artifact_document",
]
