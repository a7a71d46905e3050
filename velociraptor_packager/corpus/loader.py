"""Artifact corpus loading with tolerant definition parsing.

Velociraptor artifact definitions are YAML documents, but community
corpora routinely contain files that are not quite valid YAML (tabs,
unquoted VQL with colons, stray template markers). Each document is
parsed structurally first; when that fails, the identity fields and the
``tools:`` block are recovered with line patterns and the document is
flagged with a warning. Documents without a recoverable name are skipped.
"""

from __future__ import annotations

import re
import tarfile
import tempfile
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from velociraptor_packager.core.errors import ExtractionFailed, SourceNotFound
from velociraptor_packager.core.logger import get_module_logger
from velociraptor_packager.core.models import (
    DEFAULT_ARTIFACT_TYPE,
    ArtifactRecord,
    ParseWarning,
    ToolReference,
    infer_category,
)

logger = get_module_logger("corpus")

DOCUMENT_SUFFIXES = {".yaml", ".yml"}
ARCHIVE_SUFFIXES = (".zip", ".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2")
_SKIPPED_DIRS = {"__MACOSX"}

_TOP_LEVEL_FIELD = re.compile(r"^(name|type):[ \t]*(.*?)[ \t]*$", re.MULTILINE)
_TOOLS_HEADER = re.compile(r"^tools:[ \t]*$", re.MULTILINE)
_TOOL_FIELD = re.compile(
    r"^[ \t]*(?P<dash>-[ \t]+)?(?P<key>name|url|version|expected_hash|serve_locally):"
    r"[ \t]*(?P<value>.*?)[ \t]*$"
)
_TOOL_KEYS = ("url", "version", "expected_hash")


@dataclass(frozen=True)
class ParsedArtifact:
    """Successful parse, possibly with recoverable warnings."""

    record: ArtifactRecord
    warnings: Tuple[ParseWarning, ...] = ()


@dataclass(frozen=True)
class UnparsableArtifact:
    """A document that could not be turned into an artifact."""

    path: str
    reason: str

    def as_warning(self) -> ParseWarning:
        return ParseWarning(self.path, f"skipped: {self.reason}")


ParseOutcome = Union[ParsedArtifact, UnparsableArtifact]


@dataclass
class CorpusLoadResult:
    """Artifacts in load order plus the non-fatal warnings collected."""

    root: Path
    artifacts: List[ArtifactRecord] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1].strip()
    return value


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() not in {"0", "false", "no", "off"}
    return bool(value)


def _tool_from_fields(fields: Mapping[str, Any]) -> Optional[ToolReference]:
    name = _clean(fields.get("name"))
    if not name:
        return None
    return ToolReference(
        name=name,
        url=_clean(fields.get("url")),
        version=_clean(fields.get("version")),
        expected_hash=_clean(fields.get("expected_hash")),
        serve_locally=_as_bool(fields.get("serve_locally", True)),
    )


def _tools_from_mapping(
    raw: Any, path: str, warnings: List[ParseWarning]
) -> List[ToolReference]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        warnings.append(ParseWarning(path, "tools field is not a list; ignored"))
        return []

    tools: List[ToolReference] = []
    for index, entry in enumerate(raw, start=1):
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, Mapping):
            warnings.append(ParseWarning(path, f"tool entry #{index} is not a mapping"))
            continue
        tool = _tool_from_fields(entry)
        if tool is None:
            warnings.append(ParseWarning(path, f"tool entry #{index} has no name"))
            continue
        tools.append(tool)
    return tools


def _extract_tools_block(text: str) -> List[Dict[str, str]]:
    header = _TOOLS_HEADER.search(text)
    if header is None:
        return []

    entries: List[Dict[str, str]] = []
    current: Optional[Dict[str, str]] = None
    for line in text[header.end():].splitlines():
        if not line.strip():
            continue
        if not line[0].isspace() and not line.startswith("-"):
            break  # next top-level key
        match = _TOOL_FIELD.match(line)
        if match is None:
            continue
        key, value = match.group("key"), _unquote(match.group("value"))
        starts_entry = bool(match.group("dash")) or (
            key == "name" and current is not None and "name" in current
        )
        if starts_entry or current is None:
            current = {}
            entries.append(current)
        current[key] = value
    return entries


def _extract_by_pattern(text: str) -> Tuple[Optional[str], Optional[str], List[Dict[str, str]]]:
    fields: Dict[str, str] = {}
    for match in _TOP_LEVEL_FIELD.finditer(text):
        fields.setdefault(match.group(1), _unquote(match.group(2)))
    return _clean(fields.get("name")), _clean(fields.get("type")), _extract_tools_block(text)


def parse_artifact_document(
    relative_path: str, content: bytes, origin: Optional[str] = None
) -> ParseOutcome:
    """Parse one artifact definition document."""

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        return UnparsableArtifact(relative_path, f"not UTF-8 text ({exc.reason})")

    warnings: List[ParseWarning] = []
    structured_error: Optional[str] = None
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        data = None
        problem = getattr(exc, "problem", None) or str(exc).splitlines()[0]
        structured_error = f"invalid YAML ({problem})"
    else:
        if data is None:
            structured_error = "empty document"
        elif not isinstance(data, Mapping):
            structured_error = "document is not a mapping"

    if structured_error is None:
        name = _clean(data.get("name"))
        if not name:
            return UnparsableArtifact(relative_path, "missing artifact name")
        artifact_type = _clean(data.get("type"))
        tools = _tools_from_mapping(data.get("tools"), relative_path, warnings)
    else:
        name, artifact_type, raw_tools = _extract_by_pattern(text)
        if not name:
            return UnparsableArtifact(relative_path, structured_error)
        warnings.append(
            ParseWarning(
                relative_path, f"{structured_error}; recovered with pattern extraction"
            )
        )
        tools = _tools_from_mapping(raw_tools, relative_path, warnings)

    record = ArtifactRecord(
        name=name,
        category=infer_category(name),
        artifact_type=(artifact_type or DEFAULT_ARTIFACT_TYPE).upper(),
        tools=tuple(tools),
        relative_path=relative_path,
        origin=origin or relative_path,
        content=content,
    )
    return ParsedArtifact(record=record, warnings=tuple(warnings))


def is_archive(path: Path) -> bool:
    return path.name.lower().endswith(ARCHIVE_SUFFIXES)


def _check_member(archive: Path, name: str) -> None:
    member = PurePosixPath(name.replace("\\", "/"))
    if member.is_absolute() or ".." in member.parts:
        raise ExtractionFailed(archive, f"unsafe member path {name!r}")


def extract_archive(archive: Path, destination: Path) -> None:
    """Extract ``archive`` into ``destination`` or raise :class:`ExtractionFailed`."""

    try:
        if zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as bundle:
                for info in bundle.infolist():
                    _check_member(archive, info.filename)
                bundle.extractall(destination)
            return

        with tarfile.open(archive) as bundle:
            members = bundle.getmembers()
            for member in members:
                _check_member(archive, member.name)
            regular = [member for member in members if member.isfile() or member.isdir()]
            if hasattr(tarfile, "data_filter"):
                bundle.extractall(destination, members=regular, filter="data")
            else:
                # Interpreters without extraction filters; members are already vetted.
                bundle.extractall(destination, members=regular)
    except ExtractionFailed:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as exc:
        raise ExtractionFailed(archive, str(exc) or type(exc).__name__) from exc


def _iter_documents(tree: Path) -> List[Path]:
    documents = []
    for path in tree.rglob("*"):
        relative = path.relative_to(tree)
        if any(part.startswith(".") or part in _SKIPPED_DIRS for part in relative.parts):
            continue
        if path.is_file() and path.suffix.lower() in DOCUMENT_SUFFIXES:
            documents.append(path)
    return sorted(documents, key=lambda item: item.relative_to(tree).as_posix())


def _load_documents(
    result: CorpusLoadResult, documents: List[Path], base: Path, origin_prefix: str
) -> None:
    for document in documents:
        relative = document.relative_to(base).as_posix()
        origin = f"{origin_prefix}/{relative}"
        try:
            content = document.read_bytes()
        except OSError as exc:
            result.warnings.append(ParseWarning(relative, f"skipped: unreadable ({exc})"))
            continue

        outcome = parse_artifact_document(relative, content, origin)
        if isinstance(outcome, UnparsableArtifact):
            warning = outcome.as_warning()
            logger.warning(f"Skipping artifact document {warning}")
            result.warnings.append(warning)
            continue

        for warning in outcome.warnings:
            logger.warning(f"Artifact document {warning}")
        result.warnings.extend(outcome.warnings)
        result.artifacts.append(outcome.record)


def load_corpus(root: Path) -> CorpusLoadResult:
    """
    Load every artifact definition below ``root``

    Args:
        root: Directory tree, archive (zip/tar) or single YAML document

    Returns:
        CorpusLoadResult with artifacts in deterministic load order

    Raises:
        SourceNotFound: ``root`` does not exist
        ExtractionFailed: ``root`` is an archive that cannot be extracted
    """
    root = Path(root).expanduser()
    if not root.exists():
        raise SourceNotFound(root)

    result = CorpusLoadResult(root=root)

    if root.is_dir():
        _load_documents(result, _iter_documents(root), root, str(root))
    elif root.suffix.lower() in DOCUMENT_SUFFIXES:
        _load_documents(result, [root], root.parent, str(root.parent))
    elif is_archive(root) or zipfile.is_zipfile(root):
        with tempfile.TemporaryDirectory(prefix="vrpkg-corpus-") as scratch:
            scratch_path = Path(scratch)
            logger.info(f"Extracting corpus archive {root}")
            extract_archive(root, scratch_path)
            _load_documents(result, _iter_documents(scratch_path), scratch_path, f"{root}!")
    else:
        raise ExtractionFailed(root, "unsupported corpus format")

    logger.info(
        f"Loaded {len(result.artifacts)} artifact(s) from {root} "
        f"({len(result.warnings)} warning(s))"
    )
    return result


__all__ = [
    "ARCHIVE_SUFFIXES",
    "CorpusLoadResult",
    "DOCUMENT_SUFFIXES",
    "ParseOutcome",
    "ParsedArtifact",
    "UnparsableArtifact",
    "extract_archive",
    "is_archive",
    "load_corpus",
    "parse_artifact_document",
]
