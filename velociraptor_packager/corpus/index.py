"""Deduplicate declared tool dependencies into a :class:`ToolDatabase`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

from velociraptor_packager.core.logger import get_module_logger
from velociraptor_packager.core.models import (
    AmbiguousDependency,
    ArtifactRecord,
    ParseWarning,
    ToolDatabase,
    ToolRecord,
    ToolReference,
    normalize_tool_name,
)

logger = get_module_logger("index")

IndexWarning = Union[AmbiguousDependency, ParseWarning]


@dataclass
class IndexResult:
    database: ToolDatabase
    warnings: List[IndexWarning] = field(default_factory=list)


def _merge_attribute(
    record: ToolRecord,
    attribute: str,
    declared: Optional[str],
    artifact: ArtifactRecord,
    warnings: List[IndexWarning],
) -> None:
    """Apply the first-seen-wins rule for a single attribute."""

    if declared is None:
        return
    canonical = getattr(record, attribute)
    if canonical is None:
        setattr(record, attribute, declared)
        return
    if attribute == "expected_hash":
        same = canonical.casefold() == declared.casefold()
    else:
        same = canonical == declared
    if not same:
        warnings.append(
            AmbiguousDependency(
                tool=record.name,
                artifact=artifact.name,
                attribute=attribute,
                canonical=canonical,
                declared=declared,
            )
        )


def _new_record(key: str, reference: ToolReference) -> ToolRecord:
    return ToolRecord(
        key=key,
        name=reference.name.strip(),
        url=reference.url,
        version=reference.version,
        expected_hash=reference.expected_hash,
        serve_locally=reference.serve_locally,
    )


def build_tool_database(artifacts: Iterable[ArtifactRecord]) -> IndexResult:
    """Build the tool registry for ``artifacts`` in the order given.

    Tool names are compared after trimming and case folding. The first
    declaration of a tool provides its canonical URL and expected hash;
    later, conflicting declarations are reported as
    :class:`AmbiguousDependency` warnings instead of failing the build.
    """

    database = ToolDatabase()
    result = IndexResult(database=database)

    for artifact in artifacts:
        for reference in artifact.tools:
            key = normalize_tool_name(reference.name)
            if not key:
                result.warnings.append(
                    ParseWarning(artifact.relative_path, "tool with empty name ignored")
                )
                continue

            record = database.get(key)
            if record is None:
                record = database.add(_new_record(key, reference))
            else:
                _merge_attribute(record, "url", reference.url, artifact, result.warnings)
                _merge_attribute(
                    record, "expected_hash", reference.expected_hash, artifact, result.warnings
                )
                if record.version is None:
                    record.version = reference.version
            record.add_reference(artifact.name)

    for warning in result.warnings:
        logger.warning(f"Tool index: {warning}")
    logger.info(f"Indexed {len(database)} unique tool(s)")
    return result


__all__ = ["IndexResult", "IndexWarning", "build_tool_database"]
