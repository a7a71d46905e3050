"""Build statistics for a packaging run."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from velociraptor_packager.core.models import (
    ArtifactRecord,
    BuildReport,
    Package,
    ToolDatabase,
    normalize_tool_name,
)
from velociraptor_packager.core.time_utils import utc_isoformat


def _category_breakdown(artifacts: Sequence[ArtifactRecord]) -> Dict[str, Dict[str, int]]:
    artifact_counts: Dict[str, int] = {}
    tools_by_category: Dict[str, set[str]] = {}
    for artifact in artifacts:
        artifact_counts[artifact.category] = artifact_counts.get(artifact.category, 0) + 1
        keys = tools_by_category.setdefault(artifact.category, set())
        keys.update(normalize_tool_name(name) for name in artifact.tool_names)
        keys.discard("")

    return {
        category: {
            "artifacts": artifact_counts[category],
            "tools": len(tools_by_category[category]),
        }
        for category in sorted(artifact_counts)
    }


def build_report(
    artifacts: Sequence[ArtifactRecord],
    database: ToolDatabase,
    packages: Iterable[Package] = (),
    warnings: Iterable[Any] = (),
    generated_at: Optional[str] = None,
) -> BuildReport:
    """Aggregate a :class:`BuildReport` without touching the filesystem.

    Artifacts keep their load order, tools are sorted by key. An empty
    corpus produces zero counts.
    """

    packages = list(packages)
    status_counts = database.status_counts()
    warning_lines: List[str] = [str(warning) for warning in warnings]
    for package in packages:
        warning_lines.extend(f"{package.kind.value} package: {line}" for line in package.warnings)

    totals = {
        "artifacts": len(artifacts),
        "unique_tools": len(database),
        "tool_references": sum(len(artifact.tools) for artifact in artifacts),
        "tools_by_status": status_counts,
        "packages": len(packages),
        "warnings": len(warning_lines),
    }

    return BuildReport(
        generated_at=generated_at or utc_isoformat(),
        totals=totals,
        categories=_category_breakdown(artifacts),
        artifacts=[artifact.to_dict() for artifact in artifacts],
        tools=[record.to_dict() for record in database.sorted_records()],
        packages=[package.to_dict() for package in packages],
        warnings=warning_lines,
    )


__all__ = ["build_report"]
