"""Report exporters for build reports."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jinja2 import Environment, PackageLoader, select_autoescape

from velociraptor_packager.core.models import BuildReport

_TEMPLATE_PACKAGE = "velociraptor_packager.reporting"

SUPPORTED_FORMATS = ("json", "html", "txt")
FORMAT_SUFFIXES = {"json": ".json", "html": ".html", "txt": ".txt", "text": ".txt"}


def _normalise_structure(value: Any) -> Any:
    """Recursively sort mapping keys; list order is meaningful and kept."""

    if isinstance(value, dict):
        return {key: _normalise_structure(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_normalise_structure(item) for item in value]
    return value


@lru_cache(maxsize=1)
def _get_environment() -> Environment:
    """Return a cached Jinja environment for report templates."""

    return Environment(
        loader=PackageLoader(_TEMPLATE_PACKAGE, "templates"),
        autoescape=select_autoescape(["html", "xml"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _to_html(data: Dict[str, Any]) -> str:
    template = _get_environment().get_template("report.html")
    return template.render(**data)


def _to_text(data: Dict[str, Any]) -> str:
    totals = data["totals"]
    lines: List[str] = [
        "Velociraptor Packager Build Report",
        "=" * 34,
        f"Generated: {data['generated_at']}",
        "",
        f"Artifacts:        {totals['artifacts']}",
        f"Unique tools:     {totals['unique_tools']}",
        f"Tool references:  {totals['tool_references']}",
    ]
    for status, count in totals["tools_by_status"].items():
        lines.append(f"  {status:<14}{count}")

    lines.extend(["", "Categories:"])
    if not data["categories"]:
        lines.append("  (none)")
    for category, counts in data["categories"].items():
        lines.append(
            f"  {category}: {counts['artifacts']} artifact(s), {counts['tools']} tool(s)"
        )

    lines.extend(["", "Tools:"])
    if not data["tools"]:
        lines.append("  (none)")
    for tool in data["tools"]:
        line = f"  [{tool['status']}] {tool['name']}"
        if tool.get("version"):
            line += f" {tool['version']}"
        line += f" <- {', '.join(tool['artifacts'])}"
        if tool.get("error"):
            line += f" ({tool['error']})"
        lines.append(line)

    lines.extend(["", "Packages:"])
    if not data["packages"]:
        lines.append("  (none)")
    for package in data["packages"]:
        lines.append(
            f"  {package['kind']}: {package['path']} "
            f"({package['artifact_count']} artifact(s), {package['tool_count']} tool(s))"
        )

    if data["warnings"]:
        lines.extend(["", "Warnings:"])
        lines.extend(f"  - {warning}" for warning in data["warnings"])

    return "\n".join(lines) + "\n"


def export_report(report: BuildReport, fmt: str, outpath: Path) -> Path:
    """Write ``report`` to ``outpath`` using the requested format."""

    fmt = fmt.lower()
    data = report.to_dict()
    outpath.parent.mkdir(parents=True, exist_ok=True)

    if fmt == "json":
        payload = _normalise_structure(data)
        outpath.write_text(
            json.dumps(payload, indent=2, default=str) + "\n", encoding="utf-8"
        )
    elif fmt == "html":
        outpath.write_text(_to_html(data), encoding="utf-8")
    elif fmt in {"txt", "text"}:
        outpath.write_text(_to_text(data), encoding="utf-8")
    else:
        raise ValueError(f"Unsupported export format: {fmt}")

    return outpath


__all__ = ["FORMAT_SUFFIXES", "SUPPORTED_FORMATS", "export_report"]
