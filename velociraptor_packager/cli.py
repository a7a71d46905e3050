"""Command line interface for the Velociraptor artifact tool packager."""

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import click

from .core.config import PackagerConfig, get_config, load_yaml
from .core.errors import IncompletePackage, PackagerError
from .core.logger import build_log_path, setup_logging
from .core.models import DownloadStatus, PackageKind
from .core.pipeline import BuildPipeline
from .reporting.exporter import SUPPORTED_FORMATS

EXIT_CANCELLED = 130


def _json_default(value: Any) -> Any:
    """Return a JSON compatible representation for complex objects."""

    if isinstance(value, Path):
        return str(value)
    return value


def _emit_status(
    ctx: click.Context,
    command: str,
    *,
    status: str,
    message: str | None = None,
    details: list[str] | None = None,
    data: Dict[str, Any] | None = None,
    errors: list[str] | None = None,
    exit_code: int | None = None,
) -> None:
    """Emit a status payload respecting ``--json`` and ``--quiet`` flags."""

    payload: Dict[str, Any] = {"command": command, "status": status}
    if message is not None:
        payload["message"] = message
    if data:
        payload["data"] = data
    if errors:
        payload["errors"] = errors

    json_mode = ctx.obj.get("json_mode", False)
    quiet = ctx.obj.get("quiet", False)

    if json_mode:
        indent = None if quiet else 2
        click.echo(
            json.dumps(payload, indent=indent, default=_json_default, sort_keys=True)
        )
    else:
        if message and (not quiet or status != "success"):
            click.echo(message, err=status == "error")
        if not quiet:
            for line in details or []:
                click.echo(line)
            if errors:
                for error in errors:
                    click.echo(f"Error: {error}", err=True)

    if exit_code is not None:
        ctx.exit(exit_code)


def _load_config(config_path: Optional[Path], overrides: Dict[str, Any]) -> PackagerConfig:
    """Resolve configuration from a YAML file or directory plus CLI overrides."""

    file_overrides: Dict[str, Any] = {}
    config_root: Optional[Path] = None

    if config_path:
        config_path = config_path.expanduser()
        if config_path.is_file():
            file_overrides = load_yaml(config_path)
        elif config_path.is_dir():
            config_root = config_path

    explicit = {key: value for key, value in overrides.items() if value is not None}
    return get_config(config_root=config_root, overrides={**file_overrides, **explicit})


def _console_level(ctx: click.Context, config: PackagerConfig) -> str:
    if ctx.obj.get("quiet"):
        return "ERROR"
    if ctx.obj.get("verbose"):
        return "DEBUG"
    return config.log_level


def _setup(ctx: click.Context, overrides: Dict[str, Any]) -> PackagerConfig:
    config = _load_config(ctx.obj.get("config_path"), overrides)
    log_dir = config.output_dir / "logs" if ctx.obj.get("log_to_file") else None
    setup_logging(log_dir, level=_console_level(ctx, config), log_to_file=log_dir is not None)
    return config


@click.group()
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Config file or directory containing packager.yaml",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--json", "json_mode", is_flag=True, help="Emit JSON status objects")
@click.option("--quiet", is_flag=True, help="Suppress human-readable output")
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    verbose: bool,
    json_mode: bool,
    quiet: bool,
) -> None:
    """Velociraptor artifact tool packager."""

    ctx.ensure_object(dict)

    # Quiet mode takes precedence over verbose output to avoid mixed messaging.
    ctx.obj["verbose"] = verbose and not quiet
    ctx.obj["config_path"] = config
    ctx.obj["json_mode"] = json_mode
    ctx.obj["quiet"] = quiet
    ctx.obj["log_to_file"] = False


@cli.command("inspect")
@click.argument("source", type=click.Path(path_type=Path))
@click.pass_context
def inspect_corpus(ctx: click.Context, source: Path) -> None:
    """Load a corpus and list its tool dependencies (no network access)."""

    config = _setup(ctx, {})
    try:
        result = BuildPipeline(config).resolve(source)
    except PackagerError as exc:
        _emit_status(ctx, "inspect", status="error", message=str(exc), errors=[str(exc)], exit_code=1)
        return

    details = [
        f"Artifacts: {len(result.corpus.artifacts)}",
        f"Unique tools: {len(result.database)}",
    ]
    for record in result.database.sorted_records():
        details.append(f"  {record.name}: {record.url or '(no url)'} <- {', '.join(record.artifacts)}")
    warnings = [str(warning) for warning in result.warnings]
    if warnings:
        details.append("Warnings:")
        details.extend(f"  - {warning}" for warning in warnings)

    _emit_status(
        ctx,
        "inspect",
        status="warning" if warnings else "success",
        message=f"Indexed {len(result.database)} tool(s) from {source}",
        details=details,
        data={
            "artifacts": [artifact.to_dict() for artifact in result.corpus.artifacts],
            "tools": result.database.to_dict(),
            "warnings": warnings,
        },
    )


@cli.command("fetch")
@click.argument("source", type=click.Path(path_type=Path))
@click.option("--cache-dir", type=click.Path(path_type=Path), default=None, help="Tool cache directory")
@click.option("--concurrency", "-j", type=click.IntRange(min=1), default=None, help="Parallel downloads")
@click.option("--offline", is_flag=True, help="Only use tools already in the cache")
@click.pass_context
def fetch_tools(
    ctx: click.Context,
    source: Path,
    cache_dir: Path | None,
    concurrency: int | None,
    offline: bool,
) -> None:
    """Populate the tool cache without assembling packages."""

    config = _setup(ctx, {"cache_dir": cache_dir, "max_workers": concurrency})
    pipeline = BuildPipeline(config)
    cancel = threading.Event()
    try:
        result = pipeline.resolve(source)
        summary = pipeline.fetch(result, offline=offline, cancel=cancel)
    except PackagerError as exc:
        _emit_status(ctx, "fetch", status="error", message=str(exc), errors=[str(exc)], exit_code=1)
        return

    failed = result.database.with_status(DownloadStatus.FAILED)
    details = [f"  [{record.status.value}] {record.name}" for record in result.database.sorted_records()]
    if summary.cancelled:
        status, message, exit_code = "error", "Fetch cancelled; unfinished tools left pending.", EXIT_CANCELLED
    elif failed:
        status, message, exit_code = "warning", f"{len(failed)} tool(s) failed to download.", None
    else:
        status, message, exit_code = "success", f"Tool cache ready at {config.cache_dir}", None

    _emit_status(
        ctx,
        "fetch",
        status=status,
        message=message,
        details=details,
        data={"fetch": summary.to_dict(), "tools": result.database.to_dict()},
        errors=[record.error for record in failed if record.error],
        exit_code=exit_code,
    )


@cli.command("build")
@click.argument("source", type=click.Path(path_type=Path))
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None, help="Output root")
@click.option(
    "--kind",
    type=click.Choice(["server", "client", "both"], case_sensitive=False),
    default="both",
    show_default=True,
    help="Package kind(s) to assemble",
)
@click.option("--cache-dir", type=click.Path(path_type=Path), default=None, help="Tool cache directory")
@click.option("--concurrency", "-j", type=click.IntRange(min=1), default=None, help="Parallel downloads")
@click.option(
    "--validate-downloads",
    is_flag=True,
    help="Fail the server package if any tool could not be fetched or verified.",
)
@click.option("--offline", is_flag=True, help="Only use tools already in the cache")
@click.option(
    "--report-format",
    "report_formats",
    type=click.Choice(list(SUPPORTED_FORMATS), case_sensitive=False),
    multiple=True,
    help="Report format(s) to write (repeatable)",
)
@click.pass_context
def build(
    ctx: click.Context,
    source: Path,
    output: Path | None,
    kind: str,
    cache_dir: Path | None,
    concurrency: int | None,
    validate_downloads: bool,
    offline: bool,
    report_formats: tuple[str, ...],
) -> None:
    """Resolve, fetch and assemble deployment packages from SOURCE."""

    ctx.obj["log_to_file"] = True
    config = _setup(
        ctx,
        {
            "output_dir": output,
            "cache_dir": cache_dir,
            "max_workers": concurrency,
            "report_formats": list(report_formats) or None,
        },
    )
    cancel = threading.Event()

    try:
        result = BuildPipeline(config).run(
            source,
            kinds=PackageKind.expand(kind),
            validate_downloads=validate_downloads,
            offline=offline,
            cancel=cancel,
        )
    except IncompletePackage as exc:
        _emit_status(
            ctx,
            "build",
            status="error",
            message=str(exc),
            data={"failed_tools": exc.failed_tools},
            errors=[str(exc)],
            exit_code=1,
        )
        return
    except PackagerError as exc:
        _emit_status(ctx, "build", status="error", message=str(exc), errors=[str(exc)], exit_code=1)
        return

    report = result.report
    details = [f"{package.kind.value}: {package.root}" for package in result.packages]
    details.extend(f"report ({fmt}): {path}" for fmt, path in sorted(result.report_paths.items()))
    log_path = build_log_path()
    if log_path:
        details.append(f"build log: {log_path}")
    if report.warnings:
        details.append("Warnings:")
        details.extend(f"  - {warning}" for warning in report.warnings)

    failed = result.database.with_status(DownloadStatus.FAILED)
    if result.cancelled:
        status, message, exit_code = "error", "Build cancelled during fetch; no packages assembled.", EXIT_CANCELLED
    elif failed:
        status, message, exit_code = "warning", f"Packages built with {len(failed)} failed tool(s).", None
    else:
        status, message, exit_code = "success", f"Built {len(result.packages)} package(s).", None

    _emit_status(
        ctx,
        "build",
        status=status,
        message=message,
        details=details,
        data={
            "packages": [package.to_dict() for package in result.packages],
            "reports": {fmt: str(path) for fmt, path in result.report_paths.items()},
            "totals": report.totals,
            "fetch": result.fetch.to_dict() if result.fetch else None,
            "build_log": str(log_path) if log_path else None,
        },
        errors=[record.error for record in failed if record.error],
        exit_code=exit_code,
    )


def main() -> None:  # pragma: no cover - console entry point
    cli(obj={})


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
