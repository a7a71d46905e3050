#!/usr/bin/env python3
"""
Build Pipeline
Runs Loader -> Index -> Fetcher -> Assembler -> Reporter for one build
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import requests

from velociraptor_packager.corpus.index import IndexResult, build_tool_database
from velociraptor_packager.corpus.loader import CorpusLoadResult, load_corpus
from velociraptor_packager.fetch.fetcher import FetchSummary, ToolFetcher
from velociraptor_packager.packaging.assembler import PackageAssembler
from velociraptor_packager.reporting.exporter import FORMAT_SUFFIXES, export_report
from velociraptor_packager.reporting.generator import build_report

from .config import PackagerConfig
from .errors import IncompletePackage
from .logger import get_module_logger
from .models import BuildReport, Package, PackageKind, ToolDatabase

logger = get_module_logger("pipeline")

REPORT_BASENAME = "build-report"


@dataclass
class BuildResult:
    """Everything produced by a single pipeline run."""

    corpus: CorpusLoadResult
    index: IndexResult
    fetch: Optional[FetchSummary] = None
    packages: List[Package] = field(default_factory=list)
    report: Optional[BuildReport] = None
    report_paths: Dict[str, Path] = field(default_factory=dict)

    @property
    def database(self) -> ToolDatabase:
        return self.index.database

    @property
    def cancelled(self) -> bool:
        return bool(self.fetch and self.fetch.cancelled)

    @property
    def warnings(self) -> List[object]:
        return [*self.corpus.warnings, *self.index.warnings]


class BuildPipeline:
    """
    Packaging orchestrator

    Features:
    - Corpus loading and tool indexing
    - Validated tool fetching into a shared cache
    - Server/client package assembly
    - JSON/HTML/text build reports
    """

    def __init__(
        self,
        config: Optional[PackagerConfig] = None,
        *,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or PackagerConfig()
        self.session = session

    def resolve(self, source: Path) -> BuildResult:
        """Load and index ``source`` without any network access."""

        corpus = load_corpus(Path(source))
        index = build_tool_database(corpus.artifacts)
        return BuildResult(corpus=corpus, index=index)

    def fetch(
        self,
        result: BuildResult,
        *,
        cache_dir: Optional[Path] = None,
        concurrency: Optional[int] = None,
        offline: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> FetchSummary:
        fetcher = ToolFetcher.from_config(
            self.config,
            cache_dir=cache_dir,
            concurrency=concurrency,
            offline=offline,
            session=self.session,
        )
        with fetcher:
            result.fetch = fetcher.fetch_all(result.database, cancel=cancel)
        return result.fetch

    def run(
        self,
        source: Path,
        *,
        kinds: Iterable[PackageKind] = (PackageKind.SERVER, PackageKind.CLIENT),
        output_dir: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        concurrency: Optional[int] = None,
        validate_downloads: bool = False,
        offline: bool = False,
        report_formats: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> BuildResult:
        """
        Execute a full build

        Args:
            source: Corpus directory or archive
            kinds: Package kinds to assemble
            output_dir: Output root (defaults to configuration)
            cache_dir: Tool cache (defaults to configuration)
            concurrency: Fetch worker count (defaults to configuration)
            validate_downloads: Raise IncompletePackage on failed tools
            offline: Only use cached tools
            report_formats: Report formats to write next to the packages
            cancel: Cancellation event for the fetch phase

        Returns:
            BuildResult; packages are empty when the fetch was cancelled
        """
        output_root = Path(output_dir or self.config.output_dir)
        result = self.resolve(source)
        logger.info(
            f"Resolved {len(result.corpus.artifacts)} artifact(s) and "
            f"{len(result.database)} unique tool(s)"
        )

        self.fetch(
            result,
            cache_dir=cache_dir,
            concurrency=concurrency,
            offline=offline,
            cancel=cancel,
        )
        if result.cancelled:
            logger.warning("Fetch phase cancelled; skipping package assembly")
        else:
            assembler = PackageAssembler.from_config(self.config, output_root)
            try:
                result.packages = assembler.assemble(
                    result.corpus.artifacts,
                    result.database,
                    kinds,
                    validate_downloads=validate_downloads,
                )
            except IncompletePackage:
                self._write_reports(result, output_root, report_formats)
                raise

        self._write_reports(result, output_root, report_formats)
        return result

    def _write_reports(
        self,
        result: BuildResult,
        output_root: Path,
        report_formats: Optional[Iterable[str]],
    ) -> None:
        result.report = build_report(
            result.corpus.artifacts, result.database, result.packages, result.warnings
        )
        for fmt in report_formats or self.config.report_formats:
            suffix = FORMAT_SUFFIXES.get(fmt.lower(), f".{fmt.lower()}")
            path = export_report(result.report, fmt, output_root / f"{REPORT_BASENAME}{suffix}")
            result.report_paths[fmt.lower()] = path
            logger.info(f"Wrote {fmt} report to {path}")


__all__ = ["BuildPipeline", "BuildResult", "REPORT_BASENAME"]
