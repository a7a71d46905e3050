#!/usr/bin/env python3
"""
Package Assembler
Lays out Velociraptor server and client deployment bundles
"""

from __future__ import annotations

import os
import shlex
import shutil
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml
from jinja2 import Environment, PackageLoader, StrictUndefined

from velociraptor_packager.core.config import PackagerConfig
from velociraptor_packager.core.errors import IncompletePackage
from velociraptor_packager.core.logger import get_module_logger
from velociraptor_packager.core.models import (
    ArtifactRecord,
    DownloadStatus,
    Package,
    PackageKind,
    ToolDatabase,
    ToolPolicy,
    ToolRecord,
)
from velociraptor_packager.core.time_utils import utc_isoformat
from velociraptor_packager.utils.io import safe_filename, write_bytes, write_text

logger = get_module_logger("assembler")

_TEMPLATE_PACKAGE = "velociraptor_packager.packaging"
ARTIFACTS_DIR = "artifacts"
TOOLS_DIR = "tools"
DEFAULT_INSTALL_ROOT = "/opt/velociraptor"


@lru_cache(maxsize=1)
def _get_environment() -> Environment:
    """Return a cached Jinja environment for deployment templates."""

    env = Environment(
        loader=PackageLoader(_TEMPLATE_PACKAGE, "templates"),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    env.filters["shell_quote"] = lambda value: shlex.quote(str(value))
    return env


@dataclass(frozen=True)
class DeploymentDescriptor:
    """Declarative deployment steps rendered into a script stub."""

    directories: Tuple[str, ...]
    copy: Tuple[Dict[str, str], ...]
    arguments: Tuple[str, ...]
    install_root: str = DEFAULT_INSTALL_ROOT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "install_root": self.install_root,
            "directories": list(self.directories),
            "copy": [dict(step) for step in self.copy],
            "command": list(self.arguments),
        }


@dataclass
class _Layout:
    """Files of one package before it is written to disk."""

    kind: PackageKind
    policy: ToolPolicy
    config_name: str
    script_name: str
    config: Dict[str, Any]
    descriptor: DeploymentDescriptor
    tools: List[Tuple[str, Path]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class PackageAssembler:
    """
    Build deployment packages from a resolved corpus

    Each package is written into a staging directory and moved into place
    only once complete, so a package directory is either whole or absent.
    """

    def __init__(
        self,
        output_root: Path,
        *,
        remote_endpoint: str = "https://localhost:8000/",
        frontend_port: int = 8000,
        gui_port: int = 8889,
        binary_name: str = "velociraptor",
        timestamp: Optional[str] = None,
    ) -> None:
        self.output_root = Path(output_root)
        self.remote_endpoint = remote_endpoint
        self.frontend_port = frontend_port
        self.gui_port = gui_port
        self.binary_name = binary_name
        self.timestamp = timestamp

    @classmethod
    def from_config(
        cls, config: PackagerConfig, output_root: Optional[Path] = None, **kwargs: Any
    ) -> "PackageAssembler":
        return cls(
            output_root or config.output_dir,
            remote_endpoint=config.remote_fetch_endpoint,
            frontend_port=config.frontend_port,
            gui_port=config.gui_port,
            binary_name=config.velociraptor_binary,
            **kwargs,
        )

    def assemble(
        self,
        artifacts: Sequence[ArtifactRecord],
        database: ToolDatabase,
        kinds: Iterable[PackageKind],
        *,
        validate_downloads: bool = False,
    ) -> List[Package]:
        """
        Produce one package per requested kind

        Args:
            artifacts: Artifacts in load order
            database: Resolved tool database
            kinds: Package kinds to build
            validate_downloads: Fail instead of omitting failed tools

        Returns:
            The packages that were written

        Raises:
            IncompletePackage: Strict validation found failed tools
        """
        kinds = list(dict.fromkeys(kinds))
        if validate_downloads and PackageKind.SERVER in kinds:
            failed = [record.name for record in database.with_status(DownloadStatus.FAILED)]
            if failed:
                logger.error(f"Refusing to build server package, failed tools: {failed}")
                raise IncompletePackage(failed)

        generated_at = self.timestamp or utc_isoformat()
        bundled_names = self._bundled_tool_names(database)
        self.output_root.mkdir(parents=True, exist_ok=True)

        packages = []
        for kind in kinds:
            if kind is PackageKind.SERVER:
                layout = self._server_layout(artifacts, database, bundled_names, generated_at)
            else:
                layout = self._client_layout(artifacts, database, bundled_names, generated_at)
            packages.append(self._write(layout, artifacts, generated_at))
        return packages

    def _bundled_tool_names(self, database: ToolDatabase) -> Dict[str, Tuple[str, Path]]:
        """Map tool key to ``(file name in tools/, cache file)`` for bundling."""

        names: Dict[str, Tuple[str, Path]] = {}
        used: set[str] = set()
        for record in database.with_status(DownloadStatus.DOWNLOADED):
            if record.cache_path is None or not Path(record.cache_path).is_file():
                continue
            base_name = Path(record.cache_path).name
            file_name = base_name
            suffix = 1
            while file_name in used:
                file_name = f"{safe_filename(record.key)}-{base_name}"
                if suffix > 1:
                    file_name = f"{safe_filename(record.key)}-{suffix}-{base_name}"
                suffix += 1
            used.add(file_name)
            names[record.key] = (file_name, Path(record.cache_path))
        return names

    def _artifact_section(self, artifacts: Sequence[ArtifactRecord]) -> Dict[str, Any]:
        return {
            "definitions_directory": ARTIFACTS_DIR,
            "count": len(artifacts),
            "names": [artifact.name for artifact in artifacts],
        }

    @staticmethod
    def _omission_reason(record: ToolRecord) -> str:
        if record.status is DownloadStatus.DOWNLOADED:
            return "cache file missing"
        reason = record.status.value
        if record.error:
            reason += f": {record.error}"
        return reason

    def _server_layout(
        self,
        artifacts: Sequence[ArtifactRecord],
        database: ToolDatabase,
        bundled: Dict[str, Tuple[str, Path]],
        generated_at: str,
    ) -> _Layout:
        tools: List[Dict[str, Any]] = []
        layout_tools: List[Tuple[str, Path]] = []
        warnings: List[str] = []

        for record in database.sorted_records():
            if record.key in bundled:
                file_name, cache_path = bundled[record.key]
                layout_tools.append((file_name, cache_path))
                tools.append(
                    {
                        "name": record.name,
                        "filename": file_name,
                        "path": f"{TOOLS_DIR}/{file_name}",
                        "serve_locally": record.serve_locally,
                        "version": record.version,
                        "expected_hash": record.expected_hash,
                        "upstream_url": record.url,
                        "artifacts": list(record.artifacts),
                    }
                )
            else:
                warnings.append(
                    f"{record.name} not bundled ({self._omission_reason(record)})"
                )

        descriptor = DeploymentDescriptor(
            directories=(ARTIFACTS_DIR, TOOLS_DIR, "datastore", "logs"),
            copy=(
                {"source": ARTIFACTS_DIR, "target": ARTIFACTS_DIR},
                {"source": TOOLS_DIR, "target": TOOLS_DIR},
            ),
            arguments=(
                "--config",
                "server.config.yaml",
                "--definitions",
                ARTIFACTS_DIR,
                "frontend",
                "-v",
            ),
        )
        config = {
            "package": {
                "kind": PackageKind.SERVER.value,
                "generated_at": generated_at,
                "tool_policy": ToolPolicy.BUNDLED.value,
            },
            "Frontend": {"bind_address": "0.0.0.0", "bind_port": self.frontend_port},
            "GUI": {"bind_address": "127.0.0.1", "bind_port": self.gui_port},
            "Datastore": {
                "location": "datastore",
                "filestore_directory": "datastore/files",
            },
            "Logging": {"output_directory": "logs"},
            "artifacts": self._artifact_section(artifacts),
            "tools": tools,
            "deployment": descriptor.to_dict(),
            "warnings": warnings,
        }
        return _Layout(
            kind=PackageKind.SERVER,
            policy=ToolPolicy.BUNDLED,
            config_name="server.config.yaml",
            script_name="deploy-server.sh",
            config=config,
            descriptor=descriptor,
            tools=layout_tools,
            warnings=warnings,
        )

    def _client_layout(
        self,
        artifacts: Sequence[ArtifactRecord],
        database: ToolDatabase,
        bundled: Dict[str, Tuple[str, Path]],
        generated_at: str,
    ) -> _Layout:
        endpoint = self.remote_endpoint.rstrip("/")
        manifest: List[Dict[str, Any]] = []
        warnings: List[str] = []

        for record in database.sorted_records():
            entry: Dict[str, Any] = {
                "name": record.name,
                "version": record.version,
                "expected_hash": record.expected_hash,
            }
            if not record.serve_locally and record.url:
                # Clients fetch this tool from its upstream URL.
                entry["url"] = record.url
                entry["available"] = True
            elif record.key in bundled:
                file_name = bundled[record.key][0]
                entry["filename"] = file_name
                entry["url"] = f"{endpoint}/{TOOLS_DIR}/{file_name}"
                entry["available"] = True
            else:
                entry["available"] = False
                warnings.append(
                    f"{record.name} not served by the server package "
                    f"({self._omission_reason(record)})"
                )
            manifest.append(entry)

        descriptor = DeploymentDescriptor(
            directories=(ARTIFACTS_DIR, "logs"),
            copy=({"source": ARTIFACTS_DIR, "target": ARTIFACTS_DIR},),
            arguments=(
                "--config",
                "client.config.yaml",
                "--definitions",
                ARTIFACTS_DIR,
                "client",
                "-v",
            ),
        )
        config = {
            "package": {
                "kind": PackageKind.CLIENT.value,
                "generated_at": generated_at,
                "tool_policy": ToolPolicy.MANIFEST_ONLY.value,
            },
            "Client": {"server_urls": [f"{endpoint}/"]},
            "Logging": {"output_directory": "logs"},
            "artifacts": self._artifact_section(artifacts),
            "tool_manifest": {
                "remote_fetch_endpoint": self.remote_endpoint,
                "tools": manifest,
            },
            "deployment": descriptor.to_dict(),
            "warnings": warnings,
        }
        return _Layout(
            kind=PackageKind.CLIENT,
            policy=ToolPolicy.MANIFEST_ONLY,
            config_name="client.config.yaml",
            script_name="deploy-client.sh",
            config=config,
            descriptor=descriptor,
            warnings=warnings,
        )

    def _render_script(self, layout: _Layout, generated_at: str) -> str:
        template = _get_environment().get_template("deploy.sh.j2")
        return template.render(
            kind=layout.kind.value,
            generated_at=generated_at,
            install_root=layout.descriptor.install_root,
            binary=self.binary_name,
            directories=layout.descriptor.directories,
            copy=layout.descriptor.copy,
            config_name=layout.config_name,
            arguments=layout.descriptor.arguments,
        )

    def _write(
        self, layout: _Layout, artifacts: Sequence[ArtifactRecord], generated_at: str
    ) -> Package:
        target = self.output_root / layout.kind.directory_name
        staging = self.output_root / f".{target.name}.staging-{uuid.uuid4().hex}"
        logger.info(f"Assembling {layout.kind.value} package in {target}")

        try:
            (staging / ARTIFACTS_DIR).mkdir(parents=True)
            for artifact in artifacts:
                write_bytes(staging / ARTIFACTS_DIR / artifact.relative_path, artifact.content)

            if layout.policy is ToolPolicy.BUNDLED:
                tools_dir = staging / TOOLS_DIR
                tools_dir.mkdir()
                for file_name, cache_path in layout.tools:
                    shutil.copyfile(cache_path, tools_dir / file_name)

            header = f"# Velociraptor {layout.kind.value} package configuration\n"
            write_text(
                staging / layout.config_name,
                header
                + yaml.safe_dump(
                    layout.config, sort_keys=False, default_flow_style=False, allow_unicode=True
                ),
            )
            script_path = staging / layout.script_name
            write_text(script_path, self._render_script(layout, generated_at))
            script_path.chmod(0o755)

            self._publish(staging, target)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        for warning in layout.warnings:
            logger.warning(f"{layout.kind.value} package: {warning}")

        return Package(
            kind=layout.kind,
            root=target,
            artifacts=tuple(artifact.name for artifact in artifacts),
            tool_policy=layout.policy,
            tools=tuple(file_name for file_name, _ in layout.tools),
            config_path=target / layout.config_name,
            deploy_script_path=target / layout.script_name,
            warnings=tuple(layout.warnings),
        )

    @staticmethod
    def _publish(staging: Path, target: Path) -> None:
        """Swap ``staging`` into ``target`` replacing any previous package."""

        backup: Optional[Path] = None
        if target.exists():
            backup = target.with_name(f".{target.name}.previous-{uuid.uuid4().hex}")
            os.replace(target, backup)
        try:
            os.replace(staging, target)
        except OSError:
            if backup is not None:
                os.replace(backup, target)
            raise
        if backup is not None:
            shutil.rmtree(backup)


__all__ = [
    "ARTIFACTS_DIR",
    "DeploymentDescriptor",
    "PackageAssembler",
    "TOOLS_DIR",
]
