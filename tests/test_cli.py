"""CLI coverage for the build, fetch and inspect commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import pytest
from click.testing import CliRunner

from velociraptor_packager.cli import cli


@pytest.fixture(name="runner")
def _runner() -> CliRunner:
    return CliRunner()


def _parse_cli_json(output: str) -> Dict[str, Any]:
    for line in output.splitlines():
        if line.startswith("{"):
            return json.loads(line)
    raise AssertionError(output)


def test_inspect_lists_deduplicated_tools(runner: CliRunner, corpus_dir: Path) -> None:
    result = runner.invoke(cli, ["--json", "--quiet", "inspect", str(corpus_dir)])

    assert result.exit_code == 0, result.output
    payload = _parse_cli_json(result.output)
    assert payload["command"] == "inspect"
    assert payload["status"] == "success"
    assert sorted(payload["data"]["tools"]) == ["hayabusa", "lecmd"]
    assert payload["data"]["tools"]["hayabusa"]["artifacts"] == [
        "Generic.Hunt.Sigma",
        "Windows.EventLogs.Hayabusa",
    ]


def test_build_missing_source_reports_error(runner: CliRunner, tmp_path: Path) -> None:
    missing = tmp_path / "no-such-corpus"
    result = runner.invoke(
        cli,
        [
            "--json",
            "--quiet",
            "build",
            str(missing),
            "--output",
            str(tmp_path / "out"),
            "--cache-dir",
            str(tmp_path / "cache"),
        ],
    )

    assert result.exit_code == 1
    payload = _parse_cli_json(result.output)
    assert payload["status"] == "error"
    assert "Artifact source not found" in payload["message"]
    assert not (tmp_path / "out" / "velociraptor-server-package").exists()


def test_offline_build_creates_packages_and_log(
    runner: CliRunner, tmp_path: Path, corpus_dir: Path
) -> None:
    out = tmp_path / "out"
    result = runner.invoke(
        cli,
        [
            "--json",
            "--quiet",
            "build",
            str(corpus_dir),
            "--output",
            str(out),
            "--cache-dir",
            str(tmp_path / "cache"),
            "--kind",
            "client",
            "--offline",
            "--report-format",
            "txt",
        ],
    )

    assert result.exit_code == 0, result.output
    payload = _parse_cli_json(result.output)
    assert payload["status"] == "success"
    packages = payload["data"]["packages"]
    assert [package["kind"] for package in packages] == ["client"]
    assert (out / "velociraptor-client-package" / "client.config.yaml").exists()
    assert not (out / "velociraptor-server-package").exists()
    assert (out / "build-report.txt").exists()
    assert payload["data"]["fetch"]["skipped"] == ["hayabusa", "lecmd"]
    assert list((out / "logs").glob("build_*.log"))


def test_fetch_reports_failed_tools_as_warning(
    runner: CliRunner, tmp_path: Path, write_artifact
) -> None:
    corpus = tmp_path / "corpus"
    write_artifact(
        corpus,
        "Windows/Bad.yaml",
        "Windows.Bad",
        tools=[{"name": "Broken", "url": "https://tools.example/broken.exe", "expected_hash": "xyz"}],
    )

    result = runner.invoke(
        cli,
        ["--json", "--quiet", "fetch", str(corpus), "--cache-dir", str(tmp_path / "cache")],
    )

    assert result.exit_code == 0, result.output
    payload = _parse_cli_json(result.output)
    assert payload["status"] == "warning"
    assert payload["data"]["fetch"]["failed"] == ["broken"]
    assert payload["data"]["fetch"]["network_requests"] == 0


def test_config_file_supplies_defaults(
    runner: CliRunner, tmp_path: Path, corpus_dir: Path
) -> None:
    out = tmp_path / "configured-out"
    config_file = tmp_path / "packager.yaml"
    config_file.write_text(
        f"output_dir: {out}\ncache_dir: {tmp_path / 'cache'}\nreport_formats: [json]\n",
        encoding="utf-8",
    )

    result = runner.invoke(
        cli,
        ["--config", str(config_file), "--json", "--quiet", "build", str(corpus_dir), "--offline"],
    )

    assert result.exit_code == 0, result.output
    assert (out / "velociraptor-server-package" / "server.config.yaml").exists()
    assert (out / "build-report.json").exists()


def test_human_output_lists_packages(runner: CliRunner, tmp_path: Path, corpus_dir: Path) -> None:
    out = tmp_path / "out"
    result = runner.invoke(
        cli,
        [
            "build",
            str(corpus_dir),
            "--output",
            str(out),
            "--cache-dir",
            str(tmp_path / "cache"),
            "--offline",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Built 2 package(s)." in result.output
    assert f"server: {out / 'velociraptor-server-package'}" in result.output
