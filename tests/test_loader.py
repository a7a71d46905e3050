from __future__ import annotations

import io
import tarfile
import zipfile
from pathlib import Path

import pytest

from velociraptor_packager.core.errors import ExtractionFailed, SourceNotFound
from velociraptor_packager.corpus.loader import (
    ParsedArtifact,
    UnparsableArtifact,
    load_corpus,
    parse_artifact_document,
)

BROKEN_YAML = b"""name: Windows.Sysinternals.Autoruns
description: Uses: colons: everywhere
type: client
tools:
  - name: Autorunsc
    url: "https://tools.example/autorunsc.exe"
    expected_hash: sha256:abc123
  - name: Sigcheck
sources:
  - query: SELECT * FROM info()
"""


def test_parse_structured_document() -> None:
    content = b"""name: Windows.EventLogs.Hayabusa
type: client
tools:
  - name: Hayabusa
    url: https://tools.example/hayabusa.zip
    version: "2.10"
    serve_locally: false
  - LECmd
"""
    outcome = parse_artifact_document("Windows/Hayabusa.yaml", content)

    assert isinstance(outcome, ParsedArtifact)
    record = outcome.record
    assert record.name == "Windows.EventLogs.Hayabusa"
    assert record.category == "Windows"
    assert record.artifact_type == "CLIENT"
    assert record.tool_names == ["Hayabusa", "LECmd"]
    assert record.tools[0].version == "2.10"
    assert record.tools[0].serve_locally is False
    assert record.tools[1].url is None
    assert record.content == content
    assert outcome.warnings == ()


def test_parse_defaults_type_and_category() -> None:
    outcome = parse_artifact_document("custom.yaml", b"name: Standalone\n")

    assert isinstance(outcome, ParsedArtifact)
    assert outcome.record.category == "Uncategorized"
    assert outcome.record.artifact_type == "CLIENT"
    assert outcome.record.tools == ()


def test_parse_falls_back_to_pattern_extraction() -> None:
    outcome = parse_artifact_document("Windows/Autoruns.yaml", BROKEN_YAML)

    assert isinstance(outcome, ParsedArtifact)
    record = outcome.record
    assert record.name == "Windows.Sysinternals.Autoruns"
    assert record.artifact_type == "CLIENT"
    assert record.tool_names == ["Autorunsc", "Sigcheck"]
    assert record.tools[0].url == "https://tools.example/autorunsc.exe"
    assert record.tools[0].expected_hash == "sha256:abc123"
    assert len(outcome.warnings) == 1
    assert "recovered with pattern extraction" in outcome.warnings[0].reason


@pytest.mark.parametrize(
    ("content", "reason"),
    [
        (b"", "empty document"),
        (b"- just\n- a list\n", "document is not a mapping"),
        (b"description: no name here\n", "missing artifact name"),
        (b"\xff\xfe\x00garbage", "not UTF-8"),
        (b"sources: [unclosed\n", "invalid YAML"),
    ],
)
def test_unparsable_documents(content: bytes, reason: str) -> None:
    outcome = parse_artifact_document("bad.yaml", content)

    assert isinstance(outcome, UnparsableArtifact)
    assert reason in outcome.reason
    assert outcome.as_warning().reason.startswith("skipped: ")


def test_tool_entry_warnings() -> None:
    content = b"""name: Linux.Triage
tools:
  - url: https://tools.example/nameless.bin
  - 42
"""
    outcome = parse_artifact_document("Linux/Triage.yaml", content)

    assert isinstance(outcome, ParsedArtifact)
    assert outcome.record.tools == ()
    reasons = [warning.reason for warning in outcome.warnings]
    assert reasons == ["tool entry #1 has no name", "tool entry #2 is not a mapping"]


def test_non_list_tools_field_is_ignored() -> None:
    outcome = parse_artifact_document("x.yaml", b"name: A.B\ntools: Hayabusa\n")

    assert isinstance(outcome, ParsedArtifact)
    assert outcome.record.tools == ()
    assert outcome.warnings[0].reason == "tools field is not a list; ignored"


def test_load_corpus_directory_order_and_warnings(tmp_path: Path, write_artifact) -> None:
    root = tmp_path / "corpus"
    write_artifact(root, "b/Second.yaml", "Linux.Second")
    write_artifact(root, "a/First.yml", "Windows.First")
    (root / "a" / "Broken.yaml").write_bytes(b"- not a mapping\n")
    (root / "notes.txt").write_text("ignored", encoding="utf-8")
    write_artifact(root, ".git/Hidden.yaml", "Hidden.Artifact")

    result = load_corpus(root)

    assert [artifact.name for artifact in result.artifacts] == ["Windows.First", "Linux.Second"]
    assert [artifact.relative_path for artifact in result.artifacts] == [
        "a/First.yml",
        "b/Second.yaml",
    ]
    assert len(result.warnings) == 1
    assert result.warnings[0].path == "a/Broken.yaml"


def test_load_corpus_single_document(tmp_path: Path, write_artifact) -> None:
    path = write_artifact(tmp_path, "Single.yaml", "Generic.Single")

    result = load_corpus(path)

    assert [artifact.name for artifact in result.artifacts] == ["Generic.Single"]
    assert result.artifacts[0].relative_path == "Single.yaml"


def test_load_corpus_zip_archive(tmp_path: Path) -> None:
    archive = tmp_path / "corpus.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("artifacts/Windows/One.yaml", "name: Windows.One\ntools: [Hayabusa]\n")
        bundle.writestr("artifacts/Linux/Two.yaml", "name: Linux.Two\n")
        bundle.writestr("__MACOSX/artifacts/._One.yaml", "junk")

    result = load_corpus(archive)

    assert [artifact.name for artifact in result.artifacts] == ["Linux.Two", "Windows.One"]
    assert result.artifacts[1].origin == f"{archive}!/artifacts/Windows/One.yaml"
    assert result.artifacts[1].content == b"name: Windows.One\ntools: [Hayabusa]\n"
    assert result.warnings == []


def test_load_corpus_tar_archive(tmp_path: Path) -> None:
    archive = tmp_path / "corpus.tar.gz"
    payload = b"name: MacOS.Collect\n"
    with tarfile.open(archive, "w:gz") as bundle:
        info = tarfile.TarInfo("MacOS/Collect.yaml")
        info.size = len(payload)
        bundle.addfile(info, io.BytesIO(payload))

    result = load_corpus(archive)

    assert [artifact.name for artifact in result.artifacts] == ["MacOS.Collect"]
    assert result.artifacts[0].category == "MacOS"


def test_load_corpus_tar_archive_without_extraction_filters(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    archive = tmp_path / "corpus.tar"
    payload = b"name: Linux.Collect\n"
    with tarfile.open(archive, "w") as bundle:
        info = tarfile.TarInfo("Linux/Collect.yaml")
        info.size = len(payload)
        bundle.addfile(info, io.BytesIO(payload))
    monkeypatch.delattr(tarfile, "data_filter", raising=False)

    result = load_corpus(archive)

    assert [artifact.name for artifact in result.artifacts] == ["Linux.Collect"]


def test_load_corpus_rejects_path_traversal(tmp_path: Path) -> None:
    archive = tmp_path / "evil.tar"
    payload = b"name: Evil\n"
    with tarfile.open(archive, "w") as bundle:
        info = tarfile.TarInfo("../escape.yaml")
        info.size = len(payload)
        bundle.addfile(info, io.BytesIO(payload))

    with pytest.raises(ExtractionFailed):
        load_corpus(archive)
    assert not (tmp_path.parent / "escape.yaml").exists()


def test_load_corpus_corrupt_archive(tmp_path: Path) -> None:
    archive = tmp_path / "corrupt.zip"
    archive.write_bytes(b"PK\x03\x04 definitely not a zip")

    with pytest.raises(ExtractionFailed):
        load_corpus(archive)


def test_load_corpus_unsupported_file(tmp_path: Path) -> None:
    source = tmp_path / "notes.txt"
    source.write_text("hello", encoding="utf-8")

    with pytest.raises(ExtractionFailed, match="unsupported corpus format"):
        load_corpus(source)


def test_load_corpus_missing_root(tmp_path: Path) -> None:
    with pytest.raises(SourceNotFound) as excinfo:
        load_corpus(tmp_path / "does-not-exist")

    assert excinfo.value.path == tmp_path / "does-not-exist"
