from __future__ import annotations

import pytest

from velociraptor_packager.core.errors import IncompletePackage
from velociraptor_packager.core.models import (
    DownloadStatus,
    PackageKind,
    ToolDatabase,
    ToolRecord,
    infer_category,
    normalize_tool_name,
)


def test_normalize_tool_name() -> None:
    assert normalize_tool_name("  Hayabusa ") == "hayabusa"
    assert normalize_tool_name("LECMD") == normalize_tool_name("lecmd")


@pytest.mark.parametrize(
    ("name", "category"),
    [
        ("Windows.EventLogs.Hayabusa", "Windows"),
        ("Server.Monitor.Health", "Server"),
        ("Standalone", "Uncategorized"),
        (".Leading", "Uncategorized"),
    ],
)
def test_infer_category(name: str, category: str) -> None:
    assert infer_category(name) == category


def test_package_kind_expand() -> None:
    assert PackageKind.expand("both") == (PackageKind.SERVER, PackageKind.CLIENT)
    assert PackageKind.expand("Client") == (PackageKind.CLIENT,)
    assert PackageKind.SERVER.directory_name == "velociraptor-server-package"
    with pytest.raises(ValueError):
        PackageKind.expand("agent")


def test_database_rejects_duplicate_keys() -> None:
    database = ToolDatabase()
    database.add(ToolRecord(key="hayabusa", name="Hayabusa"))

    with pytest.raises(KeyError):
        database.add(ToolRecord(key="hayabusa", name="hayabusa"))
    assert len(database) == 1


def test_claim_is_exclusive_until_released() -> None:
    database = ToolDatabase()
    database.add(ToolRecord(key="tool", name="Tool"))

    assert database.claim("tool") is True
    assert database.claim("tool") is False
    database.release("tool")
    assert database.claim("tool") is True


def test_resolved_records_cannot_be_claimed_again() -> None:
    database = ToolDatabase()
    database.add(ToolRecord(key="tool", name="Tool"))
    database.claim("tool")
    database.resolve("tool", DownloadStatus.SKIPPED, error="no download URL declared")
    database.release("tool")

    assert database.claim("tool") is False
    assert database.claim("unknown") is False
    assert database.status_counts()["skipped"] == 1


def test_resolve_requires_claim() -> None:
    database = ToolDatabase()
    database.add(ToolRecord(key="tool", name="Tool"))

    with pytest.raises(RuntimeError):
        database.resolve("tool", DownloadStatus.DOWNLOADED)
    assert database.get("Tool").status is DownloadStatus.PENDING


def test_incomplete_package_lists_tools_sorted() -> None:
    error = IncompletePackage(["Zeek", "Autorunsc"])

    assert error.failed_tools == ["Autorunsc", "Zeek"]
    assert "Autorunsc, Zeek" in str(error)
