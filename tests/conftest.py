import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest
import requests
import yaml

# Ensure the project root is on sys.path for package imports during tests.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from velociraptor_packager.core.logger import LOGGER_NAME  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_packager_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("VRPKG_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _reset_packager_logging() -> Iterable[None]:
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class FakeResponse:
    """Minimal streaming stand-in for :class:`requests.Response`."""

    def __init__(
        self,
        content: bytes = b"",
        status_code: int = 200,
        *,
        chunks: Optional[List[bytes]] = None,
        on_chunk: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.status_code = status_code
        self.chunks = chunks if chunks is not None else [content]
        self.on_chunk = on_chunk
        self.closed = False
        self.session: Optional["FakeSession"] = None

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size: int = 1) -> Iterable[bytes]:
        for index, chunk in enumerate(self.chunks):
            if self.on_chunk is not None:
                self.on_chunk(index)
            yield chunk

    def close(self) -> None:
        self.closed = True
        if self.session is not None:
            self.session.finished()


class FakeSession:
    """Records GET calls and replays scripted outcomes per URL.

    Each URL maps to a list of outcomes consumed in order; the last
    outcome repeats. Outcomes may be bytes, a :class:`FakeResponse` or an
    exception instance to raise.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None, *, delay: float = 0.0) -> None:
        self.routes: Dict[str, List[Any]] = {}
        self.calls: List[str] = []
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()
        for url, outcome in (routes or {}).items():
            self.add(url, *(outcome if isinstance(outcome, list) else [outcome]))

    def add(self, url: str, *outcomes: Any) -> None:
        self.routes[url] = list(outcomes)

    def count(self, url: str) -> int:
        return self.calls.count(url)

    def finished(self) -> None:
        with self._lock:
            self.in_flight -= 1

    def get(self, url: str, stream: bool = False, timeout: Optional[float] = None) -> FakeResponse:
        with self._lock:
            self.calls.append(url)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)

        if self.delay:
            time.sleep(self.delay)

        outcomes = self.routes.get(url)
        if not outcomes:
            outcome: Any = FakeResponse(status_code=404)
        elif len(outcomes) > 1:
            outcome = outcomes.pop(0)
        else:
            outcome = outcomes[0]

        if isinstance(outcome, BaseException):
            self.finished()
            raise outcome
        if isinstance(outcome, bytes):
            outcome = FakeResponse(outcome)
        outcome.session = self
        return outcome


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def write_artifact() -> Callable[..., Path]:
    """Return a helper that writes an artifact definition document."""

    def _write(
        root: Path,
        relative: str,
        name: str,
        tools: Optional[List[Any]] = None,
        artifact_type: Optional[str] = None,
    ) -> Path:
        document: Dict[str, Any] = {"name": name, "description": f"{name} test artifact"}
        if artifact_type:
            document["type"] = artifact_type
        if tools is not None:
            document["tools"] = tools
        document["sources"] = [{"query": "SELECT * FROM info()"}]

        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        return path

    return _write


HAYABUSA_URL = "https://tools.example/hayabusa/hayabusa-2.10.zip"
LECMD_URL = "https://tools.example/ez/LECmd.zip"


@pytest.fixture
def corpus_dir(tmp_path: Path, write_artifact: Callable[..., Path]) -> Path:
    """Three artifacts declaring Hayabusa twice (once lower-cased) and LECmd."""

    root = tmp_path / "corpus"
    write_artifact(
        root,
        "Windows/EventLogs/Hayabusa.yaml",
        "Windows.EventLogs.Hayabusa",
        tools=[{"name": "Hayabusa", "url": HAYABUSA_URL, "version": "2.10"}],
    )
    write_artifact(
        root,
        "Windows/Forensics/Lnk.yaml",
        "Windows.Forensics.Lnk",
        tools=[{"name": "LECmd", "url": LECMD_URL}],
    )
    write_artifact(
        root,
        "Generic/Hunt.yml",
        "Generic.Hunt.Sigma",
        tools=[{"name": "hayabusa", "url": HAYABUSA_URL}],
    )
    return root
