"""Shared pytest fixtures for the relayci test suite."""
from __future__ import annotations

import io
import textwrap
import threading
from pathlib import Path
from typing import Callable, List, Tuple

import pytest

from relayci.cache import MemoryCacheStore
from relayci.executor import StepExecutor
from relayci.model import JobStatus
from relayci.secretstore import MappingSecretStore
from relayci.ui.console import Console


class CapturingConsole(Console):
    """Console writing into in-memory buffers so tests can inspect the output."""

    def __init__(self) -> None:
        self.out = io.StringIO()
        self.err = io.StringIO()
        super().__init__(debug=True, stream=self.out, err=self.err)

    @property
    def text(self) -> str:
        return self.out.getvalue() + self.err.getvalue()


class RecordingChannel:
    """Notification channel that remembers every delivery."""

    name = "recording"

    def __init__(self) -> None:
        self.sent: List[Tuple[str, JobStatus, str]] = []
        self._lock = threading.Lock()

    def send(self, correlation_id: str, outcome: JobStatus, message: str) -> None:
        with self._lock:
            self.sent.append((correlation_id, outcome, message))


@pytest.fixture
def console() -> CapturingConsole:
    return CapturingConsole()


@pytest.fixture
def recording_channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[[str, str], Path]:
    """write_file("ci.yml", "...") -> path under tmp_path (text is dedented)."""

    def _write(relpath: str, text: str) -> Path:
        path = tmp_path / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def memory_cache() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture
def make_executor(tmp_path: Path, console: CapturingConsole):
    """Factory for executors rooted at tmp_path with an in-memory secret store."""

    def _make(secrets: dict | None = None, cache_store=None, workdir: Path | None = None) -> StepExecutor:
        return StepExecutor(
            workdir=workdir or tmp_path,
            secret_store=MappingSecretStore(dict(secrets or {})),
            cache_store=cache_store,
            env_tag="test-os",
            console=console,
        )

    return _make
