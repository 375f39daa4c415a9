from __future__ import annotations

import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Generator, List, Optional
from unittest.mock import MagicMock

import pytest
from watchdog.events import FileSystemEvent

from gotest_watcher.colorizer import MemorySink
from gotest_watcher.coordinator import RestartCoordinator
from gotest_watcher.supervisor import CancelScope


class FakeSupervisor:
    """Stand-in for ProcessSupervisor that records scopes instead of spawning.

    When ``block`` is True each run waits on its scope until cancelled, like
    a long ``go test`` would.
    """

    def __init__(self, block: bool = True) -> None:
        self.block = block
        self.scopes: List[CancelScope] = []
        self.finished: List[CancelScope] = []
        self._lock = threading.Lock()

    def new_scope(self) -> CancelScope:
        return CancelScope(grace_period=0.01)

    def run(self, scope: CancelScope) -> Optional[int]:
        with self._lock:
            self.scopes.append(scope)
        if self.block:
            scope.wait(timeout=10.0)
        with self._lock:
            self.finished.append(scope)
        return 0


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(name="wait_for")
def wait_for_fixture() -> Callable[..., bool]:
    """Expose the polling helper to tests."""
    return _wait_for


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def source_file(temp_dir: Path) -> Path:
    """Fixture for a Go source file inside the temp tree."""
    f = temp_dir / "main.go"
    f.write_text("package main\n", encoding="utf-8")
    return f


@pytest.fixture
def memory_sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def coordinator(fake_supervisor: FakeSupervisor) -> Generator[RestartCoordinator, None, None]:
    """A coordinator around a FakeSupervisor, stopped after the test."""
    coord = RestartCoordinator(fake_supervisor, queue_size=16, send_timeout=0.5)  # type: ignore[arg-type]
    yield coord
    coord.stop(timeout=2.0)


@pytest.fixture
def mock_coordinator() -> MagicMock:
    return MagicMock(spec=RestartCoordinator)


@pytest.fixture
def mock_filesystem_event() -> MagicMock:
    """Fixture for a generic watchdog FileSystemEvent."""
    event = MagicMock(spec=FileSystemEvent)
    event.is_directory = False
    event.src_path = "/tmp/project/pkg/foo.go"
    event.event_type = "modified"
    return event


@pytest.fixture
def python_command() -> Callable[[str], List[str]]:
    """Build a command line that runs a Python snippet in place of ``go test``."""
    def _command(code: str) -> List[str]:
        return [sys.executable, "-c", code]
    return _command
