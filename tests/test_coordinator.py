"""Tests for the single-flight restart coordinator."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional
from unittest.mock import MagicMock

import pytest

from gotest_watcher.colorizer import MemorySink
from gotest_watcher.coordinator import ChangeNotification, RestartCoordinator, RunHandle
from gotest_watcher.supervisor import SEPARATOR, CancelScope, ProcessSupervisor
from gotest_watcher.tracker import PathStateTracker

if TYPE_CHECKING:
    from conftest import FakeSupervisor


def _touch(path: Path, content: str) -> str:
    path.write_text(content, encoding="utf-8")
    return str(path)


def test_start_seeds_one_run(
    coordinator: RestartCoordinator, fake_supervisor: FakeSupervisor, wait_for: Callable[..., bool]
) -> None:
    coordinator.start()
    coordinator.flush()

    assert coordinator.restarts == 1
    assert wait_for(lambda: len(fake_supervisor.scopes) == 1)
    assert coordinator.current_run is not None
    assert coordinator.current_run.run_id == 1


def test_start_without_seed_runs_nothing(coordinator: RestartCoordinator, fake_supervisor: FakeSupervisor) -> None:
    coordinator.start(seed=False)
    coordinator.flush()

    assert coordinator.restarts == 0
    assert coordinator.current_run is None
    assert fake_supervisor.scopes == []


def test_start_twice_raises(coordinator: RestartCoordinator) -> None:
    coordinator.start(seed=False)
    with pytest.raises(RuntimeError, match="already started"):
        coordinator.start()


def test_change_cancels_previous_run(
    coordinator: RestartCoordinator, source_file: Path, wait_for: Callable[..., bool]
) -> None:
    coordinator.start()
    coordinator.flush()
    first = coordinator.current_run
    assert first is not None

    coordinator.notify(str(source_file))
    coordinator.flush()
    second = coordinator.current_run

    assert second is not None and second is not first
    assert first.scope.cancelled
    assert not second.scope.cancelled
    assert wait_for(lambda: first.done)


def test_only_latest_run_stays_live(
    coordinator: RestartCoordinator, fake_supervisor: FakeSupervisor, temp_dir: Path, wait_for: Callable[..., bool]
) -> None:
    coordinator.start()
    for i in range(5):
        coordinator.notify(_touch(temp_dir / f"file{i}.go", f"package p{i}\n"))
    coordinator.flush()

    assert coordinator.restarts == 6
    assert wait_for(lambda: len(fake_supervisor.scopes) == 6)
    assert wait_for(lambda: len(fake_supervisor.finished) == 5)
    live = [scope for scope in fake_supervisor.scopes if not scope.cancelled]
    assert len(live) == 1
    assert coordinator.current_run is not None
    assert live[0] is coordinator.current_run.scope


def test_duplicate_notifications_do_not_restart(coordinator: RestartCoordinator, source_file: Path) -> None:
    coordinator.start(seed=False)
    coordinator.notify(str(source_file))
    coordinator.flush()
    assert coordinator.restarts == 1
    current = coordinator.current_run

    for _ in range(3):
        coordinator.notify(str(source_file))
    coordinator.flush()

    assert coordinator.restarts == 1
    assert coordinator.suppressed == 3
    assert coordinator.current_run is current
    assert current is not None and not current.scope.cancelled


def test_suppressed_notification_does_not_cancel(coordinator: RestartCoordinator, source_file: Path) -> None:
    coordinator.start(seed=False)
    coordinator.notify(str(source_file))
    coordinator.flush()
    run = coordinator.current_run

    coordinator.notify(str(source_file))
    coordinator.flush()

    assert run is not None and not run.scope.cancelled


def test_deleted_file_triggers_restart(coordinator: RestartCoordinator, source_file: Path) -> None:
    coordinator.start(seed=False)
    coordinator.notify(str(source_file))
    coordinator.flush()

    source_file.unlink()
    coordinator.notify(str(source_file))
    coordinator.flush()

    assert coordinator.restarts == 2


def test_notifications_are_handled_in_fifo_order(fake_supervisor: FakeSupervisor) -> None:
    seen: List[Optional[str]] = []
    tracker = MagicMock(spec=PathStateTracker)
    tracker.should_restart.side_effect = lambda path: seen.append(path) or False
    coordinator = RestartCoordinator(fake_supervisor, tracker=tracker)  # type: ignore[arg-type]

    for name in ("a.go", "b.go", "c.go", "d.go"):
        coordinator.notify(name)
    coordinator.start()
    coordinator.flush()
    coordinator.stop()

    # The seed is handled by start() ahead of anything already queued
    assert seen == [None, "a.go", "b.go", "c.go", "d.go"]


def test_seed_runs_first_when_queue_filled_before_start(fake_supervisor: FakeSupervisor) -> None:
    seen: List[Optional[str]] = []
    tracker = MagicMock(spec=PathStateTracker)
    tracker.should_restart.side_effect = lambda path: seen.append(path) or path is None
    coordinator = RestartCoordinator(
        fake_supervisor, tracker=tracker, queue_size=16, send_timeout=0.01  # type: ignore[arg-type]
    )
    for i in range(16):
        assert coordinator.notify(f"burst{i}.go")

    coordinator.start()
    coordinator.flush()
    coordinator.stop()

    assert seen[0] is None
    assert len(seen) == 17
    assert coordinator.restarts == 1
    assert coordinator.suppressed == 16
    assert coordinator.dropped == 0


def test_full_queue_drops_after_timeout(fake_supervisor: FakeSupervisor) -> None:
    coordinator = RestartCoordinator(fake_supervisor, queue_size=1, send_timeout=0.01)  # type: ignore[arg-type]

    assert coordinator.notify("a.go") is True
    assert coordinator.notify("b.go") is False

    stats = coordinator.get_statistics()
    assert stats["dropped"] == 1
    assert stats["notifications"] == 2
    assert stats["queued"] == 1


def test_full_queue_unblocks_when_worker_drains(fake_supervisor: FakeSupervisor) -> None:
    tracker = MagicMock(spec=PathStateTracker)
    tracker.should_restart.return_value = False
    coordinator = RestartCoordinator(
        fake_supervisor, tracker=tracker, queue_size=1, send_timeout=5.0  # type: ignore[arg-type]
    )
    coordinator.notify("a.go")

    threading.Timer(0.05, coordinator.start, kwargs={"seed": False}).start()

    assert coordinator.notify("b.go") is True
    coordinator.flush()
    coordinator.stop()
    assert coordinator.dropped == 0


def test_failed_cancel_does_not_block_next_run(
    fake_supervisor: FakeSupervisor, source_file: Path
) -> None:
    broken = MagicMock(spec=CancelScope)
    broken.cancel.side_effect = OSError("signal failed")
    fake_supervisor.new_scope = MagicMock(side_effect=[broken, CancelScope(grace_period=0.01)])  # type: ignore[method-assign]
    coordinator = RestartCoordinator(fake_supervisor)  # type: ignore[arg-type]

    coordinator.start()
    coordinator.notify(str(source_file))
    coordinator.flush()
    coordinator.stop()

    assert coordinator.restarts == 2
    broken.cancel.assert_called_once()


def test_worker_survives_unexpected_errors(
    fake_supervisor: FakeSupervisor, caplog: pytest.LogCaptureFixture
) -> None:
    tracker = MagicMock(spec=PathStateTracker)
    tracker.should_restart.side_effect = [RuntimeError("boom"), True]
    coordinator = RestartCoordinator(fake_supervisor, tracker=tracker)  # type: ignore[arg-type]

    coordinator.start(seed=False)
    coordinator.notify("a.go")
    coordinator.notify("b.go")
    coordinator.flush()

    assert coordinator.running
    assert coordinator.restarts == 1
    assert "Error handling change notification" in caplog.text
    coordinator.stop()


def test_stop_cancels_current_run_and_is_idempotent(
    coordinator: RestartCoordinator, wait_for: Callable[..., bool]
) -> None:
    coordinator.start()
    coordinator.flush()
    run = coordinator.current_run

    coordinator.stop()
    coordinator.stop()

    assert not coordinator.running
    assert run is not None and run.scope.cancelled
    assert wait_for(lambda: run.done)
    assert coordinator.notify("late.go") is False


def test_invalid_parameters_rejected(fake_supervisor: FakeSupervisor) -> None:
    with pytest.raises(ValueError, match="queue_size"):
        RestartCoordinator(fake_supervisor, queue_size=0)  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="send_timeout"):
        RestartCoordinator(fake_supervisor, send_timeout=-1)  # type: ignore[arg-type]


def test_run_handle_launch_and_join(fake_supervisor: FakeSupervisor) -> None:
    supervisor = fake_supervisor
    scope = CancelScope()
    handle = RunHandle.launch(supervisor, scope, run_id=7)  # type: ignore[arg-type]

    assert handle.run_id == 7
    assert handle.join(timeout=0.05) is False
    handle.cancel()
    assert handle.join(timeout=5.0) is True
    assert handle.done


def test_run_handle_logs_supervisor_crash(caplog: pytest.LogCaptureFixture) -> None:
    supervisor = MagicMock()
    supervisor.run.side_effect = RuntimeError("spawn exploded")
    handle = RunHandle.launch(supervisor, CancelScope(), run_id=1)

    assert handle.join(timeout=5.0)
    assert "Test run 1 failed" in caplog.text


def test_change_notification_defaults_to_seed() -> None:
    assert ChangeNotification().path is None
    assert ChangeNotification("a.go").path == "a.go"


@pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX-only")
def test_restart_after_cancel_with_real_processes(
    temp_dir: Path,
    source_file: Path,
    python_command: Callable[[str], List[str]],
    wait_for: Callable[..., bool],
) -> None:
    code = (
        "import os, sys, time\n"
        "while True:\n"
        "    sys.stdout.write(f'=== RUN   TestLoop pid={os.getpid()}\\n')\n"
        "    sys.stdout.flush()\n"
        "    time.sleep(0.01)\n"
    )
    out, err = MemorySink(), MemorySink()
    supervisor = ProcessSupervisor(temp_dir, out, err, command=python_command(code), grace_period=0.5)
    coordinator = RestartCoordinator(supervisor)

    def _lines_from(run: RunHandle) -> int:
        if run.scope.process is None:
            return 0
        return out.getvalue().count(f"pid={run.scope.process.pid}\n".encode())

    coordinator.start()
    try:
        first = coordinator.current_run
        assert first is not None
        assert wait_for(lambda: _lines_from(first) >= 3)

        assert coordinator.notify(str(source_file))
        coordinator.flush()
        second = coordinator.current_run
        assert second is not None and second is not first

        assert first.join(timeout=10.0)
        first_total = _lines_from(first)
        assert wait_for(lambda: out.getvalue().count(SEPARATOR) == 2)
        assert wait_for(lambda: _lines_from(second) >= 5)
        assert _lines_from(first) == first_total
        assert not second.done
    finally:
        coordinator.stop()
    assert second.join(timeout=10.0)
