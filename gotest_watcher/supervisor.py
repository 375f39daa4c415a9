"""Execution of a single ``go test`` run bound to a cancel scope.

Responsibility:
    Spawn the fixed verification command, pump its stdout and stderr
    through fresh ``LineClassifier`` instances to the terminal, and tear the
    process down when the run's ``CancelScope`` is cancelled.

Design:
    - **Process groups**: On POSIX the command runs in its own session.
      ``go test`` forks compiled test binaries, and signalling the whole group
      ensures none of them keep the output pipes open after cancellation.
    - **Non-blocking cancel**: ``CancelScope.cancel`` sends SIGTERM and arms
      a ``threading.Timer`` for SIGKILL. It never waits for the process, so the
      restart coordinator is never blocked by a stale run.
    - **Guarded output**: Run output goes through ``CancelScope.guard``. Once
      ``cancel()`` returns, that run cannot start another terminal write.

Key Invariants:
    - ``cancel()`` is idempotent and safe before spawn, during the run, and
      after exit.
    - The exit code is logged, never acted on. Pass or fail is conveyed by
      the colored output alone.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import BinaryIO, Optional, Sequence, Tuple, Union

from gotest_watcher.colorizer import Color, ColorSink, LineClassifier, Sink

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["GO_TEST_COMMAND", "CancelScope", "ProcessSupervisor"]

GO_TEST_COMMAND: Tuple[str, ...] = ("go", "test", "-v", "./...")
SEPARATOR = b"-" * 80 + b"\n"
READ_CHUNK_SIZE = 4096
DEFAULT_GRACE_PERIOD = 2.0

_POSIX = os.name == "posix"


def _signal_process(process: subprocess.Popen, sig: int) -> None:
    """Send ``sig`` to the process group of ``process`` (or the process itself off POSIX).

    On POSIX the group is signalled even when the leader has already exited.
    Test binaries forked by ``go test`` stay in the group and may still hold
    the output pipes. The group id cannot be reused while any member is alive.
    """
    try:
        if _POSIX:
            os.killpg(process.pid, sig)
        elif process.poll() is not None:
            return
        elif sig == getattr(signal, "SIGKILL", None):
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        # Every member of the group has exited
        pass
    except OSError as e:
        logger.debug(f"Failed to signal process {process.pid}: {e}")


class _GuardedSink:
    """Sink that drops writes once its scope has been cancelled.

    The target is written outside any scope lock, so a stalled terminal never
    blocks ``cancel()``. A write already in progress when the scope is
    cancelled still completes.
    """

    __slots__ = ("_scope", "_target")

    def __init__(self, scope: CancelScope, target: Sink) -> None:
        self._scope = scope
        self._target = target

    def write(self, data: bytes) -> None:
        if self._scope.cancelled:
            return
        self._target.write(data)


class CancelScope:
    """Cancellation token for one verification run.

    Attributes:
        grace_period (float): Seconds between SIGTERM and SIGKILL.
        process (Optional[subprocess.Popen]): The bound process, if spawned.
    """

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        self.grace_period = grace_period
        self.process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._kill_timer: Optional[threading.Timer] = None
        self._released = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or until ``timeout``. Return whether cancelled."""
        return self._cancelled.wait(timeout)

    def guard(self, sink: Sink) -> Sink:
        """Wrap ``sink`` so that no write to it begins after ``cancel()`` has returned."""
        return _GuardedSink(self, sink)

    def bind(self, process: subprocess.Popen) -> bool:
        """Attach the spawned process to this scope.

        Args:
            process (subprocess.Popen): The freshly spawned command.

        Returns:
            bool: False if the scope was already cancelled. In that case the
            process has been signalled to terminate.
        """
        with self._lock:
            self.process = process
            cancelled = self._cancelled.is_set()
        if cancelled:
            self._terminate(process)
            return False
        return True

    def cancel(self) -> None:
        """Cancel the run. Safe to call any number of times, at any point."""
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            process = None if self._released else self.process
        if process is not None:
            self._terminate(process)

    def release(self) -> None:
        """Mark the bound process as reaped, so a later ``cancel()`` signals nothing."""
        with self._lock:
            self._released = True

    def _terminate(self, process: subprocess.Popen) -> None:
        if not _POSIX and process.poll() is not None:
            return
        logger.debug(f"Terminating test run (PID: {process.pid})")
        _signal_process(process, signal.SIGTERM)
        kill_signal = getattr(signal, "SIGKILL", signal.SIGTERM)
        self._kill_timer = threading.Timer(
            self.grace_period, _signal_process, args=(process, kill_signal)
        )
        self._kill_timer.daemon = True
        self._kill_timer.start()

    def __repr__(self) -> str:
        pid = self.process.pid if self.process is not None else None
        return f"<CancelScope cancelled={self.cancelled} pid={pid}>"


def _pump(stream: BinaryIO, classifier: LineClassifier) -> None:
    """Copy ``stream`` into ``classifier`` until EOF, then close both."""
    try:
        while True:
            chunk = stream.read1(READ_CHUNK_SIZE)  # type: ignore[attr-defined]
            if not chunk:
                break
            classifier.feed(chunk)
    except (OSError, ValueError) as e:
        logger.debug(f"Output stream closed early: {e}")
    finally:
        try:
            stream.close()
        except OSError as e:
            logger.debug(f"Error closing output stream: {e}")
        classifier.close()


class ProcessSupervisor:
    """Run the verification command and stream its colored output.

    Attributes:
        cwd (Optional[Path]): Working directory of the command.
        stdout (Sink): Terminal sink for standard output.
        stderr (Sink): Terminal sink for standard error.
        command (Tuple[str, ...]): The command line. Always ``GO_TEST_COMMAND``
            in production.
        grace_period (float): Seconds between SIGTERM and SIGKILL on cancel.
    """

    def __init__(
        self,
        cwd: Optional[Union[str, Path]],
        stdout: Sink,
        stderr: Sink,
        command: Sequence[str] = GO_TEST_COMMAND,
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        self.cwd = Path(cwd) if cwd is not None else None
        self.stdout = stdout
        self.stderr = stderr
        self.command = tuple(command)
        self.grace_period = grace_period

    def new_scope(self) -> CancelScope:
        return CancelScope(grace_period=self.grace_period)

    def run(self, scope: CancelScope) -> Optional[int]:
        """Execute the command once, bound to ``scope``.

        Blocks until the process exits and both output streams reach EOF.
        Cancelling ``scope`` from another thread terminates the process,
        which unblocks the pumps.

        Args:
            scope (CancelScope): The cancellation token of this run.

        Returns:
            Optional[int]: The exit code, or None if the process was never
            started (already cancelled, or spawn failure).
        """
        if scope.cancelled:
            logger.debug("Run cancelled before start, skipping spawn")
            return None

        out = scope.guard(self.stdout)
        err = scope.guard(self.stderr)
        command_line = " ".join(self.command)

        out.write(SEPARATOR)
        try:
            process = subprocess.Popen(
                list(self.command),
                cwd=str(self.cwd) if self.cwd is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except OSError as e:
            logger.error(f"Failed to start '{command_line}': {e}")
            ColorSink(err, Color.RED).write(
                f"gotest-watcher: cannot start {command_line}: {e}\n".encode("utf-8", "replace")
            )
            return None

        logger.debug(f"Started '{command_line}' (PID: {process.pid})")
        scope.bind(process)

        # stderr carries build errors with no recognizable prefix, so it starts red
        pumps = [
            threading.Thread(
                target=_pump,
                args=(process.stdout, LineClassifier(out)),
                name=f"StdoutPump-{process.pid}",
                daemon=True,
            ),
            threading.Thread(
                target=_pump,
                args=(process.stderr, LineClassifier(err, initial=Color.RED)),
                name=f"StderrPump-{process.pid}",
                daemon=True,
            ),
        ]
        for pump in pumps:
            pump.start()
        for pump in pumps:
            pump.join()

        returncode = process.wait()
        scope.release()
        if scope.cancelled:
            logger.debug(f"Cancelled run exited (PID: {process.pid}, code: {returncode})")
        else:
            logger.debug(f"Run finished (PID: {process.pid}, code: {returncode})")
        return returncode

    def __repr__(self) -> str:
        return f"<ProcessSupervisor command={' '.join(self.command)!r} cwd={self.cwd}>"
