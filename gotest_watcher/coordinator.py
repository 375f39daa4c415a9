"""Single-flight restart coordination.

Responsibility:
    Drain change notifications from a bounded queue on one dedicated worker
    thread. For every notification that reflects a real change, cancel the
    run in flight and launch a fresh one without waiting for it.

Design:
    - **Single owner**: The ``PathStateTracker`` and the current ``RunHandle``
      are only touched by the worker thread (and by ``start()`` before the
      worker exists), so neither needs a lock.
    - **Bounded blocking send**: ``notify`` blocks at most ``send_timeout``
      seconds on a full queue, then drops the notification with a
      rate-limited warning. Editor save bursts cannot grow memory without
      bound, and the watchdog thread can never be stalled indefinitely.
    - **Fire-and-forget runs**: Each run is a ``RunHandle`` wrapping a daemon
      thread and a ``CancelScope``. The scope is the only channel between the
      coordinator and the run.

Key Invariants:
    - Notifications are handled in FIFO order.
    - At most one ``RunHandle`` is current. Launching run N+1 always cancels
      run N first.
    - A failed cancel or spawn is never retried. The next change tries again.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from gotest_watcher.supervisor import CancelScope, ProcessSupervisor
from gotest_watcher.tracker import PathStateTracker

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ChangeNotification", "RestartCoordinator", "RunHandle"]

DEFAULT_QUEUE_SIZE = 16
DEFAULT_SEND_TIMEOUT = 1.0


@dataclass(frozen=True)
class ChangeNotification:
    """A unit of restart work. ``path`` is None for the startup seed."""

    path: Optional[str] = None


class RunHandle:
    """Handle on one launched verification run.

    Attributes:
        run_id (int): Sequential id of the run, starting at 1.
        scope (CancelScope): The run's cancellation token.
    """

    __slots__ = ("run_id", "scope", "_thread")

    def __init__(self, run_id: int, scope: CancelScope, thread: threading.Thread) -> None:
        self.run_id = run_id
        self.scope = scope
        self._thread = thread

    @classmethod
    def launch(cls, supervisor: ProcessSupervisor, scope: CancelScope, run_id: int) -> RunHandle:
        """Start ``supervisor.run(scope)`` on a new daemon thread and return its handle."""
        thread = threading.Thread(
            target=_run_guarded,
            args=(supervisor, scope, run_id),
            name=f"TestRun-{run_id}",
            daemon=True,
        )
        handle = cls(run_id, scope, thread)
        thread.start()
        return handle

    def cancel(self) -> None:
        self.scope.cancel()

    @property
    def done(self) -> bool:
        return not self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the run to finish. Return True if it did within ``timeout``."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def __repr__(self) -> str:
        return f"<RunHandle id={self.run_id} done={self.done} cancelled={self.scope.cancelled}>"


def _run_guarded(supervisor: ProcessSupervisor, scope: CancelScope, run_id: int) -> None:
    try:
        supervisor.run(scope)
    except Exception as e:
        logger.error(f"Test run {run_id} failed: {e}", exc_info=True)


class RestartCoordinator:
    """Restart the test run on every real source change.

    Attributes:
        supervisor (ProcessSupervisor): Executes each run.
        queue_size (int): Capacity of the notification queue.
        send_timeout (float): Maximum seconds ``notify`` blocks on a full queue.

    Example:
        >>> coordinator = RestartCoordinator(supervisor)
        >>> coordinator.start()          # seeds one initial run
        >>> coordinator.notify("/src/pkg/foo.go")
        >>> coordinator.stop()
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        tracker: Optional[PathStateTracker] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        if queue_size < 1:
            raise ValueError(f"queue_size must be at least 1, got {queue_size}")
        if send_timeout < 0:
            raise ValueError(f"send_timeout must be non-negative, got {send_timeout}")

        self.supervisor = supervisor
        self.queue_size = queue_size
        self.send_timeout = send_timeout
        self._tracker = tracker if tracker is not None else PathStateTracker()
        self._queue: queue.Queue[Optional[ChangeNotification]] = queue.Queue(maxsize=queue_size)
        self._worker: Optional[threading.Thread] = None
        self._current: Optional[RunHandle] = None
        self._stopping = False
        self._stats_lock = threading.Lock()
        self._last_dropped_log_time = 0.0

        # Metrics
        self.notifications_received = 0
        self.restarts = 0
        self.suppressed = 0
        self.dropped = 0

    @property
    def current_run(self) -> Optional[RunHandle]:
        """Return the current (or most recent) run handle."""
        return self._current

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self, seed: bool = True) -> None:
        """Start the worker thread.

        The seed run is launched here, before the worker starts, so it always
        comes before notifications that were queued while the watcher was
        already running. It never waits for queue space.

        Args:
            seed (bool): Launch one run without a path first, so the tests run
                once before any file changes. Defaults to True.

        Raises:
            RuntimeError: If the coordinator was already started.
        """
        if self._worker is not None:
            raise RuntimeError("RestartCoordinator already started")
        if seed:
            self._dispatch(ChangeNotification())
        self._worker = threading.Thread(
            target=self._worker_loop, name="RestartCoordinator", daemon=True
        )
        self._worker.start()
        logger.info(f"Restart coordinator started (queue size: {self.queue_size})")

    def notify(self, path: Optional[str]) -> bool:
        """Queue a change notification for ``path``.

        Blocks for at most ``send_timeout`` seconds if the queue is full.

        Args:
            path (Optional[str]): The changed path.

        Returns:
            bool: True if queued, False if dropped (queue full or stopping).
        """
        if self._stopping:
            return False
        with self._stats_lock:
            self.notifications_received += 1
        try:
            self._queue.put(ChangeNotification(path), timeout=self.send_timeout)
            return True
        except queue.Full:
            with self._stats_lock:
                self.dropped += 1
                dropped = self.dropped
            now = time.monotonic()
            if now - self._last_dropped_log_time > 5.0:
                logger.warning(
                    f"Restart queue full, dropping notification for {path}. "
                    f"Total dropped: {dropped}"
                )
                self._last_dropped_log_time = now
            return False

    def flush(self) -> None:
        """Block until every queued notification has been handled."""
        self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker and cancel the run in flight.

        Args:
            timeout (float): Seconds to wait for the worker to exit.
        """
        if self._stopping:
            return
        self._stopping = True

        worker = self._worker
        if worker is not None and worker.is_alive():
            try:
                self._queue.put(None, timeout=timeout)
            except queue.Full:
                logger.warning("Restart queue full during shutdown, worker may not exit cleanly")
            worker.join(timeout=timeout)
            if worker.is_alive():
                logger.warning("Restart coordinator did not terminate within timeout.")

        current = self._current
        if current is not None:
            current.cancel()
        logger.info("Restart coordinator stopped.")

    def _worker_loop(self) -> None:
        """Worker thread loop: handle notifications until the None sentinel."""
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    break
                self._dispatch(item)
            finally:
                self._queue.task_done()

    def _dispatch(self, notification: ChangeNotification) -> None:
        try:
            self._handle(notification)
        except Exception as e:
            logger.error(f"Error handling change notification {notification}: {e}", exc_info=True)

    def _handle(self, notification: ChangeNotification) -> None:
        if not self._tracker.should_restart(notification.path):
            with self._stats_lock:
                self.suppressed += 1
            return

        previous = self._current
        if previous is not None:
            try:
                previous.cancel()
            except Exception as e:
                logger.warning(f"Failed to cancel test run {previous.run_id}: {e}")

        with self._stats_lock:
            self.restarts += 1
            run_id = self.restarts

        if notification.path:
            logger.info(f"Change detected in {notification.path}, starting test run {run_id}")
        else:
            logger.info(f"Starting test run {run_id}")

        scope = self.supervisor.new_scope()
        self._current = RunHandle.launch(self.supervisor, scope, run_id)

    def get_statistics(self) -> Dict[str, Any]:
        """Return counters for notifications, restarts, suppressed and dropped events."""
        with self._stats_lock:
            return {
                "notifications": self.notifications_received,
                "restarts": self.restarts,
                "suppressed": self.suppressed,
                "dropped": self.dropped,
                "queued": self._queue.qsize(),
            }

    def __repr__(self) -> str:
        return f"<RestartCoordinator running={self.running} restarts={self.restarts}>"
