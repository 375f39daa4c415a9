"""
File system watcher implementation using watchdog.

Responsibility:
    This module adapts watchdog's recursive change notifications into restart
    notifications. It filters out events that cannot affect the test outcome
    and hands the remaining paths to the ``RestartCoordinator``. It does no
    restart logic of its own.

Design:
    - **Event-Driven**: Uses ``watchdog`` to react to file system events
      (modified, created, moved, deleted) instead of polling.
    - **Cheap filtering**: The handler runs on the observer thread, so it only
      checks the event type and the file extension. Duplicate suppression
      (including attribute-only changes, which watchdog reports as
      modifications) happens later in the coordinator's ``PathStateTracker``.
      A chmod on a ``.go`` file the tracker has not recorded yet therefore
      still causes one restart.

Key Invariants:
    - The watcher never modifies the watched tree (read-only).
    - Failing to start the observer is fatal and raised to the caller.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from gotest_watcher.coordinator import RestartCoordinator

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["SOURCE_EXTENSION", "SourceEventHandler", "SourceWatcher"]

SOURCE_EXTENSION = ".go"
RELEVANT_EVENT_TYPES = frozenset(
    {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}
)


class SourceEventHandler(FileSystemEventHandler):
    """Forward source file changes to the restart coordinator.

    Attributes:
        coordinator (RestartCoordinator): Receives the changed paths.
        extension (str): Only paths ending in this suffix are forwarded.
        events_detected (int): Number of events received from watchdog.
        events_forwarded (int): Number of events passed to the coordinator.
    """

    def __init__(
        self,
        coordinator: RestartCoordinator,
        extension: str = SOURCE_EXTENSION,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.coordinator = coordinator
        self.extension = extension
        self.logger = logger or logging.getLogger(__name__)
        self.events_detected: int = 0
        self.events_forwarded: int = 0

    def _event_path(self, event: FileSystemEvent) -> Optional[str]:
        """Return the source-file path affected by ``event``, or None if irrelevant.

        For moves the destination wins (atomic saves rename a temp file onto
        the source file). A source file moved away is still a change.
        """
        candidates = [event.src_path]
        if isinstance(event, FileMovedEvent):
            candidates.insert(0, event.dest_path)
        for candidate in candidates:
            path = os.fsdecode(candidate)
            if path.endswith(self.extension):
                return path
        return None

    def _process_event(self, event: FileSystemEvent) -> None:
        """Filter ``event`` and forward its path.

        Args:
            event (FileSystemEvent): The raw watchdog event.

        Returns:
            None
        """
        self.events_detected += 1
        if event.is_directory:
            return
        if event.event_type not in RELEVANT_EVENT_TYPES:
            return

        path = self._event_path(event)
        if path is None:
            return

        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"Processing event: {event.event_type} on {path}")
        self.events_forwarded += 1
        self.coordinator.notify(path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def __repr__(self) -> str:
        return f"<SourceEventHandler extension={self.extension}>"


class SourceWatcher:
    """Own the watchdog observer for a source tree.

    Attributes:
        path (Path): The absolute directory being watched, recursively.
        handler (SourceEventHandler): The event handler instance.

    Example:
        >>> watcher = SourceWatcher(Path("."), coordinator)
        >>> watcher.start()
        >>> # ...
        >>> watcher.stop()
    """

    def __init__(
        self,
        path: Union[str, Path],
        coordinator: RestartCoordinator,
        extension: str = SOURCE_EXTENSION,
    ) -> None:
        self.path = Path(path).absolute()
        self.handler = SourceEventHandler(coordinator, extension=extension, logger=logger)
        self._observer: Optional[Observer] = None

    @property
    def is_alive(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """Start watching the tree recursively.

        Returns:
            None

        Raises:
            FileNotFoundError: If the directory does not exist.
            RuntimeError: If the observer cannot attach to the tree (for
                example when inotify watch limits are exhausted).
        """
        logger.info(f"Starting watcher on path: {self.path}")
        if not self.path.is_dir():
            raise FileNotFoundError(f"Watch directory not found: {self.path}")

        observer = Observer()
        try:
            observer.schedule(self.handler, str(self.path), recursive=True)
            observer.start()
        except OSError as e:
            raise RuntimeError(
                f"Failed to start observer on {self.path}: {e} (Check inotify limits?)"
            ) from e
        self._observer = observer
        logger.info(f"Observer started ({type(observer).__name__})")

    def stop(self) -> None:
        """Stop the observer thread."""
        observer = self._observer
        self._observer = None
        if observer is None:
            return
        try:
            if observer.is_alive():
                observer.stop()
                observer.join(timeout=5.0)
                if observer.is_alive():
                    logger.warning("Observer thread did not terminate within timeout.")
        except Exception as e:
            logger.error(f"Error stopping observer: {e}")
        logger.info("Watcher stopped.")

    def __repr__(self) -> str:
        return f"<SourceWatcher path={self.path} alive={self.is_alive}>"
