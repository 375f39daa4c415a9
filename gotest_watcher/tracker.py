"""Duplicate-event suppression for watched source files.

Many change-detection backends fire several notifications for a single
save (write, close, attribute update, atomic rename). The tracker remembers
the last (size, mtime) that triggered a restart for each path and rejects
notifications that report exactly the same metadata again.

The tracker has no lock. It is owned by the restart coordinator's worker
thread and must only be called from there.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["PathInfo", "PathStateTracker"]


@dataclass(frozen=True)
class PathInfo:
    """Last known metadata of a watched path.

    Attributes:
        size (int): File size in bytes.
        modified_at (int): Modification time in nanoseconds where the
            platform provides it, otherwise the float ``st_mtime``.
    """

    size: int
    modified_at: Any

    @classmethod
    def from_stat(cls, file_stat: os.stat_result) -> PathInfo:
        return cls(
            size=file_stat.st_size,
            modified_at=getattr(file_stat, "st_mtime_ns", file_stat.st_mtime),
        )


class PathStateTracker:
    """Decide whether a change notification reflects a real content change.

    Attributes:
        stat (Callable[[str], os.stat_result]): Function used to read
            metadata. Defaults to ``os.stat``.
    """

    def __init__(self, stat: Callable[[str], os.stat_result] = os.stat) -> None:
        self.stat = stat
        self._infos: Dict[str, PathInfo] = {}

    def should_restart(self, path: Optional[str]) -> bool:
        """Return True unless ``path`` still has the metadata seen last time.

        Rules, in order:
            1. No path (the startup seed): restart.
            2. Metadata unreadable (deleted, permission denied): forget the
               path and restart.
            3. Metadata identical to the stored entry: skip.
            4. Otherwise store the new metadata and restart.

        The stored entry is kept after a skip, so any number of repeated
        notifications for an unchanged file are all suppressed.

        Args:
            path (Optional[str]): The path from the change notification.

        Returns:
            bool: Whether a new test run should be started.
        """
        if not path:
            return True

        try:
            info = PathInfo.from_stat(self.stat(path))
        except OSError as e:
            logger.debug(f"Stat failed for {path}, treating as changed: {e}")
            self._infos.pop(path, None)
            return True

        if self._infos.get(path) == info:
            logger.debug(f"No content change for {path} (size={info.size}), skipping")
            return False

        self._infos[path] = info
        return True

    def forget(self, path: str) -> None:
        self._infos.pop(path, None)

    def __contains__(self, path: object) -> bool:
        return path in self._infos

    def __len__(self) -> int:
        return len(self._infos)

    def __repr__(self) -> str:
        return f"<PathStateTracker paths={len(self._infos)}>"
