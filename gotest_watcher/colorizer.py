"""Line classification and terminal coloring for ``go test`` output.

Responsibility:
    Turn a raw byte stream coming out of a test run into colored,
    line-delimited terminal output. Every complete line is classified by its
    prefix and wrapped in an ANSI color marker and a reset marker.

Design:
    - **Composable sinks**: Every stage implements ``write(bytes)``, so the
      classifier, the fixed-color wrapper and the terminal writer can be
      stacked in any order, and each can be tested against a ``MemorySink``.
    - **Ordered table**: ``CLASSIFICATION_TABLE`` is an explicit tuple.
      Lookup is first-match-wins, so precedence is part of the contract.
    - **Sticky color**: A line matching no prefix inherits the color of the
      previous line, so a stack trace under a ``--- FAIL`` stays red.

Key Invariants:
    - Bytes are never dropped. A trailing partial line stays buffered until
      the next feed or until ``close()``.
    - The emitted (color, line) sequence is the same however the input is
      chunked.
    - Each emitted line is handed to the target as a single ``write`` call.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import BinaryIO, List, Protocol, Sequence, Tuple

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "CLASSIFICATION_TABLE",
    "Color",
    "ColorSink",
    "LineClassifier",
    "MemorySink",
    "Sink",
    "StreamSink",
    "colorize",
]

ESCAPE = b"\x1b["
RESET = b"\x1b[0m"


class Color(Enum):
    """Color classes with their SGR codes."""

    WHITE = "0"
    RED = "31"
    GREEN = "32"
    YELLOW = "33"
    BLUE = "36"

    @property
    def marker(self) -> bytes:
        """Return the escape sequence that switches the terminal to this color."""
        return ESCAPE + self.value.encode("ascii") + b"m"


# First match wins. Broader prefixes must come after the ones they would shadow.
CLASSIFICATION_TABLE: Tuple[Tuple[bytes, Color], ...] = (
    (b"--- FAIL", Color.RED),
    (b"--- PASS", Color.GREEN),
    (b"--- SKIP", Color.YELLOW),
    (b"=== RUN", Color.WHITE),
    (b"FAIL", Color.RED),
    (b"PASS", Color.GREEN),
    (b"ok", Color.GREEN),
    (b"?", Color.BLUE),
    (b"panic:", Color.RED),
)


def colorize(color: Color, data: bytes) -> bytes:
    """Wrap ``data`` in the start marker for ``color`` and a reset marker.

    Args:
        color (Color): The color class to apply.
        data (bytes): Raw bytes to wrap. They are not modified.

    Returns:
        bytes: ``ESC[<code>m`` + data + ``ESC[0m``.

    Example:
        >>> colorize(Color.RED, b"FAIL\\n")
        b'\\x1b[31mFAIL\\n\\x1b[0m'
    """
    return color.marker + data + RESET


class Sink(Protocol):
    """Anything that accepts bytes."""

    def write(self, data: bytes) -> None:
        ...


class StreamSink:
    """Write to a binary stream, typically ``sys.stdout.buffer``.

    Writes are serialized and flushed immediately so output shows up while
    the test run is still going.
    """

    __slots__ = ("stream", "_lock")

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self._lock = threading.Lock()

    def write(self, data: bytes) -> None:
        with self._lock:
            self.stream.write(data)
            self.stream.flush()

    def __repr__(self) -> str:
        return f"<StreamSink stream={self.stream!r}>"


class MemorySink:
    """Collect written bytes in memory."""

    def __init__(self) -> None:
        self.chunks: List[bytes] = []
        self._lock = threading.Lock()

    def write(self, data: bytes) -> None:
        with self._lock:
            self.chunks.append(bytes(data))

    def getvalue(self) -> bytes:
        with self._lock:
            return b"".join(self.chunks)

    def __repr__(self) -> str:
        return f"<MemorySink chunks={len(self.chunks)}>"


class ColorSink:
    """Wrap every write in a fixed color.

    Attributes:
        target (Sink): The downstream sink.
        color (Color): The color applied to every write.
    """

    __slots__ = ("target", "color")

    def __init__(self, target: Sink, color: Color) -> None:
        self.target = target
        self.color = color

    def write(self, data: bytes) -> None:
        if not data:
            return
        self.target.write(colorize(self.color, data))

    def __repr__(self) -> str:
        return f"<ColorSink color={self.color.name}>"


class LineClassifier:
    """Stateful transformer from a raw byte stream to colored lines.

    One instance serves one output stream of one run. Incoming bytes are
    buffered. After every feed, each complete line (terminated by ``\\n``) is
    classified against ``table`` and written downstream as
    ``marker + line + reset``.

    Concurrency:
        ``feed`` and ``close`` take an instance lock, so one instance never
        interleaves its own escape sequences. Two instances writing to the
        same terminal may interleave whole lines with each other.

    Attributes:
        target (Sink): Where colored lines are written.
        table (Tuple[Tuple[bytes, Color], ...]): Ordered prefix table, first
            match wins.
        current_color (Color): Color of the last classified line. It starts
            at ``initial``.
    """

    def __init__(
        self,
        target: Sink,
        table: Sequence[Tuple[bytes, Color]] = CLASSIFICATION_TABLE,
        initial: Color = Color.WHITE,
    ) -> None:
        """Initialize the classifier.

        Args:
            target (Sink): Downstream sink for colored output.
            table (Sequence[Tuple[bytes, Color]]): Ordered (prefix, color)
                pairs. Defaults to ``CLASSIFICATION_TABLE``.
            initial (Color): Color used for lines before any prefix has
                matched. Defaults to ``Color.WHITE``.
        """
        self.target = target
        self.table = tuple(table)
        self.current_color = initial
        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def pending(self) -> bytes:
        """Return the buffered bytes that do not form a complete line yet."""
        with self._lock:
            return bytes(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    def classify(self, line: bytes) -> Color:
        """Return the color for ``line`` and update the sticky state.

        Args:
            line (bytes): A single line, with or without its newline.

        Returns:
            Color: The color of the first matching prefix, or the previous
            color if nothing matches.
        """
        for prefix, color in self.table:
            if line.startswith(prefix):
                self.current_color = color
                break
        return self.current_color

    def feed(self, data: bytes) -> None:
        """Buffer ``data`` and emit every complete line it finishes.

        Args:
            data (bytes): The next chunk of the stream. It may be empty, may
                hold several lines, and may stop in the middle of a line.
        """
        if not data:
            return
        with self._lock:
            if self._closed:
                logger.debug(f"Ignoring {len(data)} bytes fed to a closed classifier")
                return
            self._buffer.extend(data)
            start = 0
            while True:
                end = self._buffer.find(b"\n", start)
                if end < 0:
                    break
                self._emit(bytes(self._buffer[start:end + 1]))
                start = end + 1
            if start:
                del self._buffer[:start]

    write = feed

    def close(self) -> None:
        """Flush the remaining partial line, unterminated, and stop accepting input."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._buffer:
                remainder = bytes(self._buffer)
                self._buffer.clear()
                self._emit(remainder)

    def _emit(self, line: bytes) -> None:
        color = self.classify(line)
        self.target.write(colorize(color, line))

    def __repr__(self) -> str:
        return (
            f"<LineClassifier color={self.current_color.name} "
            f"pending={len(self._buffer)} closed={self._closed}>"
        )

