"""Rolling output buffer for PTY sessions and dev server processes."""

from __future__ import annotations

import re
import threading
from collections import deque

_ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")


def strip_ansi(text: str) -> str:
    """Strip ANSI CSI and OSC escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_output(text: str) -> str:
    """Drop control characters other than tab and newline."""
    return "".join(
        ch for ch in text if ch in ("\t", "\n") or (ord(ch) >= 32 and not 0x7F <= ord(ch) < 0xA0)
    )


class RollingBuffer:
    """Thread-safe rolling buffer of cleaned output lines.

    Process output arrives in arbitrary chunks, not lines. A chunk that
    does not end in a newline leaves a pending partial line which is
    completed by the next chunk, so ``read_tail`` never returns a line
    split in two. Text is ANSI-stripped and ``\\r\\n`` normalised on the way
    in; keep the raw stream elsewhere if a terminal needs to render it.
    """

    def __init__(self, max_lines: int = 10_000) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._partial: str = ""
        self._total_lines: int = 0
        self._lock = threading.Lock()

    def append_text(self, text: str) -> None:
        """Append a chunk of output, splitting it into lines."""
        cleaned = sanitize_output(strip_ansi(text.replace("\r\n", "\n").replace("\r", "\n")))
        if not cleaned:
            return
        with self._lock:
            pieces = (self._partial + cleaned).split("\n")
            self._partial = pieces.pop()
            for line in pieces:
                self._lines.append(line)
                self._total_lines += 1

    def flush(self) -> None:
        """Promote a pending partial line to a full line."""
        with self._lock:
            if self._partial:
                self._lines.append(self._partial)
                self._total_lines += 1
                self._partial = ""

    def read_tail(self, n: int = 100) -> list[str]:
        """Read the last N lines, including a pending partial line."""
        with self._lock:
            lines = list(self._lines)
            if self._partial:
                lines.append(self._partial)
        return lines[-n:] if len(lines) > n else lines

    def read_all(self) -> str:
        """Read all buffered content as a single string."""
        return "\n".join(self.read_tail(len(self._lines) + 1))

    def search(self, pattern: str, limit: int = 50) -> list[tuple[int, str]]:
        """Search for lines matching a regex pattern.

        Returns list of (line_number, line_text) tuples.
        """
        try:
            compiled = re.compile(pattern)
        except re.error:
            return []

        results = []
        with self._lock:
            for i, line in enumerate(self._lines):
                if compiled.search(line):
                    results.append((i, line))
                    if len(results) >= limit:
                        break
        return results

    @property
    def line_count(self) -> int:
        """Current number of complete lines in the buffer."""
        with self._lock:
            return len(self._lines)

    @property
    def total_lines(self) -> int:
        """Total number of complete lines ever added."""
        with self._lock:
            return self._total_lines

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()
            self._partial = ""
            self._total_lines = 0
