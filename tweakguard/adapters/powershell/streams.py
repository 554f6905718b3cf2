"""
Output stream handling shared by both PowerShell hosts.

Raw lines are trimmed and dropped when they are noise: spinners,
CLIXML serialization wrappers, module-preparation chatter and winget's
size/progress bars. Surviving lines go to the combined output buffer
and the console sink, in arrival order, through one lock.
"""

from __future__ import annotations

import re
import threading

from tweakguard.core.observability.console import ConsoleStream

SPINNER_LINE_RE = re.compile(r"^[\s\\/\-|]+$")
PROGRESS_LINE_RE = re.compile(r"\b(100|[1-9]?\d(?:\.\d+)?)\s*%", re.IGNORECASE)


def is_noise(line: str) -> bool:
    """Whether a trimmed, non-empty line should be suppressed."""
    if SPINNER_LINE_RE.match(line):
        return True
    lowered = line.lower()
    if lowered.startswith("#< clixml"):
        return True
    if "preparing modules for first use." in lowered:
        return True
    if '<obj s="progress"' in lowered or lowered.startswith("<objs version=") or lowered == "</objs>":
        return True
    if any(size in lowered for size in ("kb /", "mb /", "gb /")) and ("%" in line or "Ôû" in line):
        return True
    return False


def normalize_line(line: str | None) -> str | None:
    """Trimmed line, or None when blank or noise."""
    if not line or not line.strip():
        return None
    trimmed = line.strip()
    if is_noise(trimmed):
        return None
    return trimmed


def is_progress_line(line: str) -> bool:
    return bool(line) and PROGRESS_LINE_RE.search(line) is not None


class OutputCollector:
    """Ordered combined-output buffer that mirrors lines to the console."""

    def __init__(self, console: ConsoleStream):
        self._console = console
        self._lock = threading.Lock()
        self._lines: list[str] = []

    def add(self, stream: str, raw: str) -> str | None:
        """Normalize and record one line; returns it, or None if dropped."""
        line = normalize_line(raw)
        if line is None:
            return None
        with self._lock:
            self._lines.append(line)
            self._console.publish(stream, line)
        return line

    def text(self) -> str:
        with self._lock:
            return "".join(f"{line}\n" for line in self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)
