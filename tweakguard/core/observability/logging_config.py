"""
Logging configuration — process-wide setup done once by main.py.

Modules log through ``logger = logging.getLogger(__name__)``; the console
sink forwards engine events into the same tree under
``tweakguard.core.observability.console``.

Level precedence:
    --debug / --verbose / --quiet  >  TWG_LOG_LEVEL  >  WARNING

A log file is written when TWG_LOG_FILE is set.  The value ``auto`` puts
it at ``<root>/logs/tweakguard.log``.  The file rotates, so unattended
runs on the same machine keep a bounded history.

Every handler carries :class:`EncodedPayloadFilter`: base64 script
payloads passed with ``-EncodedCommand`` never reach a log line.
"""

from __future__ import annotations

import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# ── Formats ─────────────────────────────────────────────────────

_CONSOLE_FORMATS = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
}
_FMT_FILE = "%(asctime)s %(levelname)-5s %(process)d %(threadName)s %(name)s — %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

AUTO_LOG_FILE = "auto"
LOG_FILE_NAME = "tweakguard.log"
LOG_FILE_MAX_BYTES = 1_000_000
LOG_FILE_BACKUPS = 3

_NOISY_LOGGERS = ("asyncio",)

_ENCODED_PAYLOAD = re.compile(r"(?i)(-(?:EncodedCommand|enc|ec)\s+)[A-Za-z0-9+/=]{16,}")


class EncodedPayloadFilter(logging.Filter):
    """Replace ``-EncodedCommand <base64>`` arguments with a placeholder."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _ENCODED_PAYLOAD.sub(r"\1<redacted>", message)
        if redacted != message:
            record.msg, record.args = redacted, None
        return True


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> Path | None:
    """Configure the root logger for the whole process.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path of a rotating log file, or ``auto`` for the
            runtime logs directory.
        log_file_level: Level for the file; defaults to ``level``.
        quiet_third_party: Hold noisy library loggers at WARNING
            unless running at DEBUG.

    Returns:
        The resolved log file path, or None when only stderr is used.
    """
    numeric_level = _parse_level(level)
    redact = EncodedPayloadFilter()

    fmt, datefmt = _console_format(numeric_level)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    console.addFilter(redact)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)

    effective_level = numeric_level
    path = _resolve_log_file(log_file)
    if path is not None:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)

        path.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8",
        )
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        fh.addFilter(redact)
        root.addHandler(fh)

    root.setLevel(effective_level)

    if quiet_third_party and numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    # Console events are forwarded into logging; a broken handler must not fail a run
    logging.raiseExceptions = False
    return path


def _console_format(numeric_level: int) -> tuple[str, str | None]:
    for threshold in sorted(_CONSOLE_FORMATS):
        if numeric_level <= threshold:
            return _CONSOLE_FORMATS[threshold]
    return "%(message)s", None


def _resolve_log_file(log_file: str | None) -> Path | None:
    if not log_file or not log_file.strip():
        return None
    if log_file.strip().lower() == AUTO_LOG_FILE:
        from tweakguard.core.context import logs_dir

        return logs_dir() / LOG_FILE_NAME
    return Path(log_file).expanduser()


def _parse_level(level: str | None) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
