"""
Script audit ledger — append-only record of every script request.

Each execution request (including dry runs and blocked scripts) writes
one line to an NDJSON file: who asked, which step, the SHA-256 of the
exact script body, and whether the validator let it through.

Lines are only ever appended.  Readers stream the file and skip lines
that fail to parse, so a torn write never hides the rest of the history.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from tweakguard.core.models.execution import ExecutionRequest

logger = logging.getLogger(__name__)

AUDIT_DIR = "logs"
AUDIT_FILE = "script-audit.ndjson"


class ScriptAuditEntry(BaseModel):
    """One script request as the validator saw it."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""
    step_name: str = ""
    script_hash: str = ""          # uppercase hex SHA-256
    dry_run: bool = False
    process_mode: bool = False
    allowed: bool = True
    block_reason: str = ""

    @classmethod
    def for_request(
        cls,
        request: ExecutionRequest,
        script_hash: str,
        *,
        allowed: bool,
        block_reason: str = "",
    ) -> ScriptAuditEntry:
        return cls(
            operation_id=request.operation_id,
            step_name=request.step_name,
            script_hash=script_hash,
            dry_run=request.dry_run,
            process_mode=request.prefer_process_mode,
            allowed=allowed,
            block_reason=block_reason,
        )


class ScriptAuditWriter:
    """Appends audit entries to ``<root>/logs/script-audit.ndjson``.

    Either an explicit ``path`` or a ``runtime_root`` is required.
    Writes from concurrent steps are serialized by an instance lock.
    """

    def __init__(self, path: Path | None = None, runtime_root: Path | None = None):
        if path is None:
            if runtime_root is None:
                raise ValueError("ScriptAuditWriter needs a path or a runtime root")
            path = runtime_root / AUDIT_DIR / AUDIT_FILE
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: ScriptAuditEntry) -> None:
        """Append one line. An unwritable ledger is logged, never raised."""
        line = entry.model_dump_json() + "\n"
        try:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            logger.error("Script audit write failed for %s/%s: %s", entry.operation_id, entry.step_name, e)
            return
        logger.debug("ScriptAudit %s/%s allowed=%s", entry.operation_id, entry.step_name, entry.allowed)

    # ── Reading ─────────────────────────────────────────────────

    def iter_entries(self) -> Iterator[ScriptAuditEntry]:
        """Yield parsed entries oldest first, skipping corrupt lines."""
        try:
            f = self._path.open("r", encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error("Cannot open script audit ledger %s: %s", self._path, e)
            return

        with f:
            for line_num, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                try:
                    yield ScriptAuditEntry.model_validate(json.loads(raw))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("%s:%d: skipping corrupt audit line (%s)", self._path.name, line_num, e)

    def read_all(self) -> list[ScriptAuditEntry]:
        return list(self.iter_entries())

    def read_recent(self, n: int = 20) -> list[ScriptAuditEntry]:
        """The newest ``n`` entries, still oldest first."""
        if n <= 0:
            return []
        return list(deque(self.iter_entries(), maxlen=n))

    def entry_count(self) -> int:
        """Number of readable entries."""
        return sum(1 for _ in self.iter_entries())

    def blocked_count(self) -> int:
        return sum(1 for e in self.iter_entries() if not e.allowed)
