"""
State file persistence — atomic read/write for the undo-state document.

State is stored as JSON in data/state.json. Writes are atomic
(write to temp file, then rename) so a crash mid-write never leaves a
half-written document. The document is rewritten wholesale on every
save; per-operation entries are replaced, never merged.

A file that cannot be parsed is copied aside as
``state.json.corrupt.<UTC yyyyMMddHHmmss>`` and a fresh document is
returned.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from tweakguard.core.models.state import UndoStateDocument

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "data"
DEFAULT_STATE_FILE = "state.json"


def default_state_path(runtime_root: Path) -> Path:
    """Get the default state file path under a runtime root."""
    return runtime_root / DEFAULT_STATE_DIR / DEFAULT_STATE_FILE


def load_state(path: Path) -> UndoStateDocument:
    """Load the undo-state document.

    Args:
        path: Path to the state JSON file.

    Returns:
        UndoStateDocument. A missing or corrupt file yields a fresh one.
    """
    if not path.is_file():
        logger.info("No state file at %s — starting fresh", path)
        return UndoStateDocument()

    try:
        raw = path.read_text(encoding="utf-8")
        data = json.loads(raw)
        state = UndoStateDocument.model_validate(data)
        logger.debug("Loaded state from %s (updated_at=%s)", path, state.updated_at)
        return state
    except (OSError, ValueError, ValidationError) as e:
        backup = _quarantine(path)
        logger.warning(
            "Corrupt state file %s: %s — starting fresh (copy kept at %s)", path, e, backup,
        )
        return UndoStateDocument()


def save_state(state: UndoStateDocument, path: Path) -> None:
    """Save the undo-state document (atomic write).

    Args:
        state: The document to save.
        path: Target path for the state file.
    """
    state.touch()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = state.model_dump(mode="json")
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=".state_",
            suffix=".tmp",
        )
        os.close(fd)
        tmp = Path(tmp_path)
        try:
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)
            logger.debug("State saved to %s", path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
    except Exception as e:
        logger.error("Failed to save state to %s: %s", path, e)
        raise


def _quarantine(path: Path) -> Path | None:
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    target = path.with_name(f"{path.name}.corrupt.{stamp}")
    try:
        shutil.copy2(path, target)
        return target
    except OSError as e:
        logger.warning("Could not keep a copy of corrupt state file %s: %s", path, e)
        return None


class UndoStateStore:
    """Read-modify-write access to the undo-state document."""

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> UndoStateDocument:
        return load_state(self._path)

    def save(self, state: UndoStateDocument) -> None:
        save_state(state, self._path)

    def record(self, operation_id: str, captured: dict[str, str]) -> UndoStateDocument:
        """Persist captured "before" values for one operation."""
        state = self.load()
        state.record(operation_id, captured)
        self.save(state)
        return state
