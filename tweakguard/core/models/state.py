"""
Persistent state models — settings and the undo-state document.

The undo-state document is serialized to ``data/state.json`` and
rewritten wholesale on every save. Settings are read from
``data/settings.yml``; the engine only ever sees a read-only snapshot.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class AppSettings(BaseModel):
    """Feature flags consumed live by the validator and orchestrator."""

    model_config = ConfigDict(frozen=True)

    enforce_script_safety_guards: bool = True
    enable_destructive_operations: bool = False
    create_restore_point_before_dangerous_operations: bool = True


class UndoStateDocument(BaseModel):
    """Captured "before" values, keyed by operation id then capture key."""

    updated_at: str = Field(default_factory=_now_iso)
    operation_state: dict[str, dict[str, str]] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the timestamp to now."""
        self.updated_at = _now_iso()

    def record(self, operation_id: str, captured: dict[str, str]) -> None:
        """Replace the captured state for one operation.

        Other operations' entries are left untouched.
        """
        self.operation_state[operation_id] = dict(captured)
        self.touch()

    def get(self, operation_id: str) -> dict[str, str]:
        """Captured state for an operation (case-insensitive id match)."""
        if operation_id in self.operation_state:
            return self.operation_state[operation_id]
        lowered = operation_id.lower()
        for key, value in self.operation_state.items():
            if key.lower() == lowered:
                return value
        return {}
