"""
Tests for persistence — undo-state file and script audit ledger.
"""

import json
from pathlib import Path

import pytest

from tweakguard.core.models.execution import ExecutionRequest
from tweakguard.core.models.state import UndoStateDocument
from tweakguard.core.persistence.audit import ScriptAuditEntry, ScriptAuditWriter
from tweakguard.core.persistence.state_file import (
    UndoStateStore,
    default_state_path,
    load_state,
    save_state,
)


class TestStateFile:
    """Tests for undo-state persistence."""

    def test_save_and_load(self, tmp_path: Path):
        path = default_state_path(tmp_path)
        state = UndoStateDocument()
        state.record("tweak.a", {"HKCU:\\Software\\Test": '{"Value":1}'})

        save_state(state, path)
        assert path == tmp_path / "data" / "state.json"
        assert path.is_file()

        loaded = load_state(path)
        assert loaded.get("tweak.a") == {"HKCU:\\Software\\Test": '{"Value":1}'}

    def test_missing_file_is_fresh(self, tmp_path: Path):
        state = load_state(tmp_path / "nope.json")
        assert state.operation_state == {}

    def test_corrupt_file_quarantined(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("{broken", encoding="utf-8")

        state = load_state(path)
        assert state.operation_state == {}
        copies = list(tmp_path.glob("state.json.corrupt.*"))
        assert len(copies) == 1
        assert copies[0].read_text(encoding="utf-8") == "{broken"

    def test_no_temp_files_left(self, tmp_path: Path):
        path = tmp_path / "state.json"
        save_state(UndoStateDocument(), path)
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_file_is_readable_json(self, tmp_path: Path):
        path = tmp_path / "state.json"
        save_state(UndoStateDocument(), path)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert set(data) == {"updated_at", "operation_state"}


class TestUndoStateStore:
    def test_record_replaces_per_operation(self, tmp_path: Path):
        store = UndoStateStore(tmp_path / "state.json")
        store.record("tweak.a", {"k1": "v1", "k2": "v2"})
        store.record("tweak.b", {"k": "b"})
        store.record("tweak.a", {"k3": "v3"})

        state = store.load()
        assert state.get("tweak.a") == {"k3": "v3"}
        assert state.get("tweak.b") == {"k": "b"}

    def test_lookup_case_insensitive(self, tmp_path: Path):
        store = UndoStateStore(tmp_path / "state.json")
        store.record("Tweak.Dark-Theme", {"k": "v"})
        assert store.load().get("tweak.dark-theme") == {"k": "v"}
        assert store.load().get("tweak.other") == {}


class TestScriptAudit:
    def test_write_and_read(self, tmp_path: Path):
        writer = ScriptAuditWriter(runtime_root=tmp_path)
        writer.write(ScriptAuditEntry(operation_id="tweak.a", step_name="apply", script_hash="AB"))
        writer.write(ScriptAuditEntry(operation_id="tweak.a", step_name="undo", allowed=False, block_reason="no"))

        assert writer.path == tmp_path / "logs" / "script-audit.ndjson"
        entries = writer.read_all()
        assert [e.step_name for e in entries] == ["apply", "undo"]
        assert not entries[1].allowed
        assert writer.entry_count() == 2

    def test_append_only(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        ScriptAuditWriter(path=path).write(ScriptAuditEntry(operation_id="a"))
        ScriptAuditWriter(path=path).write(ScriptAuditEntry(operation_id="b"))
        assert len(path.read_text(encoding="utf-8").splitlines()) == 2

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        writer = ScriptAuditWriter(path=path)
        writer.write(ScriptAuditEntry(operation_id="a"))
        with path.open("a", encoding="utf-8") as f:
            f.write("not json\n\n")
        writer.write(ScriptAuditEntry(operation_id="b"))
        assert [e.operation_id for e in writer.read_all()] == ["a", "b"]

    def test_read_recent(self, tmp_path: Path):
        writer = ScriptAuditWriter(path=tmp_path / "audit.ndjson")
        for i in range(5):
            writer.write(ScriptAuditEntry(operation_id=str(i)))
        assert [e.operation_id for e in writer.read_recent(2)] == ["3", "4"]
        assert writer.read_recent(0) == []

    def test_empty_ledger(self, tmp_path: Path):
        writer = ScriptAuditWriter(path=tmp_path / "audit.ndjson")
        assert writer.read_all() == []
        assert writer.entry_count() == 0

    def test_entry_for_request(self):
        request = ExecutionRequest(
            operation_id="tweak.a", step_name="apply", script="Get-Date", dry_run=True, prefer_process_mode=True,
        )
        entry = ScriptAuditEntry.for_request(request, "FF" * 32, allowed=False, block_reason="nope")
        assert (entry.operation_id, entry.step_name) == ("tweak.a", "apply")
        assert entry.dry_run and entry.process_mode
        assert entry.block_reason == "nope"

    def test_counts_skip_corrupt_lines(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        writer = ScriptAuditWriter(path=path)
        writer.write(ScriptAuditEntry(operation_id="a"))
        with path.open("a", encoding="utf-8") as f:
            f.write("{broken\n[1, 2]\n")
        writer.write(ScriptAuditEntry(operation_id="b", allowed=False))
        assert writer.entry_count() == 2
        assert writer.blocked_count() == 1

    def test_requires_a_location(self):
        with pytest.raises(ValueError):
            ScriptAuditWriter()
