"""
Tests for safety backups — target extraction, snapshots, compensation.
"""

import json
from pathlib import Path

import pytest

from tweakguard.core.models.execution import ExecutionRequest
from tweakguard.core.reliability.cancellation import CancellationToken, OperationCancelledError
from tweakguard.core.services.safety.backup import (
    SafetyBackupManager,
    extract_backup_targets,
    normalize_registry_path,
    normalize_task_name,
    sanitize_file_name,
)
from tweakguard.core.use_cases.safety import compensate_operation

REG_SCRIPT = "Set-ItemProperty -Path 'HKCU:\\Software\\Test' -Name Value -Value 1"


def _request(script: str = REG_SCRIPT, op: str = "tweak.test", step: str = "apply") -> ExecutionRequest:
    return ExecutionRequest(operation_id=op, step_name=step, script=script)


# ── Target extraction ────────────────────────────────────────────────


class TestExtractTargets:
    def test_registry_short_form_normalized(self):
        targets = extract_backup_targets(REG_SCRIPT)
        assert targets.registry_keys == ["HKEY_CURRENT_USER\\Software\\Test"]

    def test_registry_forms_deduplicated(self):
        script = (
            "Set-ItemProperty -Path 'HKLM:\\SOFTWARE\\Policies\\X' -Name A -Value 1\n"
            "New-Item -Path 'HKEY_LOCAL_MACHINE\\SOFTWARE\\Policies\\X' -Force"
        )
        targets = extract_backup_targets(script)
        assert targets.registry_keys == ["HKEY_LOCAL_MACHINE\\SOFTWARE\\Policies\\X"]

    def test_services(self):
        targets = extract_backup_targets("Stop-Service -Name 'DiagTrack' -Force; Set-Service -Name dmwappushservice -StartupType Disabled")
        assert targets.services == ["DiagTrack", "dmwappushservice"]

    def test_scheduled_tasks(self):
        script = (
            "Disable-ScheduledTask -TaskPath '\\Microsoft\\Windows\\' -TaskName 'Consolidator'\n"
            "schtasks /Change /TN \"Microsoft\\Windows\\Autochk\\Proxy\" /Disable"
        )
        targets = extract_backup_targets(script)
        assert targets.scheduled_tasks == [
            "\\Microsoft\\Windows\\Consolidator",
            "Microsoft\\Windows\\Autochk\\Proxy",
        ]

    def test_nothing_to_back_up(self):
        assert extract_backup_targets("Get-Date").empty


class TestNormalization:
    def test_registry_path(self):
        assert normalize_registry_path("'HKLM:\\SOFTWARE\\X'") == "HKEY_LOCAL_MACHINE\\SOFTWARE\\X"
        assert normalize_registry_path("hkcu:\\Software") == "HKEY_CURRENT_USER\\Software"
        assert normalize_registry_path("HKEY_USERS\\.DEFAULT") == "HKEY_USERS\\.DEFAULT"

    def test_task_name(self):
        assert normalize_task_name("Microsoft\\Task") == "\\Microsoft\\Task"
        assert normalize_task_name("\\Microsoft\\Task") == "\\Microsoft\\Task"

    def test_file_name(self):
        assert sanitize_file_name("HKEY_CURRENT_USER\\Software:x") == "HKEY_CURRENT_USER_Software_x"
        assert sanitize_file_name("") == "item"
        assert sanitize_file_name("   ") == "item"


# ── Snapshots ────────────────────────────────────────────────────────


class TestCreateBackup:
    def test_registry_export(self, backups: SafetyBackupManager, command_runner, console):
        manifest_path = backups.create_backup(_request())
        assert manifest_path is not None and manifest_path.is_file()

        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        assert manifest["operation_id"] == "tweak.test"
        assert manifest["step_name"] == "apply"
        assert manifest["registry_keys"] == ["HKEY_CURRENT_USER\\Software\\Test"]
        assert len(manifest["files"]) == 1
        assert Path(manifest["files"][0]).name.startswith("registry-00-")

        assert command_runner.verbs() == ["query", "export"]
        assert manifest_path.parent.name.endswith("-tweak.test-apply")
        assert any(e.text.startswith("Safety backup created:") for e in console.snapshot())

    def test_missing_key_skipped(self, backups: SafetyBackupManager, command_runner, console):
        command_runner.failing.add("query")
        manifest_path = backups.create_backup(_request())

        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        assert manifest["files"] == []
        assert "export" not in command_runner.verbs()
        assert any("key does not exist" in e.text for e in console.snapshot() if e.stream == "Warning")

    def test_service_snapshot(self, backups: SafetyBackupManager, command_runner):
        manifest_path = backups.create_backup(_request("Stop-Service -Name 'DiagTrack'"))
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        snapshot = Path(manifest["files"][0])
        assert snapshot.name == "service-00-DiagTrack.txt"
        assert "Service: DiagTrack" in snapshot.read_text(encoding="utf-8")
        assert command_runner.verbs() == ["qc", "query"]

    def test_no_targets_no_folder(self, backups: SafetyBackupManager):
        assert backups.create_backup(_request("Get-Date")) is None
        assert not backups.backup_root.exists()

    def test_failures_downgraded_to_warning(self, runtime_root: Path, console):
        def _broken(cmd, **kwargs):
            raise RuntimeError("boom")

        manager = SafetyBackupManager(runtime_root / "backups", console, _broken)
        assert manager.create_backup(_request()) is None
        assert any(e.text == "Safety backup failed: boom" for e in console.snapshot())

    def test_cancellation_propagates(self, backups: SafetyBackupManager):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            backups.create_backup(_request(), token)


# ── Compensation ─────────────────────────────────────────────────────


class TestCompensate:
    def test_no_backup_root(self, backups: SafetyBackupManager):
        result = backups.compensate("tweak.test")
        assert not result.attempted and not result.success
        assert result.message == "No safety backups found for operation 'tweak.test'."

    def test_no_folders_for_operation(self, backups: SafetyBackupManager):
        backups.create_backup(_request(op="tweak.other"))
        result = backups.compensate("tweak.test")
        assert not result.attempted
        assert result.message == "No operation-specific safety backups found for 'tweak.test'."

    def test_no_registry_artifacts(self, backups: SafetyBackupManager):
        backups.create_backup(_request("Stop-Service -Name 'DiagTrack'"))
        result = backups.compensate("tweak.test")
        assert not result.attempted
        assert "no restorable registry artifacts" in result.message

    def test_restores_registry_exports(self, backups: SafetyBackupManager, command_runner):
        backups.create_backup(_request())
        result = backups.compensate("tweak.test")
        assert result.attempted and result.success
        assert result.message == "Restored 1 registry backup artifact(s) from safety backups for 'tweak.test'."
        assert command_runner.verbs()[-1] == "import"

    def test_import_failure(self, backups: SafetyBackupManager, command_runner, console):
        backups.create_backup(_request())
        command_runner.failing.add("import")
        result = backups.compensate("tweak.test")
        assert result.attempted and not result.success
        assert "(restored=0, failed=1)" in result.message
        assert any("Compensation import failed" in e.text for e in console.snapshot())

    def test_longer_operation_id_not_matched(self, backups: SafetyBackupManager, command_runner):
        backups.create_backup(_request(op="tweak.a-b"))
        result = backups.compensate("tweak.a")
        assert not result.attempted
        assert result.message == "No operation-specific safety backups found for 'tweak.a'."
        assert "import" not in command_runner.verbs()

    def test_folder_without_manifest_not_attributed(self, backups: SafetyBackupManager):
        folder = backups.backup_root / "20260101-000000000-tweak.test-apply"
        folder.mkdir(parents=True)
        (folder / "registry-00-x.reg").write_text("x", encoding="utf-8")
        assert backups.folders_for("tweak.test") == []

    def test_manifest_match_is_case_insensitive(self, backups: SafetyBackupManager):
        backups.create_backup(_request(op="Tweak.Test"))
        assert len(backups.folders_for("tweak.test")) == 1


class TestListing:
    def test_list_backups_newest_first(self, backups: SafetyBackupManager):
        backups.create_backup(_request(step="apply"))
        backups.create_backup(_request(step="undo"))
        summaries = backups.list_backups("tweak.test")
        assert [s["step_name"] for s in summaries] == ["undo", "apply"]
        assert all(s["files"] == 1 for s in summaries)

    def test_unreadable_manifest(self, backups: SafetyBackupManager):
        folder = backups.backup_root / "20260101-000000000-tweak.test-apply"
        folder.mkdir(parents=True)
        (folder / "manifest.json").write_text("{", encoding="utf-8")
        (folder / "registry-00-x.reg").write_text("x", encoding="utf-8")
        [summary] = backups.list_backups()
        assert "operation_id" not in summary
        assert summary["files"] == 1

    def test_empty_root(self, backups: SafetyBackupManager):
        assert backups.list_backups() == []


class TestCompensateUseCase:
    def test_reports_to_given_empty_console(self, backups: SafetyBackupManager, command_runner, console):
        backups.create_backup(_request())
        console.clear()
        assert len(console) == 0
        command_runner.failing.add("import")

        result = compensate_operation("tweak.test", console, command_runner)
        assert result["operation_id"] == "tweak.test"
        assert result["attempted"] and not result["success"]
        assert any("Compensation import failed" in e.text for e in console.snapshot())
