"""
Tests for the script runner — validation, backup, dry run and host fallback.
"""

import pytest

from tweakguard.adapters.base import CommandNotFoundError, HostRuntimeError, HostUnavailableError
from tweakguard.adapters.mock import MockScriptHost
from tweakguard.core.engine.runner import (
    ExecutionPath,
    HostFault,
    ScriptRunner,
    choose_execution_path,
    classify_fault,
    is_read_only_step,
)
from tweakguard.core.models.execution import ExecutionRequest
from tweakguard.core.persistence.audit import ScriptAuditWriter
from tweakguard.core.reliability.cancellation import OperationCancelledError
from tweakguard.core.services.safety.validator import ScriptSafetyValidator, compute_script_hash

REG_SCRIPT = "Set-ItemProperty -Path 'HKCU:\\Software\\Test' -Name Value -Value 1"


def _request(step="apply", script=REG_SCRIPT, **kwargs):
    return ExecutionRequest(operation_id="system.test", step_name=step, script=script, **kwargs)


# ── Path selection ───────────────────────────────────────────────────


class TestChooseExecutionPath:
    @pytest.mark.parametrize("prefer,fault,step,expected", [
        (True, HostFault.NONE, "apply", ExecutionPath.EXTERNAL),
        (True, HostFault.RUNTIME, "apply", ExecutionPath.EXTERNAL),
        (False, HostFault.NONE, "apply", ExecutionPath.EMBEDDED),
        (False, HostFault.UNAVAILABLE, "apply", ExecutionPath.EXTERNAL),
        (False, HostFault.COMMAND_NOT_FOUND, "apply", ExecutionPath.EXTERNAL),
        (False, HostFault.RUNTIME, "detect", ExecutionPath.EXTERNAL),
        (False, HostFault.RUNTIME, "capture:HKCU", ExecutionPath.EXTERNAL),
        (False, HostFault.RUNTIME, "apply", ExecutionPath.REFUSED),
        (False, HostFault.RUNTIME, "undo", ExecutionPath.REFUSED),
    ])
    def test_table(self, prefer, fault, step, expected):
        assert choose_execution_path(prefer, fault, step) == expected

    def test_read_only_steps(self):
        assert is_read_only_step("Detect")
        assert is_read_only_step("capture:key")
        assert not is_read_only_step("apply")
        assert not is_read_only_step("capture")

    def test_classify_fault(self):
        assert classify_fault(CommandNotFoundError("x")) == HostFault.COMMAND_NOT_FOUND
        assert classify_fault(HostRuntimeError("x")) == HostFault.RUNTIME
        assert classify_fault(HostUnavailableError("x")) == HostFault.UNAVAILABLE


# ── Execution ────────────────────────────────────────────────────────


class TestExecute:
    def test_session_by_default(self, script_runner, session_host, process_host, token):
        result = script_runner.execute(_request(), token)
        assert result.success
        assert session_host.call_count == 1
        assert process_host.call_count == 0

    def test_prefer_process_mode(self, script_runner, session_host, process_host, token):
        script_runner.execute(_request(prefer_process_mode=True), token)
        assert session_host.call_count == 0
        assert process_host.call_count == 1

    def test_failed_script_comes_back_as_result(self, script_runner, session_host, token):
        session_host.set_failure("apply", "Access denied", exit_code=5)
        result = script_runner.execute(_request(), token)
        assert not result.success
        assert result.exit_code == 5
        assert result.output == "Access denied"

    def test_cancelled_token_raises(self, script_runner, token):
        token.cancel()
        with pytest.raises(OperationCancelledError):
            script_runner.execute(_request(), token)

    def test_command_event_published(self, script_runner, console, token):
        script_runner.execute(_request(), token)
        commands = [e.text for e in console.snapshot() if e.stream == "Command"]
        assert commands == [f"[system.test/apply] {REG_SCRIPT}"]


class TestFallback:
    def test_unavailable_session_falls_back(self, backups, console, process_host, make_settings, token):
        session = MockScriptHost("session", available=False)
        validator = ScriptSafetyValidator(make_settings(enforce_script_safety_guards=False))
        runner = ScriptRunner(validator, backups, console, session, process_host)
        assert runner.execute(_request(), token).success
        assert session.call_count == 0
        assert process_host.call_count == 1
        assert any("falling back to external process" in e.text for e in console.snapshot())

    def test_command_not_found_falls_back(self, script_runner, session_host, process_host, token):
        session_host.set_fault("apply", CommandNotFoundError("The term 'x' is not recognized"))
        assert script_runner.execute(_request(), token).success
        assert process_host.call_count == 1

    def test_runtime_fault_on_read_only_step_falls_back(self, script_runner, session_host, process_host, token):
        session_host.set_fault("detect", HostRuntimeError("boom"))
        assert script_runner.execute(_request(step="detect"), token).success
        assert process_host.call_count == 1

    def test_runtime_fault_on_mutating_step_refused(self, script_runner, session_host, process_host, token):
        session_host.set_fault("apply", HostRuntimeError("boom"))
        result = script_runner.execute(_request(), token)
        assert not result.success
        assert "External fallback was blocked" in result.output
        assert "boom" in result.output
        assert process_host.call_count == 0

    def test_fault_after_cancel_is_cancellation(self, script_runner, session_host, token):
        def _execute(request, tok):
            tok.cancel()
            raise HostRuntimeError("stopped")

        session_host.execute = _execute
        with pytest.raises(OperationCancelledError):
            script_runner.execute(_request(), token)


class TestSafetyPath:
    def test_blocked_script_never_reaches_a_host(
        self, backups, console, session_host, process_host, make_settings, runtime_root, token,
    ):
        validator = ScriptSafetyValidator(make_settings(), signature_verifier=lambda _p: None)
        audit = ScriptAuditWriter(runtime_root=runtime_root)
        runner = ScriptRunner(validator, backups, console, session_host, process_host, audit=audit)

        result = runner.execute(_request(script="iex 'Get-Date'"), token)

        assert not result.success
        assert "Blocked dynamic script execution command" in result.output
        assert session_host.call_count == 0
        assert process_host.call_count == 0
        [entry] = audit.read_all()
        assert not entry.allowed
        assert entry.block_reason == result.output

    def test_dry_run_executes_nothing(self, script_runner, session_host, process_host, command_runner, console, token):
        result = script_runner.execute(_request(dry_run=True), token)
        assert result.success
        assert session_host.call_count == 0
        assert process_host.call_count == 0
        assert command_runner.calls == []
        assert any(e.stream == "DryRun" for e in console.snapshot())

    def test_backup_before_mutation(self, script_runner, command_runner, token):
        script_runner.execute(_request(), token)
        assert "export" in command_runner.verbs()

    def test_skip_backup(self, script_runner, command_runner, token):
        script_runner.execute(_request(skip_backup=True), token)
        assert command_runner.calls == []

    def test_audit_entry(self, script_runner, runtime_root, token):
        script_runner.execute(_request(dry_run=True, prefer_process_mode=True), token)
        [entry] = ScriptAuditWriter(runtime_root=runtime_root).read_all()
        assert entry.operation_id == "system.test"
        assert entry.step_name == "apply"
        assert entry.script_hash == compute_script_hash(REG_SCRIPT)
        assert entry.dry_run and entry.process_mode and entry.allowed

    def test_compensate_delegates_to_backups(self, script_runner, token):
        result = script_runner.compensate("system.test", token)
        assert not result.attempted
