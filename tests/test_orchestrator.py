"""
Tests for the batch orchestrator — gates, detect/verify, rollback, cancellation.

Every script runs against MockScriptHost with the safety guards off,
so assertions are about which requests reached the host and in what
order.
"""

import pytest

from tweakguard.core.engine.orchestrator import (
    CONFIRM_PROMPT,
    OperationOrchestrator,
    OperationRequest,
)
from tweakguard.core.models.execution import PrecheckResult
from tweakguard.core.models.operation import OperationDefinition, RiskTier, ScriptStep
from tweakguard.core.persistence.state_file import UndoStateStore, default_state_path
from tweakguard.core.reliability.cancellation import BatchCancelledError, OperationCancelledError
from tweakguard.core.services.operation_builder import RESTORE_POINT_OPERATION_ID


def _op(
    name: str,
    *,
    risk=RiskTier.BASIC,
    reversible=True,
    destructive=False,
    detect=None,
    network=False,
    captures=(),
    reboot=False,
) -> OperationDefinition:
    return OperationDefinition(
        id=f"tweak.{name}",
        title=name.title(),
        risk_tier=risk,
        reversible=reversible,
        destructive=destructive,
        requires_reboot=reboot,
        detect_script=detect,
        run_scripts=(ScriptStep(name="apply", script=f"Write-Output 'apply {name}'", requires_network=network),),
        undo_scripts=(ScriptStep(name="undo", script=f"Write-Output 'undo {name}'"),),
        state_capture_scripts=tuple(ScriptStep(name=key, script=f"Write-Output '{key}'") for key in captures),
    )


def _steps(host):
    return [f"{r.operation_id}/{r.step_name}" for r in host.call_log]


@pytest.fixture
def state_store(runtime_root):
    return UndoStateStore(default_state_path(runtime_root))


@pytest.fixture
def make_orchestrator(script_runner, console, make_settings, state_store):
    def _make(online=True, confirm=None, precheck=None, **settings):
        settings.setdefault("enforce_script_safety_guards", False)
        settings.setdefault("create_restore_point_before_dangerous_operations", False)
        return OperationOrchestrator(
            runner=script_runner,
            console=console,
            settings_accessor=make_settings(**settings),
            network_probe=lambda: online,
            state_store=state_store,
            confirm=confirm,
            precheck=precheck,
        )

    return _make


# ── Happy path ───────────────────────────────────────────────────────


class TestHappyPath:
    def test_runs_in_order(self, make_orchestrator, session_host, token):
        batch = make_orchestrator().run_batch([_op("a"), _op("b")], OperationRequest(), token)
        assert batch.success
        assert [r.message for r in batch.results] == ["Completed successfully."] * 2
        assert _steps(session_host) == ["tweak.a/apply", "tweak.b/apply"]
        assert batch.finished_at

    def test_detect_then_verify(self, make_orchestrator, session_host, token):
        session_host.set_output("tweak.a/detect", "STATUS=NotApplied", "STATUS=Applied")
        batch = make_orchestrator().run_batch([_op("a", detect="Get-Thing")], OperationRequest(), token)
        [result] = batch.results
        assert result.success
        assert result.verification_attempted and result.verification_passed
        assert result.verification_status == "Applied"
        assert _steps(session_host) == ["tweak.a/detect", "tweak.a/apply", "tweak.a/detect"]

    def test_undo_runs_undo_steps(self, make_orchestrator, session_host, token):
        op = _op("a", captures=("HKCU:\\Software\\Test",))
        batch = make_orchestrator().run_batch([op], OperationRequest(undo=True), token)
        assert batch.success
        assert _steps(session_host) == ["tweak.a/undo"]

    def test_reboot_flag(self, make_orchestrator, token):
        batch = make_orchestrator().run_batch([_op("a", reboot=True)], OperationRequest(), token)
        assert batch.requires_reboot

    def test_dry_run_never_needs_reboot(self, make_orchestrator, token):
        batch = make_orchestrator().run_batch([_op("a", reboot=True)], OperationRequest(dry_run=True), token)
        assert not batch.requires_reboot
        assert batch.results[0].message == "Dry-run completed."


# ── Idempotence ──────────────────────────────────────────────────────


class TestIdempotence:
    def test_already_applied_is_skipped(self, make_orchestrator, session_host, token):
        session_host.set_output("tweak.a/detect", "STATUS=Applied")
        batch = make_orchestrator().run_batch([_op("a", detect="Get-Thing")], OperationRequest(), token)
        [result] = batch.results
        assert result.success and result.skipped
        assert result.message == "Skipped: already applied."
        assert result.verification_status == "Applied"
        assert _steps(session_host) == ["tweak.a/detect"]

    def test_already_not_applied_skips_undo(self, make_orchestrator, session_host, token):
        session_host.set_output("tweak.a/detect", "PHANTOM_STATUS=NotApplied")
        batch = make_orchestrator().run_batch(
            [_op("a", detect="Get-Thing")], OperationRequest(undo=True), token,
        )
        assert batch.results[0].message == "Skipped: already not applied."
        assert _steps(session_host) == ["tweak.a/detect"]


# ── Gates ────────────────────────────────────────────────────────────


class TestGates:
    def test_destructive_disabled(self, make_orchestrator, session_host, token):
        op = _op("wipe", destructive=True)
        batch = make_orchestrator(create_restore_point_before_dangerous_operations=True).run_batch(
            [op, _op("b")], OperationRequest(), token,
        )
        blocked = batch.results[0]
        assert blocked.blocked and not blocked.success
        assert "destructive operations disabled" in blocked.message
        assert session_host.calls_for("tweak.wipe") == []
        assert session_host.calls_for(RESTORE_POINT_OPERATION_ID) == []
        assert batch.results[1].success

    def test_destructive_enabled_by_request(self, make_orchestrator, session_host, token):
        op = _op("wipe", destructive=True)
        batch = make_orchestrator().run_batch([op], OperationRequest(enable_destructive=True), token)
        assert batch.success
        assert _steps(session_host) == ["tweak.wipe/apply"]

    def test_offline_blocks_network_steps(self, make_orchestrator, session_host, token):
        batch = make_orchestrator(online=False).run_batch([_op("dl", network=True)], OperationRequest(), token)
        [result] = batch.results
        assert result.blocked
        assert result.message == "Offline detected. Operation blocked before any changes."
        assert session_host.call_count == 0

    def test_offline_ignores_undo_without_network(self, make_orchestrator, token):
        batch = make_orchestrator(online=False).run_batch(
            [_op("dl", network=True)], OperationRequest(undo=True), token,
        )
        assert batch.success

    def test_irreversible_needs_confirmation(self, make_orchestrator, session_host, token):
        prompts = []
        orchestrator = make_orchestrator(confirm=lambda p: prompts.append(p) or True)
        batch = orchestrator.run_batch([_op("a", reversible=False)], OperationRequest(), token)
        assert batch.success
        assert prompts == [CONFIRM_PROMPT]

    def test_rejected_confirmation(self, make_orchestrator, session_host, token):
        batch = make_orchestrator().run_batch([_op("a", risk=RiskTier.DANGEROUS)], OperationRequest(), token)
        [result] = batch.results
        assert result.cancelled
        assert result.message == "User rejected dangerous operation."
        assert session_host.call_count == 0
        assert batch.success

    def test_non_interactive_without_force_rejects(self, make_orchestrator, session_host, token):
        orchestrator = make_orchestrator(confirm=lambda _p: True)
        batch = orchestrator.run_batch(
            [_op("a", reversible=False)], OperationRequest(interactive=False), token,
        )
        assert batch.results[0].cancelled
        assert session_host.call_count == 0

    def test_forced_dangerous_skips_prompt(self, make_orchestrator, session_host, console, token):
        batch = make_orchestrator().run_batch(
            [_op("a", risk=RiskTier.DANGEROUS)], OperationRequest(force_dangerous=True, interactive=False), token,
        )
        assert batch.success
        assert any("Dangerous operation forced by configuration: A" == e.text for e in console.snapshot())

    def test_precheck_failure_stops_batch(self, make_orchestrator, session_host, token):
        orchestrator = make_orchestrator(precheck=lambda ops, undo: PrecheckResult.failure("No admin."))
        batch = orchestrator.run_batch([_op("a")], OperationRequest(), token)
        assert not batch.success
        assert batch.results == []
        assert batch.precheck.message == "No admin."
        assert session_host.call_count == 0


# ── Detect failures ──────────────────────────────────────────────────


class TestDetectFailure:
    def test_blocked_without_force(self, make_orchestrator, session_host, token):
        session_host.set_failure("tweak.a/detect", "Access denied")
        batch = make_orchestrator().run_batch([_op("a", detect="Get-Thing")], OperationRequest(), token)
        [result] = batch.results
        assert result.blocked
        assert result.message.startswith("Detection failed: Access denied.")
        assert "--force-dangerous" in result.message
        assert _steps(session_host) == ["tweak.a/detect"]

    def test_prompt_names_operation_and_risk(self, make_orchestrator, session_host, token):
        session_host.set_failure("tweak.d/detect", "line one\nAccess denied")
        prompts = []
        orchestrator = make_orchestrator(confirm=lambda p: prompts.append(p) or False)
        batch = orchestrator.run_batch(
            [_op("d", risk=RiskTier.DANGEROUS, detect="Get-Thing")],
            OperationRequest(force_dangerous=True, interactive=True),
            token,
        )
        [prompt] = prompts
        assert "'tweak.d'" in prompt
        assert "(D)" in prompt
        assert "Risk: Dangerous" in prompt
        assert "Access denied" in prompt
        [result] = batch.results
        assert result.cancelled
        assert result.message == "User declined to continue after detection failure."
        assert _steps(session_host) == ["tweak.d/detect"]

    def test_forced_unattended_continues(self, make_orchestrator, session_host, token):
        session_host.set_failure("tweak.a/detect", "Access denied")
        batch = make_orchestrator().run_batch(
            [_op("a", detect="Get-Thing")], OperationRequest(force_dangerous=True, interactive=False), token,
        )
        assert "tweak.a/apply" in _steps(session_host)
        # Verification cannot pass while detect keeps failing
        assert not batch.success


# ── Restore point ────────────────────────────────────────────────────


class TestRestorePoint:
    def test_created_before_dangerous_operation(self, make_orchestrator, session_host, console, token):
        orchestrator = make_orchestrator(create_restore_point_before_dangerous_operations=True)
        batch = orchestrator.run_batch(
            [_op("a"), _op("d", risk=RiskTier.DANGEROUS)],
            OperationRequest(force_dangerous=True, interactive=False),
            token,
        )
        assert batch.success
        steps = _steps(session_host)
        assert steps[0] == f"{RESTORE_POINT_OPERATION_ID}/restore-point"
        assert steps.index(f"{RESTORE_POINT_OPERATION_ID}/restore-point") < steps.index("tweak.d/apply")
        assert steps.count(f"{RESTORE_POINT_OPERATION_ID}/restore-point") == 1
        assert any(e.text == "Restore point created." for e in console.snapshot())

    def test_not_created_for_basic_batch(self, make_orchestrator, session_host, token):
        orchestrator = make_orchestrator(create_restore_point_before_dangerous_operations=True)
        orchestrator.run_batch([_op("a")], OperationRequest(), token)
        assert session_host.calls_for(RESTORE_POINT_OPERATION_ID) == []

    def test_not_created_in_dry_run(self, make_orchestrator, session_host, token):
        orchestrator = make_orchestrator(create_restore_point_before_dangerous_operations=True)
        orchestrator.run_batch(
            [_op("d", risk=RiskTier.DANGEROUS)],
            OperationRequest(dry_run=True, force_dangerous=True, interactive=False),
            token,
        )
        assert session_host.calls_for(RESTORE_POINT_OPERATION_ID) == []

    def test_failure_aborts_batch(self, make_orchestrator, session_host, token):
        session_host.set_failure("restore-point", "Restore disabled by policy")
        orchestrator = make_orchestrator(create_restore_point_before_dangerous_operations=True)
        batch = orchestrator.run_batch(
            [_op("d", risk=RiskTier.DANGEROUS)], OperationRequest(), token,
        )
        [result] = batch.results
        assert result.operation_id == RESTORE_POINT_OPERATION_ID
        assert result.message.startswith("Restore point creation failed; batch aborted.")
        assert "Restore disabled by policy" in result.message
        assert session_host.calls_for("tweak.d") == []
        assert not batch.success

    def test_failure_tolerated_when_forced_unattended(self, make_orchestrator, session_host, token):
        session_host.set_failure("restore-point", "Restore disabled by policy")
        orchestrator = make_orchestrator(create_restore_point_before_dangerous_operations=True)
        batch = orchestrator.run_batch(
            [_op("d", risk=RiskTier.DANGEROUS)],
            OperationRequest(force_dangerous=True, interactive=False),
            token,
        )
        assert batch.success
        assert "tweak.d/apply" in _steps(session_host)
        assert _steps(session_host).count(f"{RESTORE_POINT_OPERATION_ID}/restore-point") == 1

    def test_confirmed_failure_not_retried(self, make_orchestrator, session_host, token):
        session_host.set_failure("restore-point", "Restore disabled by policy")
        prompts = []
        orchestrator = make_orchestrator(
            confirm=lambda p: prompts.append(p) or True,
            create_restore_point_before_dangerous_operations=True,
        )
        batch = orchestrator.run_batch(
            [_op("d", risk=RiskTier.DANGEROUS), _op("e", risk=RiskTier.DANGEROUS)],
            OperationRequest(force_dangerous=True, interactive=True),
            token,
        )
        assert batch.success
        assert _steps(session_host).count(f"{RESTORE_POINT_OPERATION_ID}/restore-point") == 1
        assert sum("Continue without a restore point" in p for p in prompts) == 1


# ── Failure and rollback ─────────────────────────────────────────────


class TestRollback:
    def test_failure_rolls_back_newest_first(self, make_orchestrator, session_host, console, token):
        session_host.set_failure("tweak.c/apply", "Access denied")
        batch = make_orchestrator().run_batch(
            [_op("a"), _op("b"), _op("c"), _op("never")], OperationRequest(), token,
        )
        assert not batch.success
        assert [r.operation_id for r in batch.results] == ["tweak.a", "tweak.b", "tweak.c", "tweak.b", "tweak.a"]
        assert batch.results[2].message == "Step failed: apply. Access denied"

        rollbacks = batch.rollbacks
        assert len(rollbacks) == 2
        assert all(r.success for r in rollbacks)
        assert rollbacks[0].message == "Rolled back after failure of 'tweak.c'."

        undo_calls = [s for s in _steps(session_host) if s.endswith("/undo")]
        assert undo_calls == ["tweak.b/undo", "tweak.a/undo"]
        assert session_host.calls_for("tweak.never") == []
        assert any(e.text == "Rolling back 2 operation(s) after failure of 'tweak.c'." for e in console.snapshot())

    def test_skipped_operations_not_rolled_back(self, make_orchestrator, session_host, token):
        session_host.set_output("tweak.a/detect", "STATUS=Applied")
        session_host.set_failure("tweak.b/apply")
        batch = make_orchestrator().run_batch(
            [_op("a", detect="Get-Thing"), _op("b")], OperationRequest(), token,
        )
        assert batch.rollbacks == []

    def test_verification_mismatch_fails(self, make_orchestrator, session_host, token):
        session_host.set_output("tweak.b/detect", "STATUS=NotApplied")
        batch = make_orchestrator().run_batch(
            [_op("a"), _op("b", detect="Get-Thing")], OperationRequest(), token,
        )
        failed = batch.results[1]
        assert not failed.success
        assert failed.verification_attempted and not failed.verification_passed
        assert failed.message == "Verification failed: expected Applied, detected NotApplied."
        assert [r.operation_id for r in batch.rollbacks] == ["tweak.a"]

    def test_failed_undo_falls_back_to_compensation(self, make_orchestrator, session_host, token):
        session_host.set_failure("tweak.a/undo", "undo broke")
        session_host.set_failure("tweak.b/apply")
        batch = make_orchestrator().run_batch([_op("a"), _op("b")], OperationRequest(), token)
        [rollback] = batch.rollbacks
        assert not rollback.success
        assert rollback.message.startswith("Rollback step failed: undo.")
        assert "No safety backups found for operation 'tweak.a'." in rollback.message

    def test_unexpected_error_fails_operation(self, make_orchestrator, session_host, token):
        session_host.set_fault("tweak.b/apply", RuntimeError("kaboom"))
        batch = make_orchestrator().run_batch([_op("a"), _op("b")], OperationRequest(), token)
        assert batch.results[1].message == "kaboom"
        assert [r.operation_id for r in batch.rollbacks] == ["tweak.a"]

    def test_undo_batch_rolls_back_by_reapplying(self, make_orchestrator, session_host, token):
        session_host.set_failure("tweak.b/undo")
        make_orchestrator().run_batch([_op("a"), _op("b")], OperationRequest(undo=True), token)
        assert _steps(session_host)[-1] == "tweak.a/apply"


# ── State capture ────────────────────────────────────────────────────


class TestStateCapture:
    KEY = "HKCU:\\Software\\Test"

    def test_captured_values_persisted(self, make_orchestrator, session_host, state_store, token):
        session_host.set_output(f"capture:{self.KEY}", '{"Value":1}')
        batch = make_orchestrator().run_batch([_op("a", captures=(self.KEY,))], OperationRequest(), token)
        assert batch.success
        assert state_store.load().get("tweak.a") == {self.KEY: '{"Value":1}'}
        assert _steps(session_host) == [f"tweak.a/capture:{self.KEY}", "tweak.a/apply"]

    def test_capture_failure_escalates_to_confirmation(self, make_orchestrator, session_host, console, token):
        session_host.set_failure(f"capture:{self.KEY}")
        batch = make_orchestrator().run_batch([_op("a", captures=(self.KEY,))], OperationRequest(), token)
        [result] = batch.results
        assert result.capture_failed
        assert result.cancelled
        assert session_host.calls_for("tweak.a")[-1].step_name == f"capture:{self.KEY}"
        assert any("Undo state capture failed" in e.text for e in console.snapshot())

    def test_dry_run_does_not_persist(self, make_orchestrator, session_host, state_store, token):
        make_orchestrator().run_batch(
            [_op("a", captures=(self.KEY,))], OperationRequest(dry_run=True), token,
        )
        assert not state_store.path.exists()


# ── Cancellation ─────────────────────────────────────────────────────


class TestCancellation:
    def test_cancelled_before_start(self, make_orchestrator, session_host, token):
        token.cancel()
        with pytest.raises(BatchCancelledError) as exc:
            make_orchestrator().run_batch([_op("a")], OperationRequest(), token)
        assert exc.value.partial_result.results == []
        assert session_host.call_count == 0

    def test_cancel_between_operations(self, make_orchestrator, session_host, token):
        original = session_host.execute

        def _execute(request, tok):
            result = original(request, tok)
            if request.operation_id == "tweak.a":
                tok.cancel()
            return result

        session_host.execute = _execute
        with pytest.raises(BatchCancelledError) as exc:
            make_orchestrator().run_batch([_op("a"), _op("b")], OperationRequest(), token)
        partial = exc.value.partial_result
        assert [r.operation_id for r in partial.results] == ["tweak.a"]
        assert partial.results[0].success
        assert session_host.calls_for("tweak.b") == []

    def test_cancel_mid_operation_records_cancelled(self, make_orchestrator, session_host, token):
        def _execute(request, tok):
            tok.cancel()
            raise OperationCancelledError()

        session_host.execute = _execute
        with pytest.raises(BatchCancelledError) as exc:
            make_orchestrator().run_batch([_op("a"), _op("b")], OperationRequest(), token)
        [result] = exc.value.partial_result.results
        assert result.cancelled
        assert result.message == "Cancelled"
