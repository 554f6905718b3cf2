"""
Batch orchestrator — the top-level state machine for a batch of operations.

Operations run strictly in order. Per operation:

    destructive gate → detect (skip if already satisfied) → detect-failure
    gate → restore point → network gate → state capture → confirmation
    → run/undo steps → verify

A gate that blocks records a failed result and the batch moves on. An
execution failure (step failure, verification mismatch, restore-point
abort, unexpected error) rolls back every operation this batch already
applied, newest first, and stops the batch. A scripted rollback step
that fails falls back to safety-backup compensation.

Cancellation is never a failure: the running operation is recorded as
cancelled and the token stays tripped, so the next operation boundary
raises BatchCancelledError carrying the partial result.

Flow:
    precheck → (restore point) → per operation → (rollback) → result
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Callable

from tweakguard.core.engine.runner import ScriptRunner
from tweakguard.core.engine.status_parser import DetectState, parse_status
from tweakguard.core.models.execution import (
    ExecutionRequest,
    ExecutionResult,
    OperationBatchResult,
    OperationExecutionResult,
    PrecheckResult,
)
from tweakguard.core.models.operation import OperationDefinition, RiskTier
from tweakguard.core.models.state import AppSettings
from tweakguard.core.observability.console import ConsoleStream
from tweakguard.core.persistence.state_file import UndoStateStore
from tweakguard.core.reliability.cancellation import (
    BatchCancelledError,
    CancellationToken,
    OperationCancelledError,
)
from tweakguard.core.services.operation_builder import (
    RESTORE_POINT_OPERATION_ID,
    RESTORE_POINT_SCRIPT,
    RESTORE_POINT_STEP,
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]
Precheck = Callable[[list[OperationDefinition], bool], PrecheckResult]

CONFIRM_PROMPT = "ARE YOU SURE? (Y/N)"
RESTORE_POINT_TITLE = "Create restore point"
_SUMMARY_LIMIT = 300


@dataclass
class OperationRequest:
    """Batch-wide flags.

    ``enable_destructive`` None means "use the settings snapshot".
    """

    undo: bool = False
    dry_run: bool = False
    force_dangerous: bool = False
    interactive: bool = True
    prefer_process_mode: bool = False
    enable_destructive: bool | None = None


class _Outcome(Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    DECLINED = "declined"
    FAILED = "failed"


@dataclass
class _BatchState:
    settings: AppSettings
    destructive_enabled: bool
    restore_point_wanted: bool
    restore_point_created: bool = False
    restore_point_waived: bool = False
    first_high_risk_handled: bool = False
    applied: list[OperationDefinition] = field(default_factory=list)


def _summarize(output: str) -> str:
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    if not lines:
        return ""
    last = lines[-1]
    return last if len(last) <= _SUMMARY_LIMIT else last[: _SUMMARY_LIMIT - 3] + "..."


def _never_confirm(_prompt: str) -> bool:
    return False


class OperationOrchestrator:
    """Runs batches of operations against a ScriptRunner.

    Args:
        runner: Executes single steps (and compensates).
        console: Console sink.
        settings_accessor: Live settings snapshot.
        network_probe: ``() -> bool``, True when online.
        state_store: Undo-state persistence for captured values.
        confirm: Default interactive confirm callback.
        precheck: Environment precheck run once per batch.
    """

    def __init__(
        self,
        runner: ScriptRunner,
        console: ConsoleStream,
        settings_accessor: Callable[[], AppSettings],
        network_probe: Callable[[], bool],
        state_store: UndoStateStore | None = None,
        confirm: ConfirmCallback | None = None,
        precheck: Precheck | None = None,
    ):
        self._runner = runner
        self._console = console
        self._settings = settings_accessor
        self._is_online = network_probe
        self._state_store = state_store
        self._confirm = confirm or _never_confirm
        self._precheck = precheck

    # ═══════════════════════════════════════════════════════════════
    #  Batch
    # ═══════════════════════════════════════════════════════════════

    def run_batch(
        self,
        operations: list[OperationDefinition],
        request: OperationRequest,
        token: CancellationToken,
        confirm: ConfirmCallback | None = None,
    ) -> OperationBatchResult:
        """Execute a batch.

        Raises:
            BatchCancelledError: When the token is found tripped at an
                operation boundary; ``partial_result`` holds what ran.
        """
        confirm = confirm or self._confirm
        batch = OperationBatchResult()
        logger.info(
            "Batch start: %d operations (undo=%s, dry_run=%s, force=%s)",
            len(operations), request.undo, request.dry_run, request.force_dangerous,
        )

        if self._precheck is not None:
            batch.precheck = self._precheck(operations, request.undo)
            if not batch.precheck.ok:
                self._console.publish("Error", batch.precheck.message)
                return self._finish(batch)

        settings = self._settings()
        state = _BatchState(
            settings=settings,
            destructive_enabled=(
                settings.enable_destructive_operations
                if request.enable_destructive is None else request.enable_destructive
            ),
            restore_point_wanted=(
                settings.create_restore_point_before_dangerous_operations
                and not request.dry_run and not request.undo
            ),
        )

        try:
            if state.restore_point_wanted and any(
                op.is_high_risk and (state.destructive_enabled or not op.destructive) for op in operations
            ):
                abort = self._ensure_restore_point(request, token, confirm, state)
                if abort is not None:
                    batch.results.append(abort)
                    return self._finish(batch)

            for op in operations:
                if token.cancelled:
                    raise BatchCancelledError(self._finish(batch))

                try:
                    result, outcome = self._run_operation(op, request, token, confirm, state)
                except OperationCancelledError:
                    result = OperationExecutionResult(
                        operation_id=op.id, title=op.title, cancelled=True, message="Cancelled",
                    )
                    self._console.publish("Warning", f"{op.title}: Cancelled")
                    batch.results.append(result)
                    continue
                except Exception as e:
                    logger.exception("Operation %s raised", op.id)
                    result = OperationExecutionResult(
                        operation_id=op.id, title=op.title, message=str(e) or type(e).__name__,
                    )
                    outcome = _Outcome.FAILED

                batch.results.append(result)
                if outcome == _Outcome.APPLIED and not request.dry_run:
                    state.applied.append(op)
                if outcome == _Outcome.FAILED:
                    batch.results.extend(self._rollback(state.applied, op.id, request, token))
                    break
        except BatchCancelledError:
            raise
        except OperationCancelledError as e:
            # Tripped during restore point or rollback
            raise BatchCancelledError(self._finish(batch)) from e

        return self._finish(batch)

    def _finish(self, batch: OperationBatchResult) -> OperationBatchResult:
        batch.finished_at = datetime.now(UTC).isoformat()
        logger.info(
            "Batch finished: %d results, success=%s, reboot=%s",
            len(batch.results), batch.success, batch.requires_reboot,
        )
        return batch

    # ═══════════════════════════════════════════════════════════════
    #  One operation
    # ═══════════════════════════════════════════════════════════════

    def _run_operation(
        self,
        op: OperationDefinition,
        request: OperationRequest,
        token: CancellationToken,
        confirm: ConfirmCallback,
        state: _BatchState,
    ) -> tuple[OperationExecutionResult, _Outcome]:
        result = OperationExecutionResult(operation_id=op.id, title=op.title)
        desired = DetectState.NOT_APPLIED if request.undo else DetectState.APPLIED

        # ── Destructive gate ──
        if op.destructive and not state.destructive_enabled:
            return self._block(result, "Blocked by settings: destructive operations disabled.")

        # ── Detect ──
        detect_failure: str | None = None
        if op.detect_script:
            detect = self._step(op, "detect", op.detect_script, request, token, skip_backup=True)
            if detect.success:
                current = parse_status(detect.output)
                if current == desired:
                    result.success = True
                    result.skipped = True
                    result.verification_status = current.value
                    result.message = (
                        "Skipped: already not applied." if request.undo else "Skipped: already applied."
                    )
                    self._console.publish("Info", f"{op.title}: {result.message}")
                    return result, _Outcome.SKIPPED
            else:
                detect_failure = _summarize(detect.output) or f"exit code {detect.exit_code}"

        if detect_failure is not None:
            if not request.force_dangerous:
                return self._block(
                    result,
                    f"Detection failed: {detect_failure}. "
                    "Re-run with --force-dangerous after investigating the detect script.",
                )
            if request.interactive:
                prompt = (
                    f"Detection failed for '{op.id}' ({op.title}). Risk: {op.risk_tier}. "
                    f"Detect output: {detect_failure}. Continue anyway? (Y/N)"
                )
                if not confirm(prompt):
                    result.cancelled = True
                    result.message = "User declined to continue after detection failure."
                    self._console.publish("Warning", f"{op.title}: {result.message}")
                    return result, _Outcome.DECLINED

        # ── Restore point (retry at the first high-risk operation unless waived) ──
        if op.is_high_risk and not state.first_high_risk_handled:
            state.first_high_risk_handled = True
            if state.restore_point_wanted and not (state.restore_point_created or state.restore_point_waived):
                abort = self._ensure_restore_point(request, token, confirm, state)
                if abort is not None:
                    result.message = abort.message
                    return result, _Outcome.FAILED

        # ── Network gate ──
        steps = op.steps_for(request.undo)
        if any(step.requires_network for step in steps) and not self._is_online():
            result.message = "Offline detected. Operation blocked before any changes."
            result.blocked = True
            self._console.publish("Error", f"{op.title}: {result.message}")
            return result, _Outcome.BLOCKED

        # ── State capture ──
        if op.reversible and op.state_capture_scripts and not request.undo:
            result.capture_failed = not self._capture(op, request, token)
            if result.capture_failed:
                self._console.publish(
                    "Warning", f"{op.title}: Undo state capture failed. Undo may not be possible.",
                )

        # ── Confirmation ──
        effective_risk = RiskTier.DANGEROUS if result.capture_failed else op.risk_tier
        if effective_risk == RiskTier.DANGEROUS or not op.reversible:
            if request.force_dangerous:
                self._console.publish("Warning", f"Dangerous operation forced by configuration: {op.title}")
            elif not (request.interactive and confirm(CONFIRM_PROMPT)):
                result.cancelled = True
                result.message = "User rejected dangerous operation."
                self._console.publish("Warning", f"{op.title}: {result.message}")
                return result, _Outcome.DECLINED

        # ── Steps ──
        for step in steps:
            outcome = self._step(op, step.name, step.script, request, token)
            if not outcome.success:
                detail = _summarize(outcome.output)
                result.message = f"Step failed: {step.name}" + (f". {detail}" if detail else "")
                self._console.publish("Error", f"{op.title}: {result.message}")
                return result, _Outcome.FAILED

        # ── Verify ──
        if op.detect_script and not request.dry_run and steps:
            verify = self._step(op, "detect", op.detect_script, request, token, skip_backup=True)
            observed = parse_status(verify.output) if verify.success else DetectState.UNKNOWN
            result.verification_attempted = True
            result.verification_status = observed.value
            result.verification_passed = observed == desired
            if not result.verification_passed:
                result.message = (
                    f"Verification failed: expected {desired.value}, detected {observed.value}."
                )
                self._console.publish("Error", f"{op.title}: {result.message}")
                return result, _Outcome.FAILED

        result.success = True
        result.requires_reboot = op.requires_reboot and not request.dry_run and bool(steps)
        if not steps:
            result.message = "Nothing to execute."
        elif request.dry_run:
            result.message = "Dry-run completed."
        else:
            result.message = "Completed successfully."
        self._console.publish("Info", f"{op.title}: {result.message}")
        return result, _Outcome.APPLIED if steps else _Outcome.SKIPPED

    def _block(self, result: OperationExecutionResult, message: str) -> tuple[OperationExecutionResult, _Outcome]:
        result.blocked = True
        result.message = message
        self._console.publish("Warning", f"{result.title}: {message}")
        return result, _Outcome.BLOCKED

    def _capture(self, op: OperationDefinition, request: OperationRequest, token: CancellationToken) -> bool:
        """Run capture steps; persist the values when all succeed."""
        captured: dict[str, str] = {}
        for capture in op.state_capture_scripts:
            outcome = self._step(op, f"capture:{capture.name}", capture.script, request, token, skip_backup=True)
            if not outcome.success:
                logger.warning("Capture %s failed for %s", capture.name, op.id)
                return False
            captured[capture.name] = outcome.output.strip()

        if captured and not request.dry_run and self._state_store is not None:
            try:
                self._state_store.record(op.id, captured)
            except OSError as e:
                logger.warning("Could not persist undo state for %s: %s", op.id, e)
                return False
        return True

    # ═══════════════════════════════════════════════════════════════
    #  Restore point and rollback
    # ═══════════════════════════════════════════════════════════════

    def _ensure_restore_point(
        self,
        request: OperationRequest,
        token: CancellationToken,
        confirm: ConfirmCallback,
        state: _BatchState,
    ) -> OperationExecutionResult | None:
        """Create the restore point; None to proceed, or the abort result."""
        outcome = self._runner.execute(
            ExecutionRequest(
                operation_id=RESTORE_POINT_OPERATION_ID,
                step_name=RESTORE_POINT_STEP,
                script=RESTORE_POINT_SCRIPT,
                prefer_process_mode=request.prefer_process_mode,
                skip_backup=True,
            ),
            token,
        )
        if outcome.success:
            state.restore_point_created = True
            self._console.publish("Info", "Restore point created.")
            return None

        if request.force_dangerous and (
            not request.interactive
            or confirm("Restore point creation failed. Continue without a restore point? (Y/N)")
        ):
            state.restore_point_waived = True
            self._console.publish(
                "Warning", "Restore point creation failed; continuing without one (forced).",
            )
            return None

        message = f"Restore point creation failed; batch aborted. {outcome.output.strip()}".strip()
        self._console.publish("Error", message)
        return OperationExecutionResult(
            operation_id=RESTORE_POINT_OPERATION_ID,
            title=RESTORE_POINT_TITLE,
            message=message,
        )

    def _rollback(
        self,
        applied: list[OperationDefinition],
        failed_id: str,
        request: OperationRequest,
        token: CancellationToken,
    ) -> list[OperationExecutionResult]:
        """Reverse every applied operation, newest first."""
        if applied:
            self._console.publish(
                "Warning", f"Rolling back {len(applied)} operation(s) after failure of '{failed_id}'.",
            )

        results = []
        for op in reversed(applied):
            token.raise_if_cancelled()
            entry = OperationExecutionResult(operation_id=op.id, title=op.title, is_rollback=True)
            failure = self._rollback_one(op, request, token)
            if failure is None:
                entry.success = True
                entry.message = f"Rolled back after failure of '{failed_id}'."
            else:
                step, compensation = failure
                entry.message = f"Rollback step failed: {step}. {compensation}"
                self._console.publish("Error", f"{op.title}: {entry.message}")
            results.append(entry)
        return results

    def _rollback_one(
        self, op: OperationDefinition, request: OperationRequest, token: CancellationToken,
    ) -> tuple[str, str] | None:
        # Undoing an undo batch means re-applying
        for step in op.steps_for(not request.undo):
            outcome = self._step(op, step.name, step.script, request, token)
            if not outcome.success:
                compensation = self._runner.compensate(op.id, token)
                logger.warning("Rollback of %s failed at %s: %s", op.id, step.name, compensation.message)
                return step.name, compensation.message
        return None

    # ── Steps ───────────────────────────────────────────────────

    def _step(
        self,
        op: OperationDefinition,
        step_name: str,
        script: str,
        request: OperationRequest,
        token: CancellationToken,
        *,
        skip_backup: bool = False,
    ) -> ExecutionResult:
        token.raise_if_cancelled()
        return self._runner.execute(
            ExecutionRequest(
                operation_id=op.id,
                step_name=step_name,
                script=script,
                dry_run=request.dry_run,
                prefer_process_mode=request.prefer_process_mode,
                skip_backup=skip_backup,
            ),
            token,
        )

