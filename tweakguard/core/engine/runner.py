"""
Script runner — the single entry point for executing one script step.

Per request, in order:

    1. announce     Command event, audit ledger entry, ScriptAudit log line
    2. validate     ScriptSafetyValidator; a block is a failed result
    3. back up      SafetyBackupManager (unless dry run or skip_backup)
    4. dry run      short-circuit success, nothing executed
    5. execute      hosted session by default, external process when
                    preferred or when the fallback policy allows it

Fallback policy (``choose_execution_path``): a session fault falls back
to the external process only when the host was unavailable, the fault
was "command not found", or the step is read-only (``detect*`` or
``capture:*``). Any other runtime fault on a mutating step is a hard
failure, so a half-applied script is never run a second time.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from tweakguard.adapters.base import (
    CommandNotFoundError,
    HostError,
    HostRuntimeError,
    HostUnavailableError,
    ScriptHost,
)
from tweakguard.core.models.execution import CompensationResult, ExecutionRequest, ExecutionResult
from tweakguard.core.observability.console import ConsoleStream
from tweakguard.core.persistence.audit import ScriptAuditEntry, ScriptAuditWriter
from tweakguard.core.reliability.cancellation import CancellationToken, OperationCancelledError
from tweakguard.core.services.safety.backup import SafetyBackupManager
from tweakguard.core.services.safety.validator import ScriptSafetyValidator, compute_script_hash

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  Path selection
# ═══════════════════════════════════════════════════════════════════


class ExecutionPath(StrEnum):
    EMBEDDED = "embedded"
    EXTERNAL = "external"
    REFUSED = "refused"


class HostFault(StrEnum):
    NONE = "none"
    UNAVAILABLE = "unavailable"
    COMMAND_NOT_FOUND = "command-not-found"
    RUNTIME = "runtime"


def is_read_only_step(step_name: str) -> bool:
    lowered = step_name.lower()
    return lowered.startswith("detect") or lowered.startswith("capture:")


def classify_fault(error: HostError) -> HostFault:
    if isinstance(error, CommandNotFoundError):
        return HostFault.COMMAND_NOT_FOUND
    if isinstance(error, HostRuntimeError):
        return HostFault.RUNTIME
    return HostFault.UNAVAILABLE


def choose_execution_path(prefer_process_mode: bool, fault: HostFault, step_name: str) -> ExecutionPath:
    """Pure decision: where should this attempt run?"""
    if prefer_process_mode:
        return ExecutionPath.EXTERNAL
    if fault == HostFault.NONE:
        return ExecutionPath.EMBEDDED
    if fault in (HostFault.UNAVAILABLE, HostFault.COMMAND_NOT_FOUND):
        return ExecutionPath.EXTERNAL
    if is_read_only_step(step_name):
        return ExecutionPath.EXTERNAL
    return ExecutionPath.REFUSED


# ═══════════════════════════════════════════════════════════════════
#  Runner
# ═══════════════════════════════════════════════════════════════════


class ScriptRunner:
    """Validates, backs up and executes script steps.

    Args:
        validator: Script safety validator.
        backups: Safety backup manager (also the compensation path).
        console: Console sink.
        session_host: Default execution host.
        process_host: External-process host.
        audit: Script audit ledger; None disables auditing.
    """

    def __init__(
        self,
        validator: ScriptSafetyValidator,
        backups: SafetyBackupManager,
        console: ConsoleStream,
        session_host: ScriptHost,
        process_host: ScriptHost,
        audit: ScriptAuditWriter | None = None,
    ):
        self._validator = validator
        self._backups = backups
        self._console = console
        self._session = session_host
        self._process = process_host
        self._audit = audit

    @property
    def validator(self) -> ScriptSafetyValidator:
        return self._validator

    def execute(self, request: ExecutionRequest, token: CancellationToken) -> ExecutionResult:
        """Run one step.

        Raises:
            OperationCancelledError: On cancellation. Every other
                failure comes back as a result.
        """
        token.raise_if_cancelled()
        op_step = f"{request.operation_id}/{request.step_name}"
        script_hash = compute_script_hash(request.script)

        self._console.publish("Command", f"[{op_step}] {request.script}")
        logger.info(
            "ScriptAudit op=%s step=%s hash=%s dryRun=%s processMode=%s",
            request.operation_id, request.step_name, script_hash,
            request.dry_run, request.prefer_process_mode,
        )

        verdict = self._validator.validate(request.operation_id, request.script)
        self._write_audit(request, script_hash, verdict.allowed, verdict.reason)
        if not verdict.allowed:
            self._console.publish("Error", f"{op_step}: {verdict.reason}")
            return ExecutionResult.blocked(verdict.reason)

        if not request.dry_run and not request.skip_backup:
            self._backups.create_backup(request, token)

        if request.dry_run:
            self._console.publish("DryRun", "Dry-run enabled. Command was not executed.")
            return ExecutionResult.succeeded()

        path = choose_execution_path(request.prefer_process_mode, HostFault.NONE, request.step_name)
        if path == ExecutionPath.EMBEDDED and not self._session.is_available():
            return self._fallback(request, token, HostUnavailableError(
                f"{self._session.name} host is not installed.",
            ))
        if path == ExecutionPath.EXTERNAL:
            result = self._process.execute(request, token)
            self._trace(request, "preferred process mode", result)
            return result

        try:
            result = self._session.execute(request, token)
        except OperationCancelledError:
            raise
        except HostError as e:
            if token.cancelled:
                raise OperationCancelledError(f"{op_step} cancelled.") from e
            return self._fallback(request, token, e)

        self._trace(request, "session", result)
        return result

    def compensate(self, operation_id: str, token: CancellationToken) -> CompensationResult:
        """Last-resort restore from safety backups."""
        return self._backups.compensate(operation_id, token)

    # ── Internals ───────────────────────────────────────────────

    def _fallback(self, request: ExecutionRequest, token: CancellationToken, error: HostError) -> ExecutionResult:
        path = choose_execution_path(False, classify_fault(error), request.step_name)
        if path == ExecutionPath.EXTERNAL:
            self._console.publish(
                "Warning", f"Embedded host unavailable, falling back to external process. {error}",
            )
            logger.warning("Session fallback (%s/%s): %s", request.operation_id, request.step_name, error)
            result = self._process.execute(request, token)
            self._trace(request, "process fallback", result)
            return result

        failure = (
            f"Runspace execution failed for mutating step '{request.step_name}'. "
            f"External fallback was blocked to avoid re-running a partially executed script. {error}"
        )
        self._console.publish("Error", failure)
        logger.error("%s/%s: %s", request.operation_id, request.step_name, error)
        return ExecutionResult.failed(failure)

    def _trace(self, request: ExecutionRequest, path: str, result: ExecutionResult) -> None:
        self._console.publish(
            "Trace",
            f"Execution completed via {path}. op={request.operation_id}, step={request.step_name}, "
            f"exit={result.exit_code}, success={result.success}",
        )

    def _write_audit(self, request: ExecutionRequest, script_hash: str, allowed: bool, reason: str) -> None:
        if self._audit is None:
            return
        self._audit.write(ScriptAuditEntry.for_request(request, script_hash, allowed=allowed, block_reason=reason))
