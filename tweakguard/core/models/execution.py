"""
Execution models — the contract between the orchestrator and the runner.

The orchestrator sends ExecutionRequests, the runner returns
ExecutionResults. Policy denials and script failures come back as
results, never exceptions; only cancellation and host faults raise.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ExecutionRequest(BaseModel):
    """One script step to run."""

    operation_id: str
    step_name: str
    script: str
    dry_run: bool = False
    prefer_process_mode: bool = False
    skip_backup: bool = False


class ExecutionResult(BaseModel):
    """Outcome of one script step."""

    success: bool
    exit_code: int = 0
    output: str = ""

    @classmethod
    def succeeded(cls, output: str = "") -> ExecutionResult:
        """Create a success result."""
        return cls(success=True, exit_code=0, output=output)

    @classmethod
    def failed(cls, output: str, exit_code: int = 1) -> ExecutionResult:
        """Create a failure result."""
        return cls(success=False, exit_code=exit_code or 1, output=output)

    @classmethod
    def blocked(cls, reason: str) -> ExecutionResult:
        """Create a policy-denial result. The reason is the whole output."""
        return cls(success=False, exit_code=1, output=reason)


class OutputEvent(BaseModel):
    """A single ``(level, text)`` event on the console sink."""

    timestamp: str = Field(default_factory=_now_iso)
    stream: str = "Info"
    text: str = ""


class CompensationResult(BaseModel):
    """Outcome of restoring from safety backups."""

    attempted: bool = False
    success: bool = False
    message: str = ""


class PrecheckResult(BaseModel):
    """Outcome of the environment precheck."""

    ok: bool
    message: str = ""

    @classmethod
    def success(cls, message: str = "Precheck passed.") -> PrecheckResult:
        return cls(ok=True, message=message)

    @classmethod
    def failure(cls, message: str) -> PrecheckResult:
        return cls(ok=False, message=message)


class OperationExecutionResult(BaseModel):
    """Outcome of one operation (or one rollback) within a batch."""

    operation_id: str
    title: str = ""
    success: bool = False
    cancelled: bool = False
    skipped: bool = False
    blocked: bool = False
    is_rollback: bool = False
    requires_reboot: bool = False
    capture_failed: bool = False
    verification_attempted: bool = False
    verification_passed: bool = False
    verification_status: str = "NotAvailable"
    message: str = "Not executed"

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


class OperationBatchResult(BaseModel):
    """Everything a batch produced, in execution order."""

    results: list[OperationExecutionResult] = Field(default_factory=list)
    precheck: PrecheckResult | None = None
    started_at: str = Field(default_factory=_now_iso)
    finished_at: str = ""

    @property
    def success(self) -> bool:
        if self.precheck is not None and not self.precheck.ok:
            return False
        return all(r.success or r.cancelled for r in self.results)

    @property
    def requires_reboot(self) -> bool:
        return any(r.success and r.requires_reboot for r in self.results)

    @property
    def cancelled(self) -> bool:
        return any(r.cancelled for r in self.results)

    @property
    def rollbacks(self) -> list[OperationExecutionResult]:
        return [r for r in self.results if r.is_rollback]

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["success"] = self.success
        data["requires_reboot"] = self.requires_reboot
        return data
