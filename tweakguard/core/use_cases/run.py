"""
Run use case — execute a selection config unattended.

The full vertical slice from a selection document to an audited,
reversible batch:

    resolve path → load config → build operations → compatibility
    filter → dangerous gate → network gate → precheck → batch

Each stop maps to a CLI exit code (see ``ExitCode``). Collaborators
(hosts, probes, command runner) are injectable so the whole slice runs
under tests without PowerShell.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Callable

from tweakguard.adapters.base import ScriptHost
from tweakguard.core import context
from tweakguard.core.config.loader import (
    ConfigError,
    load_apps,
    load_features,
    load_fixes,
    load_selection_config,
    load_settings,
    load_tweaks,
    resolve_selection_path,
)
from tweakguard.core.engine.orchestrator import ConfirmCallback, OperationOrchestrator, OperationRequest
from tweakguard.core.engine.runner import ScriptRunner
from tweakguard.core.models.execution import OperationBatchResult, PrecheckResult
from tweakguard.core.models.operation import OperationDefinition, RiskTier
from tweakguard.core.models.state import AppSettings
from tweakguard.core.observability.console import ConsoleStream
from tweakguard.core.persistence.audit import ScriptAuditWriter
from tweakguard.core.persistence.state_file import UndoStateStore, default_state_path
from tweakguard.core.reliability.cancellation import BatchCancelledError, CancellationToken
from tweakguard.core.services.operation_builder import build_operations
from tweakguard.core.services.precheck import EnvironmentProbe, filter_compatible, run_precheck
from tweakguard.core.services.safety.allowlist import build_trusted_hashes
from tweakguard.core.services.safety.backup import SafetyBackupManager
from tweakguard.core.services.safety.validator import ScriptSafetyValidator, SignatureVerifier
from tweakguard.core.services.subprocess_runner import CommandRunner, run_command

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    OK = 0
    BATCH_FAILED = 1
    CONFIG_ERROR = 2
    DANGEROUS_NOT_CONFIRMED = 3
    OFFLINE = 4
    PRECHECK_FAILED = 5
    GENERATION_FAILED = 6


# ═══════════════════════════════════════════════════════════════════
#  Wiring
# ═══════════════════════════════════════════════════════════════════


def settings_accessor(path: Path | None = None) -> Callable[[], AppSettings]:
    """Live settings: re-read on every call, last good snapshot on error."""
    last_good: list[AppSettings] = [load_settings(path)]

    def _current() -> AppSettings:
        try:
            last_good[0] = load_settings(path)
        except ConfigError as e:
            logger.warning("Keeping previous settings snapshot: %s", e)
        return last_good[0]

    return _current


@dataclass
class Engine:
    """Everything a batch needs, wired once per invocation."""

    console: ConsoleStream
    settings: Callable[[], AppSettings]
    validator: ScriptSafetyValidator
    backups: SafetyBackupManager
    runner: ScriptRunner
    probe: EnvironmentProbe
    state_store: UndoStateStore

    def orchestrator(
        self, confirm: ConfirmCallback | None = None, *, with_precheck: bool = True,
    ) -> OperationOrchestrator:
        return OperationOrchestrator(
            runner=self.runner,
            console=self.console,
            settings_accessor=self.settings,
            network_probe=self.probe.is_online,
            state_store=self.state_store,
            confirm=confirm,
            precheck=self._precheck if with_precheck else None,
        )

    def _precheck(self, operations: list[OperationDefinition], undo: bool) -> PrecheckResult:
        return run_precheck(operations, undo, self.probe)


def build_engine(
    console: ConsoleStream | None = None,
    *,
    settings: Callable[[], AppSettings] | None = None,
    session_host: ScriptHost | None = None,
    process_host: ScriptHost | None = None,
    probe: EnvironmentProbe | None = None,
    command_runner: CommandRunner = run_command,
    signature_verifier: SignatureVerifier | None = None,
) -> Engine:
    """Wire validator, backups, hosts and runner under the runtime root.

    Raises:
        ConfigError: If the settings file is invalid.
    """
    if console is None:
        console = ConsoleStream()
    if settings is None:
        settings = settings_accessor()
    root = context.require_runtime_root()

    validator = ScriptSafetyValidator(
        settings, build_trusted_hashes(context.catalog_dir()), signature_verifier,
    )
    backups = SafetyBackupManager(context.safety_backups_dir(), console, command_runner)

    if session_host is None:
        from tweakguard.adapters.powershell.session import SessionHost

        session_host = SessionHost(console)
    if process_host is None:
        from tweakguard.adapters.powershell.process import ProcessHost

        process_host = ProcessHost(console)

    runner = ScriptRunner(
        validator, backups, console, session_host, process_host,
        audit=ScriptAuditWriter(runtime_root=root),
    )
    return Engine(
        console=console,
        settings=settings,
        validator=validator,
        backups=backups,
        runner=runner,
        probe=probe or EnvironmentProbe(),
        state_store=UndoStateStore(default_state_path(root)),
    )


# ═══════════════════════════════════════════════════════════════════
#  Run
# ═══════════════════════════════════════════════════════════════════


@dataclass
class RunResult:
    """Result of an unattended run."""

    exit_code: ExitCode = ExitCode.OK
    config_path: Path | None = None
    operations: list[str] = field(default_factory=list)
    incompatible: list[str] = field(default_factory=list)
    batch: OperationBatchResult | None = None
    precheck: PrecheckResult | None = None
    cancelled: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == ExitCode.OK

    def to_dict(self) -> dict:
        result: dict = {
            "exit_code": int(self.exit_code),
            "config_path": str(self.config_path) if self.config_path else None,
            "operations": self.operations,
            "cancelled": self.cancelled,
        }
        if self.incompatible:
            result["incompatible"] = self.incompatible
        if self.error:
            result["error"] = self.error
        if self.precheck is not None:
            result["precheck"] = self.precheck.model_dump(mode="json")
        if self.batch is not None:
            result["batch"] = self.batch.to_dict()
        return result


def _fail(result: RunResult, code: ExitCode, message: str, console: ConsoleStream) -> RunResult:
    result.exit_code = code
    result.error = message
    console.publish("Error", message)
    return result


def needs_dangerous_confirmation(operations: list[OperationDefinition]) -> bool:
    return any(op.risk_tier == RiskTier.DANGEROUS or not op.reversible for op in operations)


def run_selection(
    config_path: str,
    token: CancellationToken,
    *,
    force_dangerous: bool = False,
    dry_run: bool = False,
    undo: bool = False,
    prefer_process_mode: bool = False,
    engine: Engine | None = None,
) -> RunResult:
    """Run the operations a selection config selects.

    Args:
        config_path: Selection config; relative paths resolve under runtime/.
        token: Cancellation token for the whole batch.
        force_dangerous: Together with ``confirm_dangerous`` in the
            config, allows dangerous and irreversible operations.
        dry_run: Validate and back up nothing; execute nothing.
        undo: Run undo steps instead of run steps.
        prefer_process_mode: Skip the hosted session.
        engine: Pre-wired engine (tests); built from the runtime root otherwise.

    Returns:
        RunResult whose ``exit_code`` is the CLI exit code.
    """
    result = RunResult()

    # ── Config ──────────────────────────────────────────────────
    try:
        engine = engine or build_engine()
        path = resolve_selection_path(config_path)
        result.config_path = path
        config = load_selection_config(path)
        catalog = context.catalog_dir()
        tweaks, fixes = load_tweaks(catalog), load_fixes(catalog)
        features, apps = load_features(catalog), load_apps(catalog)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        result.exit_code = ExitCode.CONFIG_ERROR
        result.error = str(e)
        if engine is not None:
            engine.console.publish("Error", str(e))
        return result

    console = engine.console
    console.publish("Trace", f"Run started. config={path}, forceDangerous={force_dangerous}")

    # ── Operations ──────────────────────────────────────────────
    try:
        operations = build_operations(config, tweaks=tweaks, fixes=fixes, features=features, apps=apps)
    except ValueError as e:
        return _fail(result, ExitCode.GENERATION_FAILED, f"CLI operation generation failed: {e}", console)

    operations, incompatible = filter_compatible(operations, engine.probe.os_version())
    for op in incompatible:
        console.publish("Warning", f"{op.title}: not compatible with this Windows version; skipped.")
    result.incompatible = [op.id for op in incompatible]
    result.operations = [op.id for op in operations]

    if not operations:
        console.publish("Info", "No operations selected in config.")
        return result

    # ── Gates ───────────────────────────────────────────────────
    forced = config.confirm_dangerous and force_dangerous
    if needs_dangerous_confirmation(operations) and not forced:
        return _fail(
            result, ExitCode.DANGEROUS_NOT_CONFIRMED,
            "Dangerous operations requested but not confirmed. "
            "Set confirm_dangerous=true and pass --force-dangerous.",
            console,
        )

    needs_network = any(s.requires_network for op in operations for s in op.steps_for(undo))
    if needs_network and not engine.probe.is_online():
        return _fail(result, ExitCode.OFFLINE, "Offline detected. Network-required actions blocked.", console)

    result.precheck = run_precheck(operations, undo, engine.probe)
    if not result.precheck.ok:
        return _fail(result, ExitCode.PRECHECK_FAILED, result.precheck.message, console)

    # ── Batch ───────────────────────────────────────────────────
    orchestrator = engine.orchestrator(confirm=lambda _prompt: forced, with_precheck=False)
    request = OperationRequest(
        undo=undo,
        dry_run=dry_run,
        force_dangerous=forced,
        interactive=False,
        prefer_process_mode=prefer_process_mode,
    )
    try:
        batch = orchestrator.run_batch(operations, request, token)
    except BatchCancelledError as e:
        result.batch = e.partial_result
        result.cancelled = True
        result.exit_code = ExitCode.BATCH_FAILED
        result.error = "Batch cancelled."
        console.publish("Warning", "Batch cancelled.")
        return result

    result.batch = batch
    for item in batch.results:
        console.publish("Info" if item.success else "Error", f"{item.operation_id}: {item.message}")

    result.exit_code = ExitCode.OK if batch.success else ExitCode.BATCH_FAILED
    console.publish("Trace", f"Run completed. success={batch.success}")
    return result


def run_environment_precheck(
    probe: EnvironmentProbe | None = None, undo: bool = False,
) -> PrecheckResult:
    """Environment precheck for an empty batch."""
    return run_precheck([], undo, probe)
