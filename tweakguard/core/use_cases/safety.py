"""
Safety use cases — inspect and exercise the safety layer directly.

Thin, dict-returning entry points for the ``safety`` and ``audit``
CLI commands. None of them executes a script.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from tweakguard.core import context
from tweakguard.core.config.loader import ConfigError
from tweakguard.core.observability.console import ConsoleStream
from tweakguard.core.persistence.audit import ScriptAuditWriter
from tweakguard.core.reliability.cancellation import CancellationToken
from tweakguard.core.services.safety.allowlist import build_trusted_hashes
from tweakguard.core.services.safety.backup import SafetyBackupManager
from tweakguard.core.services.safety.validator import (
    ScriptSafetyValidator,
    SignatureVerifier,
    compute_script_hash,
)
from tweakguard.core.services.subprocess_runner import CommandRunner, run_command
from tweakguard.core.use_cases.run import settings_accessor

logger = logging.getLogger(__name__)


def validate_script_file(
    script_file: Path,
    operation_id: str,
    signature_verifier: SignatureVerifier | None = None,
) -> dict[str, Any]:
    """Run the validator over a script file.

    Returns:
        ``{"operation_id", "script_file", "script_hash", "allowed", "reason"}``
        or ``{"error": ...}``.
    """
    try:
        script = script_file.read_text(encoding="utf-8-sig")
    except OSError as e:
        return {"error": f"Cannot read {script_file}: {e}"}

    try:
        validator = ScriptSafetyValidator(
            settings_accessor(), build_trusted_hashes(context.catalog_dir()), signature_verifier,
        )
    except ConfigError as e:
        return {"error": str(e)}

    verdict = validator.validate(operation_id, script)
    logger.info("Validated %s as %s: allowed=%s", script_file, operation_id, verdict.allowed)
    return {
        "operation_id": operation_id,
        "script_file": str(script_file),
        "script_hash": compute_script_hash(script),
        **verdict.to_dict(),
    }


def _backup_manager(console: ConsoleStream | None, command_runner: CommandRunner) -> SafetyBackupManager:
    if console is None:
        console = ConsoleStream()
    return SafetyBackupManager(context.safety_backups_dir(), console, command_runner)


def list_safety_backups(operation_id: str | None = None) -> dict[str, Any]:
    """Safety-backup folders, newest first."""
    manager = _backup_manager(None, run_command)
    backups = manager.list_backups(operation_id)
    return {"backup_root": str(manager.backup_root), "backups": backups, "count": len(backups)}


def compensate_operation(
    operation_id: str,
    console: ConsoleStream | None = None,
    command_runner: CommandRunner = run_command,
    token: CancellationToken | None = None,
) -> dict[str, Any]:
    """Restore an operation's state from its newest safety backups."""
    manager = _backup_manager(console, command_runner)
    result = manager.compensate(operation_id, token or CancellationToken())
    return {"operation_id": operation_id, **result.model_dump(mode="json")}


def recent_audit_entries(limit: int = 20) -> dict[str, Any]:
    """The newest script-audit entries, oldest first."""
    writer = ScriptAuditWriter(runtime_root=context.require_runtime_root())
    entries = writer.read_recent(limit)
    return {
        "path": str(writer.path),
        "total": writer.entry_count(),
        "blocked": writer.blocked_count(),
        "entries": [e.model_dump(mode="json") for e in entries],
    }
