"""
Safety backups — best-effort snapshots taken right before a mutating run.

Targets are pulled out of the script text with patterns, not parsing:

    registry keys     HKLM:\\..., HKEY_CURRENT_USER\\..., ...
    services          Set/Stop/Start/Restart-Service -Name <svc>
    scheduled tasks   *-ScheduledTask -TaskPath .. -TaskName ..  /  schtasks /TN ..

Each mutating step that touches at least one target gets its own folder:

    runtime/safety-backups/<UTC yyyyMMdd-HHmmssfff>-<op>-<step>/
        registry-00-<key>.reg
        service-01-<name>.txt
        task-02-<name>.xml
        manifest.json

Backups are advisory. Every failure is downgraded to a Warning on the
console; only cancellation propagates. Compensation (``reg import`` of
the newest folder with registry exports) is the last resort after a
scripted undo has already failed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tweakguard.core.models.execution import CompensationResult, ExecutionRequest
from tweakguard.core.observability.console import ConsoleStream
from tweakguard.core.reliability.cancellation import CancellationToken, OperationCancelledError
from tweakguard.core.services.subprocess_runner import CommandRunner, run_command

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


# ═══════════════════════════════════════════════════════════════════
#  Target extraction
# ═══════════════════════════════════════════════════════════════════

REGISTRY_PATH_RE = re.compile(
    r"(?:HKEY_LOCAL_MACHINE|HKEY_CURRENT_USER|HKEY_CLASSES_ROOT|HKEY_USERS|HKEY_CURRENT_CONFIG"
    r"|HKLM|HKCU|HKCR|HKU|HKCC):?\\[^'\";\r\n)\]}]+",
    re.IGNORECASE,
)
SERVICE_NAME_RE = re.compile(
    r"(?:Set|Stop|Start|Restart)-Service\b[^;\r\n]*?\s-Name\s+['\"]?([A-Za-z0-9_.\-]+)['\"]?",
    re.IGNORECASE,
)
SCHEDULED_TASK_CMDLET_RE = re.compile(
    r"(?:Get|Enable|Disable|Start|Stop)-ScheduledTask\b[^;\r\n]*?\s-TaskPath\s+['\"]([^'\"]+)['\"]"
    r"[^;\r\n]*?\s-TaskName\s+['\"]([^'\"]+)['\"]",
    re.IGNORECASE,
)
SCHEDULED_TASK_CLI_RE = re.compile(
    r"schtasks(?:\.exe)?\b[^;\r\n]*?\s/TN\s+['\"]?([^'\"]+)['\"]?",
    re.IGNORECASE,
)

_HIVE_ALIASES = (
    ("HKLM:\\", "HKEY_LOCAL_MACHINE\\"),
    ("HKCU:\\", "HKEY_CURRENT_USER\\"),
    ("HKCR:\\", "HKEY_CLASSES_ROOT\\"),
    ("HKU:\\", "HKEY_USERS\\"),
    ("HKCC:\\", "HKEY_CURRENT_CONFIG\\"),
)
_LONG_HIVES = frozenset({
    "HKEY_LOCAL_MACHINE", "HKEY_CURRENT_USER", "HKEY_CLASSES_ROOT", "HKEY_USERS", "HKEY_CURRENT_CONFIG",
})

_INVALID_FILE_NAME_CHARS = frozenset('<>:"/\\|?*') | {chr(c) for c in range(32)}


@dataclass
class BackupTargets:
    """What a script looks like it is about to change."""

    registry_keys: list[str] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    scheduled_tasks: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.registry_keys or self.services or self.scheduled_tasks)


def _distinct(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out = []
    for value in values:
        if value and value.lower() not in seen:
            seen.add(value.lower())
            out.append(value)
    return out


def normalize_registry_path(value: str) -> str:
    """PowerShell drive form (``HKLM:\\x``) to the ``reg.exe`` long form."""
    key = value.strip().strip("'\"")
    upper = key.upper()
    for short, long in _HIVE_ALIASES:
        if upper.startswith(short):
            return long + key[len(short):]
    return key


def normalize_task_name(value: str) -> str:
    task = value.strip().strip("'\"")
    return task if task.startswith("\\") else "\\" + task


def sanitize_file_name(value: str) -> str:
    """Replace characters Windows forbids in file names; never empty."""
    normalized = "".join("_" if c in _INVALID_FILE_NAME_CHARS else c for c in value or "")
    return normalized if normalized.strip() else "item"


def extract_backup_targets(script: str) -> BackupTargets:
    registry = []
    for match in REGISTRY_PATH_RE.finditer(script):
        raw = match.group(0).strip().strip("'\";,)]}")
        if raw.strip():
            registry.append(normalize_registry_path(raw))

    services = [m.group(1).strip() for m in SERVICE_NAME_RE.finditer(script)]

    tasks = []
    for match in SCHEDULED_TASK_CMDLET_RE.finditer(script):
        name = match.group(2).strip()
        if name:
            tasks.append(match.group(1).strip() + name)
    tasks.extend(m.group(1).strip() for m in SCHEDULED_TASK_CLI_RE.finditer(script))

    return BackupTargets(
        registry_keys=_distinct([k for k in registry if k.strip()]),
        services=_distinct(services),
        scheduled_tasks=_distinct(tasks),
    )


# ═══════════════════════════════════════════════════════════════════
#  Manager
# ═══════════════════════════════════════════════════════════════════


class SafetyBackupManager:
    """Creates pre-execution backups and restores from them.

    Args:
        backup_root: ``runtime/safety-backups`` directory.
        console: Sink for Warning / Info events.
        command_runner: ``run_command``-compatible callable used for
            ``reg``, ``sc`` and ``schtasks``.
    """

    def __init__(
        self,
        backup_root: Path,
        console: ConsoleStream,
        command_runner: CommandRunner = run_command,
    ):
        self._root = backup_root
        self._console = console
        self._run = command_runner

    @property
    def backup_root(self) -> Path:
        return self._root

    # ── Backup ──────────────────────────────────────────────────

    def create_backup(
        self, request: ExecutionRequest, token: CancellationToken | None = None,
    ) -> Path | None:
        """Snapshot the targets a step touches.

        Returns:
            The manifest path, or None when nothing was backed up.

        Raises:
            OperationCancelledError: If the token trips mid-backup.
        """
        try:
            return self._create_backup(request, token)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.warning("Safety backup failed", exc_info=True)
            self._console.publish("Warning", f"Safety backup failed: {e}")
            return None

    def _create_backup(self, request: ExecutionRequest, token: CancellationToken | None) -> Path | None:
        targets = extract_backup_targets(request.script)
        if targets.empty:
            return None

        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S%f")[:-3]
        folder = self._root / (
            f"{stamp}-{sanitize_file_name(request.operation_id)}-{sanitize_file_name(request.step_name)}"
        )
        folder.mkdir(parents=True, exist_ok=True)

        files: list[str] = []
        index = 0
        exists_cache: dict[str, bool] = {}

        for key in targets.registry_keys:
            _check(token)
            cache_key = key.lower()
            if cache_key not in exists_cache:
                exists_cache[cache_key] = self.registry_key_exists(key, token)
            if not exists_cache[cache_key]:
                self._console.publish("Warning", f"Registry backup skipped for {key}: key does not exist.")
                continue

            path = folder / f"registry-{index:02d}-{sanitize_file_name(key)}.reg"
            index += 1
            result = self._run(["reg.exe", "export", key, str(path), "/y"], token=token)
            if result["ok"] and path.is_file():
                files.append(str(path))
            else:
                self._console.publish(
                    "Warning", f"Registry backup skipped for {key}: {result.get('stderr', '').strip()}",
                )

        for service in targets.services:
            _check(token)
            qc = self._run(["sc.exe", "qc", service], token=token)
            query = self._run(["sc.exe", "query", service], token=token)

            path = folder / f"service-{index:02d}-{sanitize_file_name(service)}.txt"
            index += 1
            lines = [
                f"Service: {service}",
                "--- sc qc ---",
                _stdout_or_stderr(qc),
                "--- sc query ---",
                _stdout_or_stderr(query),
            ]
            path.write_text("\n".join(lines) + "\n", encoding="utf-8")
            files.append(str(path))

        for task in targets.scheduled_tasks:
            _check(token)
            name = normalize_task_name(task)
            result = self._run(["schtasks.exe", "/Query", "/TN", name, "/XML"], token=token)
            if not result["ok"] or not result.get("stdout", "").strip():
                self._console.publish(
                    "Warning", f"Scheduled task backup skipped for {name}: {result.get('stderr', '').strip()}",
                )
                continue

            path = folder / f"task-{index:02d}-{sanitize_file_name(name)}.xml"
            index += 1
            path.write_text(result["stdout"], encoding="utf-8")
            files.append(str(path))

        manifest_path = folder / MANIFEST_FILE
        manifest = {
            "operation_id": request.operation_id,
            "step_name": request.step_name,
            "created_at": datetime.now(UTC).isoformat(),
            "registry_keys": targets.registry_keys,
            "services": targets.services,
            "scheduled_tasks": targets.scheduled_tasks,
            "files": files,
        }
        manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")

        self._console.publish("Info", f"Safety backup created: {manifest_path}")
        logger.info("Safety backup for %s/%s: %d artifacts", request.operation_id, request.step_name, len(files))
        return manifest_path

    def registry_key_exists(self, key: str, token: CancellationToken | None = None) -> bool:
        value = key.strip()
        hive, _, sub_path = value.partition("\\")
        if hive.upper() not in _LONG_HIVES:
            return False
        if not sub_path.strip():
            return True
        result = self._run(["reg.exe", "query", value], token=token)
        return bool(result["ok"])

    # ── Compensation ────────────────────────────────────────────

    def compensate(self, operation_id: str, token: CancellationToken | None = None) -> CompensationResult:
        """Import registry exports from the newest backup of an operation.

        Folders are scanned newest first; the first folder whose imports
        restore anything ends the search.
        """
        if not self._root.is_dir():
            return CompensationResult(
                attempted=False, success=False,
                message=f"No safety backups found for operation '{operation_id}'.",
            )

        folders = self.folders_for(operation_id)
        if not folders:
            return CompensationResult(
                attempted=False, success=False,
                message=f"No operation-specific safety backups found for '{operation_id}'.",
            )

        attempted = False
        restored = 0
        failed = 0

        for folder in folders:
            _check(token)
            exports = sorted(folder.glob("registry-*.reg"), key=lambda p: str(p).lower())
            if not exports:
                continue

            attempted = True
            for export in exports:
                _check(token)
                result = self._run(["reg.exe", "import", str(export)], token=token)
                if result["ok"]:
                    restored += 1
                else:
                    failed += 1
                    stderr = result.get("stderr", "").strip() or "unknown error"
                    self._console.publish("Warning", f"Compensation import failed for {export}: {stderr}")

            if restored > 0:
                logger.info("Compensated %s from %s (%d restored)", operation_id, folder.name, restored)
                return CompensationResult(
                    attempted=True, success=True,
                    message=(
                        f"Restored {restored} registry backup artifact(s) from safety backups "
                        f"for '{operation_id}'."
                    ),
                )

        if not attempted:
            return CompensationResult(
                attempted=False, success=False,
                message=f"Safety backups exist for '{operation_id}' but no restorable registry artifacts were found.",
            )

        return CompensationResult(
            attempted=True, success=False,
            message=(
                f"Safety compensation attempted for '{operation_id}' but restore did not succeed "
                f"(restored={restored}, failed={failed})."
            ),
        )

    # ── Listing ─────────────────────────────────────────────────

    def folders_for(self, operation_id: str) -> list[Path]:
        """Backup folders whose manifest names this operation, newest first.

        Folder names cannot tell ``tweak.a`` from ``tweak.a-b``, so only
        the manifest decides; a folder without one is never attributed.
        """
        wanted = operation_id.strip().lower()
        folders = []
        for folder in self._folders():
            manifest = _read_manifest(folder)
            if manifest is None:
                logger.debug("Skipping %s for %s: no readable manifest", folder.name, operation_id)
                continue
            if str(manifest.get("operation_id", "")).strip().lower() == wanted:
                folders.append(folder)
        return folders

    def list_backups(self, operation_id: str | None = None) -> list[dict[str, Any]]:
        """Summaries of backup folders, newest first."""
        folders = self.folders_for(operation_id) if operation_id else self._folders()

        summaries = []
        for folder in folders:
            summary: dict[str, Any] = {"folder": folder.name, "path": str(folder)}
            manifest = _read_manifest(folder)
            if manifest is not None:
                summary.update({
                    "operation_id": manifest.get("operation_id", ""),
                    "step_name": manifest.get("step_name", ""),
                    "created_at": manifest.get("created_at", ""),
                    "files": len(manifest.get("files", [])),
                })
            else:
                summary["files"] = sum(1 for p in folder.iterdir() if p.name != MANIFEST_FILE)
            summaries.append(summary)
        return summaries

    def _folders(self) -> list[Path]:
        if not self._root.is_dir():
            return []
        return sorted(
            (p for p in self._root.iterdir() if p.is_dir()),
            key=lambda p: p.name.lower(), reverse=True,
        )


def _read_manifest(folder: Path) -> dict[str, Any] | None:
    try:
        manifest = json.loads((folder / MANIFEST_FILE).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Unreadable manifest in %s: %s", folder, e)
        return None
    return manifest if isinstance(manifest, dict) else None


def _check(token: CancellationToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


def _stdout_or_stderr(result: dict[str, Any]) -> str:
    stdout = result.get("stdout", "")
    return stdout.strip() if stdout.strip() else result.get("stderr", "").strip()
