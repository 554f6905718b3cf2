"""
Shared test fixtures and configuration.
"""

from pathlib import Path
from typing import Any

import pytest

from tweakguard.adapters.mock import MockScriptHost
from tweakguard.core import context
from tweakguard.core.engine.runner import ScriptRunner
from tweakguard.core.models.state import AppSettings
from tweakguard.core.observability.console import ConsoleStream
from tweakguard.core.persistence.audit import ScriptAuditWriter
from tweakguard.core.reliability.cancellation import CancellationToken
from tweakguard.core.services.safety.backup import SafetyBackupManager
from tweakguard.core.services.safety.validator import ScriptSafetyValidator


class FakeCommandRunner:
    """Stands in for ``run_command`` when talking to reg/sc/schtasks.

    ``reg.exe export`` writes the target file so the manager sees a
    real artifact. Individual verbs can be made to fail.
    """

    def __init__(self, failing: set[str] | None = None):
        self.calls: list[list[str]] = []
        self.failing = failing or set()

    def __call__(self, cmd: list[str], **kwargs: Any) -> dict[str, Any]:
        self.calls.append(list(cmd))
        verb = cmd[1].lower() if len(cmd) > 1 else ""
        if verb in self.failing:
            return {"ok": False, "exit_code": 1, "stdout": "", "stderr": f"{verb} failed"}
        if cmd[0] == "reg.exe" and verb == "export":
            Path(cmd[3]).write_text("Windows Registry Editor Version 5.00\n", encoding="utf-16")
        if cmd[0] == "schtasks.exe":
            return {"ok": True, "exit_code": 0, "stdout": "<Task />", "stderr": ""}
        return {"ok": True, "exit_code": 0, "stdout": "", "stderr": ""}

    def verbs(self) -> list[str]:
        return [c[1].lower() for c in self.calls if len(c) > 1]


@pytest.fixture(autouse=True)
def runtime_root(tmp_path: Path):
    """Every test gets its own runtime root."""
    context.set_runtime_root(tmp_path)
    yield tmp_path
    context.set_runtime_root(None)


@pytest.fixture
def console() -> ConsoleStream:
    return ConsoleStream()


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def make_settings():
    """Factory: ``make_settings(**fields)`` → live settings accessor."""

    def _make(**fields):
        settings = AppSettings(**fields)
        return lambda: settings

    return _make


@pytest.fixture
def command_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def session_host() -> MockScriptHost:
    return MockScriptHost("session")


@pytest.fixture
def process_host() -> MockScriptHost:
    return MockScriptHost("process")


@pytest.fixture
def backups(runtime_root: Path, console: ConsoleStream, command_runner: FakeCommandRunner) -> SafetyBackupManager:
    return SafetyBackupManager(context.safety_backups_dir(), console, command_runner)


@pytest.fixture
def script_runner(
    make_settings,
    backups: SafetyBackupManager,
    console: ConsoleStream,
    session_host: MockScriptHost,
    process_host: MockScriptHost,
    runtime_root: Path,
) -> ScriptRunner:
    """Runner with guards off, so orchestrator tests can use any script."""
    validator = ScriptSafetyValidator(
        make_settings(enforce_script_safety_guards=False), signature_verifier=lambda _p: None,
    )
    return ScriptRunner(
        validator, backups, console, session_host, process_host,
        audit=ScriptAuditWriter(runtime_root=runtime_root),
    )
