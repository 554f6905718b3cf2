"""
External process host — one ``powershell.exe`` per step.

The script is wrapped so every stream lands on stdout, encoded as
UTF-16LE base64 and passed with ``-EncodedCommand``. The console gets
a ``Security`` event with the payload replaced by its SHA-256, so the
log shows exactly what ran without echoing the body twice.

Success is exit code 0, nothing else.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import shutil
import subprocess
import threading
from typing import IO, Callable

from tweakguard.adapters.base import ScriptHost
from tweakguard.adapters.powershell.streams import OutputCollector, is_progress_line
from tweakguard.core.models.execution import ExecutionRequest, ExecutionResult
from tweakguard.core.observability.console import ConsoleStream
from tweakguard.core.reliability.cancellation import CancellationToken, OperationCancelledError
from tweakguard.core.services.subprocess_runner import POLL_INTERVAL_S, terminate

logger = logging.getLogger(__name__)

POWERSHELL_EXE = "powershell.exe"
BASE_ARGS = ("-NoProfile", "-NonInteractive", "-ExecutionPolicy", "RemoteSigned")

_WRAP_PREFIX = (
    "$ProgressPreference='SilentlyContinue';$VerbosePreference='Continue';"
    "$DebugPreference='Continue';$InformationPreference='Continue';& { "
)
_WRAP_SUFFIX = " } *>&1"


def wrap_script(script: str) -> str:
    """Route every stream to stdout and silence progress records."""
    return _WRAP_PREFIX + script + _WRAP_SUFFIX


def encode_command(script: str) -> str:
    """Base64 of UTF-16LE, the form ``-EncodedCommand`` expects."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def redacted_command_line(wrapped: str, executable: str = POWERSHELL_EXE) -> str:
    digest = hashlib.sha256(wrapped.encode("utf-8")).hexdigest().upper()
    return f"{executable} {' '.join(BASE_ARGS)} -EncodedCommand <sha256:{digest}>"


def pump_lines(stream: IO[str], on_line: Callable[[str], None]) -> None:
    """Feed each line of a text stream to ``on_line`` until EOF."""
    try:
        for raw in stream:
            on_line(raw.rstrip("\r\n"))
    except (OSError, ValueError) as e:
        # Closed under us during cancellation
        logger.debug("Stream pump stopped: %s", e)


class ProcessHost(ScriptHost):
    """Runs each step in a fresh external PowerShell process.

    Args:
        console: Sink for streamed output and Security/Trace events.
        executable: PowerShell executable.
        popen: ``subprocess.Popen``-compatible factory.
    """

    def __init__(
        self,
        console: ConsoleStream,
        executable: str = POWERSHELL_EXE,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self._console = console
        self._executable = executable
        self._popen = popen

    @property
    def name(self) -> str:
        return "process"

    def is_available(self) -> bool:
        return shutil.which(self._executable) is not None

    def execute(self, request: ExecutionRequest, token: CancellationToken) -> ExecutionResult:
        op_step = f"{request.operation_id}/{request.step_name}"
        wrapped = wrap_script(request.script)
        self._console.publish(
            "Trace", f"Process execution start. op={request.operation_id}, step={request.step_name}",
        )
        self._console.publish(
            "Security",
            f"External PowerShell invocation: {redacted_command_line(wrapped, self._executable)}",
        )

        token.raise_if_cancelled()
        try:
            proc = self._popen(
                [self._executable, *BASE_ARGS, "-EncodedCommand", encode_command(wrapped)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            message = f"Failed to start {self._executable}: {e}"
            self._console.publish("Error", f"{op_step}: {message}")
            return ExecutionResult.failed(message)

        collector = OutputCollector(self._console)
        readers = [
            threading.Thread(
                target=pump_lines,
                args=(proc.stdout, lambda line: collector.add(
                    "Progress" if is_progress_line(line.strip()) else "Output", line,
                )),
                daemon=True,
            ),
            threading.Thread(
                target=pump_lines,
                args=(proc.stderr, lambda line: collector.add("Error", line)),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        while proc.poll() is None:
            if token.wait(POLL_INTERVAL_S):
                self._console.publish(
                    "Warning",
                    f"{op_step}: cancellation requested. Attempting graceful external PowerShell shutdown.",
                )
                terminate(proc)
                for reader in readers:
                    reader.join(timeout=1)
                self._console.publish("Warning", f"{op_step}: cancelled.")
                raise OperationCancelledError(f"{op_step} cancelled.")

        for reader in readers:
            reader.join()

        exit_code = proc.returncode
        success = exit_code == 0
        self._console.publish(
            "Trace",
            f"Process execution finished. exit={exit_code}, success={success}, lines={len(collector)}",
        )
        return ExecutionResult(success=success, exit_code=exit_code, output=collector.text())
