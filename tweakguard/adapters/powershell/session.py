"""
Hosted session host — the default "embedded" execution path.

A small driver runs inside PowerShell, creates an in-process
``[PowerShell]`` instance with the session bootstrap applied, runs the
step script in it and reports back over stdout, one record per line:

    <Channel>\\x1f<text>                 Output/Error/Warning/Verbose/Debug/Information
    Started\\x1f                          the step script is about to run
    Done\\x1f<True|False>                 HadErrors verdict
    Fault\\x1f<Kind>\\x1f<message>        CommandNotFound / Runtime / Unavailable

The script body travels as a base64 UTF-8 line on stdin; the driver
itself is passed with ``-EncodedCommand``. A driver that cannot start,
or exits without Done/Fault before ``Started``, means the host is
unavailable. Once ``Started`` was seen, a missing verdict is a runtime
fault: the script may have partly run and must not be repeated.

Success is "no stream errors", except that a ``detect`` step which
still printed an explicit status counts as successful: detect scripts
may signal state through the error channel.
"""

from __future__ import annotations

import base64
import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Callable

from tweakguard.adapters.base import (
    CommandNotFoundError,
    HostRuntimeError,
    HostUnavailableError,
    ScriptHost,
)
from tweakguard.adapters.powershell.process import BASE_ARGS, encode_command, pump_lines
from tweakguard.adapters.powershell.streams import OutputCollector
from tweakguard.core.engine.status_parser import DetectState, parse_status
from tweakguard.core.models.execution import ExecutionRequest, ExecutionResult
from tweakguard.core.observability.console import ConsoleStream
from tweakguard.core.reliability.cancellation import CancellationToken, OperationCancelledError
from tweakguard.core.services.subprocess_runner import POLL_INTERVAL_S, terminate

logger = logging.getLogger(__name__)

SEPARATOR = "\x1f"
BOOTSTRAP_SCRIPT = "$ErrorActionPreference='Stop';Set-StrictMode -Version Latest;"
CHANNELS = ("Output", "Error", "Warning", "Verbose", "Debug", "Information")

DRIVER_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
[Console]::OutputEncoding = [Text.Encoding]::UTF8
$sep = [string][char]0x1F
function Send-Record([string]$channel, $item) {
  if ($null -eq $item) { return }
  foreach ($line in ([string]$item -split "`r?`n")) {
    [Console]::Out.WriteLine($channel + $sep + $line)
  }
  [Console]::Out.Flush()
}
try {
  $payload = [Console]::In.ReadLine()
  $script = [Text.Encoding]::UTF8.GetString([Convert]::FromBase64String($payload))
  $ps = [PowerShell]::Create()
  $null = $ps.AddScript('__BOOTSTRAP__').AddStatement().AddScript($script)
  $inputData = New-Object 'System.Management.Automation.PSDataCollection[psobject]'
  $inputData.Complete()
  $outputData = New-Object 'System.Management.Automation.PSDataCollection[psobject]'
} catch {
  [Console]::Out.WriteLine('Fault' + $sep + 'Unavailable' + $sep + $_.Exception.Message)
  exit 3
}
$seen = @{ Output = 0; Error = 0; Warning = 0; Verbose = 0; Debug = 0; Information = 0 }
function Send-New {
  $sources = [ordered]@{
    Output = $outputData; Error = $ps.Streams.Error; Warning = $ps.Streams.Warning
    Verbose = $ps.Streams.Verbose; Debug = $ps.Streams.Debug; Information = $ps.Streams.Information
  }
  foreach ($name in $sources.Keys) {
    $items = $sources[$name]
    while ($seen[$name] -lt $items.Count) {
      Send-Record $name $items[$seen[$name]]
      $seen[$name]++
    }
  }
}
$fault = $null
try {
  [Console]::Out.WriteLine('Started' + $sep)
  [Console]::Out.Flush()
  $async = $ps.BeginInvoke($inputData, $outputData)
  while (-not $async.IsCompleted) {
    Send-New
    Start-Sleep -Milliseconds 50
  }
  $ps.EndInvoke($async) | Out-Null
} catch {
  $fault = $_.Exception
  if ($fault -is [System.Management.Automation.MethodInvocationException] -and $null -ne $fault.InnerException) {
    $fault = $fault.InnerException
  }
}
Send-New
if ($null -ne $fault) {
  $kind = 'Unavailable'
  $inner = $null
  if ($fault -is [System.Management.Automation.IContainsErrorRecord] -and $null -ne $fault.ErrorRecord) {
    $inner = $fault.ErrorRecord.Exception
  }
  if ($fault -is [System.Management.Automation.CommandNotFoundException] -or $inner -is [System.Management.Automation.CommandNotFoundException]) {
    $kind = 'CommandNotFound'
  } elseif ($fault -is [System.Management.Automation.RuntimeException]) {
    $kind = 'Runtime'
  }
  [Console]::Out.WriteLine('Fault' + $sep + $kind + $sep + ($fault.Message -replace "`r?`n", ' '))
  exit 2
}
$hadErrors = $ps.HadErrors -or $ps.Streams.Error.Count -gt 0
[Console]::Out.WriteLine('Done' + $sep + [string]$hadErrors)
exit 0
""".replace("__BOOTSTRAP__", BOOTSTRAP_SCRIPT.replace("'", "''")).strip()


def default_session_executable() -> str:
    """``pwsh`` when installed, otherwise Windows PowerShell."""
    return "pwsh.exe" if shutil.which("pwsh.exe") or shutil.which("pwsh") else "powershell.exe"


@dataclass
class SessionReport:
    """What the driver said about one run."""

    started: bool = False
    had_errors: bool | None = None
    fault_kind: str = ""
    fault_message: str = ""
    noise: list[str] = field(default_factory=list)

    @property
    def has_verdict(self) -> bool:
        return self.had_errors is not None or bool(self.fault_kind)


def parse_record(line: str) -> tuple[str, str]:
    """Split one driver line into ``(channel, text)``."""
    channel, sep, text = line.lstrip("\ufeff").partition(SEPARATOR)
    if not sep:
        return "", line
    return channel, text


class SessionHost(ScriptHost):
    """Runs each step inside a hosted PowerShell session.

    Args:
        console: Sink for streamed output.
        executable: PowerShell executable hosting the driver.
        popen: ``subprocess.Popen``-compatible factory.
    """

    def __init__(
        self,
        console: ConsoleStream,
        executable: str | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self._console = console
        self._executable = executable or default_session_executable()
        self._popen = popen

    @property
    def name(self) -> str:
        return "session"

    def is_available(self) -> bool:
        return shutil.which(self._executable) is not None

    def execute(self, request: ExecutionRequest, token: CancellationToken) -> ExecutionResult:
        op_step = f"{request.operation_id}/{request.step_name}"
        token.raise_if_cancelled()

        try:
            proc = self._popen(
                [self._executable, *BASE_ARGS, "-EncodedCommand", encode_command(DRIVER_SCRIPT)],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise HostUnavailableError(f"Cannot start {self._executable}: {e}") from e

        try:
            proc.stdin.write(base64.b64encode(request.script.encode("utf-8")).decode("ascii") + "\n")
            proc.stdin.close()
        except OSError as e:
            terminate(proc)
            raise HostUnavailableError(f"Hosted session rejected the script: {e}") from e

        collector = OutputCollector(self._console)
        report = SessionReport()

        def on_stdout(line: str) -> None:
            channel, text = parse_record(line)
            if channel in CHANNELS:
                collector.add(channel, text)
            elif channel == "Started":
                report.started = True
            elif channel == "Done":
                report.had_errors = text.strip().lower() == "true"
            elif channel == "Fault":
                kind, _, message = text.partition(SEPARATOR)
                report.fault_kind = kind.strip()
                report.fault_message = message.strip()
            elif line.strip():
                report.noise.append(line.strip())

        readers = [
            threading.Thread(target=pump_lines, args=(proc.stdout, on_stdout), daemon=True),
            threading.Thread(target=pump_lines, args=(proc.stderr, report.noise.append), daemon=True),
        ]
        for reader in readers:
            reader.start()

        while proc.poll() is None:
            if token.wait(POLL_INTERVAL_S):
                self._console.publish(
                    "Warning", f"{op_step}: cancellation requested. Runspace pipeline stop issued.",
                )
                terminate(proc)
                for reader in readers:
                    reader.join(timeout=1)
                raise OperationCancelledError(f"{op_step} cancelled.")

        for reader in readers:
            reader.join()

        if report.fault_kind == "CommandNotFound":
            raise CommandNotFoundError(report.fault_message)
        if report.fault_kind == "Runtime":
            raise HostRuntimeError(report.fault_message)
        detail = report.fault_message or " ".join(report.noise[-3:])
        if report.started and (report.fault_kind or not report.has_verdict):
            raise HostRuntimeError(
                f"Hosted session stopped after the script started (exit {proc.returncode}). {detail}".strip()
            )
        if report.fault_kind or not report.has_verdict:
            raise HostUnavailableError(
                f"Hosted session exited without a verdict (exit {proc.returncode}). {detail}".strip()
            )

        output = collector.text()
        is_detect = request.step_name.lower() == "detect"
        explicit = is_detect and parse_status(output) != DetectState.UNKNOWN
        success = not report.had_errors or explicit
        if report.had_errors and explicit:
            self._console.publish(
                "Trace",
                "Detect step returned an explicit state despite runspace errors; treating detect as successful.",
            )

        self._console.publish("Trace", f"Session execution finished. success={success}, lines={len(collector)}")
        return ExecutionResult(success=success, exit_code=0 if success else 1, output=output)
