"""
Subprocess runner — the single place short helper commands are spawned.

``reg``, ``sc``, ``schtasks`` and the signature probe all go through
``run_command``. Long-running script steps do NOT come through here;
they use the PowerShell hosts in ``tweakguard.adapters.powershell``.

Returns a result dict rather than raising, so callers on the backup
path can downgrade any failure to a warning. Only cancellation raises.
"""

from __future__ import annotations

import logging
import subprocess
import time
from typing import Any, Callable

from tweakguard.core.reliability.cancellation import CancellationToken, OperationCancelledError

logger = logging.getLogger(__name__)

# Polling interval while waiting on a child process
POLL_INTERVAL_S = 0.1

# Grace period between terminate() and kill() on cancellation
KILL_GRACE_S = 0.5

CommandRunner = Callable[..., dict[str, Any]]


def run_command(
    cmd: list[str],
    *,
    token: CancellationToken | None = None,
    input_text: str | None = None,
    cwd: str | None = None,
) -> dict[str, Any]:
    """Run a command to completion, honoring cancellation.

    Args:
        cmd: Command list for ``subprocess.Popen``.
        token: Optional cancellation token, polled every 100 ms.
        input_text: Optional text written to stdin.
        cwd: Working directory for the command.

    Returns:
        ``{"ok": True, "exit_code": 0, "stdout": "...", "stderr": "...", "elapsed_ms": N}``
        on success, ``{"ok": False, "error": "...", ...}`` on failure.

    Raises:
        OperationCancelledError: If the token trips while the command runs.
    """
    if token is not None:
        token.raise_if_cancelled()

    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
        )
    except OSError as e:
        logger.debug("Cannot start %s: %s", cmd[0] if cmd else "?", e)
        return {"ok": False, "exit_code": -1, "stdout": "", "stderr": "", "error": str(e)}

    try:
        stdout, stderr = _communicate(proc, token, input_text)
    except OperationCancelledError:
        logger.info("Command cancelled: %s", cmd[0])
        raise

    elapsed_ms = int((time.monotonic() - start) * 1000)
    result: dict[str, Any] = {
        "ok": proc.returncode == 0,
        "exit_code": proc.returncode,
        "stdout": stdout or "",
        "stderr": stderr or "",
        "elapsed_ms": elapsed_ms,
    }
    if proc.returncode != 0:
        result["error"] = f"Command failed (exit {proc.returncode})"
    return result


def _communicate(
    proc: subprocess.Popen,
    token: CancellationToken | None,
    input_text: str | None,
) -> tuple[str, str]:
    if token is None:
        return proc.communicate(input=input_text)

    pending_input = input_text
    while True:
        try:
            out, err = proc.communicate(input=pending_input, timeout=POLL_INTERVAL_S)
            return out, err
        except subprocess.TimeoutExpired:
            # communicate() keeps the input it already sent
            pending_input = None
        if token.cancelled:
            terminate(proc)
            raise OperationCancelledError()


def terminate(proc: subprocess.Popen) -> None:
    """Terminate, wait briefly, then kill."""
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=KILL_GRACE_S)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
    except OSError as e:
        logger.debug("Terminate failed for pid %s: %s", proc.pid, e)
