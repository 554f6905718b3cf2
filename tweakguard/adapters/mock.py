"""
Mock script host — universal test double for both execution paths.

Never touches PowerShell. By default every step succeeds with
``default_output``. Responses can be configured per step name or per
``op/step`` pair, either as a single result or as a sequence consumed
one call at a time (the last entry repeats), so a detect step can
report NotApplied before the run and Applied after it.
"""

from __future__ import annotations

from typing import Sequence

from tweakguard.adapters.base import ScriptHost
from tweakguard.core.models.execution import ExecutionRequest, ExecutionResult
from tweakguard.core.reliability.cancellation import CancellationToken


class MockScriptHost(ScriptHost):
    """Configurable in-memory host.

    Keys are matched ``"<operation_id>/<step_name>"`` first, then
    ``"<step_name>"``, case-insensitively.
    """

    def __init__(
        self,
        host_name: str = "mock",
        available: bool = True,
        default_output: str = "[mock] executed",
    ):
        self._name = host_name
        self._available = available
        self._default_output = default_output
        self._responses: dict[str, list[ExecutionResult | Exception]] = {}
        self._call_log: list[ExecutionRequest] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[ExecutionRequest]:
        """All requests this mock has received."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def calls_for(self, operation_id: str) -> list[ExecutionRequest]:
        return [r for r in self._call_log if r.operation_id == operation_id]

    def is_available(self) -> bool:
        return self._available

    def set_response(self, key: str, result: ExecutionResult | Sequence[ExecutionResult]) -> None:
        """Set the result (or result sequence) for a step or op/step key."""
        if isinstance(result, ExecutionResult):
            self._responses[key.lower()] = [result]
        else:
            self._responses[key.lower()] = list(result)

    def set_output(self, key: str, *outputs: str) -> None:
        """Shorthand for successful results with the given outputs."""
        self.set_response(key, [ExecutionResult.succeeded(o) for o in outputs])

    def set_failure(self, key: str, output: str = "Mock failure", exit_code: int = 1) -> None:
        self._responses[key.lower()] = [ExecutionResult.failed(output, exit_code)]

    def set_fault(self, key: str, error: Exception) -> None:
        """Make the step raise (e.g. a HostRuntimeError)."""
        self._responses[key.lower()] = [error]

    def execute(self, request: ExecutionRequest, token: CancellationToken) -> ExecutionResult:
        self._call_log.append(request)
        token.raise_if_cancelled()

        for key in (f"{request.operation_id}/{request.step_name}".lower(), request.step_name.lower()):
            queue = self._responses.get(key)
            if not queue:
                continue
            response = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(response, Exception):
                raise response
            return response

        return ExecutionResult.succeeded(self._default_output)

    def reset(self) -> None:
        """Clear call log and configured responses."""
        self._call_log.clear()
        self._responses.clear()
