"""
Script host base — the contract between the runner and a PowerShell engine.

The runner only talks to hosts through this interface, never directly
to a PowerShell process. Two real hosts exist (hosted session and
external process) plus a mock for tests.

Hosts return an ExecutionResult for anything the SCRIPT did, including
failures. They raise only for:

    OperationCancelledError   the token tripped mid-run
    HostUnavailableError      the engine itself could not be reached
    HostRuntimeError          the engine faulted while running the script
    CommandNotFoundError      ... because a command did not resolve
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from tweakguard.core.models.execution import ExecutionRequest, ExecutionResult
from tweakguard.core.reliability.cancellation import CancellationToken


class HostError(Exception):
    """Base class for execution-host infrastructure faults."""


class HostUnavailableError(HostError):
    """The host could not be started or exited without a verdict."""


class HostRuntimeError(HostError):
    """The host raised a runtime fault while running the script."""


class CommandNotFoundError(HostRuntimeError):
    """A runtime fault caused by a command that does not resolve."""


class ScriptHost(ABC):
    """Abstract base class for script execution hosts.

    To create a new host:
        1. Subclass ScriptHost
        2. Implement name, is_available, execute
        3. Hand it to ScriptRunner
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The host identifier (e.g., 'session', 'process')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the underlying PowerShell executable exists.

        Should be fast and never raise.
        """

    @abstractmethod
    def execute(self, request: ExecutionRequest, token: CancellationToken) -> ExecutionResult:
        """Run one script step to completion.

        Raises:
            OperationCancelledError: On cancellation.
            HostError: On infrastructure faults (see module docstring).
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
