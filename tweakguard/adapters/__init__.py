"""Adapters — PowerShell execution hosts.

Public re-exports for convenient access.
"""

from tweakguard.adapters.base import (
    CommandNotFoundError,
    HostError,
    HostRuntimeError,
    HostUnavailableError,
    ScriptHost,
)
from tweakguard.adapters.mock import MockScriptHost

__all__ = [
    "CommandNotFoundError",
    "HostError",
    "HostRuntimeError",
    "HostUnavailableError",
    "MockScriptHost",
    "ScriptHost",
]
