"""
Environment precheck — may a batch start on this machine at all?

Checks run in order and stop at the first failure:

    1. administrator privileges
    2. Windows
    3. supported Windows version (10.0.19041 … 10.0.29999)
    4. ≥ 500 MB free on the system drive
    5. network, when any step of the batch requires it

Also home to the per-operation compatibility gate (``win10``,
``win11``, ``>=10.0.22000``, ``<=…``).

All probes are injectable through ``EnvironmentProbe`` so tests never
depend on the host they run on.
"""

from __future__ import annotations

import logging
import os
import platform
import sys
from dataclasses import dataclass, field
from typing import Callable

import psutil

from tweakguard.core.models.execution import PrecheckResult
from tweakguard.core.models.operation import OperationDefinition
from tweakguard.core.services.network import is_network_available

logger = logging.getLogger(__name__)

Version = tuple[int, int, int]

MINIMUM_SUPPORTED_VERSION: Version = (10, 0, 19041)
MAXIMUM_VALIDATED_VERSION: Version = (10, 0, 29999)
WINDOWS_11_FIRST_BUILD = 22000
MIN_FREE_BYTES = 500 * 1024 * 1024


# ═══════════════════════════════════════════════════════════════════
#  Probes
# ═══════════════════════════════════════════════════════════════════


def is_windows() -> bool:
    return sys.platform == "win32"


def is_admin() -> bool:
    """Administrator check; always False off Windows."""
    if not is_windows():
        return False
    try:
        import ctypes

        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except (AttributeError, OSError) as e:
        logger.debug("Admin probe failed: %s", e)
        return False


def parse_version(text: str) -> Version | None:
    parts = text.strip().split(".")
    try:
        numbers = [int(p) for p in parts[:3]]
    except ValueError:
        return None
    if not numbers:
        return None
    while len(numbers) < 3:
        numbers.append(0)
    return numbers[0], numbers[1], numbers[2]


def current_os_version() -> Version | None:
    """``(major, minor, build)`` on Windows, None elsewhere."""
    if not is_windows():
        return None
    return parse_version(platform.version())


def system_drive_free_bytes() -> int:
    drive = os.environ.get("SystemDrive", "C:")
    return psutil.disk_usage(drive.rstrip("\\") + "\\").free


@dataclass
class EnvironmentProbe:
    """The host facts a precheck looks at."""

    is_admin: Callable[[], bool] = field(default=is_admin)
    is_windows: Callable[[], bool] = field(default=is_windows)
    os_version: Callable[[], Version | None] = field(default=current_os_version)
    free_bytes: Callable[[], int] = field(default=system_drive_free_bytes)
    is_online: Callable[[], bool] = field(default=is_network_available)


def _fmt(version: Version) -> str:
    return ".".join(str(v) for v in version)


# ═══════════════════════════════════════════════════════════════════
#  Precheck
# ═══════════════════════════════════════════════════════════════════


def run_precheck(
    operations: list[OperationDefinition],
    undo: bool = False,
    probe: EnvironmentProbe | None = None,
) -> PrecheckResult:
    """Check the environment before a batch starts."""
    probe = probe or EnvironmentProbe()

    if not probe.is_admin():
        return PrecheckResult.failure("Administrator privileges are required.")

    if not probe.is_windows():
        return PrecheckResult.failure("Windows is required for operation execution.")

    version = probe.os_version()
    if version is None:
        return PrecheckResult.failure("Unsupported Windows version: unable to determine the OS version.")
    if version < MINIMUM_SUPPORTED_VERSION:
        return PrecheckResult.failure(
            f"Unsupported Windows version {_fmt(version)}. Minimum supported version is "
            f"{_fmt(MINIMUM_SUPPORTED_VERSION)} (Windows 10 build 19041).",
        )
    if version > MAXIMUM_VALIDATED_VERSION:
        return PrecheckResult.failure(
            f"Unsupported Windows version {_fmt(version)}. Maximum validated version is "
            f"{_fmt(MAXIMUM_VALIDATED_VERSION)}.",
        )

    try:
        free = probe.free_bytes()
    except OSError as e:
        logger.warning("Free space probe failed: %s", e)
        free = 0
    if free < MIN_FREE_BYTES:
        return PrecheckResult.failure("Insufficient disk space (<500MB free). Operation blocked.")

    requires_network = any(step.requires_network for op in operations for step in op.steps_for(undo))
    if requires_network and not probe.is_online():
        return PrecheckResult.failure(
            "Offline detected. Network-required operations were blocked before execution.",
        )

    logger.info("Batch precheck passed (%d operations)", len(operations))
    return PrecheckResult.success()


# ── Compatibility gate ─────────────────────────────────────────────


def token_matches(token: str, version: Version) -> bool:
    """Whether one compatibility token admits the given OS version."""
    normalized = token.strip().lower()
    major, _, build = version
    if normalized == "win10":
        return major == 10 and build < WINDOWS_11_FIRST_BUILD
    if normalized == "win11":
        return major == 10 and build >= WINDOWS_11_FIRST_BUILD
    if normalized.startswith(">="):
        bound = parse_version(normalized[2:])
        return bound is not None and version >= bound
    if normalized.startswith("<="):
        bound = parse_version(normalized[2:])
        return bound is not None and version <= bound
    return False


def is_compatible(op: OperationDefinition, version: Version | None) -> bool:
    """No tokens means always compatible; otherwise any token may match."""
    tokens = [t for t in op.compatibility if t.strip()]
    if not tokens:
        return True
    if version is None:
        return False
    return any(token_matches(t, version) for t in tokens)


def filter_compatible(
    operations: list[OperationDefinition], version: Version | None,
) -> tuple[list[OperationDefinition], list[OperationDefinition]]:
    """Split into ``(compatible, incompatible)``, preserving order."""
    compatible, incompatible = [], []
    for op in operations:
        (compatible if is_compatible(op, version) else incompatible).append(op)
    return compatible, incompatible
