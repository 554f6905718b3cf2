"""
Safety layer — decides whether a script may run, and keeps a way back.

Public API::

    from tweakguard.core.services.safety import (
        ScriptSafetyValidator,    # ordered allow/deny checks
        SafetyVerdict,
        build_trusted_hashes,     # catalog hash allowlist
        SafetyBackupManager,      # pre-run snapshots + compensation
    )
"""

from tweakguard.core.services.safety.allowlist import build_trusted_hashes, collect_hashes
from tweakguard.core.services.safety.backup import (
    BackupTargets,
    SafetyBackupManager,
    extract_backup_targets,
)
from tweakguard.core.services.safety.validator import (
    AuthenticodeVerifier,
    SafetyVerdict,
    ScriptSafetyValidator,
    compute_script_hash,
)

__all__ = [
    "AuthenticodeVerifier",
    "BackupTargets",
    "SafetyBackupManager",
    "SafetyVerdict",
    "ScriptSafetyValidator",
    "build_trusted_hashes",
    "collect_hashes",
    "compute_script_hash",
    "extract_backup_targets",
]
