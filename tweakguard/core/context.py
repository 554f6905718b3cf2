"""
Runtime context — the single source of truth for "where does the engine live."

Every core service that needs an on-disk location derives it from the
runtime root registered here. The root is set ONCE at startup:

    - CLI:    main.py   → context.set_runtime_root(root)
    - Tests:  conftest  → context.set_runtime_root(tmp_path)

Layout under the root:
    data/             settings.yml, state.json
    Data/             catalog JSON files
    logs/             script-audit.ndjson
    runtime/          selection configs, safety-backups/

Module-level singleton (not a class). Thread-safe for reads.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


_runtime_root: Optional[Path] = None


def set_runtime_root(root: Path) -> None:
    """Register the runtime root for the current process."""
    global _runtime_root
    _runtime_root = root


def get_runtime_root() -> Optional[Path]:
    """Return the current runtime root, or None if not yet set."""
    return _runtime_root


def require_runtime_root() -> Path:
    """Return the runtime root, falling back to the working directory."""
    return _runtime_root if _runtime_root is not None else Path.cwd()


# ── Derived paths ───────────────────────────────────────────────


def data_dir() -> Path:
    return require_runtime_root() / "data"


def catalog_dir() -> Path:
    return require_runtime_root() / "Data"


def logs_dir() -> Path:
    return require_runtime_root() / "logs"


def runtime_dir() -> Path:
    return require_runtime_root() / "runtime"


def safety_backups_dir() -> Path:
    return runtime_dir() / "safety-backups"
