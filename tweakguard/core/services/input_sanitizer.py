"""
Input sanitizer — guards every catalog value spliced into a script.

Catalog JSON is user-editable, so package ids, feature names and
arguments are checked against narrow patterns before the operation
builder quotes them into PowerShell. Rejections raise ``ValueError``
naming the context (e.g. ``feature 'hyperv'``) so the CLI can report
which catalog entry is bad.
"""

from __future__ import annotations

import re

_PACKAGE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]{0,127}$")
_FEATURE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_SAFE_ARGUMENT_RE = re.compile(r"^[A-Za-z0-9\s._:/=+,%\\-]{0,256}$")

_QUERY_MAX_LENGTH = 128
_BLOCKED_METACHARACTERS = frozenset("\r\n;|&`$")
_STARTUP_MODES = {"automatic": "Automatic", "manual": "Manual", "disabled": "Disabled"}


def ensure_package_id(value: str | None, context: str) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        raise ValueError(f"{context}: package identifier is required.")
    if not _PACKAGE_ID_RE.match(trimmed):
        raise ValueError(f"{context}: invalid package identifier '{trimmed}'.")
    return trimmed


def ensure_package_query(value: str | None, context: str) -> str:
    """A display name used as a ``winget --name`` query."""
    trimmed = (value or "").strip()
    if not trimmed:
        raise ValueError(f"{context}: package name is required.")
    if len(trimmed) > _QUERY_MAX_LENGTH:
        raise ValueError(f"{context}: package name is longer than {_QUERY_MAX_LENGTH} characters.")
    if any(c in _BLOCKED_METACHARACTERS or c == '"' for c in trimmed):
        raise ValueError(f"{context}: package name contains blocked metacharacters.")
    return trimmed


def ensure_feature_name(value: str | None, context: str) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        raise ValueError(f"{context}: feature name is required.")
    if not _FEATURE_NAME_RE.match(trimmed):
        raise ValueError(f"{context}: invalid feature name '{trimmed}'.")
    return trimmed


def ensure_safe_cli_arguments(value: str | None, context: str) -> str:
    """Installer arguments; empty is allowed, ``--%`` never is."""
    trimmed = (value or "").strip()
    if not trimmed:
        return ""
    if "--%" in trimmed:
        raise ValueError(f"{context}: '--%' is not allowed in catalog arguments.")
    if not _SAFE_ARGUMENT_RE.match(trimmed):
        raise ValueError(f"{context}: arguments contain unsupported characters.")
    return trimmed


def ensure_service_startup_mode(mode: str | None) -> str:
    normalized = _STARTUP_MODES.get((mode or "").strip().lower())
    if normalized is None:
        raise ValueError(f"Invalid service startup mode '{mode}'.")
    return normalized


def ensure_safe_legacy_launch_script(script: str | None, context: str) -> str:
    trimmed = (script or "").strip()
    if not trimmed:
        raise ValueError(f"{context}: launch script is required.")
    if not trimmed.lower().startswith("start-process "):
        raise ValueError(f"{context}: only Start-Process launch scripts are allowed.")
    if any(c in _BLOCKED_METACHARACTERS for c in trimmed):
        raise ValueError(f"{context}: launch script contains blocked metacharacters.")
    return trimmed


def escape_single_quotes(value: str | None) -> str:
    return (value or "").replace("'", "''")


def to_single_quoted_literal(value: str | None) -> str:
    return f"'{escape_single_quotes(value)}'"
