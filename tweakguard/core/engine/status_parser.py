"""
Status parser — turn free-text detect output into a tri-state verdict.

Two tiers:
    1. Explicit contract: any line carrying a status marker
       (``PHANTOM_STATUS=``, ``PHANTOM_STATUS:``, ``STATUS=``, ``STATUS:``)
       wins, parsed through the fixed token table.
    2. Heuristic: with no marker anywhere, only the LAST non-empty line
       is considered — token table first, then substring matching.

Pure functions, no I/O. Empty text is always Unknown.
"""

from __future__ import annotations

from enum import StrEnum


class DetectState(StrEnum):
    """Whether a change is currently in effect."""

    UNKNOWN = "Unknown"
    APPLIED = "Applied"
    NOT_APPLIED = "NotApplied"


# Longest markers first so "PHANTOM_STATUS=" is not read as "STATUS=".
_MARKERS = ("PHANTOM_STATUS=", "PHANTOM_STATUS:", "STATUS=", "STATUS:")

_APPLIED_TOKENS = frozenset({"applied", "detected", "installed", "enabled", "true", "1"})
_NOT_APPLIED_TOKENS = frozenset({
    "not applied",
    "notapplied",
    "not installed",
    "disabled",
    "false",
    "0",
    "unknown",
    "error",
    "managed / restricted",
})

# Negative phrases are checked before positive ones: "not applied"
# contains "applied".
_NEGATIVE_HINTS = ("not applied", "not installed", "disabled", "unknown", "error", "managed", "restricted")
_POSITIVE_HINTS = ("applied", "installed", "enabled", "detected")


def parse_status(text: str | None) -> DetectState:
    """Classify script output.

    Args:
        text: Raw combined output of a detect script.

    Returns:
        DetectState. Never raises.
    """
    if not text or not text.strip():
        return DetectState.UNKNOWN

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return DetectState.UNKNOWN

    for line in lines:
        token = _explicit_token(line)
        if token is None:
            continue
        state = _parse_token(token)
        if state is not None:
            return state

    last = lines[-1]
    state = _parse_token(last)
    if state is not None:
        return state
    return _heuristic(last)


def is_applied(text: str | None) -> bool:
    """Shorthand: does the output say the change is in effect?"""
    return parse_status(text) == DetectState.APPLIED


def _explicit_token(line: str) -> str | None:
    upper = line.upper()
    for marker in _MARKERS:
        if upper.startswith(marker):
            return line[len(marker):].strip().strip("'\"").strip()
    return None


def _parse_token(token: str) -> DetectState | None:
    normalized = token.strip().strip("'\"").strip().lower()
    if normalized in _APPLIED_TOKENS:
        return DetectState.APPLIED
    if normalized in _NOT_APPLIED_TOKENS:
        return DetectState.NOT_APPLIED
    return None


def _heuristic(line: str) -> DetectState:
    lowered = line.lower()
    if any(hint in lowered for hint in _NEGATIVE_HINTS):
        return DetectState.NOT_APPLIED
    if any(hint in lowered for hint in _POSITIVE_HINTS):
        return DetectState.APPLIED
    return DetectState.UNKNOWN
