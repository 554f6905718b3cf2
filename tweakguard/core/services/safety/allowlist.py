"""
Trusted-hash allowlist — the hashes of every script the catalog ships.

Built once at startup from the on-disk catalog files plus the built-in
tweaks, and handed to the validator as an immutable set. A catalog
reload builds a new set; nothing is ever added to an existing one.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from tweakguard.core.config.loader import (
    ConfigError,
    load_fixes,
    load_legacy_panels,
    load_tweaks,
)
from tweakguard.core.models.catalog import (
    FixDefinition,
    LegacyPanelDefinition,
    TweakDefinition,
)
from tweakguard.core.services.operation_builder import build_registry_capture_script
from tweakguard.core.services.safety.validator import compute_script_hash

logger = logging.getLogger(__name__)


def _scripts_of_tweak(tweak: TweakDefinition) -> Iterable[str]:
    yield tweak.detect_script
    yield tweak.apply_script
    yield tweak.undo_script
    for key in tweak.state_capture_keys:
        yield build_registry_capture_script(key)


def _scripts_of_fix(fix: FixDefinition) -> Iterable[str]:
    yield fix.apply_script
    yield fix.undo_script


def _scripts_of_panel(panel: LegacyPanelDefinition) -> Iterable[str]:
    yield panel.launch_script
    # The builder runs the trimmed body
    yield panel.launch_script.strip()


def collect_hashes(
    tweaks: Iterable[TweakDefinition] = (),
    fixes: Iterable[FixDefinition] = (),
    panels: Iterable[LegacyPanelDefinition] = (),
) -> frozenset[str]:
    """Hashes of every non-blank script in the given definitions."""
    hashes: set[str] = set()
    sources = (
        [s for t in tweaks for s in _scripts_of_tweak(t)]
        + [s for f in fixes for s in _scripts_of_fix(f)]
        + [s for p in panels for s in _scripts_of_panel(p)]
    )
    for script in sources:
        if script and script.strip():
            hashes.add(compute_script_hash(script))
    return frozenset(hashes)


def build_trusted_hashes(catalog_dir: Path | None = None) -> frozenset[str]:
    """Allowlist over the catalog directory and the built-in tweaks.

    A catalog file that fails to load is skipped with a warning; the
    built-in tweaks are always included.
    """
    from tweakguard.core.data import load_builtin_tweaks

    tweaks: list[TweakDefinition] = []
    fixes: list[FixDefinition] = []
    panels: list[LegacyPanelDefinition] = []

    try:
        tweaks = load_tweaks(catalog_dir)
    except ConfigError as e:
        logger.warning("Tweak catalog skipped for allowlist: %s", e)
        tweaks = load_builtin_tweaks()
    try:
        fixes = load_fixes(catalog_dir)
    except ConfigError as e:
        logger.warning("Fix catalog skipped for allowlist: %s", e)
    try:
        panels = load_legacy_panels(catalog_dir)
    except ConfigError as e:
        logger.warning("Legacy panel catalog skipped for allowlist: %s", e)

    # Built-ins shadowed by an on-disk tweak of the same id still count
    hashes = collect_hashes(tweaks + load_builtin_tweaks(), fixes, panels)
    logger.info("Trusted script allowlist built: %d hashes", len(hashes))
    return hashes
