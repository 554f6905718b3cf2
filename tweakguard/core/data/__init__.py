"""
Static data shipped with the package.

Usage::

    from tweakguard.core.data import load_builtin_tweaks

    tweaks = load_builtin_tweaks()   # list[TweakDefinition]
"""

from __future__ import annotations

import logging

from tweakguard.core.models.catalog import TweakDefinition

logger = logging.getLogger(__name__)


def load_builtin_tweaks() -> list[TweakDefinition]:
    """The built-in fallback tweak catalog (fresh list per call)."""
    from tweakguard.core.data.builtin_tweaks import BUILTIN_TWEAKS

    logger.debug("Loaded %d built-in tweak definitions", len(BUILTIN_TWEAKS))
    return list(BUILTIN_TWEAKS)
