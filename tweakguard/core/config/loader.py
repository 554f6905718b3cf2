"""
Configuration loader — reads settings, catalogs and selection configs.

Three inputs, three formats:

    data/settings.yml         → AppSettings          (YAML)
    Data/*.json               → catalog definitions  (JSON arrays)
    runtime/<selection>.json  → AutomationConfig     (JSON object)

Every loader validates against the Pydantic models and raises
ConfigError with the offending path on failure. Missing optional
files yield defaults.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from tweakguard.core import context
from tweakguard.core.models.catalog import (
    AutomationConfig,
    CatalogApp,
    FeatureDefinition,
    FixDefinition,
    LegacyPanelDefinition,
    TweakDefinition,
)
from tweakguard.core.models.state import AppSettings

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.yml"

TWEAKS_FILE = "tweaks.json"
FIXES_FILE = "fixes.json"
FEATURES_FILE = "features.json"
APPS_FILE = "catalog.apps.json"
LEGACY_PANELS_FILE = "legacy-panels.json"

_M = TypeVar("_M", bound=BaseModel)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""


# ═══════════════════════════════════════════════════════════════════
#  Settings
# ═══════════════════════════════════════════════════════════════════


def load_settings(path: Path | None = None) -> AppSettings:
    """Load the settings snapshot.

    Args:
        path: Explicit settings file. Defaults to ``data/settings.yml``
            under the runtime root.

    Returns:
        AppSettings. Defaults when the file does not exist.

    Raises:
        ConfigError: If the file is unreadable or invalid.
    """
    if path is None:
        path = context.data_dir() / SETTINGS_FILE

    if not path.is_file():
        logger.debug("No settings file at %s, using defaults", path)
        return AppSettings()

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return AppSettings()
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # Allow either a flat mapping or everything nested under "settings"
    settings_data = data.get("settings", data)

    try:
        return AppSettings.model_validate(settings_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {path}: {e}") from e


def save_settings(settings: AppSettings, path: Path | None = None) -> Path:
    """Write settings back as YAML."""
    if path is None:
        path = context.data_dir() / SETTINGS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump({"settings": settings.model_dump()}, sort_keys=False),
        encoding="utf-8",
    )
    return path


# ═══════════════════════════════════════════════════════════════════
#  Catalogs
# ═══════════════════════════════════════════════════════════════════


def _load_catalog_file(path: Path, model: type[_M]) -> list[_M]:
    if not path.is_file():
        logger.debug("Catalog file %s not found, treating as empty", path)
        return []

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Invalid catalog file {path}: {e}") from e

    if not isinstance(data, list):
        raise ConfigError(f"Expected a JSON array in {path}, got {type(data).__name__}")

    try:
        items = [model.model_validate(item) for item in data]
    except ValidationError as e:
        raise ConfigError(f"Invalid entry in {path}: {e}") from e

    logger.debug("Loaded %d %s entries from %s", len(items), model.__name__, path.name)
    return items


def load_tweaks(catalog_dir: Path | None = None) -> list[TweakDefinition]:
    """On-disk tweaks followed by built-ins whose id is not taken."""
    from tweakguard.core.data import load_builtin_tweaks

    root = catalog_dir or context.catalog_dir()
    tweaks = _load_catalog_file(root / TWEAKS_FILE, TweakDefinition)
    seen = {t.id.lower() for t in tweaks}
    for builtin in load_builtin_tweaks():
        if builtin.id.lower() not in seen:
            tweaks.append(builtin)
            seen.add(builtin.id.lower())
    return tweaks


def load_fixes(catalog_dir: Path | None = None) -> list[FixDefinition]:
    return _load_catalog_file((catalog_dir or context.catalog_dir()) / FIXES_FILE, FixDefinition)


def load_features(catalog_dir: Path | None = None) -> list[FeatureDefinition]:
    return _load_catalog_file((catalog_dir or context.catalog_dir()) / FEATURES_FILE, FeatureDefinition)


def load_apps(catalog_dir: Path | None = None) -> list[CatalogApp]:
    return _load_catalog_file((catalog_dir or context.catalog_dir()) / APPS_FILE, CatalogApp)


def load_legacy_panels(catalog_dir: Path | None = None) -> list[LegacyPanelDefinition]:
    return _load_catalog_file(
        (catalog_dir or context.catalog_dir()) / LEGACY_PANELS_FILE, LegacyPanelDefinition,
    )


# ═══════════════════════════════════════════════════════════════════
#  Selection config
# ═══════════════════════════════════════════════════════════════════


def resolve_selection_path(raw_path: str, runtime_dir: Path | None = None) -> Path:
    """Normalize a user-supplied selection config path.

    Absolute local paths are taken as-is. Relative paths resolve under
    ``runtime/`` and may not escape it.

    Raises:
        ConfigError: For blank, NUL-bearing, UNC, non-JSON or
            escaping paths.
    """
    if raw_path is None or not raw_path.strip():
        raise ConfigError("CLI config path is required.")

    candidate = raw_path.strip().strip('"')
    if "\0" in candidate:
        raise ConfigError("CLI config path contains invalid null characters.")

    if candidate.startswith("\\\\") or candidate.startswith("//"):
        raise ConfigError("UNC paths are blocked for CLI config. Use a local file path.")

    if not candidate.lower().endswith(".json"):
        raise ConfigError("CLI config path must point to a .json file.")

    base = (runtime_dir or context.runtime_dir()).resolve()
    path = Path(candidate)
    if _is_absolute(candidate):
        return path.resolve()

    resolved = (base / path).resolve()
    if not resolved.is_relative_to(base):
        raise ConfigError(
            "Path traversal detected in CLI config path. Relative paths must stay under runtime/."
        )
    return resolved


def _is_absolute(candidate: str) -> bool:
    if Path(candidate).is_absolute():
        return True
    # Drive-qualified Windows paths are absolute on every host
    return len(candidate) >= 3 and candidate[1] == ":" and candidate[2] in "\\/"


def load_selection_config(path: Path) -> AutomationConfig:
    """Load an unattended-run selection document.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a JSON object in {path}, got {type(data).__name__}")

    try:
        config = AutomationConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid selection config {path}: {e}") from e

    logger.info(
        "Loaded selection config %s: %d tweaks, %d fixes, %d features, %d apps",
        path.name, len(config.tweaks), len(config.fixes),
        len(config.features), len(config.store_selections),
    )
    return config
