"""
Catalog models — the on-disk definitions operations are built from.

These mirror the JSON files under ``Data/``. They are raw inputs: the
operation builder turns them into OperationDefinitions, and the safety
allowlist hashes their scripts.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from tweakguard.core.models.operation import RiskTier


class TweakDefinition(BaseModel):
    """A registry/system tweak with detect, apply and undo scripts."""

    id: str
    name: str
    description: str = ""
    risk_tier: RiskTier = RiskTier.BASIC
    scope: str = "HKCU"
    reversible: bool = False
    destructive: bool = False
    detect_script: str = ""
    apply_script: str = ""
    undo_script: str = ""
    state_capture_keys: list[str] = Field(default_factory=list)
    compatibility: list[str] = Field(default_factory=list)


class FixDefinition(BaseModel):
    """A one-shot repair action."""

    id: str
    name: str
    description: str = ""
    risk_tier: RiskTier = RiskTier.BASIC
    reversible: bool = False
    destructive: bool = False
    apply_script: str = ""
    undo_script: str = ""
    compatibility: list[str] = Field(default_factory=list)


class FeatureDefinition(BaseModel):
    """A Windows optional feature toggle."""

    id: str
    name: str
    feature_name: str
    description: str = ""
    compatibility: list[str] = Field(default_factory=list)


class CatalogApp(BaseModel):
    """An installable application from the store catalog."""

    display_name: str
    category: str = ""
    winget_id: str = ""
    choco_id: str = ""
    silent_args: str | None = None
    homepage: str | None = None
    tags: list[str] = Field(default_factory=list)


class LegacyPanelDefinition(BaseModel):
    """A classic control-panel launcher."""

    id: str
    name: str
    description: str = ""
    launch_script: str = ""


class AutomationConfig(BaseModel):
    """Selection document for unattended runs."""

    confirm_dangerous: bool = False
    store_selections: list[str] = Field(default_factory=list)
    tweaks: list[str] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    fixes: list[str] = Field(default_factory=list)
    update_mode: str = "Default"
