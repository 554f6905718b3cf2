"""
Operation models — what the engine is asked to change.

An OperationDefinition is a named, reversible-or-not unit of system
change: ordered state-capture, run and undo steps plus an optional
detect script. Definitions are immutable once built; the catalog owns
them and the orchestrator only borrows them for one batch.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class RiskTier(StrEnum):
    """Risk classification driving confirmation and restore-point policy."""

    BASIC = "Basic"
    ADVANCED = "Advanced"
    DANGEROUS = "Dangerous"


class ScriptStep(BaseModel):
    """A single script body — the atomic unit of execution."""

    model_config = ConfigDict(frozen=True)

    name: str
    script: str
    requires_network: bool = False


class OperationDefinition(BaseModel):
    """A catalog operation, ready to hand to the orchestrator."""

    model_config = ConfigDict(frozen=True)

    id: str                             # dotted namespace, e.g. "tweak.dark-theme"
    title: str
    description: str = ""
    risk_tier: RiskTier = RiskTier.BASIC
    reversible: bool = False
    destructive: bool = False
    requires_reboot: bool = False
    tags: tuple[str, ...] = ()
    compatibility: tuple[str, ...] = ()   # "win10", "win11", ">=10.0.22000"
    state_capture_scripts: tuple[ScriptStep, ...] = ()
    run_scripts: tuple[ScriptStep, ...] = ()
    undo_scripts: tuple[ScriptStep, ...] = ()
    detect_script: str | None = None

    @property
    def is_high_risk(self) -> bool:
        """Dangerous tier or destructive — what restore points guard."""
        return self.risk_tier == RiskTier.DANGEROUS or self.destructive

    @property
    def requires_network(self) -> bool:
        return any(step.requires_network for step in self.run_scripts)

    def steps_for(self, undo: bool) -> tuple[ScriptStep, ...]:
        """Steps to execute for the given direction."""
        return self.undo_scripts if undo else self.run_scripts
