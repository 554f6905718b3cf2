"""
Domain models — Pydantic types for the automation engine.

All models are re-exported here for convenient access:

    from tweakguard.core.models import OperationDefinition, ExecutionRequest, AppSettings
"""

from tweakguard.core.models.catalog import (
    AutomationConfig,
    CatalogApp,
    FeatureDefinition,
    FixDefinition,
    LegacyPanelDefinition,
    TweakDefinition,
)
from tweakguard.core.models.execution import (
    CompensationResult,
    ExecutionRequest,
    ExecutionResult,
    OperationBatchResult,
    OperationExecutionResult,
    OutputEvent,
    PrecheckResult,
)
from tweakguard.core.models.operation import OperationDefinition, RiskTier, ScriptStep
from tweakguard.core.models.state import AppSettings, UndoStateDocument

__all__ = [
    # catalog.py
    "AutomationConfig",
    "CatalogApp",
    "FeatureDefinition",
    "FixDefinition",
    "LegacyPanelDefinition",
    "TweakDefinition",
    # execution.py
    "CompensationResult",
    "ExecutionRequest",
    "ExecutionResult",
    "OperationBatchResult",
    "OperationExecutionResult",
    "OutputEvent",
    "PrecheckResult",
    # operation.py
    "OperationDefinition",
    "RiskTier",
    "ScriptStep",
    # state.py
    "AppSettings",
    "UndoStateDocument",
]
