"""
stepflow - Step-graph navigation engine for multi-step flows.

Usage:
    from stepflow import FlowEngine, FlowEngineConfig, Step

    engine = FlowEngine(FlowEngineConfig(steps=[Step(id="welcome"), Step(id="done")]))
    await engine.start()
    await engine.next()
"""

from stepflow.config.flow_loader import FlowDocument, load_flow_steps
from stepflow.runtime.engine import FlowEngine, FlowEngineConfig
from stepflow.runtime.errors import FlowConfigurationError, FlowError
from stepflow.runtime.events import FlowEvent
from stepflow.runtime.registry import EngineRegistry
from stepflow.runtime.types import (
    ABSENT,
    ChecklistItem,
    ChecklistPayload,
    Direction,
    EngineState,
    FlowContext,
    Step,
    StepType,
)
from stepflow.validator import ValidationResult, validate_flow

__version__ = "0.1.0"

__all__ = [
    "ABSENT",
    "ChecklistItem",
    "ChecklistPayload",
    "Direction",
    "EngineRegistry",
    "EngineState",
    "FlowConfigurationError",
    "FlowContext",
    "FlowDocument",
    "FlowEngine",
    "FlowEngineConfig",
    "FlowError",
    "FlowEvent",
    "Step",
    "StepType",
    "ValidationResult",
    "load_flow_steps",
    "validate_flow",
]
