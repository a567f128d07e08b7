# stepflow/runtime package
# Step-graph navigation for multi-step flows.
#
# Core components:
#   - types: Step, StepRef, FlowContext, EngineState and event payloads
#   - step_graph: next/previous resolution and the conditional-skip loop
#   - events: EventManager (fan-out and sequential delivery)
#   - errors: exception taxonomy and the ErrorService
#   - checklist: ChecklistGate for CHECKLIST steps
#   - state: project_state() and the StateManager
#   - navigation: NavigationResolver
#   - engine: FlowEngine facade
#   - registry: EngineRegistry
#
# Usage:
#     from stepflow.runtime import FlowEngine, FlowEngineConfig, Step
#     engine = FlowEngine(FlowEngineConfig(steps=[Step(id="a"), Step(id="b")]))
#     await engine.start()

from typing import TYPE_CHECKING

from .errors import (
    ChecklistIncompleteError,
    ChecklistItemNotFoundError,
    ChecklistStepMissingError,
    ChecklistValidationError,
    ErrorEntry,
    ErrorService,
    FlowConfigurationError,
    FlowError,
    InvalidChecklistPayloadError,
    NotAChecklistStepError,
    PersistenceLoadError,
    TraversalDepthExceededError,
    UnknownEventError,
)
from .events import EventManager, FlowEvent
from .state import StateManager, project_state
from .types import (
    ABSENT,
    BeforeStepChangeEvent,
    ChecklistItem,
    ChecklistPayload,
    ChecklistProgress,
    Direction,
    EngineState,
    FlowContext,
    RefKind,
    Step,
    StepId,
    StepRef,
    StepType,
)

# TYPE_CHECKING stubs for static type checkers
# The engine pulls in the validator, which imports this package
if TYPE_CHECKING:
    from .engine import FlowEngine as FlowEngine
    from .engine import FlowEngineConfig as FlowEngineConfig
    from .registry import EngineRegistry as EngineRegistry

__all__ = [
    # Types
    "ABSENT",
    "BeforeStepChangeEvent",
    "ChecklistItem",
    "ChecklistPayload",
    "ChecklistProgress",
    "Direction",
    "EngineState",
    "FlowContext",
    "RefKind",
    "Step",
    "StepId",
    "StepRef",
    "StepType",
    # Errors
    "ChecklistIncompleteError",
    "ChecklistItemNotFoundError",
    "ChecklistStepMissingError",
    "ChecklistValidationError",
    "ErrorEntry",
    "ErrorService",
    "FlowConfigurationError",
    "FlowError",
    "InvalidChecklistPayloadError",
    "NotAChecklistStepError",
    "PersistenceLoadError",
    "TraversalDepthExceededError",
    "UnknownEventError",
    # Events and state
    "EventManager",
    "FlowEvent",
    "StateManager",
    "project_state",
    # Engine (imported lazily at runtime, statically available for type checking)
    "FlowEngine",
    "FlowEngineConfig",
    "EngineRegistry",
]


def __getattr__(name: str):
    """Lazy import for the engine to avoid circular dependencies."""
    if name in ("FlowEngine", "FlowEngineConfig"):
        from . import engine

        return getattr(engine, name)
    if name == "EngineRegistry":
        from .registry import EngineRegistry

        return EngineRegistry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
