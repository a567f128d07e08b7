"""
types.py - Data model for flow navigation.

This module defines the building blocks every other runtime module works on:

- Step definitions (``Step``) with their navigation references (``StepRef``)
- The CHECKLIST payload (``ChecklistPayload`` / ``ChecklistItem``)
- The shared, caller-owned ``FlowContext``
- The derived ``EngineState`` snapshot
- Event payloads published through the EventManager

Usage:
    from stepflow.runtime.types import Step, StepType, FlowContext

    steps = [
        Step(id="welcome"),
        Step(id="team", condition=lambda ctx: ctx.flow_data.get("role") == "admin"),
        Step(id="done", next_step=None),
    ]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from stepflow.runtime._time import now_ms

StepId = Union[str, int]

# Key of the reserved bookkeeping namespace inside FlowContext.flow_data
INTERNAL_KEY = "_internal"


# =============================================================================
# Step references
# =============================================================================


class _Absent:
    """Sentinel for "not specified", distinct from ``None`` ("terminate here")."""

    _instance: Optional["_Absent"] = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_Absent":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_Absent":
        return self


ABSENT = _Absent()


class RefKind(str, Enum):
    """Kinds of navigation reference a step can declare."""

    ABSENT = "absent"  # defer to the fallback source
    NULL = "null"  # the path terminates here
    LITERAL = "literal"  # go exactly to this id
    COMPUTED = "computed"  # function of context -> id | None | ABSENT


@dataclass(frozen=True)
class StepRef:
    """A normalized ``next_step`` / ``previous_step`` / ``skip_to_step`` value.

    Attributes:
        kind: Which of the four reference kinds this is.
        value: The literal id or the callable, depending on ``kind``.
    """

    kind: RefKind
    value: Any = None

    @classmethod
    def from_value(cls, value: Any) -> "StepRef":
        if isinstance(value, StepRef):
            return value
        if value is ABSENT:
            return cls(RefKind.ABSENT)
        if value is None:
            return cls(RefKind.NULL)
        if callable(value):
            return cls(RefKind.COMPUTED, value)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return cls(RefKind.LITERAL, value)
        raise TypeError(
            f"Step reference must be an id, None, ABSENT or a callable, got {type(value).__name__}"
        )

    @property
    def is_absent(self) -> bool:
        return self.kind is RefKind.ABSENT

    @property
    def literal_id(self) -> Optional[StepId]:
        """The referenced id when it is known without evaluating a function."""
        return self.value if self.kind is RefKind.LITERAL else None

    def evaluate(self, context: "FlowContext") -> Any:
        """Resolve the reference against ``context``.

        Returns:
            ``ABSENT`` to fall through to the next source, ``None`` when the
            path terminates, otherwise the target step id.
        """
        if self.kind is RefKind.ABSENT:
            return ABSENT
        if self.kind is RefKind.NULL:
            return None
        if self.kind is RefKind.LITERAL:
            return self.value
        return self.value(context)


# =============================================================================
# Steps and payloads
# =============================================================================


class StepType(str, Enum):
    INFORMATION = "INFORMATION"
    SINGLE_CHOICE = "SINGLE_CHOICE"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    CONFIRMATION = "CONFIRMATION"
    CHECKLIST = "CHECKLIST"
    CUSTOM_COMPONENT = "CUSTOM_COMPONENT"


Condition = Callable[["FlowContext"], bool]


@dataclass
class ChecklistItem:
    """A single item of a CHECKLIST step.

    Attributes:
        id: Identifier, unique within the checklist.
        label: Display label (opaque to the engine).
        description: Optional longer text.
        is_mandatory: Whether the item blocks completion while pending.
        condition: Optional predicate; items whose condition is false are
            ignored for completion and progress.
    """

    id: str
    label: str = ""
    description: Optional[str] = None
    is_mandatory: bool = True
    condition: Optional[Condition] = None

    def is_relevant(self, context: "FlowContext") -> bool:
        return self.condition is None or bool(self.condition(context))


@dataclass
class ChecklistPayload:
    """Payload of a CHECKLIST step.

    Attributes:
        data_key: Key in ``flow_data`` holding the per-item state list.
        items: Ordered item definitions.
        min_items_to_complete: When set, completion only requires this many
            completed relevant items and mandatory flags are ignored.
    """

    data_key: str
    items: List[ChecklistItem] = field(default_factory=list)
    min_items_to_complete: Optional[int] = None


@dataclass
class ChecklistProgress:
    completed: int
    total: int
    percentage: int
    is_complete: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "total": self.total,
            "percentage": self.percentage,
            "is_complete": self.is_complete,
        }


@dataclass(eq=False)
class Step:
    """A node in the flow graph.

    Navigation references accept a step id, ``None`` (terminate), ``ABSENT``
    (the default: defer to the fallback source) or a callable of the context
    returning any of those.

    Attributes:
        id: Identifier, unique within the flow.
        type: Step type; only CHECKLIST is interpreted by the engine.
        title: Display title (opaque to the engine).
        description: Optional description (opaque to the engine).
        payload: Type-specific payload; ``ChecklistPayload`` for CHECKLIST.
        condition: Optional predicate; a false condition makes the step
            ineligible and it is skipped during traversal.
        next_step: Explicit forward reference.
        previous_step: Explicit backward reference.
        skip_to_step: Target used by ``skip``.
        is_skippable: Whether ``skip`` is allowed from this step.
        on_step_active: Hook ``(context)`` run when the step becomes active.
        on_step_complete: Hook ``(step_data, context)`` run by ``next``.
        meta: Free-form metadata for collaborators.
    """

    id: StepId
    type: StepType = StepType.INFORMATION
    title: str = ""
    description: Optional[str] = None
    payload: Any = None
    condition: Optional[Condition] = None
    next_step: Any = ABSENT
    previous_step: Any = ABSENT
    skip_to_step: Any = ABSENT
    is_skippable: bool = False
    on_step_active: Optional[Callable[["FlowContext"], Any]] = None
    on_step_complete: Optional[Callable[[Dict[str, Any], "FlowContext"], Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.type, StepType):
            self.type = StepType(self.type)
        self.next_step = StepRef.from_value(self.next_step)
        self.previous_step = StepRef.from_value(self.previous_step)
        self.skip_to_step = StepRef.from_value(self.skip_to_step)

    @property
    def is_checklist(self) -> bool:
        return self.type is StepType.CHECKLIST

    def is_relevant(self, context: "FlowContext") -> bool:
        """True when the step has no condition or its condition holds."""
        return self.condition is None or bool(self.condition(context))

    def __repr__(self) -> str:
        return f"Step(id={self.id!r}, type={self.type.value})"


# =============================================================================
# Context
# =============================================================================


@dataclass
class FlowContext:
    """Caller-owned data bag shared by conditions, hooks and the engine.

    The engine keeps its bookkeeping in ``flow_data["_internal"]``:
    ``completed_steps`` (step id -> epoch ms), ``started_at`` (epoch ms) and
    ``step_start_times`` (step id -> epoch ms). Step ids are stored as
    strings so they survive JSON persistence.

    Attributes:
        flow_data: Data collected by the flow.
        current_user: Optional user object for conditions.
        extra: Any other caller state.
    """

    flow_data: Dict[str, Any] = field(default_factory=dict)
    current_user: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def ensure_internal(self) -> Dict[str, Any]:
        """Create the internal namespace (and its maps) when missing."""
        internal = self.flow_data.get(INTERNAL_KEY)
        if not isinstance(internal, dict):
            internal = {}
            self.flow_data[INTERNAL_KEY] = internal
        if not isinstance(internal.get("completed_steps"), dict):
            internal["completed_steps"] = {}
        if not isinstance(internal.get("step_start_times"), dict):
            internal["step_start_times"] = {}
        if not internal.get("started_at"):
            internal["started_at"] = now_ms()
        return internal

    @property
    def completed_steps(self) -> Dict[str, int]:
        internal = self.flow_data.get(INTERNAL_KEY) or {}
        return internal.get("completed_steps") or {}

    @property
    def started_at(self) -> Optional[int]:
        internal = self.flow_data.get(INTERNAL_KEY) or {}
        return internal.get("started_at")

    def mark_completed(self, step_id: StepId, timestamp: Optional[int] = None) -> None:
        internal = self.ensure_internal()
        internal["completed_steps"] = {
            **internal["completed_steps"],
            str(step_id): timestamp if timestamp is not None else now_ms(),
        }

    def record_step_start(self, step_id: StepId, timestamp: int) -> None:
        self.ensure_internal()["step_start_times"][str(step_id)] = timestamp

    def snapshot(self) -> "FlowContext":
        """Shallow copy for error history and change notifications."""
        return FlowContext(
            flow_data=dict(self.flow_data),
            current_user=self.current_user,
            extra=dict(self.extra),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flow_data": self.flow_data,
            "current_user": self.current_user,
            "extra": self.extra,
        }


# =============================================================================
# Navigation
# =============================================================================


class Direction(str, Enum):
    NEXT = "next"
    PREVIOUS = "previous"
    SKIP = "skip"
    GOTO = "goto"
    INITIAL = "initial"


StepChangeCallback = Callable[[Optional[Step], Optional[Step], FlowContext], Any]
FlowCompleteHook = Callable[[FlowContext], Any]


@dataclass
class BeforeStepChangeEvent:
    """Cancellable, redirectable event passed to ``before_step_change`` listeners.

    Listeners run sequentially. ``cancel()`` stops the navigation;
    ``redirect(new_id)`` replaces the target. A redirect after a cancel is
    ignored.
    """

    current_step: Optional[Step]
    target_step_id: Any
    direction: Direction
    context: FlowContext
    _cancelled: bool = field(default=False, repr=False)
    _redirected: bool = field(default=False, repr=False)
    _redirect_target: Any = field(default=None, repr=False)

    def cancel(self) -> None:
        self._cancelled = True

    def redirect(self, new_target_id: Any) -> None:
        if self._cancelled:
            return
        self._redirected = True
        self._redirect_target = new_target_id

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_redirected(self) -> bool:
        return self._redirected

    @property
    def resolved_target_id(self) -> Any:
        return self._redirect_target if self._redirected else self.target_step_id


# =============================================================================
# Derived state
# =============================================================================


@dataclass(frozen=True)
class EngineState:
    """Snapshot derived from (current step, context, history) plus engine flags.

    Never stored; recomputed on demand by ``project_state``.
    """

    current_step: Optional[Step]
    context: FlowContext
    is_first_step: bool
    is_last_step: bool
    can_go_next: bool
    can_go_previous: bool
    is_skippable: bool
    is_loading: bool
    is_hydrating: bool
    error: Optional[BaseException]
    is_completed: bool
    next_step_candidate: Optional[Step]
    previous_step_candidate: Optional[Step]
    total_steps: int
    completed_steps: int
    progress_percentage: int
    current_step_number: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary (steps reduced to ids)."""
        return {
            "current_step_id": self.current_step.id if self.current_step else None,
            "is_first_step": self.is_first_step,
            "is_last_step": self.is_last_step,
            "can_go_next": self.can_go_next,
            "can_go_previous": self.can_go_previous,
            "is_skippable": self.is_skippable,
            "is_loading": self.is_loading,
            "is_hydrating": self.is_hydrating,
            "error": str(self.error) if self.error else None,
            "is_completed": self.is_completed,
            "next_step_candidate_id": (
                self.next_step_candidate.id if self.next_step_candidate else None
            ),
            "previous_step_candidate_id": (
                self.previous_step_candidate.id if self.previous_step_candidate else None
            ),
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "progress_percentage": self.progress_percentage,
            "current_step_number": self.current_step_number,
        }


# =============================================================================
# Event payloads
# =============================================================================


@dataclass
class StepChangeEvent:
    old_step: Optional[Step]
    new_step: Optional[Step]
    context: FlowContext


@dataclass
class StepActiveEvent:
    step: Step
    context: FlowContext
    start_time: int


@dataclass
class StepCompletedEvent:
    step: Step
    step_data: Dict[str, Any]
    context: FlowContext


@dataclass
class StepSkippedEvent:
    step: Step
    context: FlowContext
    skip_reason: str  # "explicit_skip_target" | "default_skip"


@dataclass
class NavigationEvent:
    from_step: Step
    to_step: Step
    context: FlowContext
    direction: Direction


@dataclass
class FlowStartedEvent:
    context: FlowContext
    resumed: bool = False


@dataclass
class FlowCompletedEvent:
    context: FlowContext
    duration_ms: int


@dataclass
class FlowResetEvent:
    context: FlowContext


@dataclass
class ContextUpdateEvent:
    old_context: FlowContext
    new_context: FlowContext


@dataclass
class ErrorEvent:
    error: BaseException
    context: Optional[FlowContext]
    operation: str = ""
    step_id: Optional[StepId] = None


@dataclass
class ChecklistItemToggledEvent:
    item_id: str
    is_completed: bool
    step: Step
    context: FlowContext


@dataclass
class ChecklistProgressChangedEvent:
    step: Step
    context: FlowContext
    progress: ChecklistProgress


@dataclass
class PersistenceEvent:
    context: FlowContext
    current_step_id: Optional[StepId]
    error: Optional[BaseException] = None


def step_ids(steps: Sequence[Step]) -> List[StepId]:
    return [step.id for step in steps]
