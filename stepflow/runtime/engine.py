"""
engine.py - FlowEngine facade.

Wires the runtime collaborators for one flow session and owns the session
state (current step, context, history):

    EventManager -> StateManager -> ErrorService -> PersistenceManager
                 -> ChecklistGate -> NavigationResolver

Every public navigation call delegates to the NavigationResolver and then
publishes a ``state_change`` with a fresh EngineState projection.

Usage:
    from stepflow import FlowEngine, FlowEngineConfig, Step

    engine = FlowEngine(FlowEngineConfig(steps=[Step(id="a"), Step(id="b")]))
    await engine.start()
    await engine.next({"name": "Ada"})
    state = engine.get_state()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Union

from stepflow.config.runtime_config import get_error_history_capacity, get_max_traversal_depth
from stepflow.runtime.checklist import ChecklistGate
from stepflow.runtime.errors import ErrorEntry, ErrorService, FlowConfigurationError
from stepflow.runtime.events import EventManager, FlowEvent, Listener, Unsubscribe
from stepflow.runtime.navigation import NavigationResolver
from stepflow.runtime.persistence import (
    ClearPersistedDataFn,
    DataLoadFn,
    DataPersistFn,
    PersistedFlowState,
    PersistenceManager,
)
from stepflow.runtime.state import StateManager
from stepflow.runtime.step_graph import find_step_by_id
from stepflow.runtime.types import (
    ChecklistProgress,
    ContextUpdateEvent,
    Direction,
    EngineState,
    FlowCompleteHook,
    FlowContext,
    FlowResetEvent,
    FlowStartedEvent,
    Step,
    StepChangeCallback,
    StepId,
)
from stepflow.validator.flow_validator import validate_flow

if TYPE_CHECKING:
    from stepflow.runtime.registry import EngineRegistry

logger = logging.getLogger(__name__)

_WILDCARDS = ("*", "x", "X")


@dataclass
class FlowEngineConfig:
    """Configuration for a FlowEngine.

    Attributes:
        steps: Ordered step definitions.
        initial_step_id: Step to start at; defaults to the first step.
        initial_context: Starting context (FlowContext or a dict with
            ``flow_data`` / ``current_user`` / other keys).
        on_flow_complete: Hook ``(context)`` run when the flow completes.
        on_step_change: Callback ``(new_step, old_step, context)``.
        load_data: Persistence loader returning ``{flow_data, current_step_id}``.
        persist_data: Persistence writer ``(context, current_step_id)``.
        clear_persisted_data: Persistence eraser used by ``reset``.
        flow_id: Identifier used for registry lookups.
        flow_name: Human-readable flow name.
        flow_version: Version string (e.g., "1.2.0").
        flow_metadata: Free-form metadata.
        max_traversal_depth: Overrides the runtime config value.
        error_history_capacity: Overrides the runtime config value.
        registry: When set together with ``flow_id``, the engine registers
            itself on construction.
    """

    steps: List[Step] = field(default_factory=list)
    initial_step_id: Optional[StepId] = None
    initial_context: Union[FlowContext, Dict[str, Any], None] = None
    on_flow_complete: Optional[FlowCompleteHook] = None
    on_step_change: Optional[StepChangeCallback] = None
    load_data: Optional[DataLoadFn] = None
    persist_data: Optional[DataPersistFn] = None
    clear_persisted_data: Optional[ClearPersistedDataFn] = None
    flow_id: Optional[str] = None
    flow_name: Optional[str] = None
    flow_version: Optional[str] = None
    flow_metadata: Dict[str, Any] = field(default_factory=dict)
    max_traversal_depth: Optional[int] = None
    error_history_capacity: Optional[int] = None
    registry: Optional["EngineRegistry"] = None


def _context_from(value: Union[FlowContext, Dict[str, Any], None]) -> FlowContext:
    """Build a fresh FlowContext, copying the caller's containers."""
    if value is None:
        return FlowContext()
    if isinstance(value, FlowContext):
        return FlowContext(
            flow_data=dict(value.flow_data),
            current_user=value.current_user,
            extra=dict(value.extra),
        )

    data = dict(value)
    flow_data = data.pop("flow_data", None) or data.pop("flowData", None) or {}
    current_user = data.pop("current_user", data.pop("currentUser", None))
    return FlowContext(flow_data=dict(flow_data), current_user=current_user, extra=data)


def is_version_compatible(version: Optional[str], pattern: str) -> bool:
    """Match ``version`` against a dotted pattern.

    ``*`` matches anything. A pattern part of ``*`` / ``x`` matches the rest
    of the version and a shorter pattern matches any suffix ("1" matches
    "1.4.2"). Missing version parts count as 0.
    """
    if pattern in _WILDCARDS:
        return True
    if not version:
        return False

    pattern_parts = pattern.strip().lstrip("vV").split(".")
    version_parts = version.strip().lstrip("vV").split(".")
    for index, part in enumerate(pattern_parts):
        if part in _WILDCARDS:
            return True
        actual = version_parts[index] if index < len(version_parts) else "0"
        if part != actual:
            return False
    return True


class FlowEngine:
    """A single flow session."""

    def __init__(self, config: FlowEngineConfig):
        self._config = config
        self._max_depth = (
            config.max_traversal_depth
            if config.max_traversal_depth is not None
            else get_max_traversal_depth()
        )
        self._validate(config.steps, config.initial_step_id)

        self._steps: List[Step] = list(config.steps)
        self._context = self._build_initial_context()
        self._current_step: Optional[Step] = None
        self._history: List[StepId] = []
        self._started = False

        self._events = EventManager()
        self._state = StateManager(
            self._events, self._steps, config.initial_step_id, self._max_depth
        )
        self._errors = ErrorService(
            self._events,
            self._state,
            capacity=(
                config.error_history_capacity
                if config.error_history_capacity is not None
                else get_error_history_capacity()
            ),
        )
        self._persistence = PersistenceManager(
            self._events,
            load_data=config.load_data,
            persist_data=config.persist_data,
            clear_persisted_data=config.clear_persisted_data,
            error_service=self._errors,
        )
        self._checklist = ChecklistGate(self._events, self._errors)
        self._navigation = self._build_resolver()

        if config.registry is not None and config.flow_id:
            config.registry.register(config.flow_id, self)

        logger.debug(
            "FlowEngine created (flow_id=%s, %d steps, max_depth=%d)",
            config.flow_id,
            len(self._steps),
            self._max_depth,
        )

    # =========================================================================
    # Construction helpers
    # =========================================================================

    def _validate(self, steps: Sequence[Step], initial_step_id: Optional[StepId]) -> None:
        result = validate_flow(steps, initial_step_id, max_depth=self._max_depth)
        for warning in result.sorted_warnings():
            logger.warning("Flow configuration warning: %s", warning.format())
        if result.has_errors():
            raise FlowConfigurationError(
                "Invalid flow configuration",
                [f"{issue.location} {issue.problem}" for issue in result.sorted_errors()],
            )

    def _build_initial_context(self) -> FlowContext:
        context = _context_from(self._config.initial_context)
        context.ensure_internal()
        return context

    def _build_resolver(self) -> NavigationResolver:
        return NavigationResolver(
            self._steps,
            self._events,
            self._state,
            self._checklist,
            self._persistence,
            self._errors,
            max_depth=self._max_depth,
        )

    def _merge_loaded(self, data: Optional[PersistedFlowState]) -> None:
        if data is None:
            return
        self._context.flow_data = {**self._context.flow_data, **data.flow_data}
        if "current_user" in data.model_fields_set:
            self._context.current_user = data.current_user
        if data.extra_fields:
            self._context.extra = {**self._context.extra, **data.extra_fields}
        self._context.ensure_internal()

    def _notify_state_change(self) -> None:
        self._state.notify_state_change(self._current_step, self._context, self._history)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> Optional[Step]:
        """Hydrate from persistence and navigate to the starting step.

        Returns:
            The current step after start-up (None when the flow is empty,
            already completed, or loading failed).
        """
        self._state.set_hydrating(True)
        self._state.set_loading(True)
        self._state.set_error(None)

        try:
            result = await self._persistence.load_persisted_data()
            self._merge_loaded(result.data)

            if result.error is not None:
                self._errors.handle(result.error, "load_persisted_data", self._context)
                self._current_step = None
                self._state.set_completed(False)
            else:
                await self._navigate_to_initial_step(result.data)
        finally:
            self._state.set_hydrating(False)
            self._state.set_loading(False)
            self._started = True

        self._notify_state_change()
        return self._current_step

    async def _navigate_to_initial_step(self, data: Optional[PersistedFlowState]) -> None:
        if not self._steps:
            logger.info("Flow has no steps; marking as completed")
            self._current_step = None
            self._state.set_completed(True)
            return

        resumed = data is not None and data.has_current_step_id
        if resumed and data.current_step_id is None:
            logger.info("Persisted state marks the flow as completed")
            self._current_step = None
            self._state.set_completed(True)
            return

        if resumed:
            target: Any = data.current_step_id
        elif self._state.initial_step_id is not None:
            target = self._state.initial_step_id
        else:
            target = self._steps[0].id

        if find_step_by_id(self._steps, target) is None:
            logger.warning("Initial step '%s' not found; falling back to the first step", target)
            target = self._steps[0].id

        if resumed:
            logger.info("Resuming flow at step '%s'", target)
        else:
            logger.info("Starting flow at step '%s'", target)
            self._events.notify(FlowEvent.FLOW_STARTED, FlowStartedEvent(context=self._context))

        self._current_step = await self._navigation.navigate_to_step(
            target,
            Direction.INITIAL,
            self._current_step,
            self._context,
            self._history,
            self._config.on_step_change,
            self._config.on_flow_complete,
        )

    async def reset(
        self,
        steps: Optional[Sequence[Step]] = None,
        initial_context: Union[FlowContext, Dict[str, Any], None] = None,
    ) -> Optional[Step]:
        """Clear persisted data, rebuild the session and start again.

        Args:
            steps: Replacement step definitions (validated first).
            initial_context: Replacement starting context.
        """
        logger.info("Resetting flow %s", self._config.flow_id or "")

        if steps is not None:
            self._validate(steps, self._config.initial_step_id)

        if self._persistence.clear_persisted_data is not None:
            try:
                await self._persistence.clear_data()
            except Exception as exc:
                self._errors.handle(exc, "clear_persisted_data", self._context)

        changes: Dict[str, Any] = {}
        if steps is not None:
            changes["steps"] = list(steps)
        if initial_context is not None:
            changes["initial_context"] = initial_context
        if changes:
            self._config = replace(self._config, **changes)

        self._steps = list(self._config.steps)
        self._current_step = None
        self._history = []
        self._context = self._build_initial_context()
        self._state.set_steps(self._steps, self._config.initial_step_id)
        self._state.reset_flags()
        self._navigation = self._build_resolver()

        self._events.notify(FlowEvent.FLOW_RESET, FlowResetEvent(context=self._context))
        return await self.start()

    # =========================================================================
    # Navigation
    # =========================================================================

    async def next(self, step_data: Optional[Dict[str, Any]] = None) -> Optional[Step]:
        self._current_step = await self._navigation.next(
            self._current_step,
            step_data,
            self._context,
            self._history,
            self._config.on_step_change,
            self._config.on_flow_complete,
        )
        self._notify_state_change()
        return self._current_step

    async def previous(self) -> Optional[Step]:
        self._current_step = await self._navigation.previous(
            self._current_step,
            self._context,
            self._history,
            self._config.on_step_change,
            self._config.on_flow_complete,
        )
        self._notify_state_change()
        return self._current_step

    async def skip(self) -> Optional[Step]:
        self._current_step = await self._navigation.skip(
            self._current_step,
            self._context,
            self._history,
            self._config.on_step_change,
            self._config.on_flow_complete,
        )
        self._notify_state_change()
        return self._current_step

    async def go_to_step(
        self, step_id: StepId, step_data: Optional[Dict[str, Any]] = None
    ) -> Optional[Step]:
        self._current_step = await self._navigation.go_to_step(
            step_id,
            step_data,
            self._current_step,
            self._context,
            self._history,
            self._config.on_step_change,
            self._config.on_flow_complete,
        )
        self._notify_state_change()
        return self._current_step

    # =========================================================================
    # State and context
    # =========================================================================

    def get_state(self) -> EngineState:
        return self._state.get_state(self._current_step, self._context, self._history)

    @property
    def current_step(self) -> Optional[Step]:
        return self._current_step

    @property
    def context(self) -> FlowContext:
        return self._context

    @property
    def history(self) -> List[StepId]:
        return list(self._history)

    @property
    def steps(self) -> List[Step]:
        return list(self._steps)

    @property
    def errors(self) -> ErrorService:
        return self._errors

    @property
    def events(self) -> EventManager:
        return self._events

    async def update_context(self, partial: Dict[str, Any]) -> bool:
        """Shallow-merge ``partial`` into the context.

        ``flow_data`` is merged one level deep, ``current_user`` replaced and
        any other key goes to ``extra``. Listeners are notified and the
        context persisted only when something changed.

        Returns:
            True if the context changed.
        """
        old_context = self._context.snapshot()

        updates = dict(partial)
        new_flow_data = updates.pop("flow_data", None)
        if "current_user" in updates:
            self._context.current_user = updates.pop("current_user")
        if updates:
            self._context.extra = {**self._context.extra, **updates}
        if new_flow_data:
            self._context.flow_data = {**self._context.flow_data, **new_flow_data}

        if self._context.to_dict() == old_context.to_dict():
            logger.debug("update_context made no changes")
            return False

        self._events.notify(
            FlowEvent.CONTEXT_UPDATE,
            ContextUpdateEvent(old_context=old_context, new_context=self._context),
        )
        await self._persistence.persist_if_needed(
            self._context,
            self._current_step.id if self._current_step is not None else None,
            self._state.is_hydrating,
        )
        self._notify_state_change()
        return True

    async def update_checklist_item(
        self,
        item_id: str,
        is_completed: bool,
        step_id: Optional[StepId] = None,
    ) -> bool:
        """Toggle a checklist item on ``step_id`` (default: the current step)."""
        step = find_step_by_id(self._steps, step_id) if step_id is not None else self._current_step

        async def persist() -> None:
            await self._persistence.persist_if_needed(
                self._context,
                self._current_step.id if self._current_step is not None else None,
                self._state.is_hydrating,
            )

        updated = await self._checklist.update_item(
            item_id, is_completed, step, self._context, persist
        )
        self._notify_state_change()
        return updated

    def get_checklist_progress(self, step_id: Optional[StepId] = None) -> Optional[ChecklistProgress]:
        step = find_step_by_id(self._steps, step_id) if step_id is not None else self._current_step
        if step is None or not step.is_checklist:
            return None
        return self._checklist.get_progress(step, self._context)

    def get_all_completed_steps(self) -> Dict[str, int]:
        """Every completion record, regardless of current step conditions."""
        return dict(self._context.completed_steps)

    def get_error_history(self) -> List[ErrorEntry]:
        return self._errors.get_history()

    def clear_error(self) -> None:
        self._state.set_error(None)
        self._notify_state_change()

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def add_event_listener(self, event: Union[FlowEvent, str], listener: Listener) -> Unsubscribe:
        return self._events.add_listener(event, listener)

    def on_state_change(self, listener: Callable[[EngineState], Any]) -> Unsubscribe:
        return self._events.add_listener(FlowEvent.STATE_CHANGE, listener)

    def on_before_step_change(self, listener: Listener) -> Unsubscribe:
        return self._events.add_listener(FlowEvent.BEFORE_STEP_CHANGE, listener)

    def on_step_change(self, listener: Listener) -> Unsubscribe:
        return self._events.add_listener(FlowEvent.STEP_CHANGE, listener)

    def on_step_active(self, listener: Listener) -> Unsubscribe:
        return self._events.add_listener(FlowEvent.STEP_ACTIVE, listener)

    def on_step_completed(self, listener: Listener) -> Unsubscribe:
        return self._events.add_listener(FlowEvent.STEP_COMPLETED, listener)

    def on_flow_completed(self, listener: Listener) -> Unsubscribe:
        return self._events.add_listener(FlowEvent.FLOW_COMPLETED, listener)

    def on_context_update(self, listener: Listener) -> Unsubscribe:
        return self._events.add_listener(FlowEvent.CONTEXT_UPDATE, listener)

    def on_error(self, listener: Listener) -> Unsubscribe:
        return self._events.add_listener(FlowEvent.ERROR, listener)

    # =========================================================================
    # Flow info
    # =========================================================================

    @property
    def flow_id(self) -> Optional[str]:
        return self._config.flow_id

    @property
    def flow_name(self) -> Optional[str]:
        return self._config.flow_name

    @property
    def flow_version(self) -> Optional[str]:
        return self._config.flow_version

    def get_flow_info(self) -> Dict[str, Any]:
        return {
            "flow_id": self._config.flow_id,
            "flow_name": self._config.flow_name,
            "flow_version": self._config.flow_version,
            "flow_metadata": dict(self._config.flow_metadata),
            "total_steps": len(self._steps),
            "started": self._started,
        }

    def is_version_compatible(self, pattern: str) -> bool:
        return is_version_compatible(self._config.flow_version, pattern)

    def __repr__(self) -> str:
        current = self._current_step.id if self._current_step is not None else None
        return f"FlowEngine(flow_id={self._config.flow_id!r}, current_step={current!r})"
