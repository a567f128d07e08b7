"""
state.py - Derived engine state.

``project_state`` is a pure function from (steps, current step, context,
history, flags) to an ``EngineState`` snapshot. ``StateManager`` owns the
engine flags (loading, hydrating, error, completed) and publishes
``state_change`` notifications with a fresh projection.

Progress rules:
- Relevant steps are those whose condition is absent or currently true.
- ``completed_steps`` counts relevant steps present in the completed-steps
  map; a step completed earlier whose condition is now false is excluded.
- ``current_step_number`` is the 1-based position of the current step among
  relevant steps, 0 when there is no current step or it is not relevant.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

from stepflow.config.runtime_config import get_max_traversal_depth
from stepflow.runtime.errors import TraversalDepthExceededError
from stepflow.runtime.step_graph import relevant_steps, resolve_next_step, resolve_previous_step
from stepflow.runtime.types import EngineState, FlowContext, Step, StepId

if TYPE_CHECKING:
    from stepflow.runtime.events import EventManager

logger = logging.getLogger(__name__)


def project_state(
    steps: Sequence[Step],
    initial_step_id: Optional[StepId],
    current_step: Optional[Step],
    context: FlowContext,
    history: Sequence[StepId],
    *,
    is_loading: bool = False,
    is_hydrating: bool = False,
    error: Optional[BaseException] = None,
    is_completed: bool = False,
    max_depth: Optional[int] = None,
) -> EngineState:
    """Compute the EngineState snapshot. Pure: same inputs, same output."""
    if max_depth is None:
        max_depth = get_max_traversal_depth()

    next_candidate: Optional[Step] = None
    previous_candidate: Optional[Step] = None
    if current_step is not None:
        try:
            next_candidate = resolve_next_step(steps, current_step, context, max_depth)
        except TraversalDepthExceededError as exc:
            logger.warning("Next-step preview for %r unavailable: %s", current_step.id, exc)
        try:
            previous_candidate, _ = resolve_previous_step(
                steps, current_step, context, history, max_depth
            )
        except TraversalDepthExceededError as exc:
            logger.warning("Previous-step preview for %r unavailable: %s", current_step.id, exc)

    has_error = error is not None
    relevant: List[Step] = relevant_steps(steps, context)
    completed_ids = {str(step_id) for step_id in context.completed_steps}
    completed_count = sum(1 for step in relevant if str(step.id) in completed_ids)
    total = len(relevant)

    current_number = 0
    if current_step is not None:
        for position, step in enumerate(relevant, start=1):
            if step is current_step or step.id == current_step.id:
                current_number = position
                break

    return EngineState(
        current_step=current_step,
        context=context,
        is_first_step=(
            current_step is not None
            and initial_step_id is not None
            and current_step.id == initial_step_id
        ),
        is_last_step=next_candidate is None if current_step is not None else is_completed,
        can_go_next=current_step is not None and next_candidate is not None and not has_error,
        can_go_previous=(
            current_step is not None and previous_candidate is not None and not has_error
        ),
        is_skippable=current_step is not None and current_step.is_skippable and not has_error,
        is_loading=is_loading,
        is_hydrating=is_hydrating,
        error=error,
        is_completed=is_completed,
        next_step_candidate=next_candidate,
        previous_step_candidate=previous_candidate,
        total_steps=total,
        completed_steps=completed_count,
        progress_percentage=round(completed_count / total * 100) if total > 0 else 0,
        current_step_number=current_number,
    )


class StateManager:
    """Owns the engine flags and publishes state snapshots."""

    def __init__(
        self,
        event_manager: "EventManager",
        steps: Sequence[Step],
        initial_step_id: Optional[StepId] = None,
        max_depth: Optional[int] = None,
    ):
        self._events = event_manager
        self.steps: List[Step] = []
        self.initial_step_id: Optional[StepId] = None
        self.set_steps(steps, initial_step_id)
        self.max_depth = max_depth if max_depth is not None else get_max_traversal_depth()

        self.is_loading = False
        self.is_hydrating = False
        self.error: Optional[BaseException] = None
        self.is_completed = False

    def set_steps(self, steps: Sequence[Step], initial_step_id: Optional[StepId] = None) -> None:
        self.steps = list(steps)
        # The designated initial step defaults to the first step in the flow
        if initial_step_id is None and self.steps:
            initial_step_id = self.steps[0].id
        self.initial_step_id = initial_step_id

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def set_loading(self, loading: bool) -> None:
        self.is_loading = loading

    def set_hydrating(self, hydrating: bool) -> None:
        self.is_hydrating = hydrating

    def set_error(self, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.debug("Engine error set: %s", error)
        self.error = error

    def set_completed(self, completed: bool) -> None:
        self.is_completed = completed

    def reset_flags(self) -> None:
        self.is_loading = False
        self.is_hydrating = False
        self.error = None
        self.is_completed = False

    def get_state(
        self,
        current_step: Optional[Step],
        context: FlowContext,
        history: Sequence[StepId],
    ) -> EngineState:
        return project_state(
            self.steps,
            self.initial_step_id,
            current_step,
            context,
            history,
            is_loading=self.is_loading,
            is_hydrating=self.is_hydrating,
            error=self.error,
            is_completed=self.is_completed,
            max_depth=self.max_depth,
        )

    def notify_state_change(
        self,
        current_step: Optional[Step],
        context: FlowContext,
        history: Sequence[StepId],
    ) -> None:
        self._events.notify("state_change", self.get_state(current_step, context, history))
