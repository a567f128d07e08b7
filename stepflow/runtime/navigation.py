"""
navigation.py - Navigation orchestration over a step graph.

The NavigationResolver performs every transition of a flow session:
``navigate_to_step`` is the single transition primitive and ``next``,
``previous``, ``skip`` and ``go_to_step`` resolve a target and delegate to it.

Transition phases (navigate_to_step):
1. Sequential ``before_step_change`` listeners (may cancel or redirect)
2. loading=True, stale error cleared
3. Target lookup + conditional-skip loop in the requested direction
4. Step found: bookkeeping, checklist init, history push or pop, on_step_active
   Step not found going back: no move
   Step not found otherwise: completion, on_flow_complete, flow_completed, persist(None)
5. Caller's step-change callback (isolated)
6. ``step_change`` notification, loading=False

The engine is cooperative and single-threaded per flow. ``is_loading`` is an
advisory guard: a call made while another is in flight is a no-op.

Usage:
    resolver = NavigationResolver(steps, events, state, checklist, persistence, errors)
    current = await resolver.navigate_to_step("welcome", Direction.INITIAL, None, context, history)
    current = await resolver.next(current, {"name": "Ada"}, context, history)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from stepflow.runtime._time import now_ms
from stepflow.runtime.async_utils import call_hook
from stepflow.runtime.errors import ChecklistIncompleteError, TraversalDepthExceededError
from stepflow.runtime.events import FlowEvent
from stepflow.runtime.step_graph import (
    PreviousSource,
    find_next_candidate,
    find_step_by_id,
    resolve_previous_step,
    resolve_skip_target,
    skip_ineligible,
)
from stepflow.runtime.types import (
    BeforeStepChangeEvent,
    Direction,
    ErrorEvent,
    FlowCompletedEvent,
    FlowCompleteHook,
    FlowContext,
    NavigationEvent,
    Step,
    StepActiveEvent,
    StepChangeCallback,
    StepChangeEvent,
    StepCompletedEvent,
    StepId,
    StepSkippedEvent,
)

if TYPE_CHECKING:
    from stepflow.runtime.checklist import ChecklistGate
    from stepflow.runtime.errors import ErrorService
    from stepflow.runtime.events import EventManager
    from stepflow.runtime.persistence import PersistenceManager
    from stepflow.runtime.state import StateManager

logger = logging.getLogger(__name__)

_NAVIGATION_EVENTS = {
    Direction.NEXT: FlowEvent.NAVIGATION_FORWARD,
    Direction.PREVIOUS: FlowEvent.NAVIGATION_BACK,
    Direction.GOTO: FlowEvent.NAVIGATION_JUMP,
}


class NavigationResolver:
    """Runs transitions between steps and owns the engine flags while doing so.

    Attributes:
        steps: Ordered step definitions.
        max_depth: Bound on conditional skips per transition.
    """

    def __init__(
        self,
        steps: Sequence[Step],
        event_manager: "EventManager",
        state_manager: "StateManager",
        checklist: "ChecklistGate",
        persistence: "PersistenceManager",
        error_service: "ErrorService",
        max_depth: Optional[int] = None,
    ):
        self.steps: List[Step] = list(steps)
        self._events = event_manager
        self._state = state_manager
        self._checklist = checklist
        self._persistence = persistence
        self._errors = error_service
        self.max_depth = max_depth if max_depth is not None else state_manager.max_depth

    # =========================================================================
    # Transition primitive
    # =========================================================================

    async def navigate_to_step(
        self,
        target_step_id: Any,
        direction: Direction,
        current_step: Optional[Step],
        context: FlowContext,
        history: List[StepId],
        on_step_change: Optional[StepChangeCallback] = None,
        on_flow_complete: Optional[FlowCompleteHook] = None,
        pop_history: bool = False,
    ) -> Optional[Step]:
        """Move from ``current_step`` towards ``target_step_id``.

        Args:
            target_step_id: Requested target; None (or an unknown id)
                completes the flow.
            direction: How the move was requested.
            current_step: Step being left, if any.
            context: Shared flow context (mutated in place).
            history: Visited step ids (mutated in place).
            on_step_change: Optional ``(new_step, old_step, context)`` callback.
            on_flow_complete: Optional ``(context)`` hook run on completion.
            pop_history: Drop the history tail once the new step activates.

        Returns:
            The new current step, None when the flow completed, or
            ``current_step`` when the move was cancelled or aborted.
        """
        direction = Direction(direction)
        target = target_step_id

        if self._events.has_listeners(FlowEvent.BEFORE_STEP_CHANGE):
            event = BeforeStepChangeEvent(
                current_step=current_step,
                target_step_id=target_step_id,
                direction=direction,
                context=context,
            )
            try:
                await self._events.notify_sequential(FlowEvent.BEFORE_STEP_CHANGE, event)
            except Exception as exc:
                self._errors.handle(
                    exc,
                    "before_step_change listener",
                    context,
                    current_step.id if current_step is not None else None,
                )
                self._state.set_loading(False)
                return current_step

            if event.is_cancelled:
                logger.debug("Navigation to %r cancelled by before_step_change listener", target)
                self._state.set_loading(False)
                return current_step
            if event.is_redirected:
                logger.debug("Navigation redirected from %r to %r", target, event.resolved_target_id)
            target = event.resolved_target_id

        self._state.set_loading(True)
        self._state.set_error(None)

        try:
            new_step = skip_ineligible(
                self.steps,
                find_step_by_id(self.steps, target),
                context,
                direction,
                self.max_depth,
            )
        except TraversalDepthExceededError as exc:
            self._errors.handle(exc, "navigate_to_step", context, exc.step_id)
            self._state.set_loading(False)
            return current_step

        # Moving back never completes the flow
        if new_step is None and direction is Direction.PREVIOUS:
            logger.debug("No eligible step behind %r", target)
            self._state.set_loading(False)
            return current_step

        old_step = current_step
        if old_step is not None and new_step is not None and old_step.id != new_step.id:
            navigation_event = _NAVIGATION_EVENTS.get(direction)
            if navigation_event is not None:
                self._events.notify(
                    navigation_event,
                    NavigationEvent(
                        from_step=old_step,
                        to_step=new_step,
                        context=context,
                        direction=direction,
                    ),
                )

        if new_step is not None:
            if pop_history and history:
                history.pop()
            await self._activate(new_step, old_step, direction, context, history)
        else:
            await self._complete(old_step, direction, context, on_flow_complete)

        if on_step_change is not None:
            try:
                await call_hook(on_step_change, new_step, old_step, context)
            except Exception as exc:
                self._errors.handle(exc, "on_step_change callback", context)

        self._events.notify(
            FlowEvent.STEP_CHANGE,
            StepChangeEvent(old_step=old_step, new_step=new_step, context=context),
        )
        self._state.set_loading(False)
        return new_step

    async def _activate(
        self,
        step: Step,
        old_step: Optional[Step],
        direction: Direction,
        context: FlowContext,
        history: List[StepId],
    ) -> None:
        start_time = now_ms()
        context.record_step_start(step.id, start_time)

        if step.is_checklist:
            self._checklist.get_items_state(step, context)

        if (
            direction is not Direction.PREVIOUS
            and old_step is not None
            and old_step.id != step.id
            and (not history or history[-1] != old_step.id)
        ):
            history.append(old_step.id)

        if step.on_step_active is not None:
            try:
                await call_hook(step.on_step_active, context)
            except Exception as exc:
                self._errors.handle(exc, f"on_step_active for {step.id}", context, step.id)

        logger.debug("Step %r active (%s)", step.id, direction.value)
        self._events.notify(
            FlowEvent.STEP_ACTIVE,
            StepActiveEvent(step=step, context=context, start_time=start_time),
        )

    async def _complete(
        self,
        old_step: Optional[Step],
        direction: Direction,
        context: FlowContext,
        on_flow_complete: Optional[FlowCompleteHook],
    ) -> None:
        self._state.set_completed(True)

        started_at = context.started_at
        duration_ms = now_ms() - started_at if started_at and started_at > 0 else 0

        explicitly_terminated = (
            old_step is not None and old_step.next_step.evaluate(context) is None
        )
        if on_flow_complete is not None and direction is not Direction.INITIAL and not explicitly_terminated:
            try:
                await call_hook(on_flow_complete, context)
            except Exception as exc:
                self._errors.handle(exc, "on_flow_complete", context)

        logger.info("Flow completed after %d ms", duration_ms)
        self._events.notify(
            FlowEvent.FLOW_COMPLETED,
            FlowCompletedEvent(context=context, duration_ms=duration_ms),
        )
        await self._persistence.persist_if_needed(context, None, self._state.is_hydrating)

    # =========================================================================
    # Operations
    # =========================================================================

    async def next(
        self,
        current_step: Optional[Step],
        step_data: Optional[Dict[str, Any]],
        context: FlowContext,
        history: List[StepId],
        on_step_change: Optional[StepChangeCallback] = None,
        on_flow_complete: Optional[FlowCompleteHook] = None,
    ) -> Optional[Step]:
        """Complete the current step and move forward.

        A CHECKLIST step whose criteria are not met refuses the move: the
        engine error is set, an ``error`` event is published and the context
        is left untouched.
        """
        if current_step is None or self._state.is_loading:
            return current_step

        data: Dict[str, Any] = dict(step_data or {})

        if current_step.is_checklist:
            if not self._checklist.is_complete(current_step, context):
                logger.warning(
                    "Cannot proceed from checklist step '%s': completion criteria not met",
                    current_step.id,
                )
                error = ChecklistIncompleteError(current_step.id)
                self._state.set_error(error)
                self._events.notify(
                    FlowEvent.ERROR,
                    ErrorEvent(error=error, context=context, operation="next", step_id=current_step.id),
                )
                return current_step
            data_key = current_step.payload.data_key
            data[data_key] = context.flow_data.get(data_key) or []

        self._state.set_loading(True)
        self._state.set_error(None)

        if data:
            merged = {**context.flow_data, **data}
            if merged != context.flow_data:
                context.flow_data = merged

        if current_step.on_step_complete is not None:
            try:
                await call_hook(current_step.on_step_complete, data, context)
            except Exception as exc:
                self._errors.handle(
                    exc, f"on_step_complete for {current_step.id}", context, current_step.id
                )
                self._state.set_loading(False)
                return current_step

        self._events.notify(
            FlowEvent.STEP_COMPLETED,
            StepCompletedEvent(step=current_step, step_data=data, context=context),
        )
        context.mark_completed(current_step.id)

        candidate = find_next_candidate(self.steps, current_step, context)
        next_id = candidate.id if candidate is not None else None

        new_step = await self.navigate_to_step(
            next_id,
            Direction.NEXT,
            current_step,
            context,
            history,
            on_step_change,
            on_flow_complete,
        )

        await self._persistence.persist_if_needed(
            context,
            new_step.id if new_step is not None else None,
            self._state.is_hydrating,
        )
        return new_step

    async def previous(
        self,
        current_step: Optional[Step],
        context: FlowContext,
        history: List[StepId],
        on_step_change: Optional[StepChangeCallback] = None,
        on_flow_complete: Optional[FlowCompleteHook] = None,
    ) -> Optional[Step]:
        """Move back: explicit ``previous_step``, then history, then array order.

        The landing step is resolved through the backward skip chain first, so
        the move agrees with ``previous_step_candidate`` in the projected state.
        History is only popped once the move actually activates a step.
        """
        if current_step is None or self._state.is_loading:
            return current_step

        try:
            landing, source = resolve_previous_step(
                self.steps, current_step, context, history, self.max_depth
            )
        except TraversalDepthExceededError as exc:
            self._errors.handle(exc, "previous", context, exc.step_id)
            return current_step

        if landing is None:
            logger.debug("No previous step from %r", current_step.id)
            return current_step

        return await self.navigate_to_step(
            landing.id,
            Direction.PREVIOUS,
            current_step,
            context,
            history,
            on_step_change,
            on_flow_complete,
            pop_history=source is PreviousSource.HISTORY,
        )

    async def skip(
        self,
        current_step: Optional[Step],
        context: FlowContext,
        history: List[StepId],
        on_step_change: Optional[StepChangeCallback] = None,
        on_flow_complete: Optional[FlowCompleteHook] = None,
    ) -> Optional[Step]:
        """Skip the current step if it is skippable."""
        if current_step is None or not current_step.is_skippable or self._state.is_loading:
            logger.debug(
                "Cannot skip from step %r: not skippable or engine loading",
                current_step.id if current_step is not None else None,
            )
            return current_step

        skip_reason = "default_skip" if current_step.skip_to_step.is_absent else "explicit_skip_target"
        self._events.notify(
            FlowEvent.STEP_SKIPPED,
            StepSkippedEvent(step=current_step, context=context, skip_reason=skip_reason),
        )

        target = resolve_skip_target(self.steps, current_step, context)
        if target is None:
            logger.debug("Skipping %r completes the flow", current_step.id)

        return await self.navigate_to_step(
            target,
            Direction.SKIP,
            current_step,
            context,
            history,
            on_step_change,
            on_flow_complete,
        )

    async def go_to_step(
        self,
        step_id: Any,
        step_data: Optional[Dict[str, Any]],
        current_step: Optional[Step],
        context: FlowContext,
        history: List[StepId],
        on_step_change: Optional[StepChangeCallback] = None,
        on_flow_complete: Optional[FlowCompleteHook] = None,
    ) -> Optional[Step]:
        """Jump to ``step_id``. No checklist gate and no on_step_complete."""
        if self._state.is_loading:
            logger.debug("go_to_step(%r) ignored: engine is loading", step_id)
            return current_step

        if step_data:
            context.flow_data = {**context.flow_data, **step_data}

        return await self.navigate_to_step(
            step_id,
            Direction.GOTO,
            current_step,
            context,
            history,
            on_step_change,
            on_flow_complete,
        )
