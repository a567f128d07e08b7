"""
checklist.py - Completion gate for CHECKLIST steps.

Item state lives in ``context.flow_data[payload.data_key]`` as a list of
``{"id": ..., "is_completed": ...}`` dicts in item-definition order. When
the stored list is missing or its length no longer matches the item
definitions, it is re-initialized with every item pending.

Completion rule (over items whose condition holds):
- ``min_items_to_complete`` set: completed count >= that number
- otherwise: no mandatory item pending (items are mandatory unless
  ``is_mandatory`` is False)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from stepflow.runtime.async_utils import call_hook
from stepflow.runtime.errors import (
    ChecklistItemNotFoundError,
    ChecklistStepMissingError,
    InvalidChecklistPayloadError,
    NotAChecklistStepError,
)
from stepflow.runtime.events import FlowEvent
from stepflow.runtime.types import (
    ChecklistItemToggledEvent,
    ChecklistPayload,
    ChecklistProgress,
    ChecklistProgressChangedEvent,
    FlowContext,
    Step,
    StepType,
)

if TYPE_CHECKING:
    from stepflow.runtime.errors import ErrorService
    from stepflow.runtime.events import EventManager

logger = logging.getLogger(__name__)

ItemStates = List[Dict[str, Any]]


def is_valid_checklist_payload(payload: Any) -> bool:
    return (
        isinstance(payload, ChecklistPayload)
        and isinstance(payload.data_key, str)
        and bool(payload.data_key)
        and isinstance(payload.items, (list, tuple))
    )


def _fresh_states(payload: ChecklistPayload) -> ItemStates:
    return [{"id": item.id, "is_completed": False} for item in payload.items]


def _state_for(states: ItemStates, item_id: str) -> Optional[Dict[str, Any]]:
    for state in states:
        if isinstance(state, dict) and state.get("id") == item_id:
            return state
    return None


class ChecklistGate:
    """Maintains per-item state and decides whether a checklist step is complete."""

    def __init__(self, event_manager: "EventManager", error_service: "ErrorService"):
        self._events = event_manager
        self._errors = error_service

    def _read_states(self, payload: ChecklistPayload, context: FlowContext) -> ItemStates:
        """Stored states if structurally current, else a fresh (unsaved) list."""
        stored = context.flow_data.get(payload.data_key)
        if isinstance(stored, list) and len(stored) == len(payload.items):
            return stored
        return _fresh_states(payload)

    def get_items_state(self, step: Step, context: FlowContext) -> ItemStates:
        """Item states for ``step``, (re)initializing them in the context when stale."""
        payload: ChecklistPayload = step.payload
        stored = context.flow_data.get(payload.data_key)
        if isinstance(stored, list) and len(stored) == len(payload.items):
            return stored

        if stored is not None:
            logger.debug(
                "Checklist '%s' item state is stale (%s stored, %d defined); re-initializing",
                step.id,
                len(stored) if isinstance(stored, list) else type(stored).__name__,
                len(payload.items),
            )
        states = _fresh_states(payload)
        context.flow_data = {**context.flow_data, payload.data_key: list(states)}
        return states

    def _evaluate(self, payload: ChecklistPayload, states: ItemStates, context: FlowContext) -> ChecklistProgress:
        total = 0
        completed = 0
        mandatory_pending = 0
        for item in payload.items:
            if not item.is_relevant(context):
                continue
            total += 1
            state = _state_for(states, item.id)
            if state is not None and state.get("is_completed"):
                completed += 1
            elif item.is_mandatory is not False:
                mandatory_pending += 1

        if payload.min_items_to_complete is not None:
            is_complete = completed >= payload.min_items_to_complete
        else:
            is_complete = mandatory_pending == 0

        percentage = round(completed / total * 100) if total > 0 else 0
        return ChecklistProgress(
            completed=completed,
            total=total,
            percentage=percentage,
            is_complete=is_complete,
        )

    def is_complete(self, step: Step, context: FlowContext) -> bool:
        """Whether the checklist criteria of ``step`` are met. Does not mutate context."""
        payload: ChecklistPayload = step.payload
        return self._evaluate(payload, self._read_states(payload, context), context).is_complete

    def get_progress(self, step: Step, context: FlowContext) -> ChecklistProgress:
        payload: ChecklistPayload = step.payload
        return self._evaluate(payload, self._read_states(payload, context), context)

    def _validate_update(self, step: Optional[Step], item_id: str) -> None:
        if step is None:
            raise ChecklistStepMissingError()
        if step.type is not StepType.CHECKLIST:
            raise NotAChecklistStepError(step.id, step.type.value)
        if not is_valid_checklist_payload(step.payload):
            raise InvalidChecklistPayloadError(step.id)
        if not any(item.id == item_id for item in step.payload.items):
            raise ChecklistItemNotFoundError(step.id, item_id)

    async def update_item(
        self,
        item_id: str,
        is_completed: bool,
        step: Optional[Step],
        context: FlowContext,
        persist_callback: Optional[Callable[[], Any]] = None,
    ) -> bool:
        """Set an item's completion flag.

        Validation failures are reported through the ErrorService and leave
        the context untouched.

        Returns:
            True if the update was applied.
        """
        try:
            self._validate_update(step, item_id)
        except (
            ChecklistStepMissingError,
            NotAChecklistStepError,
            InvalidChecklistPayloadError,
            ChecklistItemNotFoundError,
        ) as exc:
            logger.warning("Checklist update rejected: %s", exc)
            self._errors.handle(
                exc,
                "update_checklist_item",
                context,
                step.id if step is not None else None,
            )
            return False

        payload: ChecklistPayload = step.payload
        states: ItemStates = [dict(state) for state in self._read_states(payload, context)]

        existing = _state_for(states, item_id)
        if existing is not None:
            existing["is_completed"] = is_completed
        else:
            states.append({"id": item_id, "is_completed": is_completed})

        progress = self._evaluate(payload, states, context)
        self._events.notify(
            FlowEvent.CHECKLIST_ITEM_TOGGLED,
            ChecklistItemToggledEvent(
                item_id=item_id,
                is_completed=is_completed,
                step=step,
                context=context,
            ),
        )
        self._events.notify(
            FlowEvent.CHECKLIST_PROGRESS_CHANGED,
            ChecklistProgressChangedEvent(step=step, context=context, progress=progress),
        )

        old_flow_data = context.flow_data
        context.flow_data = {**old_flow_data, payload.data_key: states}
        changed = context.flow_data != old_flow_data

        if changed and persist_callback is not None:
            try:
                await call_hook(persist_callback)
            except Exception as exc:
                self._errors.handle(exc, "update_checklist_item persistence", context, step.id)
        return True
