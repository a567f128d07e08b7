"""
events.py - Typed publish/subscribe for engine notifications.

Two delivery modes:
- ``notify``: fan-out. Each listener is isolated; a raising listener is logged
  and its siblings still run. If a listener returns an awaitable, it is
  scheduled on the running loop and its failure is logged when it finishes.
- ``notify_sequential``: listeners run one at a time and are awaited. The
  first failure aborts the remaining listeners and propagates to the caller.
  Only the cancellable ``before_step_change`` hook uses this mode.

Usage:
    from stepflow.runtime.events import EventManager, FlowEvent

    events = EventManager()
    unsubscribe = events.add_listener(FlowEvent.STEP_CHANGE, on_step_change)
    events.notify(FlowEvent.STEP_CHANGE, StepChangeEvent(old, new, context))
    unsubscribe()
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, Set, Union

from stepflow.runtime.errors import UnknownEventError

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]
Unsubscribe = Callable[[], None]


class FlowEvent(str, Enum):
    """Every notification the engine can publish."""

    STATE_CHANGE = "state_change"
    BEFORE_STEP_CHANGE = "before_step_change"
    STEP_CHANGE = "step_change"
    STEP_ACTIVE = "step_active"
    STEP_COMPLETED = "step_completed"
    STEP_SKIPPED = "step_skipped"
    FLOW_STARTED = "flow_started"
    FLOW_COMPLETED = "flow_completed"
    FLOW_RESET = "flow_reset"
    CONTEXT_UPDATE = "context_update"
    ERROR = "error"
    NAVIGATION_BACK = "navigation_back"
    NAVIGATION_FORWARD = "navigation_forward"
    NAVIGATION_JUMP = "navigation_jump"
    CHECKLIST_ITEM_TOGGLED = "checklist_item_toggled"
    CHECKLIST_PROGRESS_CHANGED = "checklist_progress_changed"
    PERSISTENCE_SUCCESS = "persistence_success"
    PERSISTENCE_FAILURE = "persistence_failure"


# Alternate names accepted for subscription
EVENT_ALIASES: Dict[str, FlowEvent] = {
    "step_complete": FlowEvent.STEP_COMPLETED,
    "flow_complete": FlowEvent.FLOW_COMPLETED,
}


def normalize_event(event: Union[FlowEvent, str]) -> FlowEvent:
    """Map an event name or alias to its FlowEvent.

    Raises:
        UnknownEventError: If the name is not a known event type.
    """
    if isinstance(event, FlowEvent):
        return event
    if isinstance(event, str):
        if event in EVENT_ALIASES:
            return EVENT_ALIASES[event]
        try:
            return FlowEvent(event)
        except ValueError:
            pass
    raise UnknownEventError(event)


class EventManager:
    """Registry of listeners per event type."""

    def __init__(self) -> None:
        # dict keys act as an insertion-ordered set
        self._listeners: Dict[FlowEvent, Dict[Listener, None]] = {event: {} for event in FlowEvent}
        self._pending: Set["asyncio.Future[Any]"] = set()

    def add_listener(self, event: Union[FlowEvent, str], listener: Listener) -> Unsubscribe:
        """Register ``listener`` for ``event``.

        Registering the same listener twice for one event keeps a single
        registration. The returned handle is idempotent.

        Raises:
            UnknownEventError: Immediately, for an unknown event type.
            TypeError: If ``listener`` is not callable.
        """
        event_type = normalize_event(event)
        if not callable(listener):
            raise TypeError(f"Listener for {event_type.value} must be callable")

        listeners = self._listeners[event_type]
        listeners[listener] = None
        subscribed = True

        def unsubscribe() -> None:
            nonlocal subscribed
            if subscribed:
                subscribed = False
                listeners.pop(listener, None)

        return unsubscribe

    def remove_listener(self, event: Union[FlowEvent, str], listener: Listener) -> bool:
        listeners = self._listeners[normalize_event(event)]
        if listener in listeners:
            del listeners[listener]
            return True
        return False

    def listener_count(self, event: Union[FlowEvent, str]) -> int:
        return len(self._listeners[normalize_event(event)])

    def has_listeners(self, event: Union[FlowEvent, str]) -> bool:
        return self.listener_count(event) > 0

    def clear_all(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()

    def notify(self, event: Union[FlowEvent, str], payload: Any = None) -> None:
        """Fan out ``payload`` to every listener of ``event``; never raises for listener failures."""
        event_type = normalize_event(event)
        for listener in list(self._listeners[event_type]):
            try:
                result = listener(payload)
            except Exception:
                logger.exception("Error in %s listener", event_type.value)
                continue
            if inspect.isawaitable(result):
                self._schedule(event_type, result)

    async def notify_sequential(self, event: Union[FlowEvent, str], payload: Any = None) -> None:
        """Run listeners one by one, awaiting each; the first failure propagates."""
        event_type = normalize_event(event)
        for listener in list(self._listeners[event_type]):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error in sequential %s listener", event_type.value)
                raise

    async def wait_for_pending(self) -> None:
        """Wait for awaitables scheduled by fan-out listeners to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, event_type: FlowEvent, awaitable: Any) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Async %s listener called outside a running event loop; result discarded",
                event_type.value,
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        future = asyncio.ensure_future(awaitable)
        self._pending.add(future)
        future.add_done_callback(functools.partial(self._on_listener_done, event_type))

    def _on_listener_done(self, event_type: FlowEvent, future: "asyncio.Future[Any]") -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Error in async %s listener: %s",
                event_type.value,
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
