"""
Test fixtures and utilities for stepflow tests.

This module provides reusable step definitions, contexts and an event
recorder shared by the runtime, validator and loader tests.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Add repo root to path for imports
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from stepflow.config import runtime_config
from stepflow.runtime.checklist import ChecklistGate
from stepflow.runtime.errors import ErrorService
from stepflow.runtime.events import EventManager, FlowEvent
from stepflow.runtime.navigation import NavigationResolver
from stepflow.runtime.persistence import PersistenceManager
from stepflow.runtime.state import StateManager
from stepflow.runtime.types import (
    ChecklistItem,
    ChecklistPayload,
    Direction,
    FlowContext,
    Step,
    StepType,
)


def run(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


# ============================================================================
# Event recording
# ============================================================================


class EventRecorder:
    """Subscribes to events and keeps (event_name, payload) pairs in order.

    ``before_step_change`` is only recorded when requested by name.
    """

    def __init__(self, events: EventManager, names: Optional[List[str]] = None):
        self.records: List[Tuple[str, Any]] = []
        for event in FlowEvent:
            if names is None and event is FlowEvent.BEFORE_STEP_CHANGE:
                continue
            if names is None or event.value in names:
                events.add_listener(event, self._make_listener(event.value))

    def _make_listener(self, name: str):
        def listener(payload: Any) -> None:
            self.records.append((name, payload))

        return listener

    def names(self) -> List[str]:
        return [name for name, _ in self.records]

    def payloads(self, name: str) -> List[Any]:
        return [payload for event, payload in self.records if event == name]


# ============================================================================
# Resolver harness
# ============================================================================


class Harness:
    """A NavigationResolver with all collaborators wired, for direct testing."""

    def __init__(
        self,
        steps: List[Step],
        context: Optional[FlowContext] = None,
        persist_data=None,
        max_depth: int = 100,
        initial_step_id=None,
    ):
        self.steps = steps
        self.context = context if context is not None else FlowContext()
        self.context.ensure_internal()
        self.history: List[Any] = []
        self.events = EventManager()
        self.state = StateManager(self.events, steps, initial_step_id, max_depth)
        self.errors = ErrorService(self.events, self.state, capacity=50)
        self.persistence = PersistenceManager(
            self.events, persist_data=persist_data, error_service=self.errors
        )
        self.checklist = ChecklistGate(self.events, self.errors)
        self.resolver = NavigationResolver(
            steps,
            self.events,
            self.state,
            self.checklist,
            self.persistence,
            self.errors,
            max_depth=max_depth,
        )
        self.current: Optional[Step] = None

    def step(self, step_id) -> Step:
        return next(s for s in self.steps if s.id == step_id)

    def start(self, step_id, **kwargs) -> Optional[Step]:
        self.current = run(
            self.resolver.navigate_to_step(
                step_id, Direction.INITIAL, None, self.context, self.history, **kwargs
            )
        )
        return self.current

    def next(self, step_data: Optional[Dict[str, Any]] = None, **kwargs) -> Optional[Step]:
        self.current = run(
            self.resolver.next(self.current, step_data, self.context, self.history, **kwargs)
        )
        return self.current

    def previous(self, **kwargs) -> Optional[Step]:
        self.current = run(
            self.resolver.previous(self.current, self.context, self.history, **kwargs)
        )
        return self.current

    def skip(self, **kwargs) -> Optional[Step]:
        self.current = run(self.resolver.skip(self.current, self.context, self.history, **kwargs))
        return self.current

    def go_to(self, step_id, step_data=None, **kwargs) -> Optional[Step]:
        self.current = run(
            self.resolver.go_to_step(
                step_id, step_data, self.current, self.context, self.history, **kwargs
            )
        )
        return self.current

    def project(self):
        return self.state.get_state(self.current, self.context, self.history)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_runtime_config(monkeypatch):
    """Isolate tests from STEPFLOW_* environment and the cached runtime.yaml."""
    for var in (
        "STEPFLOW_MAX_TRAVERSAL_DEPTH",
        "STEPFLOW_ERROR_HISTORY_CAPACITY",
        "STEPFLOW_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    runtime_config.reload_config()
    yield
    runtime_config.reload_config()


@pytest.fixture
def linear_steps() -> List[Step]:
    """Three unconditional steps navigated in array order."""
    return [Step(id="a"), Step(id="b"), Step(id="c")]


@pytest.fixture
def conditional_steps() -> List[Step]:
    """A (always), B (never, next C), C (always, explicit end)."""
    return [
        Step(id="A", condition=lambda ctx: True),
        Step(id="B", condition=lambda ctx: False, next_step="C"),
        Step(id="C", condition=lambda ctx: True, next_step=None),
    ]


def make_checklist_step(
    step_id: str = "setup",
    items: Optional[List[ChecklistItem]] = None,
    min_items: Optional[int] = None,
    data_key: str = "setup_items",
    **kwargs: Any,
) -> Step:
    if items is None:
        items = [
            ChecklistItem(id="i1", label="First", is_mandatory=True),
            ChecklistItem(id="i2", label="Second", is_mandatory=False),
        ]
    return Step(
        id=step_id,
        type=StepType.CHECKLIST,
        payload=ChecklistPayload(data_key=data_key, items=items, min_items_to_complete=min_items),
        **kwargs,
    )


@pytest.fixture
def checklist_step() -> Step:
    return make_checklist_step()


@pytest.fixture
def harness_factory():
    """Build a Harness around a list of steps."""

    def factory(steps: List[Step], **kwargs: Any) -> Harness:
        return Harness(steps, **kwargs)

    return factory
