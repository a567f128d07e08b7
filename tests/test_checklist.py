"""Tests for the ChecklistGate.

## Test Coverage

- Completion rules: mandatory items, min_items_to_complete, conditional items
- Item state initialization and re-initialization
- update_item validation (rejected updates leave the context alone)
- Progress events and the persistence callback
"""

from conftest import EventRecorder, make_checklist_step, run

from stepflow.runtime.checklist import ChecklistGate
from stepflow.runtime.errors import (
    ChecklistItemNotFoundError,
    ChecklistStepMissingError,
    ErrorService,
    InvalidChecklistPayloadError,
    NotAChecklistStepError,
)
from stepflow.runtime.events import EventManager
from stepflow.runtime.state import StateManager
from stepflow.runtime.types import ChecklistItem, FlowContext, Step, StepType


def make_gate():
    events = EventManager()
    state = StateManager(events, [])
    errors = ErrorService(events, state, capacity=10)
    return ChecklistGate(events, errors), errors, events


def three_mandatory(min_items=None):
    return make_checklist_step(
        items=[
            ChecklistItem(id="x"),
            ChecklistItem(id="y"),
            ChecklistItem(id="z"),
        ],
        min_items=min_items,
    )


class TestCompletionRules:
    """Tests for is_complete / get_progress."""

    def test_optional_item_not_required(self):
        gate, _, _ = make_gate()
        step = make_checklist_step()
        ctx = FlowContext()
        gate.get_items_state(step, ctx)

        assert gate.is_complete(step, ctx) is False
        run(gate.update_item("i1", True, step, ctx))
        assert gate.is_complete(step, ctx) is True

        progress = gate.get_progress(step, ctx)
        assert (progress.completed, progress.total, progress.percentage) == (1, 2, 50)

    def test_min_items_ignores_mandatory_flags(self):
        gate, _, _ = make_gate()
        step = three_mandatory(min_items=2)
        ctx = FlowContext()
        gate.get_items_state(step, ctx)

        run(gate.update_item("x", True, step, ctx))
        assert gate.is_complete(step, ctx) is False

        run(gate.update_item("z", True, step, ctx))
        assert gate.is_complete(step, ctx) is True

    def test_min_items_zero_is_always_complete(self):
        gate, _, _ = make_gate()
        step = three_mandatory(min_items=0)
        assert gate.is_complete(step, FlowContext()) is True

    def test_irrelevant_items_are_ignored(self):
        gate, _, _ = make_gate()
        step = make_checklist_step(
            items=[
                ChecklistItem(id="always"),
                ChecklistItem(id="admin_only", condition=lambda ctx: ctx.flow_data.get("admin", False)),
            ]
        )
        ctx = FlowContext()
        gate.get_items_state(step, ctx)
        run(gate.update_item("always", True, step, ctx))

        assert gate.is_complete(step, ctx) is True
        assert gate.get_progress(step, ctx).total == 1

        ctx.flow_data["admin"] = True
        assert gate.is_complete(step, ctx) is False
        assert gate.get_progress(step, ctx).total == 2

    def test_is_complete_does_not_mutate_context(self):
        gate, _, _ = make_gate()
        step = make_checklist_step()
        ctx = FlowContext()

        gate.is_complete(step, ctx)
        gate.get_progress(step, ctx)

        assert "setup_items" not in ctx.flow_data


class TestItemState:
    """Tests for get_items_state."""

    def test_initializes_missing_state(self):
        gate, _, _ = make_gate()
        step = make_checklist_step()
        ctx = FlowContext()

        states = gate.get_items_state(step, ctx)

        assert states == [
            {"id": "i1", "is_completed": False},
            {"id": "i2", "is_completed": False},
        ]
        assert ctx.flow_data["setup_items"] == states

    def test_reinitializes_on_length_mismatch(self):
        gate, _, _ = make_gate()
        step = make_checklist_step()
        ctx = FlowContext(flow_data={"setup_items": [{"id": "i1", "is_completed": True}]})

        states = gate.get_items_state(step, ctx)

        assert [state["is_completed"] for state in states] == [False, False]

    def test_keeps_current_state(self):
        gate, _, _ = make_gate()
        step = make_checklist_step()
        stored = [{"id": "i1", "is_completed": True}, {"id": "i2", "is_completed": False}]
        ctx = FlowContext(flow_data={"setup_items": stored})

        assert gate.get_items_state(step, ctx) is stored


class TestUpdateItem:
    """Tests for update_item."""

    def test_emits_toggle_and_progress(self):
        gate, _, events = make_gate()
        recorder = EventRecorder(events)
        step = make_checklist_step()
        ctx = FlowContext()

        assert run(gate.update_item("i1", True, step, ctx)) is True

        assert recorder.names() == ["checklist_item_toggled", "checklist_progress_changed"]
        toggled = recorder.payloads("checklist_item_toggled")[0]
        assert (toggled.item_id, toggled.is_completed) == ("i1", True)
        assert recorder.payloads("checklist_progress_changed")[0].progress.is_complete is True

    def test_update_before_initialization_keeps_every_item(self):
        gate, _, _ = make_gate()
        step = make_checklist_step()
        ctx = FlowContext()

        run(gate.update_item("i2", True, step, ctx))

        assert ctx.flow_data["setup_items"] == [
            {"id": "i1", "is_completed": False},
            {"id": "i2", "is_completed": True},
        ]

    def test_stored_list_is_not_mutated_in_place(self):
        gate, _, _ = make_gate()
        step = make_checklist_step()
        ctx = FlowContext()
        original = gate.get_items_state(step, ctx)

        run(gate.update_item("i1", True, step, ctx))

        assert original[0]["is_completed"] is False
        assert ctx.flow_data["setup_items"][0]["is_completed"] is True

    def test_missing_step_rejected(self):
        gate, errors, _ = make_gate()
        ctx = FlowContext()

        assert run(gate.update_item("i1", True, None, ctx)) is False
        assert isinstance(errors.get_history()[0].error, ChecklistStepMissingError)
        assert ctx.flow_data == {}

    def test_non_checklist_step_rejected(self):
        gate, errors, _ = make_gate()
        ctx = FlowContext()

        assert run(gate.update_item("i1", True, Step(id="info"), ctx)) is False
        assert isinstance(errors.get_history()[0].error, NotAChecklistStepError)
        assert errors.get_history()[0].operation == "update_checklist_item"

    def test_invalid_payload_rejected(self):
        gate, errors, _ = make_gate()
        step = Step(id="broken", type=StepType.CHECKLIST, payload={"items": []})

        assert run(gate.update_item("i1", True, step, FlowContext())) is False
        assert isinstance(errors.get_history()[0].error, InvalidChecklistPayloadError)

    def test_unknown_item_rejected(self):
        gate, errors, events = make_gate()
        recorder = EventRecorder(events, names=["checklist_item_toggled"])
        step = make_checklist_step()
        ctx = FlowContext()
        gate.get_items_state(step, ctx)
        before = list(ctx.flow_data["setup_items"])

        assert run(gate.update_item("nope", True, step, ctx)) is False

        assert isinstance(errors.get_history()[0].error, ChecklistItemNotFoundError)
        assert ctx.flow_data["setup_items"] == before
        assert recorder.records == []

    def test_persist_callback_runs_on_change(self):
        gate, _, _ = make_gate()
        step = make_checklist_step()
        ctx = FlowContext()
        gate.get_items_state(step, ctx)
        calls = []

        run(gate.update_item("i1", True, step, ctx, lambda: calls.append("saved")))
        run(gate.update_item("i1", True, step, ctx, lambda: calls.append("saved")))

        assert calls == ["saved"]

    def test_persist_callback_failure_is_recorded(self):
        gate, errors, _ = make_gate()
        step = make_checklist_step()

        def explode():
            raise IOError("disk full")

        assert run(gate.update_item("i1", True, step, FlowContext(), explode)) is True
        assert errors.get_history()[0].operation == "update_checklist_item persistence"
