"""Tests for the NavigationResolver.

## Test Coverage

### Transitions
- next / previous / skip / go_to_step and the events each publishes
- History symmetry between next and previous
- Loading guard turns concurrent calls into no-ops

### before_step_change
- cancel, redirect and a raising listener

### Hooks
- on_step_active / on_step_complete / on_step_change failures
- on_flow_complete rules (array end, explicit None, initial navigation)

### Checklists
- An incomplete checklist refuses next without touching flow_data

### Safety
- A condition cycle aborts navigation and keeps the current step
"""

import copy

from conftest import EventRecorder, Harness, make_checklist_step, run

from stepflow.runtime.errors import ChecklistIncompleteError, TraversalDepthExceededError
from stepflow.runtime.types import Direction, Step


def never(ctx):
    return False


class TestNext:
    """Tests for forward navigation."""

    def test_moves_in_array_order(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")

        assert h.next().id == "b"
        assert h.history == ["a"]
        assert "a" in h.context.completed_steps

    def test_events_in_order(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        recorder = EventRecorder(h.events)

        h.next({"name": "Ada"})

        assert recorder.names() == [
            "step_completed",
            "navigation_forward",
            "step_active",
            "step_change",
        ]
        completed = recorder.payloads("step_completed")[0]
        assert completed.step.id == "a"
        assert completed.step_data == {"name": "Ada"}

    def test_step_data_merged_into_flow_data(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        h.next({"name": "Ada"})

        assert h.context.flow_data["name"] == "Ada"

    def test_records_step_start_time(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        h.next()

        assert "b" in h.context.flow_data["_internal"]["step_start_times"]

    def test_noop_without_current_step(self, linear_steps):
        h = Harness(linear_steps)
        assert h.next() is None

    def test_noop_while_loading(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        recorder = EventRecorder(h.events)
        h.state.set_loading(True)

        assert h.next().id == "a"
        assert h.previous().id == "a"
        assert h.go_to("c").id == "a"
        assert recorder.records == []

    def test_persists_new_step_id(self, linear_steps):
        calls = []
        h = Harness(linear_steps, persist_data=lambda ctx, step_id: calls.append(step_id))
        h.start("a")
        h.next()

        assert calls == ["b"]

    def test_persistence_skipped_while_hydrating(self, linear_steps):
        calls = []
        h = Harness(linear_steps, persist_data=lambda ctx, step_id: calls.append(step_id))
        h.start("a")
        h.state.set_hydrating(True)
        h.next()

        assert h.current.id == "b"
        assert calls == []


class TestHistorySymmetry:
    """next then previous returns to the origin with history restored."""

    def test_next_then_previous(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        h.next()

        assert h.previous().id == "a"
        assert h.history == []

        assert h.next().id == "b"
        assert h.history == ["a"]

    def test_previous_emits_navigation_back(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        h.next()
        recorder = EventRecorder(h.events)

        h.previous()

        back = recorder.payloads("navigation_back")
        assert len(back) == 1
        assert back[0].from_step.id == "b"
        assert back[0].to_step.id == "a"
        assert back[0].direction is Direction.PREVIOUS

    def test_explicit_previous_does_not_pop_history(self):
        steps = [Step(id="a"), Step(id="b", previous_step="a")]
        h = Harness(steps)
        h.start("a")
        h.next()

        h.previous()
        assert h.history == ["a"]

        # The history tail already equals the step being left
        h.next()
        assert h.history == ["a"]

    def test_previous_from_first_step_is_noop(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        recorder = EventRecorder(h.events)

        assert h.previous().id == "a"
        assert recorder.records == []

    def test_previous_onto_hidden_step_with_no_chain_stays(self):
        steps = [
            Step(id="a"),
            Step(id="b", condition=lambda ctx: not ctx.flow_data.get("hide_b")),
            Step(id="c"),
        ]
        h = Harness(steps)
        h.start("a")
        h.next()
        h.next({"hide_b": True})
        assert h.current.id == "c"

        state = h.project()
        assert state.can_go_previous is False
        assert state.previous_step_candidate is None

        recorder = EventRecorder(h.events)

        assert h.previous().id == "c"
        assert h.state.is_completed is False
        assert h.state.is_loading is False
        assert h.history == ["a", "b"]
        assert recorder.records == []

    def test_previous_lands_where_projection_says(self):
        steps = [
            Step(id="a"),
            Step(id="b", condition=lambda ctx: not ctx.flow_data.get("hide_b"), previous_step="a"),
            Step(id="c"),
        ]
        h = Harness(steps)
        h.start("a")
        h.next()
        h.next({"hide_b": True})

        expected = h.project().previous_step_candidate
        assert expected.id == "a"
        assert h.previous().id == "a"
        assert h.history == ["a"]


class TestBeforeStepChange:
    """Tests for the cancellable before_step_change hook."""

    def test_cancel_keeps_current_step(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        h.events.add_listener("before_step_change", lambda event: event.cancel())
        recorder = EventRecorder(h.events, names=["step_change"])

        assert h.go_to("c").id == "a"
        assert recorder.records == []
        assert h.state.is_loading is False

    def test_redirect_replaces_target(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")

        def redirect(event):
            if event.target_step_id == "b":
                event.redirect("c")

        h.events.add_listener("before_step_change", redirect)

        assert h.next().id == "c"
        assert h.history == ["a"]

    def test_redirect_after_cancel_is_ignored(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        h.events.add_listener("before_step_change", lambda event: event.cancel())
        h.events.add_listener("before_step_change", lambda event: event.redirect("c"))

        assert h.go_to("b").id == "a"

    def test_listener_sees_direction_and_target(self, linear_steps):
        seen = []
        h = Harness(linear_steps)
        h.start("a")
        h.events.add_listener(
            "before_step_change",
            lambda event: seen.append((event.current_step.id, event.target_step_id, event.direction)),
        )

        h.next()

        assert seen == [("a", "b", Direction.NEXT)]

    def test_async_listener_is_awaited(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")

        async def cancel(event):
            event.cancel()

        h.events.add_listener("before_step_change", cancel)

        assert h.go_to("c").id == "a"

    def test_raising_listener_aborts_navigation(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")

        def explode(event):
            raise ValueError("listener failed")

        h.events.add_listener("before_step_change", explode)

        assert h.go_to("c").id == "a"
        assert isinstance(h.state.error, ValueError)
        assert h.state.is_loading is False
        assert len(h.errors.get_by_operation("before_step_change")) == 1

    def test_cancelled_previous_keeps_history(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        h.go_to("c")
        assert h.history == ["a"]

        unsubscribe = h.events.add_listener("before_step_change", lambda event: event.cancel())

        assert h.previous().id == "c"
        assert h.history == ["a"]

        unsubscribe()

        assert h.previous().id == "a"
        assert h.history == []

    def test_raising_listener_on_previous_keeps_history(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        h.go_to("c")

        def explode(event):
            raise ValueError("listener failed")

        h.events.add_listener("before_step_change", explode)

        assert h.previous().id == "c"
        assert h.history == ["a"]

    def test_previous_redirected_to_hidden_step_stays(self):
        steps = [Step(id="a"), Step(id="b", condition=never), Step(id="c")]
        h = Harness(steps)
        h.start("a")
        h.go_to("c")
        h.events.add_listener("before_step_change", lambda event: event.redirect("b"))
        recorder = EventRecorder(h.events, names=["flow_completed", "step_change"])

        assert h.previous().id == "c"
        assert h.state.is_completed is False
        assert h.history == ["a"]
        assert recorder.records == []


class TestChecklistGate:
    """Tests for next() on CHECKLIST steps."""

    def test_incomplete_checklist_refuses_next(self):
        steps = [make_checklist_step(), Step(id="done")]
        h = Harness(steps)
        h.start("setup")
        recorder = EventRecorder(h.events)
        flow_data_before = copy.deepcopy(h.context.flow_data)

        assert h.next({"extra": 1}).id == "setup"

        assert h.context.flow_data == flow_data_before
        assert isinstance(h.state.error, ChecklistIncompleteError)
        assert h.state.is_loading is False
        assert recorder.names() == ["error"]
        assert recorder.payloads("error")[0].operation == "next"
        assert "setup" not in h.context.completed_steps

    def test_refusal_is_not_in_error_history(self):
        steps = [make_checklist_step(), Step(id="done")]
        h = Harness(steps)
        h.start("setup")
        h.next()

        assert h.errors.get_history() == []

    def test_complete_checklist_proceeds_with_item_state(self):
        steps = [make_checklist_step(), Step(id="done")]
        h = Harness(steps)
        h.start("setup")
        run(h.checklist.update_item("i1", True, h.current, h.context))
        recorder = EventRecorder(h.events, names=["step_completed"])

        assert h.next().id == "done"

        step_data = recorder.payloads("step_completed")[0].step_data
        assert step_data["setup_items"] == [
            {"id": "i1", "is_completed": True},
            {"id": "i2", "is_completed": False},
        ]

    def test_activation_initializes_item_state(self):
        steps = [Step(id="intro"), make_checklist_step()]
        h = Harness(steps)
        h.start("intro")
        h.next()

        assert h.context.flow_data["setup_items"] == [
            {"id": "i1", "is_completed": False},
            {"id": "i2", "is_completed": False},
        ]

    def test_go_to_step_is_not_gated(self):
        steps = [make_checklist_step(), Step(id="done")]
        h = Harness(steps)
        h.start("setup")

        assert h.go_to("done").id == "done"


class TestHooks:
    """Tests for step and flow hooks."""

    def test_on_step_active_failure_does_not_abort(self):
        def explode(ctx):
            raise RuntimeError("activation failed")

        steps = [Step(id="a"), Step(id="b", on_step_active=explode)]
        h = Harness(steps)
        h.start("a")
        recorder = EventRecorder(h.events, names=["step_active", "step_change"])

        assert h.next().id == "b"
        assert isinstance(h.state.error, RuntimeError)
        assert recorder.names() == ["step_active", "step_change"]
        assert len(h.errors.get_by_operation("on_step_active for b")) == 1

    def test_async_on_step_active(self):
        async def activate(ctx):
            ctx.flow_data["activated"] = True

        steps = [Step(id="a"), Step(id="b", on_step_active=activate)]
        h = Harness(steps)
        h.start("a")
        h.next()

        assert h.context.flow_data["activated"] is True

    def test_on_step_complete_receives_data(self):
        received = []
        steps = [Step(id="a", on_step_complete=lambda data, ctx: received.append(data)), Step(id="b")]
        h = Harness(steps)
        h.start("a")
        h.next({"answer": 42})

        assert received == [{"answer": 42}]

    def test_on_step_complete_failure_keeps_step(self):
        def explode(data, ctx):
            raise RuntimeError("complete failed")

        steps = [Step(id="a", on_step_complete=explode), Step(id="b")]
        h = Harness(steps)
        h.start("a")

        assert h.next().id == "a"
        assert h.state.is_loading is False
        assert isinstance(h.state.error, RuntimeError)
        assert "a" not in h.context.completed_steps
        assert h.errors.get_by_step("a")[0].operation == "on_step_complete for a"

    def test_on_step_change_callback(self, linear_steps):
        calls = []
        h = Harness(linear_steps)
        h.start("a")
        h.next(on_step_change=lambda new, old, ctx: calls.append((new.id, old.id)))

        assert calls == [("b", "a")]

    def test_on_step_change_failure_is_isolated(self, linear_steps):
        def explode(new, old, ctx):
            raise RuntimeError("callback failed")

        h = Harness(linear_steps)
        h.start("a")
        recorder = EventRecorder(h.events, names=["step_change"])

        assert h.next(on_step_change=explode).id == "b"
        assert len(recorder.records) == 1
        assert len(h.errors.get_by_operation("on_step_change callback")) == 1


class TestFlowCompletion:
    """Tests for reaching the end of a flow."""

    def test_array_end_runs_on_flow_complete(self):
        completed = []
        steps = [Step(id="a"), Step(id="b")]
        persisted = []
        h = Harness(steps, persist_data=lambda ctx, step_id: persisted.append(step_id))
        h.start("a")
        h.next()
        recorder = EventRecorder(h.events)

        assert h.next(on_flow_complete=completed.append) is None

        assert completed == [h.context]
        assert h.state.is_completed is True
        assert "flow_completed" in recorder.names()
        assert recorder.payloads("flow_completed")[0].duration_ms >= 0
        assert persisted[-1] is None
        assert "b" in h.context.completed_steps

    def test_explicit_none_skips_on_flow_complete(self):
        completed = []
        steps = [Step(id="a"), Step(id="b", next_step=None)]
        h = Harness(steps)
        h.start("a")
        h.next()
        recorder = EventRecorder(h.events, names=["flow_completed"])

        assert h.next(on_flow_complete=completed.append) is None

        assert completed == []
        assert len(recorder.records) == 1
        assert h.state.is_completed is True

    def test_initial_navigation_to_nothing_skips_on_flow_complete(self, linear_steps):
        completed = []
        h = Harness(linear_steps)

        assert h.start(None, on_flow_complete=completed.append) is None
        assert completed == []
        assert h.state.is_completed is True

    def test_on_flow_complete_failure_is_recorded(self):
        def explode(ctx):
            raise RuntimeError("complete hook failed")

        h = Harness([Step(id="a")])
        h.start("a")

        assert h.next(on_flow_complete=explode) is None
        assert h.state.is_completed is True
        assert len(h.errors.get_by_operation("on_flow_complete")) == 1


class TestSkip:
    """Tests for skip()."""

    def test_not_skippable_is_noop(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        recorder = EventRecorder(h.events)

        assert h.skip().id == "a"
        assert recorder.records == []

    def test_explicit_skip_target(self):
        steps = [Step(id="a", is_skippable=True, skip_to_step="c"), Step(id="b"), Step(id="c")]
        h = Harness(steps)
        h.start("a")
        recorder = EventRecorder(h.events, names=["step_skipped"])

        assert h.skip().id == "c"
        assert recorder.payloads("step_skipped")[0].skip_reason == "explicit_skip_target"
        assert h.history == ["a"]
        assert "a" not in h.context.completed_steps

    def test_default_skip_uses_array_order(self):
        steps = [Step(id="a", is_skippable=True), Step(id="b", condition=never), Step(id="c")]
        h = Harness(steps)
        h.start("a")
        recorder = EventRecorder(h.events, names=["step_skipped"])

        assert h.skip().id == "c"
        assert recorder.payloads("step_skipped")[0].skip_reason == "default_skip"

    def test_skip_from_last_step_completes(self):
        steps = [Step(id="a"), Step(id="b", is_skippable=True)]
        h = Harness(steps)
        h.start("b")

        assert h.skip() is None
        assert h.state.is_completed is True


class TestGoToStep:
    """Tests for go_to_step()."""

    def test_jump_emits_navigation_jump(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")
        recorder = EventRecorder(h.events, names=["navigation_jump"])

        assert h.go_to("c", {"source": "menu"}).id == "c"
        assert h.context.flow_data["source"] == "menu"
        assert len(recorder.records) == 1
        assert h.history == ["a"]

    def test_jump_to_ineligible_step_skips_forward(self):
        steps = [Step(id="a"), Step(id="b", condition=never), Step(id="c")]
        h = Harness(steps)
        h.start("a")

        assert h.go_to("b").id == "c"

    def test_jump_to_unknown_step_completes(self, linear_steps):
        h = Harness(linear_steps)
        h.start("a")

        assert h.go_to("nowhere") is None
        assert h.state.is_completed is True

    def test_jump_does_not_run_on_step_complete(self):
        received = []
        steps = [Step(id="a", on_step_complete=lambda data, ctx: received.append(data)), Step(id="b")]
        h = Harness(steps)
        h.start("a")
        h.go_to("b")

        assert received == []
        assert "a" not in h.context.completed_steps


class TestDepthGuard:
    """Tests for condition cycles during navigation."""

    def _cycle(self):
        return [
            Step(id="s", next_step="p"),
            Step(id="p", condition=never, next_step="q"),
            Step(id="q", condition=never, next_step="p"),
        ]

    def test_cycle_keeps_current_step(self):
        h = Harness(self._cycle(), max_depth=10)
        h.start("s")
        recorder = EventRecorder(h.events, names=["step_change", "error"])

        assert h.next().id == "s"

        assert isinstance(h.state.error, TraversalDepthExceededError)
        assert h.state.is_loading is False
        assert recorder.names() == ["error"]
        assert len(h.errors.get_by_operation("navigate_to_step")) == 1

    def test_backward_cycle_keeps_current_step(self):
        steps = [
            Step(id="p", condition=never, previous_step="q"),
            Step(id="q", condition=never, previous_step="p"),
            Step(id="c", previous_step="p"),
        ]
        h = Harness(steps, max_depth=10)
        h.start("c")

        assert h.previous().id == "c"
        assert isinstance(h.state.error, TraversalDepthExceededError)
        assert h.state.is_completed is False
        assert len(h.errors.get_by_operation("previous")) == 1

    def test_depth_from_max_depth(self):
        h = Harness(self._cycle(), max_depth=3)
        h.start("s")
        h.next()

        assert h.state.error.max_depth == 3
