"""
step_graph.py - Resolve next/previous steps over an ordered step sequence.

Shared by the StateManager (preview) and the NavigationResolver (actual
navigation) so both always agree on where a move would land.

Forward resolution (evaluated once per lookup):
1. Explicit ``next_step``: an id goes exactly there, ``None`` terminates,
   ``ABSENT`` falls through.
2. Array order: first later step whose condition holds.

Backward resolution:
1. Explicit ``previous_step``
2. History tail (last visited id)
3. Array order: nearest earlier step whose condition holds.

Conditional-skip loop: while the candidate is ineligible, advance again from
the candidate using the same directional rule. Backwards, only the
candidate's own ``previous_step`` chain is followed; history and array order
are not consulted again. The loop is bounded by ``max_depth``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

from stepflow.runtime.errors import TraversalDepthExceededError
from stepflow.runtime.types import ABSENT, Direction, FlowContext, Step, StepId

logger = logging.getLogger(__name__)


class PreviousSource(str, Enum):
    """Where a backward candidate came from."""

    EXPLICIT = "explicit"
    HISTORY = "history"
    ARRAY = "array"
    NONE = "none"


def find_step_by_id(steps: Sequence[Step], step_id: Any) -> Optional[Step]:
    """Look a step up by id.

    Ids that went through JSON persistence may come back as strings, so a
    string match is tried after an exact match.
    """
    if step_id is None or step_id is ABSENT:
        return None
    for step in steps:
        if step.id == step_id:
            return step
    wanted = str(step_id)
    for step in steps:
        if str(step.id) == wanted:
            return step
    return None


def index_of(steps: Sequence[Step], step_id: StepId) -> int:
    for index, step in enumerate(steps):
        if step.id == step_id:
            return index
    return -1


def is_relevant(step: Step, context: FlowContext) -> bool:
    return step.is_relevant(context)


def relevant_steps(steps: Sequence[Step], context: FlowContext) -> List[Step]:
    return [step for step in steps if step.is_relevant(context)]


def first_relevant_after(steps: Sequence[Step], index: int, context: FlowContext) -> Optional[Step]:
    for step in steps[index + 1 :]:
        if step.is_relevant(context):
            return step
    return None


def first_relevant_before(steps: Sequence[Step], index: int, context: FlowContext) -> Optional[Step]:
    for position in range(index - 1, -1, -1):
        if steps[position].is_relevant(context):
            return steps[position]
    return None


# =============================================================================
# Single-hop candidates
# =============================================================================


def find_next_candidate(steps: Sequence[Step], step: Step, context: FlowContext) -> Optional[Step]:
    """One forward hop from ``step``; the candidate's own eligibility is not checked."""
    target = step.next_step.evaluate(context)
    if target is None:
        return None
    if target is not ABSENT:
        return find_step_by_id(steps, target)

    index = index_of(steps, step.id)
    if index == -1:
        return None
    return first_relevant_after(steps, index, context)


def find_previous_candidate(
    steps: Sequence[Step],
    step: Step,
    context: FlowContext,
    history: Sequence[StepId],
) -> Tuple[Optional[Step], PreviousSource]:
    """One backward hop from ``step`` and the source it came from."""
    target = step.previous_step.evaluate(context)
    if target is not ABSENT:
        return find_step_by_id(steps, target), PreviousSource.EXPLICIT

    if history:
        return find_step_by_id(steps, history[-1]), PreviousSource.HISTORY

    index = index_of(steps, step.id)
    if index > 0:
        candidate = first_relevant_before(steps, index, context)
        if candidate is not None:
            return candidate, PreviousSource.ARRAY
    return None, PreviousSource.NONE


def _previous_in_chain(steps: Sequence[Step], step: Step, context: FlowContext) -> Optional[Step]:
    target = step.previous_step.evaluate(context)
    if target is None or target is ABSENT:
        return None
    return find_step_by_id(steps, target)


# =============================================================================
# Conditional-skip loop
# =============================================================================


def skip_ineligible(
    steps: Sequence[Step],
    candidate: Optional[Step],
    context: FlowContext,
    direction: Direction,
    max_depth: int,
) -> Optional[Step]:
    """Advance past ineligible candidates in ``direction``.

    Raises:
        TraversalDepthExceededError: After more than ``max_depth`` skips.
    """
    start_id = candidate.id if candidate is not None else None
    hops = 0
    while candidate is not None and not candidate.is_relevant(context):
        hops += 1
        if hops > max_depth:
            raise TraversalDepthExceededError(start_id, max_depth)
        logger.debug("Skipping conditional step %r (%s)", candidate.id, direction.value)
        if direction is Direction.PREVIOUS:
            candidate = _previous_in_chain(steps, candidate, context)
        else:
            candidate = find_next_candidate(steps, candidate, context)
    return candidate


def resolve_next_step(
    steps: Sequence[Step],
    step: Step,
    context: FlowContext,
    max_depth: int,
) -> Optional[Step]:
    """Eligible step a forward move from ``step`` lands on, or None."""
    candidate = find_next_candidate(steps, step, context)
    return skip_ineligible(steps, candidate, context, Direction.NEXT, max_depth)


def resolve_previous_step(
    steps: Sequence[Step],
    step: Step,
    context: FlowContext,
    history: Sequence[StepId],
    max_depth: int,
) -> Tuple[Optional[Step], PreviousSource]:
    """Eligible step a backward move from ``step`` lands on, and the source consulted."""
    candidate, source = find_previous_candidate(steps, step, context, history)
    return skip_ineligible(steps, candidate, context, Direction.PREVIOUS, max_depth), source


def resolve_skip_target(steps: Sequence[Step], step: Step, context: FlowContext) -> Optional[StepId]:
    """Target id for ``skip``: skip_to_step, then next_step, then array order.

    Returns None when skipping completes the flow.
    """
    target = step.skip_to_step.evaluate(context)
    if target is ABSENT:
        target = step.next_step.evaluate(context)
    if target is not ABSENT:
        return target

    index = index_of(steps, step.id)
    if index == -1:
        return None
    candidate = first_relevant_after(steps, index, context)
    return candidate.id if candidate is not None else None
