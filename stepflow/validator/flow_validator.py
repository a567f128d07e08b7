"""
flow_validator.py - Offline validation of step definitions.

Checks a flow before an engine is built from it:

- **Structure**: the flow has steps, every step has an id, ids are unique
- **Checklists**: CHECKLIST payloads have a ``data_key``, a sequence of
  items with unique ids and a sane ``min_items_to_complete``
- **Links**: literal ``next_step`` / ``previous_step`` / ``skip_to_step``
  point at existing steps (warning, with typo suggestions)
- **Initial step**: the configured initial step exists
- **Static chains**: following literal ``next_step`` links terminates within
  ``max_depth`` hops and does not revisit a step (warning)

Computed references and conditions cannot be checked statically and are
ignored here; the runtime depth guard covers them.

Usage:
    from stepflow.validator import validate_flow

    result = validate_flow(steps, initial_step_id="welcome")
    if result.has_errors():
        for issue in result.sorted_errors():
            print(issue.format())
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from stepflow.runtime.step_graph import find_step_by_id
from stepflow.runtime.types import ChecklistPayload, RefKind, Step, StepType
from stepflow.validator.errors import ValidationResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 100


def id_edit_distance(wanted: str, known: str, limit: int) -> int:
    """Case-insensitive edit distance between two step ids, capped at ``limit + 1``.

    Ids whose lengths differ by more than ``limit`` are rejected without
    scanning, and a row whose best cell already exceeds ``limit`` ends the scan.
    """
    wanted, known = wanted.lower(), known.lower()
    too_far = limit + 1
    if abs(len(wanted) - len(known)) > limit:
        return too_far

    row = list(range(len(known) + 1))
    for i, wanted_char in enumerate(wanted, start=1):
        diagonal, row[0] = row[0], i
        for j, known_char in enumerate(known, start=1):
            above = row[j]
            row[j] = min(above + 1, row[j - 1] + 1, diagonal + (wanted_char != known_char))
            diagonal = above
        if min(row) > limit:
            return too_far

    return min(row[-1], too_far)


def suggest_step_ids(name: Any, candidates: Sequence[Any], max_dist: int = 2) -> List[str]:
    """Up to three known step ids within ``max_dist`` edits of ``name``, closest first."""
    scored: List[Tuple[int, str]] = []
    for candidate in candidates:
        distance = id_edit_distance(str(name), str(candidate), max_dist)
        if distance <= max_dist:
            scored.append((distance, str(candidate)))
    return [candidate for _, candidate in sorted(scored)[:3]]


def _location(index: int, step: Step) -> str:
    return f"steps[{index}] '{step.id}'"


# ============================================================================
# Individual checks
# ============================================================================


def _check_ids(steps: Sequence[Step]) -> ValidationResult:
    result = ValidationResult()
    seen: Set[str] = set()

    for index, step in enumerate(steps):
        if step.id is None:
            result.add_error(
                "MISSING_ID",
                f"steps[{index}]",
                "is missing an 'id'",
                "Give every step a unique id",
                step_index=index,
            )
            continue

        key = str(step.id)
        if key in seen:
            result.add_error(
                "DUPLICATE_ID",
                _location(index, step),
                f"duplicates step id '{step.id}'",
                "Rename one of the steps; step ids must be unique",
                step_index=index,
                step_id=step.id,
            )
        seen.add(key)

    return result


def _check_checklist_payload(index: int, step: Step) -> ValidationResult:
    result = ValidationResult()
    location = _location(index, step)
    payload = step.payload

    def fail(problem: str, fix_action: str) -> None:
        result.add_error(
            "CHECKLIST",
            location,
            problem,
            fix_action,
            step_index=index,
            step_id=step.id,
        )

    if not isinstance(payload, ChecklistPayload):
        fail(
            f"is a CHECKLIST step but its payload is {type(payload).__name__}",
            "Use a ChecklistPayload with data_key and items",
        )
        return result

    if not isinstance(payload.data_key, str) or not payload.data_key:
        fail("has no string 'data_key'", "Set payload.data_key to the flow_data key for item state")

    if not isinstance(payload.items, (list, tuple)):
        fail("has 'items' that is not a list", "Set payload.items to a list of ChecklistItem")
        return result

    item_ids: Set[str] = set()
    for item in payload.items:
        item_id = getattr(item, "id", None)
        if item_id is None:
            fail("has an item without an 'id'", "Give every checklist item an id")
            continue
        if item_id in item_ids:
            fail(f"has duplicate checklist item id '{item_id}'", "Make checklist item ids unique")
        item_ids.add(item_id)

    minimum = payload.min_items_to_complete
    if minimum is not None:
        if isinstance(minimum, bool) or not isinstance(minimum, int):
            fail(
                f"has a non-integer 'min_items_to_complete' ({minimum!r})",
                "Set min_items_to_complete to a whole number or remove it",
            )
        elif minimum < 0:
            fail(
                f"has a negative 'min_items_to_complete' ({minimum})",
                "Set min_items_to_complete to 0 or more",
            )
        elif minimum > len(payload.items):
            fail(
                f"requires {minimum} items but only defines {len(payload.items)}",
                "Lower min_items_to_complete or add items",
            )

    return result


def _check_links(steps: Sequence[Step]) -> ValidationResult:
    result = ValidationResult()
    known_ids = [step.id for step in steps if step.id is not None]

    for index, step in enumerate(steps):
        if step.id is None:
            continue
        for field_name in ("next_step", "previous_step", "skip_to_step"):
            ref = getattr(step, field_name)
            if ref.kind is not RefKind.LITERAL:
                continue
            if find_step_by_id(steps, ref.value) is not None:
                continue

            suggestions = suggest_step_ids(ref.value, known_ids)
            if suggestions:
                problem = (
                    f"'{field_name}' points to unknown step '{ref.value}'; "
                    f"did you mean: {', '.join(suggestions)}?"
                )
                fix_action = f"Update '{field_name}' to one of: {', '.join(suggestions)}"
            else:
                problem = f"'{field_name}' points to unknown step '{ref.value}'"
                fix_action = f"Add a step with id '{ref.value}' or fix '{field_name}'"

            result.add_warning(
                "BROKEN_LINK",
                _location(index, step),
                problem,
                fix_action,
                step_index=index,
                step_id=step.id,
                related_step_id=ref.value,
            )

    return result


def _check_static_chains(steps: Sequence[Step], max_depth: int) -> ValidationResult:
    """Follow literal next_step links from every step looking for cycles or runaway chains."""
    result = ValidationResult()
    reported: Set[frozenset] = set()

    for index, start in enumerate(steps):
        if start.id is None:
            continue

        path: List[str] = [str(start.id)]
        visited: Dict[str, int] = {str(start.id): 0}
        current = start
        hops = 0
        while current.next_step.kind is RefKind.LITERAL:
            nxt = find_step_by_id(steps, current.next_step.value)
            if nxt is None:
                break
            hops += 1
            key = str(nxt.id)
            if key in visited:
                cycle = path[visited[key]:]
                signature = frozenset(cycle)
                if signature not in reported:
                    reported.add(signature)
                    result.add_warning(
                        "CYCLE",
                        _location(index, start),
                        f"'next_step' links form a cycle: {' -> '.join(cycle + [key])}",
                        "Break the cycle with a condition, a computed next_step or next_step=None",
                        step_index=index,
                        step_id=start.id,
                        related_step_id=nxt.id,
                    )
                break
            if hops > max_depth:
                result.add_warning(
                    "DEPTH",
                    _location(index, start),
                    f"'next_step' chain exceeds the maximum depth of {max_depth}",
                    "Shorten the flow or raise max_traversal_depth",
                    step_index=index,
                    step_id=start.id,
                )
                break
            visited[key] = len(path)
            path.append(key)
            current = nxt

    return result


# ============================================================================
# Entry point
# ============================================================================


def validate_flow(
    steps: Sequence[Step],
    initial_step_id: Optional[Any] = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> ValidationResult:
    """Validate step definitions.

    Args:
        steps: Ordered step definitions.
        initial_step_id: Configured initial step, if any.
        max_depth: Bound used for the static next_step chain check.

    Returns:
        ValidationResult with errors (flow unusable) and warnings.
    """
    result = ValidationResult()

    if not steps:
        result.add_warning(
            "EMPTY_FLOW",
            "steps",
            "the flow has no steps defined",
            "Add at least one step; an empty flow completes immediately",
        )
        return result

    result.extend(_check_ids(steps))

    for index, step in enumerate(steps):
        if step.type is StepType.CHECKLIST:
            result.extend(_check_checklist_payload(index, step))

    result.extend(_check_links(steps))

    if initial_step_id is not None and find_step_by_id(steps, initial_step_id) is None:
        result.add_error(
            "INITIAL_STEP",
            "initial_step_id",
            f"points to unknown step '{initial_step_id}'",
            "Set initial_step_id to the id of an existing step",
            related_step_id=initial_step_id,
        )

    result.extend(_check_static_chains(steps, max_depth))

    logger.debug(
        "Validated flow of %d steps: %d errors, %d warnings",
        len(steps),
        len(result.errors),
        len(result.warnings),
    )
    return result
