"""
flow_loader.py - Load step definitions from a YAML flow file

Conditions and lifecycle hooks cannot live in YAML, so they are referenced by
name and resolved against caller-supplied lookup tables.

Example flow file:

    flow_id: user-onboarding
    flow_name: User onboarding
    flow_version: "1.0.0"
    initial_step_id: welcome
    steps:
      - id: welcome
        title: Welcome
      - id: team
        condition: is_admin
        next_step: setup
      - id: setup
        type: CHECKLIST
        payload:
          data_key: setup_items
          min_items_to_complete: 2
          items:
            - {id: profile, label: Complete profile}
            - {id: avatar, label: Upload avatar, is_mandatory: false}
        next_step: null          # explicit end of flow

Usage:
    from stepflow.config.flow_loader import load_flow_steps

    doc = load_flow_steps("flows/onboarding.yaml", predicates={"is_admin": is_admin})
    engine = FlowEngine(FlowEngineConfig(steps=doc.steps, initial_step_id=doc.initial_step_id))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml

from stepflow.runtime.errors import FlowConfigurationError
from stepflow.runtime.types import ABSENT, ChecklistItem, ChecklistPayload, Step, StepType

logger = logging.getLogger(__name__)

_REF_FIELDS = ("next_step", "previous_step", "skip_to_step")


@dataclass
class FlowDocument:
    """A flow loaded from YAML.

    Attributes:
        steps: Step definitions in file order.
        initial_step_id: Optional configured initial step.
        flow_id: Optional registry identifier.
        flow_name: Optional display name.
        flow_version: Optional version string.
        source: Path the document was read from.
    """

    steps: List[Step] = field(default_factory=list)
    initial_step_id: Optional[Union[str, int]] = None
    flow_id: Optional[str] = None
    flow_name: Optional[str] = None
    flow_version: Optional[str] = None
    source: Optional[Path] = None


def _lookup(table: Mapping[str, Callable[..., Any]], name: Any, kind: str, where: str) -> Callable[..., Any]:
    if not isinstance(name, str) or name not in table:
        raise FlowConfigurationError(f"{where}: unknown {kind} '{name}'")
    return table[name]


def _parse_checklist_payload(
    raw: Any,
    predicates: Mapping[str, Callable[..., Any]],
    where: str,
) -> Any:
    # Malformed payloads are passed through for the flow validator to report
    if not isinstance(raw, dict):
        return raw

    items: Any = raw.get("items", [])
    if isinstance(items, list):
        parsed_items = []
        for item_data in items:
            if not isinstance(item_data, dict):
                raise FlowConfigurationError(f"{where}: checklist item must be a mapping")
            condition = None
            if item_data.get("condition") is not None:
                condition = _lookup(predicates, item_data["condition"], "predicate", where)
            parsed_items.append(
                ChecklistItem(
                    id=item_data.get("id"),
                    label=item_data.get("label", ""),
                    description=item_data.get("description"),
                    is_mandatory=item_data.get("is_mandatory", True),
                    condition=condition,
                )
            )
        items = parsed_items

    return ChecklistPayload(
        data_key=raw.get("data_key"),
        items=items,
        min_items_to_complete=raw.get("min_items_to_complete"),
    )


def _parse_step(
    index: int,
    step_data: Any,
    predicates: Mapping[str, Callable[..., Any]],
    hooks: Mapping[str, Callable[..., Any]],
) -> Step:
    where = f"steps[{index}]"
    if not isinstance(step_data, dict):
        raise FlowConfigurationError(f"{where}: step must be a mapping")

    step_id = step_data.get("id")
    if step_id is not None:
        where = f"{where} '{step_id}'"

    step_type = step_data.get("type", StepType.INFORMATION.value)
    try:
        step_type = StepType(step_type)
    except ValueError:
        raise FlowConfigurationError(f"{where}: unknown step type '{step_type}'") from None

    # A key that is present with a null value terminates; a missing key defers
    refs = {name: step_data[name] if name in step_data else ABSENT for name in _REF_FIELDS}

    condition = None
    if step_data.get("condition") is not None:
        condition = _lookup(predicates, step_data["condition"], "predicate", where)

    on_step_active = None
    if step_data.get("on_step_active") is not None:
        on_step_active = _lookup(hooks, step_data["on_step_active"], "hook", where)

    on_step_complete = None
    if step_data.get("on_step_complete") is not None:
        on_step_complete = _lookup(hooks, step_data["on_step_complete"], "hook", where)

    payload = step_data.get("payload")
    if step_type is StepType.CHECKLIST:
        payload = _parse_checklist_payload(payload, predicates, where)

    try:
        return Step(
            id=step_id,
            type=step_type,
            title=step_data.get("title", ""),
            description=step_data.get("description"),
            payload=payload,
            condition=condition,
            is_skippable=bool(step_data.get("is_skippable", False)),
            on_step_active=on_step_active,
            on_step_complete=on_step_complete,
            meta=dict(step_data.get("meta") or {}),
            **refs,
        )
    except TypeError as exc:
        raise FlowConfigurationError(f"{where}: {exc}") from exc


def parse_flow_document(
    data: Any,
    predicates: Optional[Mapping[str, Callable[..., Any]]] = None,
    hooks: Optional[Mapping[str, Callable[..., Any]]] = None,
) -> FlowDocument:
    """Build a FlowDocument from already-parsed YAML data."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FlowConfigurationError("Flow document must be a mapping with a 'steps' list")

    raw_steps = data.get("steps", [])
    if not isinstance(raw_steps, list):
        raise FlowConfigurationError("'steps' must be a list")

    predicates = predicates or {}
    hooks = hooks or {}
    steps = [_parse_step(idx, step_data, predicates, hooks) for idx, step_data in enumerate(raw_steps)]

    return FlowDocument(
        steps=steps,
        initial_step_id=data.get("initial_step_id"),
        flow_id=data.get("flow_id"),
        flow_name=data.get("flow_name"),
        flow_version=str(data["flow_version"]) if data.get("flow_version") is not None else None,
    )


def load_flow_steps(
    path: Union[str, Path],
    predicates: Optional[Mapping[str, Callable[..., Any]]] = None,
    hooks: Optional[Mapping[str, Callable[..., Any]]] = None,
) -> FlowDocument:
    """Load a YAML flow file.

    Args:
        path: Flow file path.
        predicates: Name -> condition function used by ``condition`` keys.
        hooks: Name -> hook function used by ``on_step_active`` /
            ``on_step_complete`` keys.

    Raises:
        FileNotFoundError: If the file does not exist.
        FlowConfigurationError: If the document is malformed or references
            an unknown predicate or hook.
    """
    flow_file = Path(path)
    with open(flow_file) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise FlowConfigurationError(f"{flow_file}: invalid YAML ({exc})") from exc

    document = parse_flow_document(data, predicates, hooks)
    document.source = flow_file
    logger.debug("Loaded %d steps from %s", len(document.steps), flow_file)
    return document
