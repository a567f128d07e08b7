"""
persistence.py - Adapter around caller-supplied persistence handlers.

The engine does not own a storage format. It only relies on the shape
``{flow_data, current_step_id}`` returned by ``load_data`` (camelCase keys
``flowData`` / ``currentStepId`` are accepted too) and calls
``persist_data(context, current_step_id)`` after successful transitions.
Persisting is skipped while the engine is hydrating so that applying loaded
state does not immediately write it back.

Usage:
    manager = PersistenceManager(events, load_data=load, persist_data=save)
    result = await manager.load_persisted_data()
    if result.data is not None and result.data.has_current_step_id:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from stepflow.runtime.async_utils import call_hook
from stepflow.runtime.errors import PersistenceLoadError
from stepflow.runtime.events import FlowEvent
from stepflow.runtime.types import FlowContext, PersistenceEvent, StepId

if TYPE_CHECKING:
    from stepflow.runtime.errors import ErrorService
    from stepflow.runtime.events import EventManager

logger = logging.getLogger(__name__)

DataLoadFn = Callable[[], Any]
DataPersistFn = Callable[[FlowContext, Optional[StepId]], Any]
ClearPersistedDataFn = Callable[[], Any]


# =============================================================================
# Pydantic Models
# =============================================================================


class PersistedFlowState(BaseModel):
    """State handed back by a persistence collaborator's ``load``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    flow_data: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("flow_data", "flowData"),
        description="Collected flow data, including the _internal namespace",
    )
    current_step_id: Optional[Union[int, str]] = Field(
        default=None,
        validation_alias=AliasChoices("current_step_id", "currentStepId"),
        description="Step to resume at; None means the flow was completed",
    )
    current_user: Any = Field(
        default=None,
        validation_alias=AliasChoices("current_user", "currentUser"),
    )

    @property
    def has_current_step_id(self) -> bool:
        """True when the store recorded a current step id (even ``None``)."""
        return "current_step_id" in self.model_fields_set

    @property
    def extra_fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


@dataclass
class LoadResult:
    data: Optional[PersistedFlowState] = None
    error: Optional[BaseException] = None


class PersistenceManager:
    """Calls the load/persist/clear handlers and contains their failures."""

    def __init__(
        self,
        event_manager: "EventManager",
        load_data: Optional[DataLoadFn] = None,
        persist_data: Optional[DataPersistFn] = None,
        clear_persisted_data: Optional[ClearPersistedDataFn] = None,
        error_service: Optional["ErrorService"] = None,
    ):
        self._events = event_manager
        self.load_data = load_data
        self.persist_data = persist_data
        self.clear_persisted_data = clear_persisted_data
        self._errors = error_service

    async def load_persisted_data(self) -> LoadResult:
        """Invoke ``load_data`` and validate its result.

        Failures are returned, not raised, so the caller decides how to
        surface them.
        """
        if self.load_data is None:
            return LoadResult()

        try:
            raw = await call_hook(self.load_data)
        except Exception as exc:
            logger.error("Error during load_data: %s", exc)
            error = PersistenceLoadError(f"Failed to load flow state: {exc}")
            error.__cause__ = exc
            return LoadResult(error=error)

        if raw is None:
            logger.debug("No persisted flow state found")
            return LoadResult()

        try:
            if isinstance(raw, PersistedFlowState):
                data = raw
            else:
                data = PersistedFlowState.model_validate(raw)
        except ValidationError as exc:
            logger.error("Persisted flow state has an unexpected shape: %s", exc)
            error = PersistenceLoadError(f"Failed to load flow state: {exc}")
            error.__cause__ = exc
            return LoadResult(error=error)

        logger.debug(
            "Loaded persisted flow state (current_step_id=%r, keys=%s)",
            data.current_step_id,
            sorted(data.flow_data),
        )
        return LoadResult(data=data)

    async def persist_if_needed(
        self,
        context: FlowContext,
        current_step_id: Optional[StepId],
        is_hydrating: bool,
    ) -> bool:
        """Persist unless hydrating or no handler is configured.

        Returns:
            True when the handler ran successfully.
        """
        if is_hydrating or self.persist_data is None:
            return False

        try:
            await call_hook(self.persist_data, context, current_step_id)
        except Exception as exc:
            if self._errors is not None:
                self._errors.handle(exc, "persist_data", context, current_step_id)
            else:
                logger.error("Error during persist_data: %s", exc)
            self._events.notify(
                FlowEvent.PERSISTENCE_FAILURE,
                PersistenceEvent(context=context, current_step_id=current_step_id, error=exc),
            )
            return False

        logger.debug("Persisted flow state at step %r", current_step_id)
        self._events.notify(
            FlowEvent.PERSISTENCE_SUCCESS,
            PersistenceEvent(context=context, current_step_id=current_step_id),
        )
        return True

    async def clear_data(self) -> None:
        """Invoke ``clear_persisted_data``; failures propagate to the caller."""
        if self.clear_persisted_data is None:
            logger.debug("No clear_persisted_data handler configured")
            return
        await call_hook(self.clear_persisted_data)
        logger.info("Persisted flow state cleared")
