"""
errors.py - Exception taxonomy and the ErrorService.

The ErrorService is the single sink for failures raised by hooks, listeners,
persistence handlers and validation. It:
- Normalizes non-exception values into ``FlowError``
- Keeps a bounded rolling history of ``ErrorEntry`` records (oldest evicted)
- Writes the latest error into the StateManager (freezing navigation)
- Fans out an ``error`` event

Usage:
    from stepflow.runtime.errors import ErrorService

    errors = ErrorService(event_manager, state_manager)
    try:
        ...
    except Exception as exc:
        errors.handle(exc, "on_step_active for welcome", context, step_id="welcome")

    recent = errors.get_recent(5)
"""

from __future__ import annotations

import logging
import traceback
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

from stepflow.config.runtime_config import get_error_history_capacity
from stepflow.runtime._time import _datetime_to_iso, utc_now
from stepflow.runtime.types import ErrorEvent, FlowContext, StepId

if TYPE_CHECKING:
    from stepflow.runtime.events import EventManager
    from stepflow.runtime.state import StateManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Error Types
# =============================================================================


class FlowError(Exception):
    """Base exception for flow engine errors."""

    pass


class UnknownEventError(FlowError, ValueError):
    """Raised when subscribing to or publishing an event type that does not exist."""

    def __init__(self, event: Any):
        self.event = event
        super().__init__(f"Unknown event type: {event!r}")


class FlowConfigurationError(FlowError):
    """Raised when a flow definition fails validation."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class TraversalDepthExceededError(FlowError):
    """Raised when the conditional-skip loop exceeds the configured depth."""

    def __init__(self, step_id: Optional[StepId], max_depth: int):
        self.step_id = step_id
        self.max_depth = max_depth
        super().__init__(
            f"Skipped more than {max_depth} ineligible steps starting at '{step_id}'; "
            "check the flow for a condition cycle"
        )


class ChecklistIncompleteError(FlowError):
    """Raised (and recorded) when ``next`` is refused on an incomplete checklist."""

    def __init__(self, step_id: StepId):
        self.step_id = step_id
        super().__init__("Checklist criteria not met.")


class ChecklistValidationError(FlowError):
    """Base for checklist update validation failures."""

    pass


class ChecklistStepMissingError(ChecklistValidationError):
    def __init__(self) -> None:
        super().__init__("Cannot update checklist item: step is missing")


class NotAChecklistStepError(ChecklistValidationError):
    def __init__(self, step_id: StepId, step_type: Any):
        self.step_id = step_id
        self.step_type = step_type
        super().__init__(
            f"Cannot update checklist item: step '{step_id}' is not a CHECKLIST step (type: {step_type})"
        )


class InvalidChecklistPayloadError(ChecklistValidationError):
    def __init__(self, step_id: StepId):
        self.step_id = step_id
        super().__init__(f"Cannot update checklist item: step '{step_id}' has invalid payload structure")


class ChecklistItemNotFoundError(ChecklistValidationError):
    def __init__(self, step_id: StepId, item_id: str):
        self.step_id = step_id
        self.item_id = item_id
        super().__init__(
            f"Cannot update checklist item: item '{item_id}' does not exist in step '{step_id}'"
        )


class PersistenceLoadError(FlowError):
    """Raised when persisted flow state cannot be loaded or parsed."""

    pass


# =============================================================================
# Error history
# =============================================================================


@dataclass(frozen=True)
class ErrorEntry:
    """An immutable record in the rolling error history.

    Attributes:
        error: The normalized exception.
        operation: What was running (e.g., "on_step_active for welcome").
        step_id: Step the failure relates to, if known.
        timestamp: When the failure was recorded (UTC).
        stack: Formatted traceback, when the exception carried one.
        context_snapshot: Shallow copy of the context at failure time.
    """

    error: BaseException
    operation: str
    step_id: Optional[StepId]
    timestamp: datetime
    stack: Optional[str] = None
    context_snapshot: Optional[FlowContext] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": str(self.error),
            "error_type": type(self.error).__name__,
            "operation": self.operation,
            "step_id": self.step_id,
            "timestamp": _datetime_to_iso(self.timestamp),
            "stack": self.stack,
        }


def normalize_error(error: Any) -> BaseException:
    if isinstance(error, BaseException):
        return error
    return FlowError(str(error))


class ErrorService:
    """Captures failures, bounds their history and publishes them."""

    def __init__(
        self,
        event_manager: "EventManager",
        state_manager: "StateManager",
        capacity: Optional[int] = None,
    ):
        self._events = event_manager
        self._state = state_manager
        if capacity is None:
            capacity = get_error_history_capacity()
        if capacity <= 0:
            raise ValueError(f"Error history capacity must be positive, got {capacity}")
        self._history: Deque[ErrorEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._history.maxlen or 0

    def handle(
        self,
        error: Any,
        operation: str,
        context: Optional[FlowContext] = None,
        step_id: Optional[StepId] = None,
    ) -> BaseException:
        """Record a failure, set it as the current engine error and notify listeners.

        Args:
            error: Anything raised; non-exceptions are wrapped in FlowError.
            operation: Description of what was running.
            context: Current flow context (snapshotted into the entry).
            step_id: Related step, if any.

        Returns:
            The normalized exception.
        """
        processed = normalize_error(error)
        stack = None
        if processed.__traceback__ is not None:
            stack = "".join(
                traceback.format_exception(type(processed), processed, processed.__traceback__)
            )

        self._history.append(
            ErrorEntry(
                error=processed,
                operation=operation,
                step_id=step_id,
                timestamp=utc_now(),
                stack=stack,
                context_snapshot=context.snapshot() if context is not None else None,
            )
        )

        logger.error(
            "%s failed%s: %s",
            operation,
            f" (step {step_id!r})" if step_id is not None else "",
            processed,
        )

        self._state.set_error(processed)
        self._events.notify(
            "error",
            ErrorEvent(error=processed, context=context, operation=operation, step_id=step_id),
        )
        return processed

    async def safe_execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        context: Optional[FlowContext] = None,
        step_id: Optional[StepId] = None,
        default: Any = None,
    ) -> Any:
        """Await ``operation()``, routing failures through ``handle``.

        Returns:
            The operation's result, or ``default`` if it raised.
        """
        try:
            return await operation()
        except Exception as exc:
            self.handle(exc, operation_name, context, step_id)
            return default

    def safe_execute_sync(
        self,
        operation: Callable[[], T],
        operation_name: str,
        context: Optional[FlowContext] = None,
        step_id: Optional[StepId] = None,
        default: Any = None,
    ) -> Any:
        """Synchronous counterpart of ``safe_execute``."""
        try:
            return operation()
        except Exception as exc:
            self.handle(exc, operation_name, context, step_id)
            return default

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_history(self) -> List[ErrorEntry]:
        return list(self._history)

    def get_recent(self, count: int = 10) -> List[ErrorEntry]:
        """Most recent ``count`` entries, oldest first. Non-positive counts yield []."""
        if count <= 0:
            return []
        return list(self._history)[-count:]

    def get_by_operation(self, operation: str) -> List[ErrorEntry]:
        """Entries whose operation name contains ``operation``."""
        return [entry for entry in self._history if operation in entry.operation]

    def get_by_step(self, step_id: StepId) -> List[ErrorEntry]:
        return [entry for entry in self._history if entry.step_id == step_id]

    def has_errors(self) -> bool:
        return len(self._history) > 0

    def clear_history(self) -> None:
        self._history.clear()
