"""Flow definition validation."""

from stepflow.validator.errors import FlowIssue, ValidationResult
from stepflow.validator.flow_validator import suggest_step_ids, validate_flow

__all__ = [
    "FlowIssue",
    "ValidationResult",
    "suggest_step_ids",
    "validate_flow",
]
