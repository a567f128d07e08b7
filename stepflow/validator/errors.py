# stepflow/validator/errors.py
"""Flow validation issue collection and formatting."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

# Issue message template: [FAIL] TYPE: location problem -> Fix: action
ISSUE_TEMPLATE = "[{level}] {issue_type}: {location} {problem}\n  Fix: {fix_action}"


class FlowIssue:
    """Structured flow validation issue."""

    def __init__(
        self,
        issue_type: str,
        location: str,
        problem: str,
        fix_action: str,
        step_index: Optional[int] = None,
        step_id: Any = None,
        related_step_id: Any = None,
        level: str = "FAIL",
    ):
        self.issue_type = issue_type
        self.location = location
        self.problem = problem
        self.fix_action = fix_action
        self.step_index = step_index
        self.step_id = step_id
        self.related_step_id = related_step_id
        self.level = level

    def format(self) -> str:
        """Format issue message."""
        return ISSUE_TEMPLATE.format(
            level=self.level,
            issue_type=self.issue_type,
            location=self.location,
            problem=self.problem,
            fix_action=self.fix_action,
        )

    def sort_key(self) -> Tuple[int, str]:
        """Sort key for deterministic ordering (flow-level issues first)."""
        return (self.step_index if self.step_index is not None else -1, self.issue_type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert issue to dictionary for JSON serialization."""
        return {
            "type": self.issue_type,
            "location": self.location,
            "problem": self.problem,
            "fix_action": self.fix_action,
            "step_index": self.step_index,
            "step_id": self.step_id,
            "related_step_id": self.related_step_id,
        }

    def __repr__(self) -> str:
        return f"FlowIssue({self.issue_type!r}, {self.location!r}, {self.problem!r})"


class ValidationResult:
    """Collects flow validation errors and warnings."""

    def __init__(self):
        self.errors: List[FlowIssue] = []
        self.warnings: List[FlowIssue] = []

    def add_error(
        self,
        issue_type: str,
        location: str,
        problem: str,
        fix_action: str,
        step_index: Optional[int] = None,
        step_id: Any = None,
        related_step_id: Any = None,
    ):
        """Add a validation error (the flow cannot run as defined)."""
        self.errors.append(
            FlowIssue(
                issue_type,
                location,
                problem,
                fix_action,
                step_index=step_index,
                step_id=step_id,
                related_step_id=related_step_id,
                level="FAIL",
            )
        )

    def add_warning(
        self,
        issue_type: str,
        location: str,
        problem: str,
        fix_action: str,
        step_index: Optional[int] = None,
        step_id: Any = None,
        related_step_id: Any = None,
    ):
        """Add a validation warning (suspicious, but may be intentional)."""
        self.warnings.append(
            FlowIssue(
                issue_type,
                location,
                problem,
                fix_action,
                step_index=step_index,
                step_id=step_id,
                related_step_id=related_step_id,
                level="WARN",
            )
        )

    def extend(self, other: "ValidationResult"):
        """Extend with errors and warnings from another result."""
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    @property
    def is_valid(self) -> bool:
        return not self.has_errors()

    def has_errors(self) -> bool:
        """Check if any errors were collected."""
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        """Check if any warnings were collected."""
        return len(self.warnings) > 0

    def sorted_errors(self) -> List[FlowIssue]:
        """Get errors in deterministic order."""
        return sorted(self.errors, key=lambda e: e.sort_key())

    def sorted_warnings(self) -> List[FlowIssue]:
        """Get warnings in deterministic order."""
        return sorted(self.warnings, key=lambda w: w.sort_key())

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary for JSON serialization."""
        return {
            "errors": [e.to_dict() for e in self.sorted_errors()],
            "warnings": [w.to_dict() for w in self.sorted_warnings()],
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "status": "FAIL" if self.has_errors() else "PASS",
        }
