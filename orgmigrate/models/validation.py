"""Validation result models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .template import Severity


@dataclass
class ValidationIssue:
    """A single pre-flight finding."""
    severity: Severity
    check_name: str
    message: str
    record_id: Optional[str] = None
    field: Optional[str] = None
    step_name: Optional[str] = None
    suggested_fix: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "severity": self.severity.value,
            "check_name": self.check_name,
            "message": self.message,
            "record_id": self.record_id,
            "field": self.field,
            "step_name": self.step_name,
            "suggested_fix": self.suggested_fix,
        }


@dataclass
class ValidationResult:
    """All findings of one validation pass."""
    issues: List[ValidationIssue] = field(default_factory=list)
    checks_run: List[str] = field(default_factory=list)
    short_circuited: bool = False

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    @property
    def info(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.INFO]

    def add(
        self,
        severity: Severity,
        check_name: str,
        message: str,
        **kwargs: Any,
    ) -> ValidationIssue:
        issue = ValidationIssue(severity=severity, check_name=check_name, message=message, **kwargs)
        self.issues.append(issue)
        return issue

    def mark_run(self, check_name: str) -> None:
        if check_name not in self.checks_run:
            self.checks_run.append(check_name)

    def issues_for(self, check_name: str) -> List[ValidationIssue]:
        return [i for i in self.issues if i.check_name == check_name]

    def summary(self) -> Dict[str, int]:
        return {
            "checks_run": len(self.checks_run),
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "info": len(self.info),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "summary": self.summary(),
            "short_circuited": self.short_circuited,
            "checks_run": list(self.checks_run),
            "issues": [i.to_dict() for i in self.issues],
        }
