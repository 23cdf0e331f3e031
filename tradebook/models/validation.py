"""
Validation result models.

Validation NEVER silently fixes a payload. It reports issues; errors
stop the operation before anything is written or queued.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ValidationIssue(BaseModel):
    """A single problem found in a mutation payload."""

    field: str = Field(..., description="Field or record the issue is about")
    issue_type: str = Field(
        ...,
        description="Kind of issue (missing, invalid_value, not_found, deleted, ...)"
    )
    message: str = Field(..., description="Human-readable explanation")
    severity: str = Field(
        default="error",
        pattern="^(error|warning|info)$",
    )
    suggested_fix: Optional[str] = None


class ValidationResult(BaseModel):
    """Outcome of validating one operation."""

    stage: str = Field(..., pattern="^(schema|semantic)$")
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "warning"]


class PayloadValidationError(ValueError):
    """
    A mutation was rejected before reaching the local store or the outbox.

    Carries every blocking issue so the caller can show them all at once.
    """

    def __init__(self, operation: str, issues: list[ValidationIssue]):
        self.operation = operation
        self.issues = issues
        summary = "; ".join(f"{i.field}: {i.message}" for i in issues) or "invalid payload"
        super().__init__(f"{operation} rejected: {summary}")
