"""
Two-Stage Validation Pipeline

DESIGN DECISION: Every mutation is validated in two distinct stages
before anything is written locally or queued for sync:

STAGE 1 - SCHEMA VALIDATION:
- Types, required fields, positive amounts (the pydantic models)
- Payment method rules (bank needs a bank, credit needs a contact)
- An amount that differs from weight x price needs a reason
- This catches malformed input

STAGE 2 - SEMANTIC VALIDATION:
- Every referenced record exists locally and is not in the recycle bin
- A direct payment does not exceed what is still owed
- An edit does not push a ledger entry below what was already paid
- Only user categories can be deleted
- This catches operations that are well-formed but impossible

WHY BEFORE ENQUEUE: a malformed payload that reached the outbox would be
replayed against the remote store forever. Rejecting it here keeps the
queue clean.

IMPORTANT: Validation NEVER silently fixes issues.
It reports them; errors raise PayloadValidationError.
"""

from decimal import Decimal
from typing import Any, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tradebook.models.ledger import (
    FOREIGN_KEYS,
    Category,
    LedgerEntry,
    LedgerType,
    PaymentMethod,
    Record,
    Table,
)
from tradebook.models.validation import (
    PayloadValidationError,
    ValidationIssue,
    ValidationResult,
)
from tradebook.services.storage import StoreTransaction


ModelT = TypeVar("ModelT", bound=BaseModel)


class LedgerValidator:
    """
    Validates ledger mutations through a two-stage pipeline.

    Stage 1: Schema validation (no storage needed)
    Stage 2: Semantic validation (reads the open local transaction)
    """

    # -------------------------------------------------------------------------
    # Stage 1 - schema
    # -------------------------------------------------------------------------

    def build(self, operation: str, model: type[ModelT], **fields: Any) -> ModelT:
        """
        Construct a record, turning pydantic errors into validation issues.

        Raises:
            PayloadValidationError: If the fields don't form a valid record
        """
        try:
            return model(**fields)
        except PydanticValidationError as e:
            raise PayloadValidationError(operation, self._issues_from_pydantic(e)) from e

    @staticmethod
    def _issues_from_pydantic(error: PydanticValidationError) -> list[ValidationIssue]:
        issues = []
        for detail in error.errors():
            location = ".".join(str(part) for part in detail.get("loc", ())) or error.title
            issues.append(ValidationIssue(
                field=location,
                issue_type=detail.get("type", "invalid_value"),
                message=detail.get("msg", "Invalid value"),
            ))
        return issues

    def check_amount(self, field: str, amount: Decimal) -> list[ValidationIssue]:
        if amount <= 0:
            return [ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message="Amount must be greater than zero",
            )]
        return []

    def check_override(
        self,
        expected_amount: Decimal,
        actual_amount: Decimal,
        reason: Optional[str],
    ) -> list[ValidationIssue]:
        """An amount that differs from the computed one must be explained."""
        if actual_amount != expected_amount and not (reason and reason.strip()):
            return [ValidationIssue(
                field="difference_reason",
                issue_type="missing",
                message=(
                    f"Amount {actual_amount} differs from {expected_amount}; "
                    "a reason for the difference is required"
                ),
                suggested_fix="Record why the amount was adjusted",
            )]
        return []

    def check_settlement_method(
        self,
        payment_method: PaymentMethod,
        bank_id: Optional[str],
    ) -> list[ValidationIssue]:
        if payment_method == PaymentMethod.CREDIT:
            return [ValidationIssue(
                field="payment_method",
                issue_type="invalid_value",
                message="Payments are made in cash or through a bank",
            )]
        if payment_method == PaymentMethod.BANK and not bank_id:
            return [ValidationIssue(
                field="bank_id",
                issue_type="missing",
                message="Bank payments require a bank",
            )]
        return []

    def check_ledger_type(self, ledger_type: LedgerType) -> list[ValidationIssue]:
        if ledger_type == LedgerType.ADVANCE:
            return [ValidationIssue(
                field="ledger_type",
                issue_type="invalid_value",
                message="Expected payable or receivable",
                suggested_fix="Use record_advance for advances",
            )]
        return []

    # -------------------------------------------------------------------------
    # Stage 2 - semantic
    # -------------------------------------------------------------------------

    async def find_active(
        self,
        tx: StoreTransaction,
        table: Table,
        record_id: Optional[str],
        field: str,
    ) -> tuple[Optional[Record], list[ValidationIssue]]:
        """Look up a referenced record; report it if missing or deleted."""
        if not record_id:
            return None, [ValidationIssue(
                field=field,
                issue_type="missing",
                message=f"A {table.value} reference is required",
            )]
        record = await tx.get(table, record_id)
        if record is None:
            return None, [ValidationIssue(
                field=field,
                issue_type="not_found",
                message=f"{table.value} {record_id} does not exist",
            )]
        if not record.is_active:
            return record, [ValidationIssue(
                field=field,
                issue_type="deleted",
                message=f"{table.value} {record_id} is in the recycle bin",
                suggested_fix="Restore it first",
            )]
        return record, []

    async def check_references(
        self,
        tx: StoreTransaction,
        table: Table,
        record: BaseModel,
        created_together: frozenset[str] = frozenset(),
    ) -> list[ValidationIssue]:
        """
        Every foreign key of the record points at an active local record.

        Ids of records created in the same operation are accepted as is.
        """
        issues = []
        for field, targets in FOREIGN_KEYS.get(table, {}).items():
            value = getattr(record, field, None)
            if not value or value in created_together:
                continue
            found = None
            for target in targets:
                found = await tx.get(target, value)
                if found is not None:
                    break
            if found is None:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="not_found",
                    message=f"Referenced record {value} does not exist",
                ))
            elif not found.is_active:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="deleted",
                    message=f"Referenced record {value} is in the recycle bin",
                    suggested_fix="Restore it first",
                ))
        return issues

    def check_payment_fits(self, entry: LedgerEntry, amount: Decimal) -> list[ValidationIssue]:
        if entry.type == LedgerType.ADVANCE:
            return [ValidationIssue(
                field="ledger_entry_id",
                issue_type="invalid_value",
                message="Advances cannot be settled",
            )]
        if amount > entry.remaining:
            return [ValidationIssue(
                field="amount",
                issue_type="overpayment",
                message=f"Payment {amount} exceeds the remaining {entry.remaining}",
                suggested_fix="Pay at most the remaining balance",
            )]
        return []

    def check_outstanding(
        self,
        entries: list[LedgerEntry],
        amount: Decimal,
    ) -> list[ValidationIssue]:
        """A settlement needs something to settle; paying extra is only a warning."""
        outstanding = sum((entry.remaining for entry in entries), Decimal("0"))
        if outstanding <= 0:
            return [ValidationIssue(
                field="contact_id",
                issue_type="nothing_outstanding",
                message="This contact has no open entries to settle",
            )]
        if amount > outstanding:
            return [ValidationIssue(
                field="amount",
                issue_type="overpayment",
                message=f"Payment {amount} exceeds the outstanding {outstanding}",
                severity="warning",
                suggested_fix="The excess stays unallocated",
            )]
        return []

    def check_amount_covers_paid(
        self,
        entry: LedgerEntry,
        new_amount: Decimal,
    ) -> list[ValidationIssue]:
        if new_amount < entry.paid_amount:
            return [ValidationIssue(
                field="actual_amount",
                issue_type="below_paid",
                message=(
                    f"New amount {new_amount} is less than the "
                    f"{entry.paid_amount} already paid"
                ),
            )]
        return []

    def check_category_deletable(self, category: Category) -> list[ValidationIssue]:
        if not category.is_deletable:
            return [ValidationIssue(
                field="category_id",
                issue_type="protected",
                message=f"Category {category.name} is required and cannot be deleted",
            )]
        return []

    # -------------------------------------------------------------------------
    # Verdict
    # -------------------------------------------------------------------------

    def require(
        self,
        operation: str,
        *issue_groups: list[ValidationIssue],
        stage: str = "semantic",
    ) -> ValidationResult:
        """
        Collect issues; raise if any of them is an error.

        Returns:
            The result (warnings only) when the operation may proceed

        Raises:
            PayloadValidationError: With every error found
        """
        issues = [issue for group in issue_groups for issue in group]
        result = ValidationResult(stage=stage, issues=issues)
        if not result.is_valid:
            raise PayloadValidationError(operation, result.errors)
        return result
