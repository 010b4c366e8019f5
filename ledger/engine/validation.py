"""
Transfer Request Validation

IMPORTANT: Validation runs before any store call.
A rejected request performs zero reads and zero writes, and nothing is
silently fixed: every problem is reported back to the caller.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from ledger.engine.errors import ValidationError
from ledger.models.ledger import Category, ValidationIssue


def _as_decimal(value: Any):
    if isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


class TransferValidator:
    """Checks a transfer request before the engine touches the store."""

    def collect_issues(
        self,
        source: Category,
        target: Category,
        amount: Any,
        description: Any,
    ) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []

        value = _as_decimal(amount)
        if value is None or not value.is_finite():
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message=f"Amount must be a finite number, got {amount!r}",
            ))
        elif value <= 0:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Amount must be greater than zero",
            ))

        if not isinstance(description, str) or not description.strip():
            issues.append(ValidationIssue(
                field="description",
                issue_type="missing",
                message="Description is required",
            ))

        if source.id == target.id:
            issues.append(ValidationIssue(
                field="target",
                issue_type="same_category",
                message="Source and target must be different categories",
            ))

        return issues

    def validate(
        self,
        source: Category,
        target: Category,
        amount: Any,
        description: Any,
    ) -> Decimal:
        """
        Validate a transfer request.

        Returns:
            The amount as a Decimal

        Raises:
            ValidationError: With every issue found
        """
        issues = self.collect_issues(source, target, amount, description)
        if issues:
            raise ValidationError(issues)
        return Decimal(str(amount))


def validate_transaction_id(transaction_id: Any) -> str:
    """Reject an empty or non-string transaction id."""
    if not isinstance(transaction_id, str) or not transaction_id.strip():
        raise ValidationError([ValidationIssue(
            field="transaction_id",
            issue_type="missing",
            message="Transaction id is required",
        )])
    return transaction_id
