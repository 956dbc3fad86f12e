"""
Two-Stage Request Validation

DESIGN DECISION: Validation happens in two distinct stages, before any
engine opens a unit of work:

STAGE 1 - SCHEMA VALIDATION:
- Type checking, required fields, lengths
- At most 2 fractional digits on every amount
- Done by parsing into the typed request models

STAGE 2 - SEMANTIC VALIDATION:
- Amounts strictly positive where money moves
- Per-payment ceiling
- Date range order
- Non-empty updates

WHY TWO STAGES:
1. Separation of concerns (structural vs business range)
2. Better error messages (know exactly what kind of issue)
3. Stage 2 is skipped if stage 1 fails

IMPORTANT: Validation NEVER silently fixes issues. An amount with three
decimals is rejected, not rounded.
"""

from decimal import Decimal
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from vaultpay.config import PaymentSettings, get_settings
from vaultpay.errors import AmountExceedsLimit, ValidationError
from vaultpay.models.money import ZERO, format_inr
from vaultpay.models.requests import (
    AllocateRequest,
    AnalyticsQuery,
    BalanceAdjustmentRequest,
    LinkAccountRequest,
    PaymentRequest,
    ReallocateRequest,
    TransactionQuery,
    UpdateVaultRequest,
    ValidationIssue,
    ValidationResult,
)


RequestT = TypeVar("RequestT", bound=BaseModel)


def request_user_id(data: Union[BaseModel, dict[str, Any]]) -> str:
    """Caller id of a request that may not have been parsed yet, for audit records."""
    if isinstance(data, dict):
        return str(data.get("user_id", ""))
    return getattr(data, "user_id", "")


def _schema_issues(error: PydanticValidationError) -> list[ValidationIssue]:
    issues = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "request"
        issues.append(ValidationIssue(
            field=location,
            issue_type=item["type"],
            message=item["msg"],
            severity="error",
        ))
    return issues


class LedgerRequestValidator:
    """
    Validates requests through a two-stage pipeline.

    Stage 1: Schema validation (`parse`)
    Stage 2: Semantic validation (`validate` / `ensure_valid`)
    """

    def __init__(self, payment_settings: Optional[PaymentSettings] = None):
        """
        Initialize validator.

        Args:
            payment_settings: Source of the per-payment ceiling.
                Defaults to the environment configuration.
        """
        self._payments = payment_settings or get_settings().payments

    @property
    def max_transaction_amount(self) -> Decimal:
        return self._payments.max_transaction_amount

    def parse(self, model: type[RequestT], data: Union[RequestT, dict[str, Any]]) -> RequestT:
        """
        Stage 1: build a typed request from raw input.

        Raises:
            ValidationError: With one issue per schema violation.
        """
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            issues = _schema_issues(e)
            raise ValidationError(
                f"Invalid {model.__name__}: {issues[0].message}" if issues else "Invalid request",
                issues,
            ) from e

    def _positive(self, field: str, amount: Decimal, label: str) -> list[ValidationIssue]:
        if amount > ZERO:
            return []
        return [ValidationIssue(
            field=field,
            issue_type="invalid_value",
            message=f"{label} must be greater than 0",
            severity="error",
            suggested_fix="Enter a positive amount",
        )]

    def _non_negative(self, field: str, amount: Decimal, label: str) -> list[ValidationIssue]:
        if amount >= ZERO:
            return []
        return [ValidationIssue(
            field=field,
            issue_type="invalid_value",
            message=f"{label} cannot be negative",
            severity="error",
        )]

    def _date_order(self, start, end) -> list[ValidationIssue]:
        if start is None or end is None or start <= end:
            return []
        return [ValidationIssue(
            field="start_date",
            issue_type="inconsistent",
            message="Start date is after end date",
            severity="error",
            suggested_fix="Swap the dates",
        )]

    def _validate_semantic(self, request: BaseModel) -> list[ValidationIssue]:
        """
        Stage 2: business-range checks per request type.

        Returns the list of issues (empty when valid).
        """
        issues: list[ValidationIssue] = []

        if isinstance(request, PaymentRequest):
            issues += self._positive("amount", request.amount, "Amount")
            if request.amount > self.max_transaction_amount:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="limit_exceeded",
                    message=(
                        f"Payment amount cannot exceed "
                        f"{format_inr(self.max_transaction_amount)}"
                    ),
                    severity="error",
                    suggested_fix="Split the payment or lower the amount",
                ))
            if not (request.recipient_phone or request.recipient_upi or request.recipient_id):
                issues.append(ValidationIssue(
                    field="recipient",
                    issue_type="missing",
                    message="No recipient given",
                    severity="warning",
                ))

        elif isinstance(request, AllocateRequest):
            issues += self._positive("amount", request.amount, "Amount")

        elif isinstance(request, ReallocateRequest):
            issues += self._non_negative("new_amount", request.new_amount, "Allocated amount")

        elif isinstance(request, UpdateVaultRequest):
            if request.allocated_amount is not None:
                issues += self._non_negative(
                    "allocated_amount", request.allocated_amount, "Allocated amount"
                )
            if request.allocated_amount is None and not request.metadata_changes():
                issues.append(ValidationIssue(
                    field="request",
                    issue_type="empty",
                    message="Nothing to update",
                    severity="warning",
                ))

        elif isinstance(request, BalanceAdjustmentRequest):
            if request.delta == ZERO:
                issues.append(ValidationIssue(
                    field="delta",
                    issue_type="invalid_value",
                    message="Balance change cannot be 0",
                    severity="error",
                ))

        elif isinstance(request, LinkAccountRequest):
            issues += self._non_negative("initial_balance", request.initial_balance, "Initial balance")

        elif isinstance(request, (AnalyticsQuery, TransactionQuery)):
            issues += self._date_order(request.start_date, request.end_date)

        return issues

    def validate(self, request: BaseModel) -> ValidationResult:
        """
        Run stage 2 on an already-parsed request.

        Warnings do not make a request invalid.
        """
        issues = self._validate_semantic(request)
        return ValidationResult(
            schema_valid=True,
            semantic_valid=not any(issue.severity == "error" for issue in issues),
            issues=issues,
        )

    def ensure_valid(self, request: RequestT) -> RequestT:
        """
        Raise unless the request passes stage 2.

        Raises:
            AmountExceedsLimit: A payment over the ceiling (when that is
                its only problem).
            ValidationError: Any other error-level issue.
        """
        result = self.validate(request)
        if result.is_valid:
            return request

        errors = [issue for issue in result.issues if issue.severity == "error"]
        if (
            isinstance(request, PaymentRequest)
            and len(errors) == 1
            and errors[0].issue_type == "limit_exceeded"
        ):
            raise AmountExceedsLimit(request.amount, self.max_transaction_amount)

        raise ValidationError(errors[0].message, errors)

    def check(self, model: type[RequestT], data: Union[RequestT, dict[str, Any]]) -> RequestT:
        """Both stages: parse, then ensure_valid."""
        return self.ensure_valid(self.parse(model, data))

    def get_user_friendly_summary(self, result: ValidationResult) -> str:
        """Short text summary of a ValidationResult for end users."""
        if result.is_valid and not result.issues:
            return "✅ All checks passed."

        lines = []
        for issue in result.issues:
            marker = "❌" if issue.severity == "error" else "⚠️"
            lines.append(f"{marker} {issue.message}")
            if issue.suggested_fix:
                lines.append(f"   💡 {issue.suggested_fix}")
        return "\n".join(lines)
