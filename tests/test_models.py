"""
Tests for VaultPay models

Test strategy:
1. Unit tests for individual components (models, money, validators)
2. Engine tests against the in-memory store (with a simulated gateway)
3. No real API calls in tests (use mocks)
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from vaultpay.models import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
    BankAccount,
    PaymentRequest,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    UpdateVaultRequest,
    ValidationIssue,
    ValidationResult,
    Vault,
    VaultState,
    VaultType,
    VaultView,
    derive_vault_balance,
    generate_reference,
)
from vaultpay.models.requests import AnalyticsQuery


def _vault(**overrides) -> Vault:
    data = {
        "user_id": "alice",
        "bank_account_id": "acc-1",
        "name": "Groceries",
        "vault_type": VaultType.GROCERIES,
        "allocated_amount": Decimal("1000.00"),
    }
    data.update(overrides)
    return Vault(**data)


class TestLedgerEntities:
    """Tests for BankAccount, Vault and Transaction."""

    def test_bank_account_defaults(self):
        """Test BankAccount defaults: zero balance, not primary."""
        account = BankAccount(
            user_id="alice",
            account_number="123456789012",
            routing_code="HDFC0001234",
            bank_name="HDFC Bank",
            holder_name="Alice",
        )
        assert account.balance == Decimal("0.00")
        assert account.is_primary is False
        assert account.id

    def test_bank_account_rejects_negative_balance(self):
        with pytest.raises(PydanticValidationError):
            BankAccount(
                user_id="alice",
                account_number="123456789012",
                routing_code="HDFC0001234",
                bank_name="HDFC Bank",
                holder_name="Alice",
                balance=Decimal("-1.00"),
            )

    def test_vault_starts_active_and_unspent(self):
        vault = _vault()
        assert vault.state == VaultState.ACTIVE
        assert vault.is_active is True
        assert vault.spent_amount == Decimal("0.00")

    def test_vault_spent_cannot_exceed_allocated(self):
        """Test the ceiling is asserted on construction."""
        with pytest.raises(PydanticValidationError):
            _vault(spent_amount=Decimal("1000.01"))

    def test_vault_strips_whitespace(self):
        assert _vault(name="  Rent  ").name == "Rent"

    def test_archived_vault_is_not_active(self):
        assert _vault(state=VaultState.ARCHIVED).is_active is False

    def test_transaction_amount_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            Transaction(
                reference="PAY-1",
                user_id="alice",
                vault_id="v1",
                bank_account_id="acc-1",
                transaction_type=TransactionType.DEBIT,
                category=TransactionCategory.P2P,
                amount=Decimal("0"),
                status=TransactionStatus.COMPLETED,
            )

    def test_transaction_is_frozen(self):
        txn = Transaction(
            reference="PAY-1",
            user_id="alice",
            vault_id="v1",
            bank_account_id="acc-1",
            transaction_type=TransactionType.DEBIT,
            category=TransactionCategory.P2P,
            amount=Decimal("10.00"),
            status=TransactionStatus.PENDING,
        )
        with pytest.raises(PydanticValidationError):
            txn.status = TransactionStatus.COMPLETED

    @pytest.mark.parametrize(
        "category,status,txn_type,vault_id,expected",
        [
            (TransactionCategory.P2P, TransactionStatus.COMPLETED, TransactionType.DEBIT, "v1", True),
            (TransactionCategory.P2P, TransactionStatus.FAILED, TransactionType.DEBIT, "v1", False),
            (TransactionCategory.P2P, TransactionStatus.PENDING, TransactionType.DEBIT, "v1", False),
            (TransactionCategory.VAULT_ALLOCATION, TransactionStatus.COMPLETED, TransactionType.DEBIT, "v1", False),
            (TransactionCategory.ACCOUNT_ADJUSTMENT, TransactionStatus.COMPLETED, TransactionType.DEBIT, None, False),
        ],
    )
    def test_is_spend(self, category, status, txn_type, vault_id, expected):
        """Only completed non-allocation debits against a vault count as spend."""
        txn = Transaction(
            reference="REF-1",
            user_id="alice",
            vault_id=vault_id,
            bank_account_id="acc-1",
            transaction_type=txn_type,
            category=category,
            amount=Decimal("10.00"),
            status=status,
        )
        assert txn.is_spend is expected

    def test_generate_reference_format(self):
        ref = generate_reference("PAY", "alice123xyz")
        prefix, millis, user_part, tail = ref.split("-")
        assert prefix == "PAY"
        assert millis.isdigit()
        assert user_part == "alice123"
        assert len(tail) == 6

    def test_generate_reference_is_unique(self):
        refs = {generate_reference("ALLOC", "alice") for _ in range(200)}
        assert len(refs) == 200


class TestDerivedBalance:
    """Tests for the one place remaining/usage figures are computed."""

    def test_remaining_and_usage(self):
        balance = derive_vault_balance(Decimal("1000.00"), Decimal("250.00"))
        assert balance.remaining_amount == Decimal("750.00")
        assert balance.usage_percentage == Decimal("25.00")

    def test_zero_allocation_gives_zero_usage(self):
        balance = derive_vault_balance(Decimal("0.00"), Decimal("0.00"))
        assert balance.usage_percentage == Decimal("0.00")
        assert balance.remaining_amount == Decimal("0.00")

    def test_vault_view_carries_account_details(self):
        account = BankAccount(
            user_id="alice",
            account_number="123456789012",
            routing_code="HDFC0001234",
            bank_name="HDFC Bank",
            holder_name="Alice",
        )
        view = VaultView.of(_vault(spent_amount=Decimal("100.00")), account)
        assert view.bank_name == "HDFC Bank"
        assert view.balance.remaining_amount == Decimal("900.00")
        assert view.recent_transactions == []


class TestRequestModels:
    """Tests for request structure checks."""

    def test_amount_with_three_decimals_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            PaymentRequest(user_id="alice", vault_id="v1", amount=Decimal("10.005"))

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(PydanticValidationError):
            PaymentRequest(user_id="alice", vault_id="v1", amount=Decimal("10"), tip="5")

    def test_amount_is_normalised_to_two_places(self):
        request = PaymentRequest(user_id="alice", vault_id="v1", amount=Decimal("10"))
        assert str(request.amount) == "10.00"

    def test_naive_dates_are_taken_as_utc(self):
        query = AnalyticsQuery(user_id="alice", start_date=datetime(2026, 1, 1))
        assert query.start_date.tzinfo == timezone.utc

    def test_metadata_changes_only_lists_set_fields(self):
        request = UpdateVaultRequest(user_id="alice", vault_id="v1", name="Food")
        assert request.metadata_changes() == {"name": "Food"}


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.VAULT_CREATED,
            description="Vault created",
        )
        assert event.event_type == AuditEventType.VAULT_CREATED
        assert event.severity == AuditSeverity.INFO

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary; decimals become strings."""
        event = AuditEvent(
            event_type=AuditEventType.PAYMENT_COMPLETED,
            description="Payment completed",
            details={"amount": Decimal("1000.00"), "vault": "Groceries"},
        )
        log_dict = event.to_log_dict()
        assert "event_id" in log_dict
        assert log_dict["event_type"] == "payment_completed"
        assert log_dict["details"]["amount"] == "1000.00"

    def test_audit_event_builder_payment_failed(self):
        """Test AuditEventBuilder.payment_finalised for a decline."""
        correlation_id = uuid4()

        event = AuditEventBuilder.payment_finalised(
            user_id="alice",
            transaction_id="txn-1",
            reference="PAY-1",
            amount=Decimal("50.00"),
            completed=False,
            gateway_ref="GW-1",
            correlation_id=correlation_id,
        )

        assert event.event_type == AuditEventType.PAYMENT_FAILED
        assert event.severity == AuditSeverity.WARNING
        assert event.entity_id == "txn-1"
        assert event.correlation_id == correlation_id

    def test_audit_event_builder_drift(self):
        event = AuditEventBuilder.drift_detected(
            user_id="alice",
            vault_id="v1",
            recorded=Decimal("10.00"),
            ledger=Decimal("0.00"),
        )
        assert event.event_type == AuditEventType.DRIFT_DETECTED
        assert event.severity == AuditSeverity.ERROR


class TestValidationResult:
    """Tests for ValidationResult model."""

    def test_validation_result_has_errors(self):
        """Test has_errors property."""
        result = ValidationResult(
            schema_valid=True,
            semantic_valid=False,
            issues=[
                ValidationIssue(
                    field="amount",
                    issue_type="invalid_value",
                    message="Amount must be greater than 0",
                    severity="error",
                ),
            ],
        )
        assert result.has_errors is True
        assert result.error_count == 1
        assert result.is_valid is False

    def test_validation_result_warnings_only(self):
        """Test that warnings don't count as errors."""
        result = ValidationResult(
            schema_valid=True,
            semantic_valid=True,
            issues=[
                ValidationIssue(
                    field="recipient",
                    issue_type="missing",
                    message="No recipient given",
                    severity="warning",
                ),
            ],
        )
        assert result.has_errors is False
        assert result.error_count == 0
        assert result.is_valid is True


class TestVaultTypes:
    """Tests for vault type enum."""

    def test_all_types_exist(self):
        expected = [
            "groceries", "rent", "entertainment", "savings", "bills",
            "transport", "health", "education", "custom",
        ]
        for value in expected:
            assert VaultType(value) is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
