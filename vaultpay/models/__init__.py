"""
Data Models Package

This package contains all Pydantic models used in the VaultPay core.
All data flowing through the system must conform to these schemas.
"""

from vaultpay.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from vaultpay.models.ledger import (
    BankAccount,
    BudgetPeriod,
    PaymentMethod,
    ReferencePrefix,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    Vault,
    VaultBalance,
    VaultState,
    VaultType,
    VaultView,
    derive_vault_balance,
    generate_reference,
)
from vaultpay.models.money import Money, percentage, sum_money, to_money
from vaultpay.models.requests import (
    AllocateRequest,
    AnalyticsQuery,
    BalanceAdjustmentRequest,
    Granularity,
    LinkAccountRequest,
    PaymentRequest,
    ReallocateRequest,
    TransactionQuery,
    UpdateVaultRequest,
    ValidationIssue,
    ValidationResult,
)
from vaultpay.models.results import (
    AccountDeletion,
    AccountSummary,
    AllocationTotals,
    CategorySpending,
    InsightInput,
    PaymentResult,
    PaymentVaultView,
    ReconciliationReport,
    TimeBucketSpending,
    TransactionPage,
    UserSpendingSummary,
    VaultAnalytics,
    VaultDeletion,
    VaultDrift,
    VaultSpending,
    VaultSummary,
)

__all__ = [
    # Money
    "Money",
    "percentage",
    "sum_money",
    "to_money",
    # Ledger entities
    "BankAccount",
    "BudgetPeriod",
    "PaymentMethod",
    "ReferencePrefix",
    "Transaction",
    "TransactionCategory",
    "TransactionStatus",
    "TransactionType",
    "Vault",
    "VaultBalance",
    "VaultState",
    "VaultType",
    "VaultView",
    "derive_vault_balance",
    "generate_reference",
    # Requests
    "AllocateRequest",
    "AnalyticsQuery",
    "BalanceAdjustmentRequest",
    "Granularity",
    "LinkAccountRequest",
    "PaymentRequest",
    "ReallocateRequest",
    "TransactionQuery",
    "UpdateVaultRequest",
    "ValidationIssue",
    "ValidationResult",
    # Results
    "AccountDeletion",
    "AccountSummary",
    "AllocationTotals",
    "CategorySpending",
    "InsightInput",
    "PaymentResult",
    "PaymentVaultView",
    "ReconciliationReport",
    "TimeBucketSpending",
    "TransactionPage",
    "UserSpendingSummary",
    "VaultAnalytics",
    "VaultDeletion",
    "VaultDrift",
    "VaultSpending",
    "VaultSummary",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
