"""Reconciliation and spending analytics package."""

from vaultpay.reconciliation.engine import (
    ReconciliationEngine,
    allocation_totals,
    bucket_by_period,
    group_by_category,
    group_by_vault,
    period_start,
)

__all__ = [
    "ReconciliationEngine",
    "allocation_totals",
    "bucket_by_period",
    "group_by_category",
    "group_by_vault",
    "period_start",
]
