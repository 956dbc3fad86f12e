"""
Reconciliation / Summary Engine

DESIGN DECISION: This engine is READ-ONLY. It never opens a unit of
work and never mutates the ledger.

Every figure is derived fresh from committed state on each call; no
cached aggregate is authoritative. When a vault's stored spent_amount
disagrees with the sum of its ledger entries, the ledger sum is the
ground truth. Drift is REPORTED (and audited), never auto-corrected.

"Spend" means completed, non-allocation debits against a vault
(see `spend_filter`). Allocation bookkeeping never counts as spend.
"""

from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Union

import structlog

from vaultpay.audit import AuditLogger, create_correlation_id
from vaultpay.errors import AccountNotFound, VaultNotFound
from vaultpay.models.ledger import (
    Transaction,
    TransactionCategory,
    TransactionStatus,
    Vault,
    VaultView,
    derive_vault_balance,
    utc_now,
)
from vaultpay.models.money import CENT, ZERO, percentage, sum_money
from vaultpay.models.requests import AnalyticsQuery, Granularity
from vaultpay.models.results import (
    AccountSummary,
    AllocationTotals,
    CategorySpending,
    InsightInput,
    ReconciliationReport,
    TimeBucketSpending,
    UserSpendingSummary,
    VaultAnalytics,
    VaultDrift,
    VaultSpending,
    VaultSummary,
)
from vaultpay.services.storage import (
    LedgerReader,
    LedgerStore,
    TransactionFilter,
    spend_filter,
)
from vaultpay.validation import LedgerRequestValidator


logger = structlog.get_logger(__name__)

UNKNOWN_CATEGORY = "unknown"


# =============================================================================
# PURE AGGREGATIONS
# =============================================================================

def period_start(moment: datetime, granularity: Granularity) -> date:
    """
    Bucket key of a timestamp, taken in UTC.

    day: the date; week: the ISO week's Monday; month: the first of the month.
    """
    day = moment.astimezone(timezone.utc).date()
    if granularity == Granularity.WEEK:
        return day - timedelta(days=day.weekday())
    if granularity == Granularity.MONTH:
        return day.replace(day=1)
    return day


def allocation_totals(balance: Decimal, vaults: Iterable[Vault]) -> AllocationTotals:
    """Totals of a set of vaults measured against a balance."""
    vaults = list(vaults)
    allocated = sum_money(v.allocated_amount for v in vaults)
    spent = sum_money(v.spent_amount for v in vaults)
    totals = derive_vault_balance(allocated, spent)
    return AllocationTotals(
        total_balance=balance,
        total_allocated=allocated,
        total_spent=spent,
        total_remaining=totals.remaining_amount,
        unallocated_balance=balance - allocated,
        total_vaults=len(vaults),
        allocation_percentage=percentage(allocated, balance),
        usage_percentage=totals.usage_percentage,
    )


def group_by_category(
    transactions: Iterable[Transaction],
    vaults: dict[str, Vault],
) -> list[CategorySpending]:
    """Spend grouped by the vault type of each entry's vault, largest first."""
    amounts: dict[str, Decimal] = defaultdict(lambda: ZERO)
    counts: dict[str, int] = defaultdict(int)
    for txn in transactions:
        vault = vaults.get(txn.vault_id)
        category = vault.vault_type.value if vault else UNKNOWN_CATEGORY
        amounts[category] += txn.amount
        counts[category] += 1

    total = sum_money(amounts.values())
    rows = [
        CategorySpending(
            category=category,
            amount=amount,
            percentage=percentage(amount, total),
            transaction_count=counts[category],
        )
        for category, amount in amounts.items()
    ]
    rows.sort(key=lambda row: (-row.amount, row.category))
    return rows


def bucket_by_period(
    transactions: Iterable[Transaction],
    granularity: Granularity,
) -> list[TimeBucketSpending]:
    """Spend per day / week / month, oldest bucket first."""
    amounts: dict[date, Decimal] = defaultdict(lambda: ZERO)
    counts: dict[date, int] = defaultdict(int)
    for txn in transactions:
        key = period_start(txn.created_at, granularity)
        amounts[key] += txn.amount
        counts[key] += 1

    return [
        TimeBucketSpending(period=key, amount=amounts[key], transaction_count=counts[key])
        for key in sorted(amounts)
    ]


def group_by_vault(
    transactions: Iterable[Transaction],
    vaults: dict[str, Vault],
) -> list[VaultSpending]:
    """Spend per vault, with its share of the total and of the vault's allocation."""
    amounts: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for txn in transactions:
        amounts[txn.vault_id] += txn.amount

    total = sum_money(amounts.values())
    rows = []
    for vault_id, amount in amounts.items():
        vault = vaults.get(vault_id)
        rows.append(VaultSpending(
            vault_id=vault_id,
            vault_name=vault.name if vault else None,
            vault_type=vault.vault_type.value if vault else None,
            icon=vault.icon if vault else None,
            allocated_amount=vault.allocated_amount if vault else None,
            amount=amount,
            percentage_of_total=percentage(amount, total),
            percentage_of_allocation=percentage(amount, vault.allocated_amount) if vault else ZERO,
        ))
    rows.sort(key=lambda row: (-row.amount, row.vault_id))
    return rows


# =============================================================================
# ENGINE
# =============================================================================

class ReconciliationEngine:
    """
    Derives analytics and summaries from committed ledger state.

    GUARANTEES:
    - Same ledger state in, identical results out
    - Zero allocation gives 0% usage, never a division error
    - Only owned entities are ever read
    """

    def __init__(
        self,
        store: LedgerStore,
        audit: Optional[AuditLogger] = None,
        validator: Optional[LedgerRequestValidator] = None,
        recent_transactions_limit: int = 10,
        insight_window_days: int = 30,
    ):
        self._store = store
        self._audit = audit or AuditLogger()
        self._validator = validator or LedgerRequestValidator()
        self._recent_limit = recent_transactions_limit
        self._insight_window_days = insight_window_days

    async def _spend_with_vaults(
        self,
        reader: LedgerReader,
        user_id: str,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> tuple[list[Transaction], dict[str, Vault]]:
        transactions = await reader.list_transactions(spend_filter(user_id, start=start, end=end))
        vaults = await reader.list_vaults(user_id, include_archived=True)
        return transactions, {v.id: v for v in vaults}

    # =========================================================================
    # SPENDING ANALYTICS
    # =========================================================================

    async def spending_by_category(
        self,
        query: Union[AnalyticsQuery, dict[str, Any]],
    ) -> list[CategorySpending]:
        query = self._validator.check(AnalyticsQuery, query)
        async with self._store.read() as reader:
            transactions, vaults = await self._spend_with_vaults(
                reader, query.user_id, query.start_date, query.end_date
            )
        return group_by_category(transactions, vaults)

    async def spending_over_time(
        self,
        query: Union[AnalyticsQuery, dict[str, Any]],
    ) -> list[TimeBucketSpending]:
        query = self._validator.check(AnalyticsQuery, query)
        async with self._store.read() as reader:
            transactions = await reader.list_transactions(
                spend_filter(query.user_id, start=query.start_date, end=query.end_date)
            )
        return bucket_by_period(transactions, query.granularity)

    async def spending_by_vault(
        self,
        query: Union[AnalyticsQuery, dict[str, Any]],
    ) -> list[VaultSpending]:
        query = self._validator.check(AnalyticsQuery, query)
        async with self._store.read() as reader:
            transactions, vaults = await self._spend_with_vaults(
                reader, query.user_id, query.start_date, query.end_date
            )
        return group_by_vault(transactions, vaults)

    # =========================================================================
    # SUMMARIES
    # =========================================================================

    async def vault_summary(self, user_id: str, bank_account_id: str) -> VaultSummary:
        """Allocation totals over one account's active vaults."""
        async with self._store.read() as reader:
            account = await reader.get_account(user_id, bank_account_id)
            if account is None:
                raise AccountNotFound(bank_account_id, "Bank account not found")
            vaults = await reader.list_vaults(user_id, bank_account_id=account.id)

        return VaultSummary(
            account_id=account.id,
            account_number=account.account_number,
            bank_name=account.bank_name,
            summary=allocation_totals(account.balance, vaults),
        )

    async def account_summary(self, user_id: str, account_id: str) -> AccountSummary:
        """An account with its totals and its active vaults."""
        async with self._store.read() as reader:
            account = await reader.get_account(user_id, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            vaults = await reader.list_vaults(user_id, bank_account_id=account.id)

        return AccountSummary(
            account=account,
            summary=allocation_totals(account.balance, vaults),
            vaults=[VaultView.of(v, account) for v in vaults],
        )

    async def user_spending_summary(self, user_id: str) -> UserSpendingSummary:
        """
        Totals over all of the user's active vaults.

        Category split uses the active vaults' spent amounts, so its
        percentages add up against total_spent.
        """
        async with self._store.read() as reader:
            vaults = await reader.list_vaults(user_id)
            spend_count = await reader.count_transactions(spend_filter(user_id))
            recent = await reader.list_transactions(TransactionFilter(
                user_id=user_id,
                status=TransactionStatus.COMPLETED,
                exclude_category=TransactionCategory.VAULT_ALLOCATION,
                limit=self._recent_limit,
            ))

        totals = allocation_totals(ZERO, vaults)

        by_type: dict[str, Decimal] = defaultdict(lambda: ZERO)
        vault_counts: dict[str, int] = defaultdict(int)
        for vault in vaults:
            if vault.spent_amount > ZERO:
                by_type[vault.vault_type.value] += vault.spent_amount
                vault_counts[vault.vault_type.value] += 1
        categories = [
            CategorySpending(
                category=category,
                amount=amount,
                percentage=percentage(amount, totals.total_spent),
                transaction_count=vault_counts[category],
            )
            for category, amount in by_type.items()
        ]
        categories.sort(key=lambda row: (-row.amount, row.category))

        return UserSpendingSummary(
            total_vaults=totals.total_vaults,
            total_allocated=totals.total_allocated,
            total_spent=totals.total_spent,
            total_remaining=totals.total_remaining,
            overall_usage=totals.usage_percentage,
            total_transactions=spend_count,
            spending_by_category=categories,
            recent_transactions=recent,
        )

    async def vault_spending_analytics(self, user_id: str, vault_id: str) -> VaultAnalytics:
        """Count, total, average and daily trend of one active vault's spend."""
        async with self._store.read() as reader:
            vault = await reader.get_vault(user_id, vault_id)
            if vault is None:
                raise VaultNotFound(vault_id)
            account = await reader.get_account(user_id, vault.bank_account_id)
            transactions = await reader.list_transactions(spend_filter(user_id, vault_id=vault.id))

        total = sum_money(t.amount for t in transactions)
        average = (total / len(transactions)).quantize(CENT) if transactions else ZERO

        return VaultAnalytics(
            vault=VaultView.of(vault, account),
            total_transactions=len(transactions),
            total_spent=total,
            average_transaction=average,
            spending_trend=bucket_by_period(transactions, Granularity.DAY),
        )

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def check_vault_consistency(self, user_id: str, vault_id: str) -> Optional[VaultDrift]:
        """
        Compare one vault's spent_amount with its ledger.

        Returns None when they agree. Archived vaults are checked too.
        """
        async with self._store.read() as reader:
            vault = await reader.get_vault(user_id, vault_id, include_archived=True)
            if vault is None:
                raise VaultNotFound(vault_id)
            drift = await self._drift(reader, vault)

        if drift is not None:
            await self._audit.log_drift(
                user_id=user_id,
                vault_id=vault.id,
                recorded=drift.recorded_spent,
                ledger=drift.ledger_spent,
            )
        return drift

    async def reconcile_user(self, user_id: str) -> ReconciliationReport:
        """Check every vault of the user, archived included."""
        correlation_id = create_correlation_id()

        async with self._store.read() as reader:
            vaults = await reader.list_vaults(user_id, include_archived=True)
            drifts = []
            for vault in vaults:
                drift = await self._drift(reader, vault)
                if drift is not None:
                    drifts.append(drift)
            pending = await reader.count_transactions(
                TransactionFilter(user_id=user_id, status=TransactionStatus.PENDING)
            )

        for drift in drifts:
            await self._audit.log_drift(
                user_id=user_id,
                vault_id=drift.vault_id,
                recorded=drift.recorded_spent,
                ledger=drift.ledger_spent,
                correlation_id=correlation_id,
            )

        logger.info(
            "reconciliation_completed",
            user_id=user_id,
            vaults_checked=len(vaults),
            drifts=len(drifts),
            pending=pending,
        )
        return ReconciliationReport(
            user_id=user_id,
            checked_at=utc_now(),
            vaults_checked=len(vaults),
            drifts=drifts,
            pending_transactions=pending,
        )

    async def _drift(self, reader: LedgerReader, vault: Vault) -> Optional[VaultDrift]:
        ledger_spent = await reader.sum_transactions(spend_filter(vault.user_id, vault_id=vault.id))
        if ledger_spent == vault.spent_amount:
            return None
        return VaultDrift(
            vault_id=vault.id,
            vault_name=vault.name,
            recorded_spent=vault.spent_amount,
            ledger_spent=ledger_spent,
        )

    # =========================================================================
    # INSIGHT PAYLOAD
    # =========================================================================

    async def insight_input(self, user_id: str, days: Optional[int] = None) -> InsightInput:
        """The aggregated spend of the last `days` days, for the insight agent."""
        end = utc_now()
        start = end - timedelta(days=days or self._insight_window_days)

        async with self._store.read() as reader:
            transactions, vaults = await self._spend_with_vaults(reader, user_id, start, end)

        return InsightInput(
            period_start=start,
            period_end=end,
            total_spent=sum_money(t.amount for t in transactions),
            spending_by_category=group_by_category(transactions, vaults),
            spending_by_vault=group_by_vault(transactions, vaults),
            spending_trend=bucket_by_period(transactions, Granularity.DAY),
        )
