"""
Tests for the read-only reconciliation / summary engine.

Drift is introduced by writing a vault directly through the store, the
way a buggy writer would, and must then be reported but left untouched.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from vaultpay.errors import AccountNotFound, VaultNotFound
from vaultpay.models import (
    AnalyticsQuery,
    AuditEventType,
    Granularity,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    Vault,
    VaultType,
)
from vaultpay.reconciliation import (
    allocation_totals,
    bucket_by_period,
    group_by_category,
    period_start,
)

USER = "alice"
OTHER_USER = "bob"


async def _inflate_spent(store, vault_id, spent: str):
    async with store.transaction() as uow:
        vault = await uow.get_vault_for_update(USER, vault_id, include_archived=True)
        await uow.save_vault(vault.model_copy(update={"spent_amount": Decimal(spent)}))


def _spend(vault_id: str, amount: str, created_at: datetime) -> Transaction:
    return Transaction(
        reference="PAY-1",
        user_id=USER,
        vault_id=vault_id,
        bank_account_id="acc-1",
        transaction_type=TransactionType.DEBIT,
        category=TransactionCategory.P2P,
        amount=Decimal(amount),
        status=TransactionStatus.COMPLETED,
        created_at=created_at,
    )


@pytest_asyncio.fixture
async def spent_vaults(make_vault, pay, gateway):
    """Groceries 1,000 (spent 300 in two payments), Rent 4,000 (spent 2,000), one declined payment."""
    groceries = await make_vault("1000.00", name="Groceries", vault_type=VaultType.GROCERIES)
    rent = await make_vault("4000.00", name="Rent", vault_type=VaultType.RENT)
    await pay(groceries.id, "100.00")
    await pay(groceries.id, "200.00")
    await pay(rent.id, "2000.00")
    gateway.force_outcome = False
    await pay(groceries.id, "50.00")
    gateway.force_outcome = True
    return groceries, rent


class TestPureAggregations:

    def test_period_start(self):
        # A Thursday
        moment = datetime(2026, 1, 15, 18, 30, tzinfo=timezone.utc)
        assert period_start(moment, Granularity.DAY).isoformat() == "2026-01-15"
        assert period_start(moment, Granularity.WEEK).isoformat() == "2026-01-12"
        assert period_start(moment, Granularity.MONTH).isoformat() == "2026-01-01"

    def test_allocation_totals_of_nothing(self):
        totals = allocation_totals(Decimal("500.00"), [])
        assert totals.total_allocated == Decimal("0.00")
        assert totals.unallocated_balance == Decimal("500.00")
        assert totals.usage_percentage == Decimal("0.00")

    def test_category_of_missing_vault_is_unknown(self):
        moment = datetime(2026, 1, 1, tzinfo=timezone.utc)
        rows = group_by_category([_spend("gone", "10.00", moment)], {})
        assert rows[0].category == "unknown"
        assert rows[0].percentage == Decimal("100.00")

    def test_buckets_are_oldest_first(self):
        vault = Vault(
            user_id=USER,
            bank_account_id="acc-1",
            name="Food",
            vault_type=VaultType.GROCERIES,
            allocated_amount=Decimal("100.00"),
        )
        txns = [
            _spend(vault.id, "5.00", datetime(2026, 3, 2, tzinfo=timezone.utc)),
            _spend(vault.id, "7.00", datetime(2026, 1, 31, tzinfo=timezone.utc)),
            _spend(vault.id, "1.00", datetime(2026, 3, 30, tzinfo=timezone.utc)),
        ]
        buckets = bucket_by_period(txns, Granularity.MONTH)
        assert [b.period.isoformat() for b in buckets] == ["2026-01-01", "2026-03-01"]
        assert buckets[1].amount == Decimal("6.00")
        assert buckets[1].transaction_count == 2


class TestSpendingAnalytics:

    async def test_by_category(self, reconciliation, spent_vaults):
        rows = await reconciliation.spending_by_category({"user_id": USER})

        assert [(r.category, r.amount, r.transaction_count) for r in rows] == [
            ("rent", Decimal("2000.00"), 1),
            ("groceries", Decimal("300.00"), 2),
        ]
        assert sum(r.percentage for r in rows) == Decimal("100.00")

    async def test_allocations_and_declines_are_not_spend(self, reconciliation, make_vault, pay, gateway):
        vault = await make_vault("1000.00")
        gateway.force_outcome = False
        await pay(vault.id, "10.00")

        assert await reconciliation.spending_by_category(AnalyticsQuery(user_id=USER)) == []

    async def test_over_time(self, reconciliation, spent_vaults):
        buckets = await reconciliation.spending_over_time(
            AnalyticsQuery(user_id=USER, granularity=Granularity.MONTH)
        )
        assert len(buckets) == 1
        assert buckets[0].amount == Decimal("2300.00")
        assert buckets[0].transaction_count == 3

    async def test_by_vault(self, reconciliation, spent_vaults):
        groceries, rent = spent_vaults
        rows = await reconciliation.spending_by_vault({"user_id": USER})

        assert [r.vault_id for r in rows] == [rent.id, groceries.id]
        assert rows[1].percentage_of_allocation == Decimal("30.00")
        assert rows[0].vault_name == "Rent"

    async def test_repeated_calls_agree(self, reconciliation, spent_vaults):
        """No mutation in between: every analytic gives the same answer twice."""
        query = {"user_id": USER}

        assert await reconciliation.spending_by_vault(query) == await reconciliation.spending_by_vault(query)
        assert await reconciliation.spending_by_category(query) == await reconciliation.spending_by_category(query)
        assert await reconciliation.spending_over_time(query) == await reconciliation.spending_over_time(query)

        first = await reconciliation.reconcile_user(USER)
        second = await reconciliation.reconcile_user(USER)
        assert first.is_consistent and second.is_consistent
        assert first.drifts == second.drifts

    async def test_window_excludes_older_spend(self, reconciliation, spent_vaults):
        rows = await reconciliation.spending_by_category({
            "user_id": USER,
            "start_date": datetime(2100, 1, 1, tzinfo=timezone.utc),
        })
        assert rows == []

    async def test_other_users_see_nothing(self, reconciliation, spent_vaults):
        assert await reconciliation.spending_by_vault({"user_id": OTHER_USER}) == []


class TestSummaries:

    async def test_vault_summary(self, reconciliation, account, spent_vaults):
        summary = await reconciliation.vault_summary(USER, account.id)
        totals = summary.summary

        assert summary.bank_name == "HDFC Bank"
        assert totals.total_balance == Decimal("10000.00")
        assert totals.total_allocated == Decimal("5000.00")
        assert totals.total_spent == Decimal("2300.00")
        assert totals.total_remaining == Decimal("2700.00")
        assert totals.unallocated_balance == Decimal("5000.00")
        assert totals.allocation_percentage == Decimal("50.00")
        assert totals.usage_percentage == Decimal("46.00")

    async def test_vault_summary_unknown_account(self, reconciliation):
        with pytest.raises(AccountNotFound, match="Bank account not found"):
            await reconciliation.vault_summary(USER, "missing")

    async def test_account_summary_lists_vaults(self, reconciliation, account, spent_vaults):
        summary = await reconciliation.account_summary(USER, account.id)
        assert summary.account.id == account.id
        assert {v.vault.name for v in summary.vaults} == {"Groceries", "Rent"}

    async def test_user_spending_summary(self, reconciliation, spent_vaults):
        summary = await reconciliation.user_spending_summary(USER)

        assert summary.total_vaults == 2
        assert summary.total_spent == Decimal("2300.00")
        assert summary.overall_usage == Decimal("46.00")
        assert summary.total_transactions == 3
        assert [c.category for c in summary.spending_by_category] == ["rent", "groceries"]
        assert all(
            t.category != TransactionCategory.VAULT_ALLOCATION
            and t.status == TransactionStatus.COMPLETED
            for t in summary.recent_transactions
        )
        assert len(summary.recent_transactions) == 3

    async def test_empty_user_summary(self, reconciliation):
        summary = await reconciliation.user_spending_summary(USER)
        assert summary.total_vaults == 0
        assert summary.overall_usage == Decimal("0.00")
        assert summary.spending_by_category == []

    async def test_vault_analytics(self, reconciliation, spent_vaults):
        groceries, _ = spent_vaults
        analytics = await reconciliation.vault_spending_analytics(USER, groceries.id)

        assert analytics.total_transactions == 2
        assert analytics.total_spent == Decimal("300.00")
        assert analytics.average_transaction == Decimal("150.00")
        assert analytics.vault.balance.remaining_amount == Decimal("700.00")
        assert sum(b.amount for b in analytics.spending_trend) == Decimal("300.00")

    async def test_vault_analytics_of_foreign_vault(self, reconciliation, spent_vaults):
        groceries, _ = spent_vaults
        with pytest.raises(VaultNotFound):
            await reconciliation.vault_spending_analytics(OTHER_USER, groceries.id)


class TestReconciliation:

    async def test_consistent_ledger(self, reconciliation, spent_vaults):
        report = await reconciliation.reconcile_user(USER)

        assert report.is_consistent is True
        assert report.vaults_checked == 2
        assert report.pending_transactions == 0

    async def test_drift_is_reported_not_corrected(self, reconciliation, store, spent_vaults, audit_storage):
        groceries, _ = spent_vaults
        await _inflate_spent(store, groceries.id, "350.00")

        drift = await reconciliation.check_vault_consistency(USER, groceries.id)

        assert drift.recorded_spent == Decimal("350.00")
        assert drift.ledger_spent == Decimal("300.00")
        assert drift.difference == Decimal("50.00")

        # Untouched
        async with store.read() as reader:
            assert (await reader.get_vault(USER, groceries.id)).spent_amount == Decimal("350.00")

        events = await audit_storage.get_events_by_entity("vault", groceries.id)
        assert events[-1].event_type == AuditEventType.DRIFT_DETECTED

    async def test_reconcile_user_audits_each_drift(self, reconciliation, store, spent_vaults, audit_storage):
        groceries, rent = spent_vaults
        await _inflate_spent(store, groceries.id, "301.00")
        await _inflate_spent(store, rent.id, "1999.00")

        report = await reconciliation.reconcile_user(USER)

        assert report.is_consistent is False
        assert {d.vault_id for d in report.drifts} == {groceries.id, rent.id}
        drift_events = [
            e for e in await audit_storage.get_recent_events()
            if e.event_type == AuditEventType.DRIFT_DETECTED
        ]
        assert len(drift_events) == 2
        assert len({e.correlation_id for e in drift_events}) == 1

    async def test_archived_vaults_are_checked(self, reconciliation, allocation, spent_vaults):
        groceries, _ = spent_vaults
        await allocation.delete_vault(USER, groceries.id)

        assert await reconciliation.check_vault_consistency(USER, groceries.id) is None
        report = await reconciliation.reconcile_user(USER)
        assert report.vaults_checked == 2


class TestInsightInput:

    async def test_recent_spend_is_aggregated(self, reconciliation, spent_vaults):
        data = await reconciliation.insight_input(USER, days=7)

        assert data.has_spending is True
        assert data.total_spent == Decimal("2300.00")
        assert data.spending_by_category[0].category == "rent"
        assert (data.period_end - data.period_start).days == 7

    async def test_no_spend(self, reconciliation, make_vault):
        await make_vault("100.00")
        data = await reconciliation.insight_input(USER)
        assert data.has_spending is False
