"""
Tests for the allocation engine.

Every change to a vault's allocation must leave an allocation ledger
entry behind, and no vault may ever hold more than its account's
unallocated balance.
"""

import asyncio
from decimal import Decimal

import pytest

from vaultpay.errors import (
    AccountNotFound,
    BelowSpentAmount,
    InsufficientUnallocatedBalance,
    ValidationError,
    VaultArchived,
    VaultNotFound,
)
from vaultpay.models import (
    AllocateRequest,
    AuditEventType,
    ReallocateRequest,
    TransactionCategory,
    TransactionType,
    UpdateVaultRequest,
    VaultState,
    VaultType,
)
from vaultpay.services.storage import TransactionFilter

USER = "alice"
OTHER_USER = "bob"


async def _allocation_entries(store, vault_id):
    async with store.read() as reader:
        return await reader.list_transactions(TransactionFilter(
            user_id=USER,
            vault_id=vault_id,
            category=TransactionCategory.VAULT_ALLOCATION,
            newest_first=False,
        ))


async def _unallocated(store, account):
    async with store.read() as reader:
        current = await reader.get_account(USER, account.id)
        return current.balance - await reader.allocated_total(USER, account.id)


class TestAllocate:

    async def test_allocate_reduces_unallocated_balance(self, store, account, make_vault):
        """Link 10,000, allocate 3,000 to Groceries: 7,000 stays unallocated."""
        vault = await make_vault("3000.00")

        assert vault.allocated_amount == Decimal("3000.00")
        assert vault.spent_amount == Decimal("0.00")
        assert vault.state == VaultState.ACTIVE
        assert await _unallocated(store, account) == Decimal("7000.00")

    async def test_allocate_records_debit_entry(self, store, make_vault):
        vault = await make_vault("3000.00")

        entries = await _allocation_entries(store, vault.id)
        assert len(entries) == 1
        assert entries[0].transaction_type == TransactionType.DEBIT
        assert entries[0].amount == Decimal("3000.00")
        assert entries[0].reference.startswith("ALLOC-")
        assert entries[0].description == "Allocated ₹3,000.00 to Groceries vault"

    async def test_allocate_uses_type_icon_by_default(self, make_vault):
        vault = await make_vault("100.00", name="Rent", vault_type=VaultType.RENT)
        assert vault.icon == "🏠"

    async def test_allocate_whole_balance(self, store, account, make_vault):
        await make_vault("10000.00")
        assert await _unallocated(store, account) == Decimal("0.00")

    async def test_allocate_over_unallocated_is_rejected(self, make_vault):
        await make_vault("8000.00")

        with pytest.raises(InsufficientUnallocatedBalance) as exc_info:
            await make_vault("2000.01", name="Fun")
        assert exc_info.value.available == Decimal("2000.00")

    async def test_allocate_rejects_zero(self, make_vault):
        with pytest.raises(ValidationError):
            await make_vault("0")

    async def test_allocate_to_foreign_account_is_not_found(self, make_vault):
        with pytest.raises(AccountNotFound):
            await make_vault("10.00", user_id=OTHER_USER)

    async def test_allocate_accepts_dict(self, allocation, account):
        vault = await allocation.allocate({
            "user_id": USER,
            "bank_account_id": account.id,
            "vault_name": "Travel",
            "vault_type": "transport",
            "amount": "250.00",
        })
        assert vault.vault_type == VaultType.TRANSPORT

    async def test_rejection_is_audited(self, make_vault, audit_storage):
        with pytest.raises(InsufficientUnallocatedBalance):
            await make_vault("20000.00")

        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.REQUEST_REJECTED
        assert events[0].error_code == "insufficient_unallocated_balance"

    async def test_concurrent_allocations_never_overcommit(self, store, account, allocation):
        """Ten concurrent 2,000 allocations against 10,000: exactly five fit."""
        requests = [
            AllocateRequest(
                user_id=USER,
                bank_account_id=account.id,
                vault_name=f"Vault {i}",
                vault_type=VaultType.CUSTOM,
                amount=Decimal("2000.00"),
            )
            for i in range(10)
        ]
        results = await asyncio.gather(
            *(allocation.allocate(r) for r in requests),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InsufficientUnallocatedBalance)]
        assert len(created) == 5
        assert len(rejected) == 5
        assert await _unallocated(store, account) == Decimal("0.00")


class TestReallocate:

    async def test_cannot_reallocate_below_spent(self, allocation, make_vault, pay):
        """allocated=500, spent=500: 300 is refused, 600 is accepted."""
        vault = await make_vault("500.00")
        await pay(vault.id, "500.00")

        with pytest.raises(BelowSpentAmount):
            await allocation.reallocate(ReallocateRequest(
                user_id=USER, vault_id=vault.id, new_amount=Decimal("300.00"),
            ))

        resized = await allocation.reallocate(ReallocateRequest(
            user_id=USER, vault_id=vault.id, new_amount=Decimal("600.00"),
        ))
        assert resized.allocated_amount == Decimal("600.00")
        assert resized.spent_amount == Decimal("500.00")

    async def test_increase_records_debit_of_delta(self, store, allocation, make_vault):
        vault = await make_vault("1000.00")
        await allocation.reallocate(ReallocateRequest(
            user_id=USER, vault_id=vault.id, new_amount=Decimal("1500.00"),
        ))

        entries = await _allocation_entries(store, vault.id)
        assert [(e.transaction_type, e.amount) for e in entries] == [
            (TransactionType.DEBIT, Decimal("1000.00")),
            (TransactionType.DEBIT, Decimal("500.00")),
        ]
        assert entries[1].reference.startswith("REALLOC-")

    async def test_decrease_records_credit_and_frees_balance(self, store, account, allocation, make_vault):
        vault = await make_vault("1000.00")
        await allocation.reallocate(ReallocateRequest(
            user_id=USER, vault_id=vault.id, new_amount=Decimal("400.00"),
        ))

        entries = await _allocation_entries(store, vault.id)
        assert entries[-1].transaction_type == TransactionType.CREDIT
        assert entries[-1].amount == Decimal("600.00")
        assert await _unallocated(store, account) == Decimal("9600.00")

    async def test_same_amount_records_nothing(self, store, allocation, make_vault):
        vault = await make_vault("1000.00")
        await allocation.reallocate(ReallocateRequest(
            user_id=USER, vault_id=vault.id, new_amount=Decimal("1000.00"),
        ))
        assert len(await _allocation_entries(store, vault.id)) == 1

    async def test_increase_headroom_excludes_own_allocation(self, allocation, make_vault):
        """A vault holding 6,000 of 10,000 can grow to exactly 10,000."""
        vault = await make_vault("6000.00")

        resized = await allocation.reallocate(ReallocateRequest(
            user_id=USER, vault_id=vault.id, new_amount=Decimal("10000.00"),
        ))
        assert resized.allocated_amount == Decimal("10000.00")

        with pytest.raises(InsufficientUnallocatedBalance):
            await allocation.reallocate(ReallocateRequest(
                user_id=USER, vault_id=vault.id, new_amount=Decimal("10000.01"),
            ))

    async def test_reallocate_unknown_vault(self, allocation, account):
        with pytest.raises(VaultNotFound):
            await allocation.reallocate(ReallocateRequest(
                user_id=USER, vault_id="missing", new_amount=Decimal("1.00"),
            ))

    async def test_reallocate_foreign_vault(self, allocation, make_vault):
        vault = await make_vault("100.00")
        with pytest.raises(VaultNotFound):
            await allocation.reallocate(ReallocateRequest(
                user_id=OTHER_USER, vault_id=vault.id, new_amount=Decimal("50.00"),
            ))


class TestUpdateVault:

    async def test_metadata_only(self, store, allocation, make_vault):
        vault = await make_vault("1000.00")
        updated = await allocation.update_vault(UpdateVaultRequest(
            user_id=USER, vault_id=vault.id, name="Food", icon="🍎",
        ))

        assert updated.name == "Food"
        assert updated.icon == "🍎"
        assert updated.allocated_amount == Decimal("1000.00")
        assert len(await _allocation_entries(store, vault.id)) == 1

    async def test_allocation_change_follows_reallocate_rules(self, allocation, make_vault, pay):
        vault = await make_vault("500.00")
        await pay(vault.id, "200.00")

        with pytest.raises(BelowSpentAmount):
            await allocation.update_vault(UpdateVaultRequest(
                user_id=USER, vault_id=vault.id, name="Food", allocated_amount=Decimal("100.00"),
            ))

        # The refused update changed nothing, not even the name
        view = await allocation.get_vault(USER, vault.id)
        assert view.vault.name == "Groceries"

        updated = await allocation.update_vault(UpdateVaultRequest(
            user_id=USER, vault_id=vault.id, name="Food", allocated_amount=Decimal("800.00"),
        ))
        assert updated.name == "Food"
        assert updated.allocated_amount == Decimal("800.00")


class TestDeleteVault:

    async def test_unspent_vault_is_deleted(self, store, account, allocation, make_vault):
        vault = await make_vault("3000.00")

        deletion = await allocation.delete_vault(USER, vault.id)

        assert deletion.deleted_permanently is True
        assert deletion.state == VaultState.DELETED
        assert deletion.message == "Vault deleted successfully"
        assert [v.vault.id for v in await allocation.list_vaults(USER)] == []
        assert await _unallocated(store, account) == Decimal("10000.00")
        async with store.read() as reader:
            assert await reader.get_vault(USER, vault.id, include_archived=True) is None

    async def test_spent_vault_is_archived(self, store, account, allocation, queries, make_vault, pay):
        vault = await make_vault("1000.00")
        await pay(vault.id, "250.00")

        deletion = await allocation.delete_vault(USER, vault.id)

        assert deletion.deleted_permanently is False
        assert deletion.state == VaultState.ARCHIVED
        assert deletion.message == "Vault archived!"
        assert await allocation.list_vaults(USER) == []
        # Its allocation no longer counts against the account
        assert await _unallocated(store, account) == Decimal("10000.00")

        page = await queries.list_transactions({"user_id": USER, "vault_id": vault.id})
        assert page.total == 2

    async def test_archived_vault_is_terminal(self, allocation, make_vault, pay):
        vault = await make_vault("1000.00")
        await pay(vault.id, "10.00")
        await allocation.delete_vault(USER, vault.id)

        with pytest.raises(VaultArchived):
            await allocation.reallocate(ReallocateRequest(
                user_id=USER, vault_id=vault.id, new_amount=Decimal("2000.00"),
            ))
        with pytest.raises(VaultArchived):
            await allocation.delete_vault(USER, vault.id)
        with pytest.raises(VaultNotFound):
            await allocation.get_vault(USER, vault.id)

    async def test_delete_is_audited(self, allocation, make_vault, audit_storage):
        vault = await make_vault("10.00")
        await allocation.delete_vault(USER, vault.id)

        events = await audit_storage.get_events_by_entity("vault", vault.id)
        assert [e.event_type for e in events] == [
            AuditEventType.VAULT_CREATED,
            AuditEventType.VAULT_DELETED,
        ]


class TestVaultReads:

    async def test_list_vaults_newest_first_with_balances(self, allocation, make_vault, pay):
        first = await make_vault("1000.00", name="Groceries")
        second = await make_vault("500.00", name="Fun", vault_type=VaultType.ENTERTAINMENT)
        await pay(first.id, "250.00")

        views = await allocation.list_vaults(USER)

        assert [v.vault.id for v in views] == [second.id, first.id]
        assert views[1].balance.remaining_amount == Decimal("750.00")
        assert views[1].balance.usage_percentage == Decimal("25.00")
        assert views[1].bank_name == "HDFC Bank"

    async def test_get_vault_includes_recent_transactions(self, allocation, make_vault, pay):
        vault = await make_vault("1000.00")
        await pay(vault.id, "10.00")

        view = await allocation.get_vault(USER, vault.id)

        categories = [t.category for t in view.recent_transactions]
        assert categories == [TransactionCategory.P2P, TransactionCategory.VAULT_ALLOCATION]

    async def test_get_foreign_vault_is_not_found(self, allocation, make_vault):
        vault = await make_vault("10.00")
        with pytest.raises(VaultNotFound):
            await allocation.get_vault(OTHER_USER, vault.id)
