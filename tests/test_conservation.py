"""
Property tests: money is conserved under any sequence of operations.

Hypothesis generates operation scripts (allocate, reallocate, pay,
decline, delete, adjust balance). Each script runs against a fresh
in-memory ledger; after every step the ledger must satisfy:

- sum of active allocations <= account balance
- 0 <= spent <= allocated for every vault
- every vault's spent equals the sum of its completed payments

A second script links, promotes and unlinks accounts; a user with any
account always has exactly one primary.
"""

import asyncio
from decimal import Decimal

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from vaultpay.accounts import AccountManager
from vaultpay.allocation import AllocationEngine
from vaultpay.audit import AuditLogger
from vaultpay.errors import LedgerError
from vaultpay.models import (
    AllocateRequest,
    BalanceAdjustmentRequest,
    LinkAccountRequest,
    PaymentRequest,
    ReallocateRequest,
    VaultType,
)
from vaultpay.payments import PaymentEngine
from vaultpay.reconciliation import ReconciliationEngine
from vaultpay.services.gateway import SimulatedPaymentGateway
from vaultpay.services.storage import InMemoryLedgerStore, spend_filter

USER = "alice"

amounts = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("5000.00"), places=2)


@st.composite
def operations(draw):
    kind = draw(st.sampled_from(["allocate", "reallocate", "pay", "decline", "delete", "adjust"]))
    slot = draw(st.integers(min_value=0, max_value=3))
    amount = draw(amounts)
    if kind == "adjust":
        amount = amount if draw(st.booleans()) else -amount
    return kind, slot, amount


async def _run(script):
    store = InMemoryLedgerStore()
    audit = AuditLogger()
    gateway = SimulatedPaymentGateway(min_latency=0, max_latency=0, force_outcome=True)
    accounts = AccountManager(store, audit=audit)
    allocation = AllocationEngine(store, audit=audit)
    payments = PaymentEngine(store, gateway, audit=audit, gateway_retry_wait=0.0)
    reconciliation = ReconciliationEngine(store, audit=audit)

    account = await accounts.link_account(LinkAccountRequest(
        user_id=USER,
        account_number="123456789012",
        routing_code="HDFC0001234",
        bank_name="HDFC Bank",
        holder_name="Alice",
        initial_balance=Decimal("10000.00"),
    ))
    vault_ids: list[str] = []

    for kind, slot, amount in script:
        target = vault_ids[slot % len(vault_ids)] if vault_ids else None
        try:
            if kind == "allocate":
                vault = await allocation.allocate(AllocateRequest(
                    user_id=USER,
                    bank_account_id=account.id,
                    vault_name=f"Vault {len(vault_ids)}",
                    vault_type=VaultType.CUSTOM,
                    amount=amount,
                ))
                vault_ids.append(vault.id)
            elif target is None:
                continue
            elif kind == "reallocate":
                await allocation.reallocate(ReallocateRequest(
                    user_id=USER, vault_id=target, new_amount=amount,
                ))
            elif kind in ("pay", "decline"):
                gateway.force_outcome = kind == "pay"
                await payments.pay(PaymentRequest(user_id=USER, vault_id=target, amount=amount))
            elif kind == "delete":
                await allocation.delete_vault(USER, target)
            elif kind == "adjust":
                await accounts.update_balance(BalanceAdjustmentRequest(
                    user_id=USER, account_id=account.id, delta=amount,
                ))
        except LedgerError:
            # Refused operations must leave the ledger as it was
            pass

        await _check_invariants(store, account.id)

    report = await reconciliation.reconcile_user(USER)
    assert report.is_consistent, report.drifts


async def _check_invariants(store, account_id):
    async with store.read() as reader:
        account = await reader.get_account(USER, account_id)
        active = await reader.list_vaults(USER, bank_account_id=account_id)
        every = await reader.list_vaults(USER, include_archived=True)

        assert sum(v.allocated_amount for v in active) <= account.balance
        assert account.balance >= 0

        for vault in every:
            assert Decimal("0") <= vault.spent_amount <= vault.allocated_amount
            ledger = await reader.sum_transactions(spend_filter(USER, vault_id=vault.id))
            assert ledger == vault.spent_amount


@settings(
    max_examples=60,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
@given(script=st.lists(operations(), min_size=1, max_size=25))
def test_money_is_conserved(script):
    asyncio.run(_run(script))


# =============================================================================
# PRIMARY ACCOUNT
# =============================================================================

@st.composite
def account_operations(draw):
    kind = draw(st.sampled_from(["link", "set_primary", "unlink"]))
    slot = draw(st.integers(min_value=0, max_value=4))
    return kind, slot


async def _run_accounts(script):
    store = InMemoryLedgerStore()
    accounts = AccountManager(store, audit=AuditLogger())
    linked: list[str] = []

    for step, (kind, slot) in enumerate(script):
        target = linked[slot % len(linked)] if linked else None
        try:
            if kind == "link":
                account = await accounts.link_account(LinkAccountRequest(
                    user_id=USER,
                    account_number=f"{100000000000 + step}",
                    routing_code="HDFC0001234",
                    bank_name="HDFC Bank",
                    holder_name="Alice",
                ))
                linked.append(account.id)
            elif target is None:
                continue
            elif kind == "set_primary":
                await accounts.set_primary(USER, target)
            elif kind == "unlink":
                await accounts.unlink(USER, target)
                linked.remove(target)
        except LedgerError:
            pass

        remaining = await accounts.list_accounts(USER)
        primaries = [a for a in remaining if a.is_primary]
        assert len(primaries) <= 1
        assert len(primaries) == (1 if remaining else 0)
        assert {a.id for a in remaining} == set(linked)


@settings(max_examples=60, deadline=None)
@given(script=st.lists(account_operations(), min_size=1, max_size=20))
def test_at_most_one_primary_account(script):
    asyncio.run(_run_accounts(script))
