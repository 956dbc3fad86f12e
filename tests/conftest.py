# =============================================================================
# VAULTPAY - TEST CONFIGURATION
# =============================================================================
# Every fixture runs against the in-memory ledger store and a simulated
# gateway with zero latency, so no test touches the network.
# =============================================================================

from decimal import Decimal

import pytest
import pytest_asyncio

from vaultpay.accounts import AccountManager
from vaultpay.allocation import AllocationEngine
from vaultpay.audit import AuditLogger
from vaultpay.config import PaymentSettings
from vaultpay.models import (
    AllocateRequest,
    LinkAccountRequest,
    PaymentRequest,
    VaultType,
)
from vaultpay.payments import PaymentEngine
from vaultpay.queries import TransactionQueryExecutor
from vaultpay.reconciliation import ReconciliationEngine
from vaultpay.services.gateway import SimulatedPaymentGateway
from vaultpay.services.storage import InMemoryAuditStorage, InMemoryLedgerStore
from vaultpay.validation import LedgerRequestValidator


USER = "alice"
OTHER_USER = "bob"


# =============================================================================
# INFRASTRUCTURE
# =============================================================================

@pytest.fixture
def payment_settings() -> PaymentSettings:
    return PaymentSettings(max_transaction_amount=Decimal("100000.00"))


@pytest.fixture
def validator(payment_settings) -> LedgerRequestValidator:
    return LedgerRequestValidator(payment_settings)


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore(unit_timeout=5.0)


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    """Approves every charge instantly."""
    return SimulatedPaymentGateway(min_latency=0, max_latency=0, force_outcome=True)


# =============================================================================
# ENGINES
# =============================================================================

@pytest.fixture
def accounts(store, audit, validator) -> AccountManager:
    return AccountManager(store, audit=audit, validator=validator)


@pytest.fixture
def allocation(store, audit, validator) -> AllocationEngine:
    return AllocationEngine(store, audit=audit, validator=validator)


@pytest.fixture
def payments(store, gateway, audit, validator) -> PaymentEngine:
    return PaymentEngine(
        store,
        gateway,
        audit=audit,
        validator=validator,
        gateway_retry_wait=0.0,
    )


@pytest.fixture
def reconciliation(store, audit, validator) -> ReconciliationEngine:
    return ReconciliationEngine(store, audit=audit, validator=validator)


@pytest.fixture
def queries(store, validator) -> TransactionQueryExecutor:
    return TransactionQueryExecutor(store, validator=validator)


# =============================================================================
# LEDGER DATA
# =============================================================================

@pytest.fixture
def link_request():
    def _build(user_id: str = USER, balance: str = "10000.00", number: str = "123456789012"):
        return LinkAccountRequest(
            user_id=user_id,
            account_number=number,
            routing_code="hdfc0001234",
            bank_name="HDFC Bank",
            holder_name="Alice Example",
            initial_balance=Decimal(balance),
        )
    return _build


@pytest_asyncio.fixture
async def account(accounts, link_request):
    """Alice's primary account holding 10,000."""
    return await accounts.link_account(link_request())


@pytest.fixture
def make_vault(allocation, account):
    async def _make(
        amount: str = "1000.00",
        name: str = "Groceries",
        vault_type: VaultType = VaultType.GROCERIES,
        bank_account_id: str = None,
        user_id: str = USER,
    ):
        return await allocation.allocate(AllocateRequest(
            user_id=user_id,
            bank_account_id=bank_account_id or account.id,
            vault_name=name,
            vault_type=vault_type,
            amount=Decimal(amount),
        ))
    return _make


@pytest.fixture
def pay(payments):
    async def _pay(vault_id: str, amount: str, user_id: str = USER, **kwargs):
        kwargs.setdefault("recipient_upi", "grocer@upi")
        return await payments.pay(PaymentRequest(
            user_id=user_id,
            vault_id=vault_id,
            amount=Decimal(amount),
            **kwargs,
        ))
    return _pay
