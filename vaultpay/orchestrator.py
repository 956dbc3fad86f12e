"""
Main Orchestrator for VaultPay

This module builds every component from settings and wires them
together:

1. Ledger store (in-memory or SQL) and audit logger
2. Boundary validator and payment gateway
3. The engines: accounts, allocation, payments, reconciliation, queries
4. The optional insight agent

DESIGN DECISION: Components receive their collaborators at
construction time. Nothing below this module reaches for a global
store or client, so tests can swap any piece.
"""

from typing import Optional

import structlog

from vaultpay.accounts import AccountManager
from vaultpay.agents import InsightAgent
from vaultpay.allocation import AllocationEngine
from vaultpay.audit import AuditLogger, configure_logging
from vaultpay.config import LedgerSettings, Settings, get_settings
from vaultpay.payments import PaymentEngine
from vaultpay.queries import TransactionQueryExecutor
from vaultpay.reconciliation import ReconciliationEngine
from vaultpay.services.gateway import PaymentGatewayInterface, SimulatedPaymentGateway
from vaultpay.services.storage import (
    AuditStorageInterface,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    LedgerStore,
    SqlLedgerStore,
)
from vaultpay.validation import LedgerRequestValidator


logger = structlog.get_logger(__name__)


def build_store(settings: LedgerSettings) -> LedgerStore:
    """The ledger store the settings ask for."""
    if settings.backend == "memory":
        return InMemoryLedgerStore(unit_timeout=settings.unit_timeout_seconds)
    return SqlLedgerStore(
        settings.database_url,
        unit_timeout=settings.unit_timeout_seconds,
        echo=settings.echo_sql,
    )


class AppComponents:
    """
    Every wired component of one VaultPay instance.

    Call `start()` before first use (creates SQL tables) and
    `close()` on shutdown.
    """

    def __init__(
        self,
        store: LedgerStore,
        gateway: PaymentGatewayInterface,
        audit_logger: AuditLogger,
        validator: LedgerRequestValidator,
        accounts: AccountManager,
        allocation: AllocationEngine,
        payments: PaymentEngine,
        reconciliation: ReconciliationEngine,
        queries: TransactionQueryExecutor,
        insight_agent: Optional[InsightAgent] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.audit_logger = audit_logger
        self.validator = validator
        self.accounts = accounts
        self.allocation = allocation
        self.payments = payments
        self.reconciliation = reconciliation
        self.queries = queries
        self.insight_agent = insight_agent

    async def start(self) -> None:
        if isinstance(self.store, SqlLedgerStore):
            await self.store.create_tables()
        logger.info("vaultpay_started", store=type(self.store).__name__)

    async def close(self) -> None:
        await self.store.close()

    async def spending_insights(self, user_id: str, days: Optional[int] = None) -> list[str]:
        """
        Insight tips over the user's recent spend.

        The agent only sees the aggregated InsightInput.

        Raises:
            InsightServiceError: No agent configured, or the model failed.
        """
        data = await self.reconciliation.insight_input(user_id, days)
        agent = self.insight_agent or InsightAgent(audit=self.audit_logger)
        return await agent.generate_insights(data)


def create_app_components(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    gateway: Optional[PaymentGatewayInterface] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    insight_agent: Optional[InsightAgent] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        settings: Root settings; environment-backed if omitted.
        store: Ledger store to use instead of the configured one.
        gateway: Gateway to use instead of the simulated one.
        audit_storage: Where audit events go; in-memory if omitted.
        insight_agent: Insight agent; built when Gemini is configured.
    """
    settings = settings or get_settings()
    ledger = settings.ledger
    payments = settings.payments
    app = settings.app

    configure_logging(debug=app.debug_mode, json_logs=app.app_environment != "development")

    store = store or build_store(ledger)
    gateway = gateway or SimulatedPaymentGateway.from_settings(payments)
    audit_logger = AuditLogger(audit_storage or InMemoryAuditStorage())
    validator = LedgerRequestValidator(payments)

    if insight_agent is None:
        try:
            insight_agent = InsightAgent(settings=settings.gemini, audit=audit_logger)
        except ValueError as e:
            # No Gemini key: insights stay unavailable, money movement is unaffected
            logger.warning("insights_not_configured", error=str(e))

    return AppComponents(
        store=store,
        gateway=gateway,
        audit_logger=audit_logger,
        validator=validator,
        accounts=AccountManager(
            store,
            audit=audit_logger,
            validator=validator,
            retry_attempts=ledger.retry_attempts,
        ),
        allocation=AllocationEngine(
            store,
            audit=audit_logger,
            validator=validator,
            retry_attempts=ledger.retry_attempts,
            recent_transactions_limit=app.recent_transactions_limit,
        ),
        payments=PaymentEngine(
            store,
            gateway,
            audit=audit_logger,
            validator=validator,
            retry_attempts=ledger.retry_attempts,
            gateway_retry_attempts=payments.gateway_retry_attempts,
        ),
        reconciliation=ReconciliationEngine(
            store,
            audit=audit_logger,
            validator=validator,
            recent_transactions_limit=app.recent_transactions_limit,
            insight_window_days=app.insight_window_days,
        ),
        queries=TransactionQueryExecutor(store, validator=validator),
        insight_agent=insight_agent,
    )
