"""
Audit Models for VaultPay

Every money movement and every rejected attempt is logged for audit
purposes, on top of the Transaction ledger itself. This provides:
1. Traceability of who asked for what, including rejected requests
2. Debugging information when a payment ends up in an unknown state
3. A correlation id tying the pre-check, reservation, gateway call and
   finalisation of one payment together

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step of the money-movement flows has its own event type.
    """
    # Accounts
    ACCOUNT_LINKED = "account_linked"
    ACCOUNT_UNLINKED = "account_unlinked"
    PRIMARY_ACCOUNT_CHANGED = "primary_account_changed"
    ACCOUNT_BALANCE_UPDATED = "account_balance_updated"

    # Vaults
    VAULT_CREATED = "vault_created"
    VAULT_REALLOCATED = "vault_reallocated"
    VAULT_UPDATED = "vault_updated"
    VAULT_ARCHIVED = "vault_archived"
    VAULT_DELETED = "vault_deleted"

    # Payments
    PAYMENT_RESERVED = "payment_reserved"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REPLAYED = "payment_replayed"
    PAYMENT_STATUS_UNKNOWN = "payment_status_unknown"

    # Rejections
    REQUEST_REJECTED = "request_rejected"

    # Reconciliation
    DRIFT_DETECTED = "drift_detected"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - who and what is this about?
    user_id: Optional[str] = None
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'vault', 'account', 'transaction')"
    )
    entity_id: Optional[str] = None

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all steps of one payment)"
    )

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": {
                key: str(value) if isinstance(value, Decimal) else value
                for key, value in self.details.items()
            },
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.payment_reserved(
            user_id=..., transaction_id=..., vault_id=..., amount=...,
            idempotency_key=..., correlation_id=correlation_id,
        )
    """

    @staticmethod
    def account_linked(
        user_id: str,
        account_id: str,
        is_primary: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_LINKED,
            user_id=user_id,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description="Bank account linked" + (" as primary" if is_primary else ""),
            details={"is_primary": is_primary},
        )

    @staticmethod
    def account_unlinked(
        user_id: str,
        account_id: str,
        promoted_account_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_UNLINKED,
            user_id=user_id,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description="Bank account unlinked",
            details={"promoted_account_id": promoted_account_id},
        )

    @staticmethod
    def primary_changed(
        user_id: str,
        account_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PRIMARY_ACCOUNT_CHANGED,
            user_id=user_id,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description="Primary account changed",
        )

    @staticmethod
    def balance_updated(
        user_id: str,
        account_id: str,
        delta: Decimal,
        new_balance: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_BALANCE_UPDATED,
            user_id=user_id,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Account balance adjusted by {delta}",
            details={"delta": delta, "new_balance": new_balance},
        )

    @staticmethod
    def vault_allocation(
        event_type: AuditEventType,
        user_id: str,
        vault_id: str,
        vault_name: str,
        allocated: Decimal,
        reference: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            user_id=user_id,
            entity_type="vault",
            entity_id=vault_id,
            correlation_id=correlation_id,
            description=f"Vault {vault_name} allocation set to {allocated}",
            details={"allocated_amount": allocated, "reference": reference},
        )

    @staticmethod
    def vault_removed(
        user_id: str,
        vault_id: str,
        archived: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VAULT_ARCHIVED if archived else AuditEventType.VAULT_DELETED,
            user_id=user_id,
            entity_type="vault",
            entity_id=vault_id,
            correlation_id=correlation_id,
            description="Vault archived" if archived else "Vault deleted permanently",
        )

    @staticmethod
    def payment_reserved(
        user_id: str,
        transaction_id: str,
        vault_id: str,
        amount: Decimal,
        idempotency_key: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_RESERVED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Payment of {amount} reserved against vault",
            details={
                "vault_id": vault_id,
                "amount": amount,
                "idempotency_key": idempotency_key,
            },
        )

    @staticmethod
    def payment_finalised(
        user_id: str,
        transaction_id: str,
        reference: str,
        amount: Decimal,
        completed: bool,
        gateway_ref: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.PAYMENT_COMPLETED if completed
                else AuditEventType.PAYMENT_FAILED
            ),
            severity=AuditSeverity.INFO if completed else AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Payment {reference} {'completed' if completed else 'failed'}",
            details={"amount": amount, "gateway_ref": gateway_ref},
        )

    @staticmethod
    def payment_replayed(
        user_id: str,
        transaction_id: str,
        idempotency_key: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_REPLAYED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Payment request replayed from idempotency key",
            details={"idempotency_key": idempotency_key},
        )

    @staticmethod
    def payment_status_unknown(
        user_id: str,
        transaction_id: str,
        idempotency_key: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_STATUS_UNKNOWN,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Payment left pending; retry with the same idempotency key",
            details={"idempotency_key": idempotency_key},
            error_message=error_message,
        )

    @staticmethod
    def request_rejected(
        user_id: str,
        operation: str,
        error_code: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REQUEST_REJECTED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"{operation} rejected: {error_code}",
            details=details or {},
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def drift_detected(
        user_id: str,
        vault_id: str,
        recorded: Decimal,
        ledger: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DRIFT_DETECTED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="vault",
            entity_id=vault_id,
            correlation_id=correlation_id,
            description="Vault spent amount disagrees with its ledger",
            details={"recorded_spent": recorded, "ledger_spent": ledger},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={"service": service},
            correlation_id=correlation_id,
        )
