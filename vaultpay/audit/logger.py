"""
Audit Logger

DESIGN DECISION: Every money movement and every rejected attempt is
recorded as an AuditEvent, on top of the Transaction ledger itself.
Correlation IDs tie the steps of one operation together, so a payment
left pending can be traced from reservation to its last attempt.

The audit trail is written AFTER a unit of work commits, never inside
one. A failing audit sink is logged and reported as False; it never
undoes or fails a committed money movement.
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from vaultpay.errors import LedgerError
from vaultpay.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from vaultpay.services.storage import AuditStorageInterface


def configure_logging(debug: bool = False, json_logs: bool = True) -> None:
    """
    Route structlog through the stdlib logging module.

    Every module logs through `structlog.get_logger(__name__)`; this only
    decides the level and the renderer.
    """
    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if debug else logging.INFO,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


class AuditLogger:
    """
    Writes audit events to the structured log and, when configured,
    to an AuditStorageInterface backend.

    Args:
        storage: Where events are persisted. None keeps them in the
            structured log only.
    """

    def __init__(self, storage: Optional[AuditStorageInterface] = None):
        self._storage = storage
        self._logger = structlog.get_logger("vaultpay.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    def _emit(self, event: AuditEvent) -> None:
        emit = {
            AuditSeverity.DEBUG: self._logger.debug,
            AuditSeverity.INFO: self._logger.info,
            AuditSeverity.WARNING: self._logger.warning,
        }.get(event.severity, self._logger.error)
        emit("audit_event", **event.to_log_dict())

    async def log(self, event: AuditEvent) -> bool:
        """
        Record one event.

        Returns False only when the storage backend refused the write.
        """
        self._emit(event)
        if self._storage is None:
            return True

        try:
            return await self._storage.append_event(event)
        except Exception as e:
            self._logger.error(
                "audit_write_failed",
                error=str(e),
                event_id=str(event.event_id),
                event_type=event.event_type.value,
            )
            return False

    # =========================================================================
    # SHORTHANDS
    # =========================================================================

    async def log_rejected(
        self,
        user_id: str,
        operation: str,
        error: LedgerError,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """A request refused by validation or a business rule, with its error code."""
        await self.log(AuditEventBuilder.request_rejected(
            user_id=user_id,
            operation=operation,
            error_code=error.code,
            error_message=error.user_message,
            details=error.to_dict()["details"],
            correlation_id=correlation_id,
        ))

    async def log_payment_finalised(
        self,
        user_id: str,
        transaction_id: str,
        reference: str,
        amount,
        completed: bool,
        gateway_ref: Optional[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.payment_finalised(
            user_id=user_id,
            transaction_id=transaction_id,
            reference=reference,
            amount=amount,
            completed=completed,
            gateway_ref=gateway_ref,
            correlation_id=correlation_id,
        ))

    async def log_drift(
        self,
        user_id: str,
        vault_id: str,
        recorded,
        ledger,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.drift_detected(
            user_id=user_id,
            vault_id=vault_id,
            recorded=recorded,
            ledger=ledger,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """An internal fault that needs an operator, e.g. a charge to refund."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """One id per operation; pass it to every event the operation logs."""
    return uuid4()
