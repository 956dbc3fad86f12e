"""
Payment Gateway Interface

DESIGN DECISION: The payment engine only ever talks to this interface.
The bundled implementation is a simulator; a real provider adapter
implements the same two things:

1. `charge(amount, idempotency_key)` - the key is forwarded to the
   provider so a resumed payment can never be charged twice.
2. Distinguish a DECLINE (a definite answer, returned as a result) from
   being UNREACHABLE (no answer at all, raised as GatewayUnavailableError).
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field


class GatewayError(Exception):
    """Base exception for gateway errors."""
    pass


class GatewayUnavailableError(GatewayError):
    """The gateway could not be reached or did not answer. Safe to retry."""
    pass


class GatewayResult(BaseModel):
    """A definite answer from the gateway."""

    success: bool
    gateway_ref: str = Field(..., min_length=1)
    status: Literal["completed", "failed"]
    raw: dict[str, Any] = Field(default_factory=dict)

    def to_response(self) -> dict[str, Any]:
        """JSON-safe copy stored on the ledger entry."""
        return {
            "success": self.success,
            "gateway_ref": self.gateway_ref,
            "status": self.status,
            **self.raw,
        }


class PaymentGatewayInterface(ABC):
    """Abstract payment gateway."""

    @abstractmethod
    async def charge(self, amount: Decimal, idempotency_key: str) -> GatewayResult:
        """
        Charge `amount`.

        Calling again with the same idempotency key returns the original
        answer without charging again.

        Raises:
            GatewayUnavailableError: No answer was obtained.
        """
