"""
Simulated Payment Gateway

Stands in for a real provider: waits a random 0.5-2s, then approves
95% of charges. Every knob is configurable so tests can run with zero
latency and a forced outcome.
"""

import asyncio
import random
import string
import time
from decimal import Decimal
from typing import Optional

import structlog

from vaultpay.config import PaymentSettings
from vaultpay.services.gateway.interface import (
    GatewayResult,
    GatewayUnavailableError,
    PaymentGatewayInterface,
)


logger = structlog.get_logger(__name__)

_REF_ALPHABET = string.ascii_lowercase + string.digits


class SimulatedPaymentGateway(PaymentGatewayInterface):
    """
    In-process gateway simulator.

    Args:
        min_latency / max_latency: Bounds of the simulated round trip, seconds.
        success_rate: Probability a charge is approved.
        rng: Random source; pass a seeded random.Random for reproducibility.
        force_outcome: If set, every new charge is approved (True) or
            declined (False) regardless of success_rate.
        unavailable_for: The first N calls raise GatewayUnavailableError,
            to simulate an outage.
    """

    def __init__(
        self,
        min_latency: float = 0.5,
        max_latency: float = 2.0,
        success_rate: float = 0.95,
        rng: Optional[random.Random] = None,
        force_outcome: Optional[bool] = None,
        unavailable_for: int = 0,
    ):
        if max_latency < min_latency:
            raise ValueError("max_latency cannot be below min_latency")
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.success_rate = success_rate
        self.force_outcome = force_outcome
        self.unavailable_for = unavailable_for
        self._rng = rng or random.Random()
        self._answers: dict[str, GatewayResult] = {}
        self.calls = 0
        self.charges: list[tuple[str, Decimal]] = []

    @classmethod
    def from_settings(cls, settings: PaymentSettings) -> "SimulatedPaymentGateway":
        return cls(
            min_latency=settings.gateway_min_latency,
            max_latency=settings.gateway_max_latency,
            success_rate=settings.gateway_success_rate,
        )

    def _new_ref(self) -> str:
        suffix = "".join(self._rng.choices(_REF_ALPHABET, k=6))
        return f"GW-{int(time.time() * 1000)}-{suffix}"

    async def charge(self, amount: Decimal, idempotency_key: str) -> GatewayResult:
        self.calls += 1

        if self.max_latency > 0:
            await asyncio.sleep(self._rng.uniform(self.min_latency, self.max_latency))

        if self.unavailable_for > 0:
            self.unavailable_for -= 1
            logger.warning("gateway_unavailable", idempotency_key=idempotency_key)
            raise GatewayUnavailableError("Simulated gateway outage")

        answer = self._answers.get(idempotency_key)
        if answer is not None:
            logger.info("gateway_replayed_answer", idempotency_key=idempotency_key)
            return answer

        if self.force_outcome is not None:
            success = self.force_outcome
        else:
            success = self._rng.random() < self.success_rate

        answer = GatewayResult(
            success=success,
            gateway_ref=self._new_ref(),
            status="completed" if success else "failed",
            raw={
                "amount": str(amount),
                "reason": None if success else "declined_by_issuer",
            },
        )
        self._answers[idempotency_key] = answer
        if success:
            self.charges.append((idempotency_key, amount))

        logger.info(
            "gateway_charge",
            idempotency_key=idempotency_key,
            amount=str(amount),
            success=success,
            gateway_ref=answer.gateway_ref,
        )
        return answer
