"""
Mock Payment Service Implementation

Simulates Stripe-like settlement checks and refunds without making real API
calls. Used in development mode (ENV_MODE=development) and in tests.

Behavior:
    - Simulates response times (configurable, 0 in tests)
    - Randomly fails ~failure_rate of calls (provider unavailable)
    - Treats every ``pi_`` intent as settled unless marked pending
    - Generates Stripe-like refund IDs (re_xxx)

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import json
import random
import uuid
import logging
from typing import Optional

from orderflow.models import PaymentStatus
from orderflow.services.payment.base import (
    BasePaymentService,
    RefundResult,
    SettlementResult,
)

logger = logging.getLogger(__name__)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment service.

    Attributes:
        failure_rate: Probability of a simulated provider outage (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        settlement_checks: Intent ids checked, in call order
        refunds: Intent ids refunded, in call order

    Example:
        >>> service = MockPaymentService(failure_rate=0.0)
        >>> result = await service.check_settlement("pi_mock_123")
        >>> result.payment_status
        <PaymentStatus.PAID: 'paid'>
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.settlement_checks: list[str] = []
        self.refunds: list[str] = []
        self._pending_intents: set[str] = set()

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    def mark_pending(self, payment_intent_id: str) -> None:
        """Make ``payment_intent_id`` report as not yet settled."""
        self._pending_intents.add(payment_intent_id)

    def _generate_refund_id(self) -> str:
        """Generate a Stripe-like refund ID."""
        return f"re_mock_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> None:
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def check_settlement(self, payment_intent_id: str) -> SettlementResult:
        await self._simulate_latency()
        self.settlement_checks.append(payment_intent_id)

        if self._should_fail():
            logger.warning(f"Mock: Settlement check failed (simulated) for {payment_intent_id}")
            return SettlementResult(
                success=False,
                payment_intent_id=payment_intent_id,
                error_message="Simulated provider outage",
            )

        if not payment_intent_id.startswith("pi_"):
            return SettlementResult(
                success=True,
                payment_status=PaymentStatus.FAILED,
                payment_intent_id=payment_intent_id,
                error_message="Unknown payment intent",
            )

        status = (
            PaymentStatus.PENDING
            if payment_intent_id in self._pending_intents
            else PaymentStatus.PAID
        )
        logger.debug(f"Mock: {payment_intent_id} settlement -> {status.value}")

        return SettlementResult(
            success=True,
            payment_status=status,
            payment_intent_id=payment_intent_id,
        )

    async def refund_payment(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Simulate refunding a payment."""
        await self._simulate_latency()

        if self._should_fail():
            logger.warning(f"Mock: Refund failed (simulated) for {payment_intent_id}")
            return RefundResult(
                success=False,
                status="failed",
                error_message="Simulated provider outage",
            )

        if not payment_intent_id.startswith("pi_"):
            return RefundResult(
                success=False,
                error_message="Invalid payment intent ID",
            )

        self.refunds.append(payment_intent_id)
        refund_id = self._generate_refund_id()

        logger.info(f"Mock: Refund processed - {refund_id} ({reason or 'no reason'})")

        return RefundResult(
            success=True,
            refund_id=refund_id,
            status="succeeded",
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Simulate webhook verification.

        In mock mode, always returns the parsed payload without
        cryptographic verification.
        """
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Mock: Invalid webhook payload")
            return None

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        return True
