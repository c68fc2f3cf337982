"""
Payment Service Abstract Base Class

Defines the interface contract the effect dispatcher uses to keep an
order's payment status in sync with the payment subsystem. The order
lifecycle never computes amounts; it only asks whether a payment has
settled, requests refunds, and consumes provider webhooks.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - Facilitates testing with mock implementations

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from orderflow.models import PaymentStatus

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    """
    Standardized answer to "has this payment settled?".

    Attributes:
        success: Whether the provider could be asked at all
        payment_status: Settlement state to mirror onto the order
        payment_intent_id: Provider reference that was checked
        amount: Settled amount in dollars, if known
        error_message: Error description if the check failed
    """
    success: bool
    payment_status: Optional[PaymentStatus] = None
    payment_intent_id: Optional[str] = None
    amount: Optional[float] = None
    error_message: Optional[str] = None


@dataclass
class RefundResult:
    """
    Standardized result from refund processing.

    Attributes:
        success: Whether the refund request was accepted
        refund_id: Unique identifier for the refund
        amount: Amount refunded in dollars
        status: Refund status (pending, succeeded, failed)
        error_message: Error description if refund failed
    """
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[float] = None
    status: str = "pending"
    error_message: Optional[str] = None


@dataclass
class PaymentEvent:
    """A payment-side change reported by the provider webhook."""
    order_id: str
    payment_status: PaymentStatus
    payment_intent_id: Optional[str] = None


# Provider webhook event type -> mirrored payment status
WEBHOOK_EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.PAID,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.FAILED,
    "charge.refunded": PaymentStatus.REFUNDED,
}


class BasePaymentService(ABC):
    """
    Abstract base class for payment services.

    All payment service implementations (Mock, Stripe) inherit from this
    class and implement all abstract methods.

    Example:
        >>> service = get_payment_service()  # Returns Mock or Stripe
        >>> result = await service.check_settlement("pi_123")
        >>> if result.success:
        ...     print(result.payment_status)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the payment provider.

        Returns:
            str: Provider name (e.g., "mock", "stripe")
        """
        pass

    @abstractmethod
    async def check_settlement(self, payment_intent_id: str) -> SettlementResult:
        """
        Ask the provider whether a payment has settled.

        Args:
            payment_intent_id: The payment to check

        Returns:
            SettlementResult: ``payment_status`` is PAID, PENDING or FAILED
        """
        pass

    @abstractmethod
    async def refund_payment(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a previous payment in full.

        Args:
            payment_intent_id: The payment to refund
            reason: Reason for the refund

        Returns:
            RefundResult: Standardized refund result
        """
        pass

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Verify and parse a webhook from the payment provider.

        Args:
            payload: Raw request body bytes
            signature: Signature header from the request

        Returns:
            dict: Parsed webhook event if valid, None if invalid
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the payment service.

        Returns:
            bool: True if service is reachable and operational
        """
        pass

    def parse_payment_event(self, event: dict) -> Optional[PaymentEvent]:
        """
        Map a verified webhook event onto an order payment change.

        Events that do not concern payment settlement, or that carry no
        ``order_id`` in their metadata, are ignored.
        """
        status = WEBHOOK_EVENT_STATUS.get(event.get("type", ""))
        if status is None:
            return None

        obj = (event.get("data") or {}).get("object") or {}
        order_id = (obj.get("metadata") or {}).get("order_id")
        if not order_id:
            logger.warning(f"Payment webhook {event.get('type')} without order_id metadata")
            return None

        intent_id = obj.get("payment_intent") if event["type"].startswith("charge.") else obj.get("id")
        return PaymentEvent(
            order_id=order_id,
            payment_status=status,
            payment_intent_id=intent_id,
        )
