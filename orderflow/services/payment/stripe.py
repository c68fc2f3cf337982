"""
Stripe Payment Service Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification

Security Notes:
    - Always verify webhook signatures
    - Use idempotency keys for refunds (effects are retried)

Author: Khalil Bannouri
Version: 4.0.0
"""

import json
import logging
from typing import Optional

import stripe

from orderflow.core.config import get_settings
from orderflow.models import PaymentStatus
from orderflow.services.payment.base import (
    BasePaymentService,
    RefundResult,
    SettlementResult,
)

logger = logging.getLogger(__name__)


# PaymentIntent.status -> mirrored payment status
INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.PAID,
    "processing": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "canceled": PaymentStatus.FAILED,
}


class StripePaymentService(BasePaymentService):
    """
    Production Stripe payment service implementation.

    Configuration:
        Requires STRIPE_SECRET_KEY environment variable.
        Optionally uses STRIPE_WEBHOOK_SECRET for webhook verification.

    Example:
        >>> service = StripePaymentService()
        >>> result = await service.check_settlement("pi_3N...")
    """

    def __init__(self):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"  # Pin API version for stability

        self._webhook_secret = settings.stripe_webhook_secret

        logger.info(
            f"StripePaymentService initialized "
            f"(api_version={stripe.api_version})"
        )

    @property
    def provider_name(self) -> str:
        return "stripe"

    def _convert_from_cents(self, cents: int) -> float:
        """Stripe reports amounts in the smallest currency unit."""
        return cents / 100.0

    async def check_settlement(self, payment_intent_id: str) -> SettlementResult:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)

        except stripe.InvalidRequestError as e:
            # Unknown intent: nothing will ever settle it
            logger.error(f"Stripe: Invalid settlement check for {payment_intent_id} - {e}")
            return SettlementResult(
                success=True,
                payment_status=PaymentStatus.FAILED,
                payment_intent_id=payment_intent_id,
                error_message=str(e),
            )

        except stripe.AuthenticationError as e:
            logger.critical(f"Stripe: Authentication failed - {e}")
            return SettlementResult(
                success=False,
                payment_intent_id=payment_intent_id,
                error_message="Payment service configuration error",
            )

        except stripe.StripeError as e:
            logger.error(f"Stripe: Settlement check failed - {e}")
            return SettlementResult(
                success=False,
                payment_intent_id=payment_intent_id,
                error_message=str(e),
            )

        status = INTENT_STATUS_MAP.get(intent.status, PaymentStatus.PENDING)
        logger.info(f"Stripe: {intent.id} status={intent.status} -> {status.value}")

        return SettlementResult(
            success=True,
            payment_status=status,
            payment_intent_id=intent.id,
            amount=self._convert_from_cents(intent.amount_received or intent.amount),
        )

    async def refund_payment(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a payment in full through Stripe.

        Args:
            payment_intent_id: The PaymentIntent to refund
            reason: Reason code (duplicate, fraudulent, requested_by_customer)
        """
        try:
            refund_params = {
                "payment_intent": payment_intent_id,
            }

            if reason:
                refund_params["reason"] = reason

            # Retried effects must not refund twice
            refund = stripe.Refund.create(
                **refund_params,
                idempotency_key=f"refund-{payment_intent_id}",
            )

            logger.info(
                f"Stripe: Refund processed - {refund.id} - "
                f"status={refund.status}"
            )

            return RefundResult(
                success=True,
                refund_id=refund.id,
                amount=self._convert_from_cents(refund.amount),
                status=refund.status,
            )

        except stripe.StripeError as e:
            logger.error(f"Stripe: Refund failed - {e}")

            return RefundResult(
                success=False,
                status="failed",
                error_message=str(e),
            )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Verify and parse a Stripe webhook event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            Parsed event object if valid, None if verification fails
        """
        if not self._webhook_secret:
            logger.warning(
                "Stripe: Webhook secret not configured, skipping verification"
            )
            try:
                return json.loads(payload)
            except json.JSONDecodeError:
                return None

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
            )

            logger.debug(f"Stripe: Webhook verified - {event['type']}")
            return event

        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe: Webhook signature invalid - {e}")
            return None

        except ValueError as e:
            logger.warning(f"Stripe: Webhook payload invalid - {e}")
            return None

    async def health_check(self) -> bool:
        """Make a lightweight API call to verify credentials and connectivity."""
        try:
            stripe.Account.retrieve()
            logger.debug("Stripe: Health check passed")
            return True

        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
