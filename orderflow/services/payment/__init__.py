"""
Payment Service Factory

Provides a single entry point for obtaining a payment service instance.

Usage:
    from orderflow.services.payment import get_payment_service

    # Returns MockPaymentService or StripePaymentService based on ENV_MODE
    payment_service = get_payment_service()
    result = await payment_service.check_settlement("pi_123")

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.payment.base import (
    BasePaymentService,
    PaymentEvent,
    RefundResult,
    SettlementResult,
)
from orderflow.services.payment.mock import MockPaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment service instance.

    The instance is cached so every caller in the process shares it.

    Raises:
        ValueError: If production mode but Stripe key not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            failure_rate=0.05,
            min_latency=0.05,
            max_latency=0.2,
        )

    # Imported lazily so development installs never touch the Stripe SDK
    from orderflow.services.payment.stripe import StripePaymentService

    logger.info(
        f"Payment Service: Using StripePaymentService "
        f"({settings.env_mode.value} mode)"
    )
    return StripePaymentService()


def reset_payment_service() -> None:
    """
    Clear the cached payment service instance.

    The next call to get_payment_service() will create a new instance.
    """
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "BasePaymentService",
    "PaymentEvent",
    "RefundResult",
    "SettlementResult",
    "MockPaymentService",
]
