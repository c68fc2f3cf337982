"""
Notification Service Factory

Returns Mock or Real notification service based on ENV_MODE.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.notifications.base import (
    Audience,
    BaseNotificationService,
    Notification,
    NotificationResult,
    NotificationType,
)
from orderflow.services.notifications.mock import MockNotificationService

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_service() -> BaseNotificationService:
    """Get the configured notification service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Notification Service: Using MockNotificationService (development mode)")
        return MockNotificationService(failure_rate=0.05, max_latency=0.1)

    # Imported lazily so development installs never touch Twilio/SendGrid
    from orderflow.services.notifications.real import RealNotificationService

    logger.info(f"Notification Service: Using RealNotificationService ({settings.env_mode.value} mode)")
    return RealNotificationService()


def reset_notification_service() -> None:
    """Clear the cached service instance."""
    get_notification_service.cache_clear()


__all__ = [
    "get_notification_service",
    "reset_notification_service",
    "Audience",
    "BaseNotificationService",
    "Notification",
    "NotificationResult",
    "NotificationType",
    "MockNotificationService",
]
