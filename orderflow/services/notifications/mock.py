"""
Mock Notification Service

Simulates SMS, email and staff-board delivery for development and tests.
No actual messages are sent - they are logged and kept in ``delivered``.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import random
import uuid
import logging
from typing import Optional

from orderflow.services.notifications.base import (
    BaseNotificationService,
    Notification,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class MockNotificationService(BaseNotificationService):
    """Mock notification service for development."""

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.delivered: list[Notification] = []
        logger.info(f"MockNotificationService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    def _failure(self, channel: str, target: str) -> NotificationResult:
        logger.warning(f"Mock {channel} failed (simulated) to {target}")
        return NotificationResult(
            success=False,
            error_message=f"Simulated {channel} failure",
            provider="mock"
        )

    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Simulate sending SMS."""
        await self._simulate_latency()

        if self._should_fail():
            return self._failure("SMS", to_phone)

        message_id = f"sms_mock_{uuid.uuid4().hex[:12]}"
        logger.info(f"Mock SMS sent to {to_phone}: {message[:50]}... (ID: {message_id})")

        return NotificationResult(
            success=True,
            message_id=message_id,
            provider="mock"
        )

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Simulate sending email."""
        await self._simulate_latency()

        if self._should_fail():
            return self._failure("email", to_email)

        message_id = f"email_mock_{uuid.uuid4().hex[:12]}"
        logger.info(f"Mock email sent to {to_email}: {subject} (ID: {message_id})")

        return NotificationResult(
            success=True,
            message_id=message_id,
            provider="mock"
        )

    async def deliver(self, notification: Notification) -> NotificationResult:
        """Record the notification as delivered to its recipient's inbox."""
        await self._simulate_latency()

        if self._should_fail():
            return self._failure("delivery", notification.recipient)

        self.delivered.append(notification)
        message_id = f"ntf_mock_{uuid.uuid4().hex[:12]}"
        logger.info(
            f"Mock notification {notification.type.value} -> "
            f"{notification.audience.value}:{notification.recipient} "
            f"(order #{notification.order_id})"
        )

        return NotificationResult(
            success=True,
            message_id=message_id,
            provider="mock"
        )

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True
