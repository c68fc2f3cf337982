"""
Notification Service Abstract Base Class

Defines the hand-off point between the effect dispatcher and whatever
actually delivers messages. The dispatcher builds structured
``Notification`` payloads; delivery services render and transport them.

Author: Khalil Bannouri
Version: 4.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Audience(str, Enum):
    """Who a notification is addressed to."""
    CUSTOMER = "customer"
    STAFF_MEMBER = "staff_member"
    KITCHEN_STAFF = "kitchen_staff"
    SERVICE_STAFF = "service_staff"


class NotificationType(str, Enum):
    ORDER_PREPARING = "ORDER_PREPARING"
    ORDER_READY = "ORDER_READY"
    ORDER_SERVED = "ORDER_SERVED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    CLAIM_RELEASED = "CLAIM_RELEASED"
    CLAIM_ASSIGNED = "CLAIM_ASSIGNED"


@dataclass
class Notification:
    """
    Structured notification payload.

    Attributes:
        recipient: Identity of the recipient, or the pool name for staff pools
        audience: Kind of recipient
        title: Short headline
        message: Human-readable body
        type: Machine-readable notification type
        order_id: Related order
        data: Extra structured data (status, version, holder ids)
        email: Contact address when known (customers)
        phone: Contact number when known (customers)
    """
    recipient: str
    audience: Audience
    title: str
    message: str
    type: NotificationType
    order_id: str
    data: dict[str, Any] = field(default_factory=dict)
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotificationService(ABC):
    """Abstract base class for notification services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Send an SMS message."""
        pass

    @abstractmethod
    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send an email."""
        pass

    @abstractmethod
    async def deliver(self, notification: Notification) -> NotificationResult:
        """Route a structured notification to the right channel(s)."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass
