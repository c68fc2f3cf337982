"""
Real Notification Service

Production implementation using:
- Twilio for customer SMS
- SendGrid for customer email and staff distribution lists

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Optional

from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from twilio.rest import Client as TwilioClient
from twilio.base.exceptions import TwilioException

from orderflow.core.config import get_settings
from orderflow.services.notifications.base import (
    Audience,
    BaseNotificationService,
    Notification,
    NotificationResult,
)

logger = logging.getLogger(__name__)
settings = get_settings()


class RealNotificationService(BaseNotificationService):
    """Production notification service using Twilio and SendGrid."""

    def __init__(self):
        # Initialize Twilio
        if settings.twilio_account_sid and settings.twilio_auth_token:
            self.twilio_client = TwilioClient(
                settings.twilio_account_sid,
                settings.twilio_auth_token
            )
            self.twilio_from_number = settings.twilio_phone_number
        else:
            self.twilio_client = None
            logger.warning("Twilio credentials not configured")

        # Initialize SendGrid
        if settings.sendgrid_api_key:
            self.sendgrid_client = SendGridAPIClient(settings.sendgrid_api_key)
            self.sendgrid_from_email = settings.sendgrid_from_email
        else:
            self.sendgrid_client = None
            logger.warning("SendGrid credentials not configured")

        logger.info("RealNotificationService initialized")

    @property
    def provider_name(self) -> str:
        return "real"

    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Send SMS via Twilio."""
        if not self.twilio_client:
            return NotificationResult(
                success=False,
                error_message="Twilio not configured",
                provider="twilio"
            )

        try:
            result = self.twilio_client.messages.create(
                body=message,
                from_=self.twilio_from_number,
                to=to_phone
            )

            logger.info(f"SMS sent to {to_phone}: {result.sid}")

            return NotificationResult(
                success=True,
                message_id=result.sid,
                provider="twilio"
            )

        except TwilioException as e:
            logger.error(f"Twilio error: {e}")
            return NotificationResult(
                success=False,
                error_message=str(e),
                provider="twilio"
            )

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send email via SendGrid."""
        if not self.sendgrid_client:
            return NotificationResult(
                success=False,
                error_message="SendGrid not configured",
                provider="sendgrid"
            )

        try:
            message = Mail(
                from_email=self.sendgrid_from_email,
                to_emails=to_email,
                subject=subject,
                html_content=body_html,
                plain_text_content=body_text
            )

            response = self.sendgrid_client.send(message)

            logger.info(f"Email sent to {to_email}: {response.status_code}")

            return NotificationResult(
                success=response.status_code in [200, 201, 202],
                message_id=response.headers.get('X-Message-Id'),
                provider="sendgrid"
            )

        except HTTPError as e:
            logger.error(f"SendGrid error: {e}")
            return NotificationResult(
                success=False,
                error_message=str(e),
                provider="sendgrid"
            )

    def _staff_address(self, notification: Notification) -> str:
        if notification.audience == Audience.KITCHEN_STAFF:
            return settings.kitchen_staff_email
        if notification.audience == Audience.SERVICE_STAFF:
            return settings.service_staff_email
        # Individual staff: their pool's list, addressed by id in the subject
        role = notification.data.get("role")
        return settings.kitchen_staff_email if role == "kitchen" else settings.service_staff_email

    async def deliver(self, notification: Notification) -> NotificationResult:
        """
        Deliver over SMS and/or email.

        Customers get an SMS when a phone number is known and an email when
        an address is known; staff notifications go to the staff lists.
        """
        subject = f"{notification.title} - {settings.restaurant_name}"
        body_html = (
            f'<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
            f"<h2>{notification.title}</h2><p>{notification.message}</p></div>"
        )

        if notification.audience != Audience.CUSTOMER:
            if notification.audience == Audience.STAFF_MEMBER:
                subject = f"[{notification.recipient}] {subject}"
            return await self.send_email(
                to_email=self._staff_address(notification),
                subject=subject,
                body_html=body_html,
                body_text=notification.message,
            )

        results = []
        if notification.phone:
            results.append(await self.send_sms(notification.phone, notification.message))
        if notification.email:
            results.append(await self.send_email(
                to_email=notification.email,
                subject=subject,
                body_html=body_html,
                body_text=notification.message,
            ))

        if not results:
            # Nothing to deliver to; the dashboards still show the status
            logger.info(f"No contact details for customer {notification.recipient}, skipping")
            return NotificationResult(success=True, provider="real")

        delivered = [r for r in results if r.success]
        return NotificationResult(
            success=bool(delivered),
            message_id=delivered[0].message_id if delivered else None,
            error_message=None if delivered else "; ".join(
                r.error_message or "unknown error" for r in results
            ),
            provider="real"
        )

    async def health_check(self) -> bool:
        """Both channels configured."""
        return self.twilio_client is not None and self.sendgrid_client is not None
