"""
Real Notification Service

Production implementation using SendGrid for e-mail.
"""

import asyncio
import logging
from typing import Optional

from python_http_client.exceptions import HTTPError as SendGridHTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Category, From, Mail

from food_ordering.core.config import get_settings
from food_ordering.services.notifications.base import (
    BaseNotificationService,
    EmailMessage,
    NotificationResult,
)

logger = logging.getLogger(__name__)
settings = get_settings()


class RealNotificationService(BaseNotificationService):
    """Production notification service using SendGrid."""

    def __init__(self):
        if settings.sendgrid_api_key:
            self.sendgrid_client = SendGridAPIClient(settings.sendgrid_api_key)
            self.sendgrid_from = From(settings.sendgrid_from_email, settings.restaurant_name)
        else:
            self.sendgrid_client = None
            logger.warning("SendGrid credentials not configured")

        logger.info("RealNotificationService initialized")

    @property
    def provider_name(self) -> str:
        return "sendgrid"

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
        category: Optional[str] = None,
    ) -> NotificationResult:
        """Send email via SendGrid."""
        if not self.sendgrid_client:
            return NotificationResult(
                success=False,
                error_message="SendGrid not configured",
                provider="sendgrid"
            )

        message = Mail(
            from_email=self.sendgrid_from,
            to_emails=to_email,
            subject=subject,
            html_content=body_html,
            plain_text_content=body_text
        )
        if category:
            message.category = Category(category)

        try:
            # the SendGrid client is synchronous
            response = await asyncio.to_thread(self.sendgrid_client.send, message)
        except (SendGridHTTPError, OSError) as e:
            logger.error(f"SendGrid error sending to {to_email}: {e}")
            return NotificationResult(
                success=False,
                error_message=str(e),
                provider="sendgrid"
            )

        if response.status_code not in (200, 201, 202):
            logger.error(f"SendGrid rejected e-mail to {to_email}: HTTP {response.status_code}")
            return NotificationResult(
                success=False,
                error_message=f"SendGrid returned HTTP {response.status_code}",
                provider="sendgrid"
            )

        logger.info(f"Email sent to {to_email}: {response.status_code}")

        return NotificationResult(
            success=True,
            message_id=response.headers.get("X-Message-Id"),
            provider="sendgrid"
        )

    async def health_check(self) -> bool:
        """SendGrid has no cheap ping; configured credentials count as healthy."""
        return self.sendgrid_client is not None

    async def send_receipt(self, to_email: str, message: EmailMessage) -> NotificationResult:
        """Send a rendered receipt under the ``payment-receipt`` category."""
        return await self.send_email(
            to_email=to_email,
            subject=message.subject,
            body_html=message.body_html,
            body_text=message.body_text,
            category="payment-receipt",
        )
