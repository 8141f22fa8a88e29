"""
Notification Service Abstract Base Class

Defines the interface for sending e-mail notifications (payment receipts).
Supports both Mock (development) and Real (production) implementations.

Delivery is best-effort: implementations report failures through
``NotificationResult`` and never raise for a provider error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


@dataclass
class EmailMessage:
    """A rendered e-mail ready for delivery."""
    subject: str
    body_html: str
    body_text: Optional[str] = None


class BaseNotificationService(ABC):
    """Abstract base class for notification services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
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

    async def send_receipt(self, to_email: str, message: EmailMessage) -> NotificationResult:
        """Send a rendered payment receipt."""
        return await self.send_email(
            to_email=to_email,
            subject=message.subject,
            body_html=message.body_html,
            body_text=message.body_text,
        )

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass
