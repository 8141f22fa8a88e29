"""
Mock Notification Service

Simulates e-mail sending for development and tests.
No actual messages are sent - just logged and kept in ``outbox``.
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from food_ordering.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class MockNotificationService(BaseNotificationService):
    """Mock notification service for development."""

    def __init__(self, failure_rate: float = 0.0, simulate_latency: bool = False):
        self.failure_rate = failure_rate
        self.simulate_latency = simulate_latency
        self.outbox: list[dict] = []
        logger.info(f"MockNotificationService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        if self.simulate_latency:
            await asyncio.sleep(random.uniform(0.1, 0.3))

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

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
            logger.warning(f"Mock email failed (simulated) to {to_email}")
            return NotificationResult(
                success=False,
                error_message="Simulated email failure",
                provider="mock"
            )

        message_id = f"email_mock_{uuid.uuid4().hex[:12]}"
        self.outbox.append({
            "message_id": message_id,
            "to": to_email,
            "subject": subject,
            "html": body_html,
            "text": body_text,
        })
        logger.info(f"Mock email sent to {to_email}: {subject} (ID: {message_id})")

        return NotificationResult(
            success=True,
            message_id=message_id,
            provider="mock"
        )

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True
