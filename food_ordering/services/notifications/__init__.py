"""
Notification Service Factory

Returns Mock or Real notification service based on ENV_MODE.
"""

import logging
from functools import lru_cache

from food_ordering.core.config import get_settings
from food_ordering.services.notifications.base import (
    BaseNotificationService,
    EmailMessage,
    NotificationResult,
)
from food_ordering.services.notifications.mock import MockNotificationService
from food_ordering.services.notifications.real import RealNotificationService

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_service() -> BaseNotificationService:
    """Get the configured notification service."""
    settings = get_settings()

    if not settings.use_real_services:
        logger.info("Notification Service: Using MockNotificationService (development mode)")
        return MockNotificationService(failure_rate=0.05, simulate_latency=True)
    else:
        logger.info(f"Notification Service: Using RealNotificationService ({settings.env_mode.value} mode)")
        return RealNotificationService()


def reset_notification_service() -> None:
    """Clear the cached service instance."""
    get_notification_service.cache_clear()


__all__ = [
    "get_notification_service",
    "reset_notification_service",
    "BaseNotificationService",
    "EmailMessage",
    "NotificationResult",
    "MockNotificationService",
    "RealNotificationService",
]
