"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend.

Only used when RECEIPT_DELIVERY=celery; otherwise receipts are sent from
the API process.
"""

from celery import Celery

from food_ordering.core.config import get_settings

REDIS_URL = get_settings().redis_url

# Create Celery app
celery_app = Celery(
    'food_ordering_worker',
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=['food_ordering.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result settings
    result_expires=3600,

    # A receipt is resent if the worker dies mid-send
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    broker_connection_retry_on_startup=True,
)


if __name__ == '__main__':
    celery_app.start()
