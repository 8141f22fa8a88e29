"""
Celery Tasks
Background tasks for sending payment receipts off the request path.
"""

import asyncio
import logging
import time

from food_ordering.celery_worker import celery_app
from food_ordering.services.notifications import get_notification_service
from food_ordering.services.receipts import ReceiptPayload, deliver_receipt

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    retry_backoff=True,
)
def send_payment_receipt(self, payload_data: dict) -> dict:
    """
    Render and e-mail one payment receipt.

    Args:
        payload_data: ``ReceiptPayload.to_dict()`` collected after the
            settlement commit

    Returns:
        dict: Delivery result
    """
    task_id = self.request.id
    payload = ReceiptPayload.from_dict(payload_data)

    logger.info(f"Task {task_id}: sending {payload.status} receipt for order {payload.order_id}")
    start_time = time.time()

    result = asyncio.run(deliver_receipt(payload, get_notification_service()))
    elapsed = round(time.time() - start_time, 3)

    if not result.success:
        logger.warning(
            f"Task {task_id}: receipt for order {payload.order_id} failed after {elapsed}s - {result.error_message}"
        )
        raise self.retry()

    logger.info(f"Task {task_id}: receipt for order {payload.order_id} sent in {elapsed}s")
    return {
        'success': True,
        'order_id': payload.order_id,
        'message_id': result.message_id,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
    }
