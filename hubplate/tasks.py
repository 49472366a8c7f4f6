"""
Celery Tasks
Background delivery of the "became paid" notification.

Loyalty awards and customer linkage live in other services. When an order
enters PAID the state machine calls enqueue_paid_notification after the
commit, and a worker forwards the order snapshot to PAID_HOOK_URL with
retries, so a slow or failing collaborator never holds up a webhook.
"""

import logging
import time
from datetime import datetime
from typing import Any, Optional

import httpx

from hubplate.celery_worker import celery_app
from hubplate.core.config import get_settings
from hubplate.models import Order

logger = logging.getLogger(__name__)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def order_snapshot(order: Order) -> dict[str, Any]:
    """JSON-serializable view of an order for the paid hook."""
    return {
        "order_id": order.id,
        "location_id": order.location_id,
        "order_type": order.order_type.value,
        "payment_status": order.payment_status.value,
        "fulfillment_status": order.fulfillment_status.value,
        "payment_intent_id": order.payment_intent_id,
        "subtotal": str(order.subtotal),
        "tax": str(order.tax),
        "tip": str(order.tip),
        "delivery_fee": str(order.delivery_fee),
        "total": str(order.total),
        "paid_at": _isoformat(order.paid_at),
    }


@celery_app.task(
    bind=True,
    max_retries=5,
    default_retry_delay=5,
    autoretry_for=(httpx.HTTPError,),
    retry_backoff=True,
)
def notify_order_paid(self, snapshot: dict) -> dict:
    """
    POST the paid order snapshot to the configured collaborator.

    Args:
        snapshot: Output of order_snapshot()

    Returns:
        dict: Result of the delivery attempt
    """
    settings = get_settings()
    task_id = self.request.id
    order_id = snapshot.get("order_id", "unknown")

    if not settings.paid_hook_url:
        logger.debug(f"Task {task_id}: no PAID_HOOK_URL, skipping order {order_id}")
        return {"delivered": False, "order_id": order_id, "reason": "no hook configured"}

    start_time = time.time()
    response = httpx.post(
        settings.paid_hook_url,
        json=snapshot,
        timeout=settings.paid_hook_timeout,
    )
    response.raise_for_status()

    elapsed = round(time.time() - start_time, 3)
    logger.info(f"Task {task_id}: paid hook for order {order_id} delivered in {elapsed}s")

    return {
        "delivered": True,
        "order_id": order_id,
        "status_code": response.status_code,
        "processing_time_seconds": elapsed,
    }


def enqueue_paid_notification(order: Order) -> None:
    """Paid listener: hand the order to a worker."""
    result = notify_order_paid.delay(order_snapshot(order))
    logger.info(f"Order {order.id}: paid notification queued (task {result.id})")
