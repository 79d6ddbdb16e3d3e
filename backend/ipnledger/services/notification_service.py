"""Owner notifications

Owner-facing notices are pushed as "owner_notification" jobs onto the
notifications lane; the platform's in-app notification consumer reads them.
Sale notifications additionally go out by email when the owner enabled them.
"""
import logging
from typing import Any, Dict, Optional

from ipnledger.core.config import settings
from ipnledger.db.task_queue import enqueue_task
from ipnledger.models import Product

logger = logging.getLogger(__name__)

KIND_TEST_TRANSACTION = "test_transaction"
KIND_MISSING_PRICING = "missing_pricing"
KIND_MISSING_DELIVERY = "delivery_method_missing"
KIND_DELIVERY_REFUSED = "delivery_refused"
KIND_LOW_STOCK = "low_stock"
KIND_OUT_OF_STOCK = "out_of_stock"
KIND_SALE = "sale"
KIND_POST_NOTIFICATION_FAILED = "post_notification_failed"


def notify_owner(
    product: Product,
    kind: str,
    message: str,
    data: Optional[Dict[str, Any]] = None
) -> Optional[str]:
    """Queue an in-app notification for the product owner.

    Returns:
        task id of the queued notification, or None when queueing failed
    """
    payload = {
        "user_id": product.user_id,
        "product_id": product.id,
        "kind": kind,
        "message": message,
        "data": data or {},
    }
    try:
        return enqueue_task("owner_notification", payload, queue=settings.NOTIFICATION_QUEUE)
    except Exception as e:
        # Notification loss must not undo ledger work
        logger.error(f"Failed to queue {kind} notification for product {product.id}: {e}", exc_info=True)
        return None
