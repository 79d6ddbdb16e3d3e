"""Webhook intake: verify, store the raw log, queue processing"""
import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe
from sqlalchemy.orm import Session

from ipnledger.core.config import settings
from ipnledger.db.task_queue import enqueue_task
from ipnledger.models import IpnRawLog
from ipnledger.services.paypal_normalizer import custom_data
from ipnledger.utils.payloads import dig

logger = logging.getLogger(__name__)

# Checkout metadata keys copied from Stripe objects into the log params
STRIPE_METADATA_KEYS = (
    "product_id", "product_pricing_id", "kti", "coupon",
    "marketing_consent", "cross_sell_pricing_id",
)

# Request headers never forwarded in post notifications
DROPPED_HEADERS = {"authorization", "cookie", "stripe-signature"}


def _decode(payload: bytes) -> Dict[str, Any]:
    """Parse a JSON object body, raising ValueError otherwise"""
    try:
        event = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid JSON payload: {e}")
    if not isinstance(event, dict):
        raise ValueError("Invalid JSON payload: expected an object")
    return event


def stripe_params(event: Dict[str, Any]) -> Dict[str, Any]:
    """Checkout metadata for a Stripe event.

    Read from data.object.metadata, falling back to the first invoice line
    (subscription invoices carry it there) and the subscription details.
    """
    obj = dig(event, "data", "object", default={})
    candidates = [
        obj.get("metadata"),
        dig(obj, "lines", "data", 0, "metadata"),
        dig(obj, "subscription_details", "metadata"),
        dig(obj, "parent", "subscription_details", "metadata"),
    ]
    params: Dict[str, Any] = {}
    for metadata in candidates:
        if not isinstance(metadata, dict):
            continue
        for key in STRIPE_METADATA_KEYS:
            if key not in params and metadata.get(key) not in (None, ""):
                params[key] = metadata[key]

    if event.get("account"):
        params["is_stripe_connect"] = True
        params["stripe_account"] = event["account"]
    return params


def paypal_params(
    event: Dict[str, Any],
    query: Mapping[str, Any],
    headers: Mapping[str, str]
) -> Dict[str, Any]:
    """Checkout metadata for a PayPal webhook.

    The product and pricing ids come from the webhook URL query string; the
    custom_id JSON set at checkout fills whatever the query lacks.
    """
    resource = event.get("resource") or {}
    custom = custom_data(
        resource.get("custom_id")
        or dig(resource, "purchase_units", 0, "custom_id")
        or resource.get("custom")
    )

    params: Dict[str, Any] = {}
    for key in ("product_id", "product_pricing_id", "sandbox_mode"):
        value = query.get(key)
        if value in (None, ""):
            value = custom.get(key)
        if value not in (None, ""):
            params[key] = value
    for key in ("kti", "coupon", "cross_sell_pricing_id"):
        if custom.get(key) not in (None, ""):
            params[key] = custom[key]

    params["request_headers"] = {
        name: value for name, value in headers.items() if name.lower() not in DROPPED_HEADERS
    }
    return params


def store_and_enqueue(
    db: Session,
    processor: str,
    transaction_type: str,
    raw_text: str,
    params: Dict[str, Any]
) -> Dict[str, Any]:
    """Persist the raw log and queue a process_ipn job for it"""
    raw_log = IpnRawLog(
        processor=processor,
        transaction_type=transaction_type,
        ipn_data=raw_text,
        params=params,
    )
    db.add(raw_log)
    db.commit()
    db.refresh(raw_log)

    task_id = enqueue_task("process_ipn", {"ipn_log_id": raw_log.id}, queue=settings.IPN_QUEUE)
    logger.info(f"Stored {processor} {transaction_type} as IPN log {raw_log.id} (task {task_id})")
    return {"status": "queued", "ipn_log_id": raw_log.id, "task_id": task_id}


def receive_stripe_webhook(payload: bytes, sig_header: Optional[str], db: Session) -> Dict[str, Any]:
    """Verify (when a secret is configured), store and queue a Stripe event

    Raises:
        ValueError: payload is not a JSON object
        stripe.SignatureVerificationError: signature check failed
    """
    if settings.STRIPE_WEBHOOK_SECRET:
        # Raises on a bad or missing signature
        stripe.Webhook.construct_event(payload, sig_header or "", settings.STRIPE_WEBHOOK_SECRET)

    event = _decode(payload)
    raw_text = payload.decode("utf-8")
    return store_and_enqueue(db, IpnRawLog.PROCESSOR_STRIPE, event.get("type", "unknown"),
                             raw_text, stripe_params(event))


def receive_paypal_webhook(
    payload: bytes,
    query: Mapping[str, Any],
    headers: Mapping[str, str],
    db: Session
) -> Dict[str, Any]:
    """Store and queue a PayPal webhook

    Raises:
        ValueError: payload is not a JSON object
    """
    event = _decode(payload)
    raw_text = payload.decode("utf-8")
    return store_and_enqueue(db, IpnRawLog.PROCESSOR_PAYPAL, event.get("event_type", "unknown"),
                             raw_text, paypal_params(event, query, headers))


def replay_ipn_log(ipn_log_id: int, db: Session) -> Optional[Dict[str, Any]]:
    """Queue a stored raw log for processing again.

    Returns:
        Queue response, or None when the log does not exist
    """
    raw_log = db.get(IpnRawLog, ipn_log_id)
    if raw_log is None:
        return None
    task_id = enqueue_task("process_ipn", {"ipn_log_id": raw_log.id, "replay": True}, queue=settings.IPN_QUEUE)
    logger.info(f"Replaying IPN log {raw_log.id} (task {task_id})")
    return {"status": "queued", "ipn_log_id": raw_log.id, "task_id": task_id}
