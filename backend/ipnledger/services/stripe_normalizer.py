"""Stripe webhook payloads -> canonical IPN events"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ipnledger.core.exceptions import UnsupportedEventError
from ipnledger.schemas.events import (
    CustomerInfo, ExternalIds, Purchase, SubscriptionPayment, PlanChanged,
    Refund, Chargeback, Cancellation
)
from ipnledger.utils.payloads import (
    dig, split_name, minor_to_major, from_unix, is_truthy_flag, upper_or_none
)

logger = logging.getLogger(__name__)

GATEWAY_STRIPE = "stripe"
GATEWAY_STRIPE_CONNECT = "stripe connect"


def _gateway(params: Dict[str, Any]) -> str:
    return GATEWAY_STRIPE_CONNECT if is_truthy_flag(params.get("is_stripe_connect")) else GATEWAY_STRIPE


def _base_fields(event: Dict[str, Any], params: Dict[str, Any], raw_hash: str) -> Dict[str, Any]:
    return {
        "processor": "stripe",
        "gateway": _gateway(params),
        "event_type": event.get("type", ""),
        "occurred_at": from_unix(event.get("created")) or datetime.now(timezone.utc),
        "raw_hash": raw_hash,
        # livemode missing means a hand-built payload; treat it as live
        "sandbox": event.get("livemode", True) is False,
    }


def _customer_from_billing(billing: Dict[str, Any], fallback_email: Optional[str],
                           customer_id: Optional[str], params: Dict[str, Any]) -> CustomerInfo:
    first_name, last_name = split_name(billing.get("name"))
    address = billing.get("address") or {}
    return CustomerInfo(
        email=billing.get("email") or fallback_email,
        first_name=first_name,
        last_name=last_name,
        address1=address.get("line1"),
        city=address.get("city"),
        country=address.get("country"),
        zipcode=address.get("postal_code"),
        stripe_customer_id=customer_id if isinstance(customer_id, str) else None,
        track_id=params.get("kti"),
    )


def _marketing_consent(params: Dict[str, Any]) -> Optional[bool]:
    if "marketing_consent" not in params:
        return None
    return is_truthy_flag(params.get("marketing_consent"))


def _payment_intent_succeeded(event, obj, params, raw_hash):
    if obj.get("invoice"):
        raise UnsupportedEventError(
            f"Payment intent {obj.get('id')} belongs to an invoice; reconciled from invoice.payment_succeeded"
        )

    charge = dig(obj, "charges", "data", 0) or obj.get("latest_charge")
    if isinstance(charge, dict):
        charge_id = charge.get("id")
        billing = charge.get("billing_details") or {}
    else:
        charge_id = charge
        billing = {}

    customer = _customer_from_billing(
        billing, obj.get("receipt_email"), obj.get("customer"), params
    )
    txn_id = charge_id or obj["id"]
    return Purchase(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(charge=txn_id),
        txn_id=txn_id,
        amount=minor_to_major(obj.get("amount_received") or obj.get("amount")),
        currency=upper_or_none(obj.get("currency")),
        customer=customer,
        coupon_code=params.get("coupon"),
        marketing_consent=_marketing_consent(params),
    )


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription") or dig(
        invoice, "parent", "subscription_details", "subscription"
    )
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


def _invoice_customer(invoice: Dict[str, Any], params: Dict[str, Any]) -> CustomerInfo:
    address = invoice.get("customer_address")
    billing = {
        "name": invoice.get("customer_name"),
        "email": invoice.get("customer_email"),
        "address": address if isinstance(address, dict) else {},
    }
    return _customer_from_billing(billing, None, invoice.get("customer"), params)


def _invoice_new_price_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Price id of the plan the subscription moved to.

    Proration invoices list the unused time on the old plan as a negative
    line; the new plan is the last line with a non-negative amount.
    """
    lines = dig(invoice, "lines", "data", default=[])
    for line in reversed(lines):
        if (line.get("amount") or 0) < 0:
            continue
        price_id = dig(line, "price", "id") or dig(line, "plan", "id")
        if price_id:
            return price_id
    return None


def _invoice_payment_succeeded(event, obj, params, raw_hash):
    subscription_id = _invoice_subscription_id(obj)
    if not subscription_id:
        raise UnsupportedEventError(f"Invoice {obj.get('id')} is not tied to a subscription")

    charge_id = obj.get("charge") or obj.get("payment_intent") or obj["id"]
    base = _base_fields(event, params, raw_hash)
    paid_at = from_unix(dig(obj, "status_transitions", "paid_at"))
    if paid_at:
        base["occurred_at"] = paid_at

    amount = minor_to_major(obj.get("amount_paid"))
    currency = upper_or_none(obj.get("currency"))
    external_ids = ExternalIds(charge=charge_id, subscription=subscription_id)
    billing_reason = obj.get("billing_reason")

    if billing_reason == "subscription_update":
        return PlanChanged(
            **base,
            external_ids=external_ids,
            txn_id=charge_id,
            subscription_id=subscription_id,
            new_plan_id=_invoice_new_price_id(obj),
            amount=amount,
            currency=currency,
        )

    coupon_code = params.get("coupon") or dig(obj, "discount", "coupon", "id")
    return SubscriptionPayment(
        **base,
        external_ids=external_ids,
        txn_id=charge_id,
        subscription_id=subscription_id,
        amount=amount,
        currency=currency,
        customer=_invoice_customer(obj, params),
        coupon_code=coupon_code,
        marketing_consent=_marketing_consent(params),
        requires_existing_order=billing_reason == "subscription_cycle",
    )


def _charge_refunded(event, obj, params, raw_hash):
    return Refund(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(charge=obj["id"]),
        txn_id=obj["id"],
        amount=minor_to_major(obj.get("amount")),
        currency=upper_or_none(obj.get("currency")),
        amount_refunded=minor_to_major(obj.get("amount_refunded")),
    )


def _subscription_deleted(event, obj, params, raw_hash):
    base = _base_fields(event, params, raw_hash)
    canceled_at = from_unix(obj.get("canceled_at"))
    if canceled_at:
        base["occurred_at"] = canceled_at
    unit_amount = dig(obj, "plan", "amount")
    if unit_amount is None:
        unit_amount = dig(obj, "items", "data", 0, "price", "unit_amount")
    return Cancellation(
        **base,
        external_ids=ExternalIds(subscription=obj["id"]),
        txn_id=obj["id"],
        subscription_id=obj["id"],
        amount=minor_to_major(unit_amount),
        currency=upper_or_none(obj.get("currency") or dig(obj, "plan", "currency")),
    )


def _dispute_created(event, obj, params, raw_hash):
    charge = obj.get("charge")
    charge_id = charge.get("id") if isinstance(charge, dict) else charge
    return Chargeback(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(charge=charge_id),
        txn_id=charge_id,
        amount=minor_to_major(obj.get("amount")),
        currency=upper_or_none(obj.get("currency")),
    )


HANDLERS = {
    "payment_intent.succeeded": _payment_intent_succeeded,
    "invoice.payment_succeeded": _invoice_payment_succeeded,
    "charge.refunded": _charge_refunded,
    "customer.subscription.deleted": _subscription_deleted,
    "charge.dispute.created": _dispute_created,
}


def normalize_stripe(event: Dict[str, Any], params: Dict[str, Any], raw_hash: str):
    """Map a decoded Stripe event onto one canonical event.

    Raises:
        UnsupportedEventError: the event type is not reconciled here
    """
    event_type = event.get("type")
    handler = HANDLERS.get(event_type)
    if handler is None:
        raise UnsupportedEventError(f"Unsupported Stripe event type: {event_type}")

    obj = dig(event, "data", "object")
    if not isinstance(obj, dict):
        raise UnsupportedEventError(f"Stripe event {event.get('id')} has no data.object")

    return handler(event, obj, params, raw_hash)
