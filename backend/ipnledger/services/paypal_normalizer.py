"""PayPal webhook payloads -> canonical IPN events"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ipnledger.core.exceptions import UnsupportedEventError
from ipnledger.schemas.events import (
    CustomerInfo, ExternalIds, Purchase, SubscriptionPayment, SubscriptionActivated,
    PlanChanged, Refund, Chargeback, Cancellation
)
from ipnledger.utils.payloads import (
    dig, split_name, to_decimal, from_iso, is_truthy_flag, parse_json_field, upper_or_none
)

logger = logging.getLogger(__name__)

GATEWAY_PAYPAL = "paypal"


def custom_data(custom_id: Any) -> Dict[str, Any]:
    """Decode the JSON blob checkout pages put in custom_id / custom"""
    data = parse_json_field(custom_id)
    return data if isinstance(data, dict) else {}


def _base_fields(event: Dict[str, Any], params: Dict[str, Any], raw_hash: str) -> Dict[str, Any]:
    return {
        "processor": "paypal",
        "gateway": GATEWAY_PAYPAL,
        "event_type": event.get("event_type", ""),
        "occurred_at": from_iso(event.get("create_time")) or datetime.now(timezone.utc),
        "raw_hash": raw_hash,
        "sandbox": is_truthy_flag(event.get("test_ipn")) or is_truthy_flag(params.get("sandbox_mode")),
    }


def _title(value: Optional[str]) -> str:
    return value.strip().lower().title() if value and value.strip() else ""


def _names(name: Dict[str, Any], full_name: Optional[str]) -> tuple:
    """PayPal sends given/surname separately; fall back to splitting a full name"""
    given = _title(name.get("given_name") or name.get("first_name"))
    surname = _title(name.get("surname") or name.get("last_name"))
    if given:
        return given, surname
    return split_name(full_name)


def _v2_customer(person: Dict[str, Any], shipping: Dict[str, Any], track_id: Optional[str]) -> CustomerInfo:
    """Customer from a v2 payer/subscriber object"""
    first_name, last_name = _names(person.get("name") or {}, dig(shipping, "name", "full_name"))
    address = person.get("address") or shipping.get("address") or {}
    return CustomerInfo(
        email=person.get("email_address"),
        first_name=first_name,
        last_name=last_name,
        address1=address.get("address_line_1"),
        city=address.get("admin_area_2"),
        country=address.get("country_code"),
        zipcode=address.get("postal_code"),
        paypal_payer_id=person.get("payer_id"),
        track_id=track_id,
    )


def _track_and_coupon(params: Dict[str, Any], custom: Dict[str, Any]):
    return (params.get("kti") or custom.get("kti"),
            params.get("coupon") or custom.get("coupon"))


def _checkout_order_approved(event, resource, params, raw_hash):
    unit = dig(resource, "purchase_units", 0, default={})
    custom = custom_data(unit.get("custom_id"))
    track_id, coupon = _track_and_coupon(params, custom)
    capture_id = dig(unit, "payments", "captures", 0, "id")
    txn_id = capture_id or resource["id"]
    return Purchase(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(charge=txn_id),
        txn_id=txn_id,
        amount=to_decimal(dig(unit, "amount", "value")),
        currency=upper_or_none(dig(unit, "amount", "currency_code")),
        customer=_v2_customer(resource.get("payer") or {}, unit.get("shipping") or {}, track_id),
        coupon_code=coupon,
    )


def _payment_created(event, resource, params, raw_hash):
    """v1 payments API: payer_info and transactions[]"""
    txn = dig(resource, "transactions", 0, default={})
    custom = custom_data(txn.get("custom"))
    track_id, coupon = _track_and_coupon(params, custom)
    payer_info = dig(resource, "payer", "payer_info", default={})
    address = payer_info.get("shipping_address") or {}
    first_name, last_name = _names(payer_info, address.get("recipient_name"))
    sale_id = dig(txn, "related_resources", 0, "sale", "id")
    txn_id = sale_id or resource["id"]
    return Purchase(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(charge=txn_id),
        txn_id=txn_id,
        amount=to_decimal(dig(txn, "amount", "total")),
        currency=upper_or_none(dig(txn, "amount", "currency")),
        customer=CustomerInfo(
            email=payer_info.get("email"),
            first_name=first_name,
            last_name=last_name,
            address1=address.get("line1"),
            city=address.get("city"),
            country=address.get("country_code"),
            zipcode=address.get("postal_code"),
            paypal_payer_id=payer_info.get("payer_id"),
            track_id=track_id,
        ),
        coupon_code=coupon,
    )


def _subscription_activated(event, resource, params, raw_hash):
    custom = custom_data(resource.get("custom_id"))
    track_id, coupon = _track_and_coupon(params, custom)
    subscriber = resource.get("subscriber") or {}
    base = _base_fields(event, params, raw_hash)
    return SubscriptionActivated(
        **base,
        external_ids=ExternalIds(subscription=resource["id"]),
        subscription_id=resource["id"],
        amount=to_decimal(dig(resource, "billing_info", "last_payment", "amount", "value")),
        currency=upper_or_none(dig(resource, "billing_info", "last_payment", "amount", "currency_code")),
        customer=_v2_customer(subscriber, subscriber.get("shipping_address") or {}, track_id),
        coupon_code=coupon,
    )


def _sale_completed(event, resource, params, raw_hash):
    subscription_id = resource.get("billing_agreement_id")
    if not subscription_id:
        raise UnsupportedEventError(f"PayPal sale {resource.get('id')} has no billing agreement")
    custom = custom_data(resource.get("custom"))
    base = _base_fields(event, params, raw_hash)
    base["occurred_at"] = from_iso(resource.get("create_time")) or base["occurred_at"]
    return SubscriptionPayment(
        **base,
        external_ids=ExternalIds(charge=resource["id"], subscription=subscription_id),
        txn_id=resource["id"],
        subscription_id=subscription_id,
        amount=to_decimal(dig(resource, "amount", "total")),
        currency=upper_or_none(dig(resource, "amount", "currency")),
        coupon_code=params.get("coupon") or custom.get("coupon"),
        # PayPal delivers on BILLING.SUBSCRIPTION.ACTIVATED
        delivers_on_first_payment=False,
    )


def _subscription_updated(event, resource, params, raw_hash):
    subscription_id = resource["id"]
    plan_id = resource.get("plan_id")
    return PlanChanged(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(subscription=subscription_id),
        txn_id=event.get("id") or f"{subscription_id}:{plan_id}",
        subscription_id=subscription_id,
        new_plan_id=plan_id,
        amount=to_decimal(dig(resource, "billing_info", "last_payment", "amount", "value")),
        currency=upper_or_none(dig(resource, "billing_info", "last_payment", "amount", "currency_code")),
    )


def _capture_id(resource: Dict[str, Any]) -> Optional[str]:
    """Capture id referenced by a refund/reversal through its links"""
    for link in resource.get("links") or []:
        href = link.get("href") or ""
        if "/captures/" in href:
            return href.rstrip("/").split("/captures/", 1)[1].split("/")[0]
    return None


def _capture_refunded(event, resource, params, raw_hash):
    txn_id = _capture_id(resource) or resource["id"]
    return Refund(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(charge=txn_id),
        txn_id=txn_id,
        amount=to_decimal(dig(resource, "amount", "value")),
        currency=upper_or_none(dig(resource, "amount", "currency_code")),
    )


def _sale_refunded(event, resource, params, raw_hash):
    txn_id = resource.get("sale_id") or resource["id"]
    return Refund(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(charge=txn_id, subscription=resource.get("billing_agreement_id")),
        txn_id=txn_id,
        amount=to_decimal(dig(resource, "amount", "total")),
        currency=upper_or_none(dig(resource, "amount", "currency")),
    )


def _capture_reversed(event, resource, params, raw_hash):
    txn_id = _capture_id(resource) or resource["id"]
    return Chargeback(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(charge=txn_id),
        txn_id=txn_id,
        amount=to_decimal(dig(resource, "amount", "value")),
        currency=upper_or_none(dig(resource, "amount", "currency_code")),
    )


def _subscription_cancelled(event, resource, params, raw_hash):
    subscription_id = resource["id"]
    return Cancellation(
        **_base_fields(event, params, raw_hash),
        external_ids=ExternalIds(subscription=subscription_id),
        txn_id=subscription_id,
        subscription_id=subscription_id,
        amount=to_decimal(dig(resource, "billing_info", "last_payment", "amount", "value")),
        currency=upper_or_none(dig(resource, "billing_info", "last_payment", "amount", "currency_code")),
    )


HANDLERS = {
    "CHECKOUT.ORDER.APPROVED": _checkout_order_approved,
    "PAYMENTS.PAYMENT.CREATED": _payment_created,
    "BILLING.SUBSCRIPTION.ACTIVATED": _subscription_activated,
    "PAYMENT.SALE.COMPLETED": _sale_completed,
    "BILLING.SUBSCRIPTION.UPDATED": _subscription_updated,
    "PAYMENT.CAPTURE.REFUNDED": _capture_refunded,
    "PAYMENT.SALE.REFUNDED": _sale_refunded,
    "PAYMENT.CAPTURE.REVERSED": _capture_reversed,
    "BILLING.SUBSCRIPTION.CANCELLED": _subscription_cancelled,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": _subscription_cancelled,
}


def normalize_paypal(event: Dict[str, Any], params: Dict[str, Any], raw_hash: str):
    """Map a decoded PayPal webhook onto one canonical event.

    Raises:
        UnsupportedEventError: the event type is not reconciled here
    """
    event_type = event.get("event_type")
    handler = HANDLERS.get(event_type)
    if handler is None:
        raise UnsupportedEventError(f"Unsupported PayPal event type: {event_type}")

    resource = event.get("resource")
    if not isinstance(resource, dict):
        raise UnsupportedEventError(f"PayPal event {event.get('id')} has no resource")

    return handler(event, resource, params, raw_hash)
