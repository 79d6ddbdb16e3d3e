"""Canonical IPN events

Every provider payload is normalized into exactly one of the event models
below. Each variant carries only the fields its kind needs, so the guard and
ledger code never has to inspect provider-specific shapes.
"""
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class CustomerInfo(BaseModel):
    """Buyer details as reported by the processor"""
    email: Optional[str] = None
    first_name: str = "Unknown"
    last_name: str = ""
    address1: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    zipcode: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    paypal_payer_id: Optional[str] = None
    track_id: Optional[str] = None


class ExternalIds(BaseModel):
    charge: Optional[str] = None
    subscription: Optional[str] = None


class BaseEvent(BaseModel):
    processor: Literal["stripe", "paypal", "paddle"]
    gateway: str  # 'stripe', 'stripe connect', 'paypal'
    event_type: str
    external_ids: ExternalIds = Field(default_factory=ExternalIds)
    occurred_at: datetime
    raw_hash: str
    sandbox: bool = False
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class Purchase(BaseEvent):
    """One-time product paid"""
    kind: Literal["purchase"] = "purchase"
    txn_id: str
    amount: Decimal
    currency: str
    customer: CustomerInfo
    coupon_code: Optional[str] = None
    marketing_consent: Optional[bool] = None


class SubscriptionPayment(BaseEvent):
    """Recurring payment: first payment or a rebill, decided by the guard"""
    kind: Literal["subscription_payment"] = "subscription_payment"
    txn_id: str
    subscription_id: str
    amount: Decimal
    currency: str
    customer: Optional[CustomerInfo] = None
    coupon_code: Optional[str] = None
    marketing_consent: Optional[bool] = None
    # Stripe 'subscription_cycle' invoices cannot open a new order
    requires_existing_order: bool = False
    # Whether a first payment triggers delivery (PayPal delivers on activation instead)
    delivers_on_first_payment: bool = True


class SubscriptionActivated(BaseEvent):
    """Subscription established; may arrive before or after its first payment"""
    kind: Literal["subscription_activated"] = "subscription_activated"
    subscription_id: str
    customer: CustomerInfo
    coupon_code: Optional[str] = None


class PlanChanged(BaseEvent):
    """Subscription moved to another plan"""
    kind: Literal["plan_changed"] = "plan_changed"
    txn_id: str
    subscription_id: str
    new_plan_id: Optional[str] = None


class Refund(BaseEvent):
    """Refund of an earlier charge; mutates the existing transaction"""
    kind: Literal["refund"] = "refund"
    txn_id: str
    amount_refunded: Optional[Decimal] = None


class Chargeback(BaseEvent):
    """Charge reversed by the buyer's bank"""
    kind: Literal["chargeback"] = "chargeback"
    txn_id: str


class Cancellation(BaseEvent):
    """Subscription cancelled (or its payment failed for good)"""
    kind: Literal["cancellation"] = "cancellation"
    txn_id: str
    subscription_id: str


IpnEvent = Union[
    Purchase, SubscriptionPayment, SubscriptionActivated, PlanChanged,
    Refund, Chargeback, Cancellation
]

# Events after which the buyer should receive the product
PURCHASE_CLASS = (Purchase, SubscriptionPayment, SubscriptionActivated, PlanChanged)
# Events after which granted access is taken back
REVOKING_CLASS = (Refund, Chargeback, Cancellation)
