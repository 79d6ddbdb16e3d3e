"""Idempotence and classification guard

Decides, before anything is written, what an event means for the ledger:
test/live/low-value classification, duplicate delivery, first purchase
versus rebill, upgrade versus downgrade, refund lookup and coupon binding.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ipnledger.core.config import settings
from ipnledger.core.exceptions import FatalEventError
from ipnledger.models import (
    Product, ProductPricing, ProductSetting, ProductCoupon, ProductOrder, Transaction
)
from ipnledger.schemas.events import PlanChanged
from ipnledger.services import notification_service
from ipnledger.utils.payloads import as_utc

logger = logging.getLogger(__name__)

# Product setting holding the provider plan id of each pricing
PLAN_SETTING_KEYS = {
    "paypal": "paypal_plan_id",
    "stripe": "stripe_price_id",
}


def gateway_family(gateway: str) -> List[str]:
    """Gateways whose transactions share one id space"""
    if gateway.startswith("stripe"):
        return ["stripe", "stripe connect"]
    return [gateway]


def classify_test(event, product: Product) -> int:
    """is_test value for the event.

    Sandbox traffic is 2 and notifies the owner; paid amounts under
    LOW_VALUE_THRESHOLD are 1. The threshold ignores currency.
    """
    if event.sandbox:
        notification_service.notify_owner(
            product,
            notification_service.KIND_TEST_TRANSACTION,
            f"Test transaction received for {product.name}",
            {"processor": event.processor, "event_type": event.event_type},
        )
        return ProductOrder.SANDBOX

    if event.amount is not None and event.amount < settings.LOW_VALUE_THRESHOLD:
        return ProductOrder.LOW_VALUE

    return ProductOrder.LIVE


def is_duplicate(db: Session, event, trans_types: Iterable[str]) -> bool:
    """True when this payload, or its (gateway, txn_id, type), is already recorded"""
    if db.query(Transaction.id).filter(Transaction.ipn_hash == event.raw_hash).first():
        logger.info(f"Duplicate delivery of {event.event_type}: payload hash already recorded")
        return True

    txn_id = getattr(event, "txn_id", None)
    if txn_id is None:
        return False

    existing = db.query(Transaction.id).filter(
        Transaction.trans_gateway.in_(gateway_family(event.gateway)),
        Transaction.txn_id == txn_id,
        Transaction.trans_type.in_(list(trans_types)),
    ).first()
    if existing:
        logger.info(f"Duplicate delivery of {event.event_type}: transaction {txn_id} already recorded")
        return True
    return False


def is_first_purchase(order: Optional[ProductOrder], occurred_at: datetime) -> bool:
    """Same-day heuristic: no prior transaction, or exactly one created on the event's UTC day"""
    if order is None:
        return True
    transactions = order.transactions
    if not transactions:
        return True
    if len(transactions) == 1:
        created = as_utc(transactions[0].created_at)
        return created.date() == as_utc(occurred_at).date()
    return False


def has_active_purchase(order: ProductOrder) -> bool:
    return any(
        t.trans_type == Transaction.TYPE_PURCHASE and not t.is_refunded
        for t in order.transactions
    )


def resolve_plan_pricing(
    db: Session,
    product: Product,
    event: PlanChanged,
    fallback_pricing_id: Optional[int] = None
) -> Optional[ProductPricing]:
    """Pricing the subscription moved to, via the provider plan id setting.

    Stripe falls back to the pricing id carried in the event metadata.
    """
    key = PLAN_SETTING_KEYS.get(event.processor)
    if key and event.new_plan_id:
        setting = db.query(ProductSetting).filter(
            ProductSetting.product_id == product.id,
            ProductSetting.key == key,
            ProductSetting.value == event.new_plan_id,
        ).first()
        if setting and setting.product_pricing_id:
            return db.get(ProductPricing, setting.product_pricing_id)

    if event.processor == "stripe" and fallback_pricing_id:
        return db.get(ProductPricing, fallback_pricing_id)
    return None


def plan_change_type(old_pricing: ProductPricing, new_pricing: ProductPricing) -> str:
    """upgrade when the new price is higher, downgrade otherwise"""
    if old_pricing.price < new_pricing.price:
        return Transaction.TYPE_UPGRADE
    return Transaction.TYPE_DOWNGRADE


def find_refundable_transaction(db: Session, event) -> Tuple[Optional[Transaction], bool]:
    """Locate the transaction a refund or chargeback applies to.

    Returns (transaction, already_refunded). already_refunded is True when
    only refunded rows match, which is a redelivery of the refund.

    Raises:
        FatalEventError: no transaction with this id exists for the gateway
    """
    family = gateway_family(event.gateway)
    candidates = db.query(Transaction).filter(
        Transaction.trans_gateway.in_(family),
        Transaction.txn_id == event.txn_id,
        Transaction.trans_type.in_([
            Transaction.TYPE_PURCHASE, Transaction.TYPE_REBILL,
            Transaction.TYPE_UPGRADE, Transaction.TYPE_DOWNGRADE,
        ]),
    ).order_by(Transaction.id).all()

    for txn in candidates:
        if not txn.is_refunded:
            return txn, False
    if candidates:
        return candidates[0], True

    raise FatalEventError(
        f"No transaction {event.txn_id} to apply {event.event_type} to",
        context={"gateway": event.gateway, "txn_id": event.txn_id},
    )


def apply_coupon(
    db: Session,
    order: ProductOrder,
    pricing: ProductPricing,
    coupon_code: Optional[str]
) -> Optional[ProductCoupon]:
    """Bind a coupon to the order, counting one use the first time only"""
    if not coupon_code or order.coupon_code == coupon_code:
        return None

    order.coupon_code = coupon_code
    coupon = db.query(ProductCoupon).filter(ProductCoupon.code == coupon_code).first()
    if coupon is None or (coupon.product_id and coupon.product_id != order.product_id):
        logger.warning(f"Coupon {coupon_code} on order {order.id} is not in the catalog")
        return None

    if coupon.remaining == 0:
        logger.warning(f"Coupon {coupon_code} was used past its limit by order {order.id}")
    coupon.used = (coupon.used or 0) + 1
    pricing.applied_coupon_id = coupon.id
    logger.info(f"Applied coupon {coupon_code} to order {order.id} (used {coupon.used})")
    return coupon
