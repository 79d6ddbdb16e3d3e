"""IPN handler: normalizer -> guard -> ledger writer -> dispatcher

handle_ipn() is the single entry point the worker calls for a stored raw
log. It never raises for event-level problems: fatal events are logged at
critical level and reported as a failed HandlerResult so the queue does
not retry them.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ipnledger.core.exceptions import FatalEventError, UnsupportedEventError
from ipnledger.core.logging import ipn_logger
from ipnledger.core.metrics import ipn_events_counter
from ipnledger.models import IpnRawLog, Product, ProductOrder, ProductPricing, Transaction
from ipnledger.schemas.events import (
    Purchase, SubscriptionPayment, SubscriptionActivated, PlanChanged,
    Refund, Chargeback, Cancellation
)
from ipnledger.schemas.ipn import HandlerResult
from ipnledger.services import guard, ledger, notification_service
from ipnledger.services.delivery import (
    DispatchContext, dispatch, DISPATCH_REFUSED, DISPATCH_MISSING_DELIVERY
)
from ipnledger.services.normalizer import normalize

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_REFUSED = "refused"
OUTCOME_FAILED = "failed"
OUTCOME_UNSUPPORTED = "unsupported"


def _int_param(params: Dict[str, Any], key: str) -> Optional[int]:
    try:
        return int(params[key])
    except (KeyError, TypeError, ValueError):
        return None


def _existing_order(db: Session, event) -> Optional[ProductOrder]:
    """Order an event refers to, if one is already recorded"""
    if isinstance(event, (Refund, Chargeback)):
        txn = db.query(Transaction).filter(
            Transaction.trans_gateway.in_(guard.gateway_family(event.gateway)),
            Transaction.txn_id == event.txn_id,
        ).order_by(Transaction.id).first()
        return txn.product_order if txn else None
    if isinstance(event, Purchase):
        return ledger.find_order(db, event.txn_id)
    return ledger.find_order(db, getattr(event, "subscription_id", None))


def _load_product(db: Session, event, params: Dict[str, Any]) -> Product:
    product_id = _int_param(params, "product_id")
    if product_id is None:
        # Lifecycle webhooks may arrive without checkout metadata
        order = _existing_order(db, event)
        product_id = order.product_id if order else None

    product = db.get(Product, product_id) if product_id is not None else None
    if product is None:
        raise FatalEventError(
            "Product not found for IPN",
            context={"product_id": params.get("product_id"), "event_type": event.event_type},
        )
    return product


def _load_pricing(db: Session, event, product: Product, params: Dict[str, Any]) -> ProductPricing:
    """Pricing the event pays for; a missing pricing notifies the owner"""
    pricing_id = _int_param(params, "product_pricing_id")
    if pricing_id is None:
        order = _existing_order(db, event)
        pricing_id = order.product_pricing_id if order else None

    pricing = db.get(ProductPricing, pricing_id) if pricing_id is not None else None
    if pricing is None or pricing.product_id != product.id:
        notification_service.notify_owner(
            product,
            notification_service.KIND_MISSING_PRICING,
            f"A payment for {product.name} referenced pricing {pricing_id}, which does not exist",
            {"product_pricing_id": pricing_id, "event_type": event.event_type},
        )
        raise FatalEventError(
            "Product pricing not found for IPN",
            context={"product_id": product.id, "product_pricing_id": pricing_id},
        )
    return pricing


def _order_fields(event, product: Product, pricing: ProductPricing, customer, is_test: int,
                  amount: Optional[Decimal] = None) -> Dict[str, Any]:
    return {
        "customer_id": customer.id if customer else None,
        "product_id": product.id,
        "product_pricing_id": pricing.id,
        "status": ProductOrder.STATUS_COMPLETED,
        "amount": amount if amount is not None else (event.amount if event.amount is not None else pricing.price),
        "currency": event.currency or pricing.price_currency,
        "payment_processor": event.gateway,
        "coupon_code": None,
        "marketing_consent": getattr(event, "marketing_consent", None),
        "is_test": is_test,
    }


def _duplicate(db: Session, reason: str) -> HandlerResult:
    db.rollback()
    return HandlerResult(ok=True, outcome=OUTCOME_DUPLICATE, reason=reason)


def _buyer_email(customer) -> Optional[str]:
    return customer.cust_pay_email if customer else None


def _handle_purchase(db, event: Purchase, product, pricing, params, raw):
    if guard.is_duplicate(db, event, [Transaction.TYPE_PURCHASE]):
        return _duplicate(db, "purchase already recorded")

    is_test = guard.classify_test(event, product)
    customer = ledger.upsert_customer(db, event.customer)
    order, created = ledger.get_or_create_order(
        db, event.txn_id, _order_fields(event, product, pricing, customer, is_test)
    )
    if not created and order.customer_id is None and customer is not None:
        order.customer_id = customer.id
    guard.apply_coupon(db, order, pricing, event.coupon_code)

    txn = ledger.add_transaction(
        db, order, event, Transaction.TYPE_PURCHASE, is_test, buyer_email=_buyer_email(customer)
    )
    if txn is None:
        return _duplicate(db, "purchase recorded concurrently")

    db.commit()
    return DispatchContext(event, product, pricing, order, customer, first_purchase=True,
                           params=params, raw_payload=raw)


def _handle_subscription_payment(db, event: SubscriptionPayment, product, pricing, params, raw):
    if guard.is_duplicate(db, event, [Transaction.TYPE_PURCHASE, Transaction.TYPE_REBILL]):
        return _duplicate(db, "payment already recorded")

    order = ledger.find_order(db, event.subscription_id)
    if order is None and event.requires_existing_order:
        raise FatalEventError(
            "Renewal payment for a subscription with no order",
            context={"subscription_id": event.subscription_id, "txn_id": event.txn_id},
        )

    first_purchase = guard.is_first_purchase(order, event.occurred_at)
    is_test = guard.classify_test(event, product)

    customer = None
    if event.customer is not None and event.customer.email:
        customer = ledger.upsert_customer(db, event.customer)
    elif order is not None:
        customer = order.customer

    if order is None:
        order, created = ledger.get_or_create_order(
            db, event.subscription_id, _order_fields(event, product, pricing, customer, is_test)
        )
    if first_purchase:
        order.is_test = max(order.is_test or 0, is_test)
    if order.customer_id is None and customer is not None:
        order.customer_id = customer.id
    order.amount = event.amount
    order.currency = event.currency
    order.status = ProductOrder.STATUS_COMPLETED

    if first_purchase:
        guard.apply_coupon(db, order, pricing, event.coupon_code)
        trans_type = Transaction.TYPE_REBILL if guard.has_active_purchase(order) else Transaction.TYPE_PURCHASE
    else:
        trans_type = Transaction.TYPE_REBILL

    txn = ledger.add_transaction(
        db, order, event, trans_type, is_test,
        is_rebill=not first_purchase, buyer_email=_buyer_email(customer)
    )
    if txn is None:
        return _duplicate(db, "payment recorded concurrently")

    db.commit()
    return DispatchContext(event, product, pricing, order, customer, first_purchase=first_purchase,
                           is_rebill=not first_purchase, params=params, raw_payload=raw)


def _handle_subscription_activated(db, event: SubscriptionActivated, product, pricing, params, raw):
    order = ledger.find_order(db, event.subscription_id)
    if order is not None and order.customer_id is not None and order.deliv_accessid:
        return _duplicate(db, "subscription already activated")

    is_test = guard.classify_test(event, product)
    customer = ledger.upsert_customer(db, event.customer)

    if order is None:
        order, created = ledger.get_or_create_order(
            db, event.subscription_id, _order_fields(event, product, pricing, customer, is_test)
        )
    else:
        # Payment came first: keep its amount, fill in who bought it
        order.is_test = max(order.is_test or 0, is_test)
    if customer is not None:
        order.customer_id = customer.id
    guard.apply_coupon(db, order, pricing, event.coupon_code)

    db.commit()
    return DispatchContext(event, product, pricing, order, customer, first_purchase=True,
                           params=params, raw_payload=raw)


def _handle_plan_changed(db, event: PlanChanged, product, params, raw):
    if guard.is_duplicate(db, event, [Transaction.TYPE_UPGRADE, Transaction.TYPE_DOWNGRADE]):
        return _duplicate(db, "plan change already recorded")

    order = ledger.find_order(db, event.subscription_id)
    if order is None:
        raise FatalEventError(
            "Plan change for a subscription with no order",
            context={"subscription_id": event.subscription_id},
        )

    new_pricing = guard.resolve_plan_pricing(db, product, event, _int_param(params, "product_pricing_id"))
    if new_pricing is None or new_pricing.product_id != product.id:
        notification_service.notify_owner(
            product,
            notification_service.KIND_MISSING_PRICING,
            f"Subscription {event.subscription_id} moved to plan {event.new_plan_id}, "
            f"which matches no pricing of {product.name}",
            {"plan_id": event.new_plan_id},
        )
        raise FatalEventError(
            "No pricing for the new plan",
            context={"plan_id": event.new_plan_id, "product_id": product.id},
        )

    old_pricing = order.product_pricing
    if old_pricing is not None and old_pricing.id == new_pricing.id:
        db.rollback()
        return HandlerResult(ok=True, outcome=OUTCOME_IGNORED, reason="plan unchanged",
                             product_order_id=order.id)

    trans_type = guard.plan_change_type(old_pricing, new_pricing) if old_pricing else Transaction.TYPE_UPGRADE
    is_test = guard.classify_test(event, product)
    amount = event.amount if event.amount is not None else new_pricing.price

    order.product_pricing_id = new_pricing.id
    order.amount = amount
    txn = ledger.add_transaction(
        db, order, event, trans_type, is_test, amount=amount, buyer_email=_buyer_email(order.customer)
    )
    if txn is None:
        return _duplicate(db, "plan change recorded concurrently")

    db.commit()
    db.refresh(order)
    logger.info(f"Order {order.id} {trans_type}d from pricing {old_pricing.id if old_pricing else None} to {new_pricing.id}")
    return DispatchContext(event, product, new_pricing, order, order.customer, old_pricing=old_pricing,
                           params=params, raw_payload=raw)


def _handle_refund(db, event: Refund, product, params, raw):
    txn, already_refunded = guard.find_refundable_transaction(db, event)
    if already_refunded:
        order = txn.product_order
        # A later Stripe refund on a partially refunded charge completes it
        completes_partial = (
            order.status == ProductOrder.STATUS_PARTIAL_REFUND
            and event.amount_refunded is not None
            and event.amount_refunded >= Decimal(order.amount)
        )
        if not completes_partial:
            return _duplicate(db, f"transaction {event.txn_id} already refunded")

    order = ledger.record_refund(txn, event.amount_refunded)
    db.commit()
    return DispatchContext(event, product, order.product_pricing, order, order.customer,
                           params=params, raw_payload=raw)


def _handle_chargeback(db, event: Chargeback, product, params, raw):
    if guard.is_duplicate(db, event, [Transaction.TYPE_CHARGEBACK]):
        return _duplicate(db, "chargeback already recorded")

    original, already_refunded = guard.find_refundable_transaction(db, event)
    if already_refunded:
        raise FatalEventError(
            f"Chargeback on transaction {event.txn_id}, which is already refunded",
            context={"gateway": event.gateway, "txn_id": event.txn_id},
        )
    order = original.product_order
    order.status = ProductOrder.STATUS_CHARGEBACK
    amount = event.amount if event.amount is not None else original.trans_amount
    txn = ledger.add_transaction(
        db, order, event, Transaction.TYPE_CHARGEBACK, order.is_test,
        amount=amount, buyer_email=original.buyer_email
    )
    if txn is None:
        return _duplicate(db, "chargeback recorded concurrently")

    db.commit()
    return DispatchContext(event, product, order.product_pricing, order, order.customer,
                           params=params, raw_payload=raw)


def _handle_cancellation(db, event: Cancellation, product, params, raw):
    if guard.is_duplicate(db, event, [Transaction.TYPE_CANCELLATION]):
        return _duplicate(db, "cancellation already recorded")

    order = ledger.find_order(db, event.subscription_id)
    if order is None:
        raise FatalEventError(
            "Cancellation for a subscription with no order",
            context={"subscription_id": event.subscription_id},
        )

    order.status = ProductOrder.STATUS_CANCELLED
    txn = ledger.add_transaction(
        db, order, event, Transaction.TYPE_CANCELLATION, order.is_test,
        amount=event.amount if event.amount is not None else Decimal("0"),
        buyer_email=_buyer_email(order.customer)
    )
    if txn is None:
        return _duplicate(db, "cancellation recorded concurrently")

    db.commit()
    return DispatchContext(event, product, order.product_pricing, order, order.customer,
                           params=params, raw_payload=raw)


def _process(raw_log: IpnRawLog, db: Session) -> HandlerResult:
    params = raw_log.params or {}
    event = normalize(raw_log.processor, raw_log.ipn_data, params)
    ipn_logger.info(
        f"IPN log {raw_log.id}: {event.processor} {event.event_type} -> {event.kind} "
        f"(hash {event.raw_hash[:12]})"
    )

    product = _load_product(db, event, params)

    if isinstance(event, (Purchase, SubscriptionPayment, SubscriptionActivated)):
        pricing = _load_pricing(db, event, product, params)
        handler = {
            "purchase": _handle_purchase,
            "subscription_payment": _handle_subscription_payment,
            "subscription_activated": _handle_subscription_activated,
        }[event.kind]
        outcome = handler(db, event, product, pricing, params, raw_log.ipn_data)
    else:
        handler = {
            "plan_changed": _handle_plan_changed,
            "refund": _handle_refund,
            "chargeback": _handle_chargeback,
            "cancellation": _handle_cancellation,
        }[event.kind]
        outcome = handler(db, event, product, params, raw_log.ipn_data)

    if isinstance(outcome, HandlerResult):
        ipn_logger.info(f"IPN log {raw_log.id}: {outcome.outcome} ({outcome.reason})")
        return outcome

    ctx = outcome
    if ctx.pricing is None:
        raise FatalEventError(
            "Order has no pricing to dispatch against",
            context={"product_order_id": ctx.order.id},
        )

    dispatch_result = dispatch(db, ctx)
    ledger.flush_order_cache(product.user_id)
    ledger.flush_customer_cache(product.user_id)

    txn = ctx.order.transactions[-1] if ctx.order.transactions else None
    result = HandlerResult(
        ok=dispatch_result != DISPATCH_MISSING_DELIVERY,
        outcome=OUTCOME_PROCESSED,
        product_order_id=ctx.order.id,
        transaction_id=txn.id if txn else None,
    )
    if dispatch_result == DISPATCH_REFUSED:
        result.outcome = OUTCOME_REFUSED
        result.reason = "delivery refused"
    elif dispatch_result == DISPATCH_MISSING_DELIVERY:
        result.outcome = OUTCOME_FAILED
        result.reason = "delivery method missing"
    return result


def handle_ipn(raw_log: IpnRawLog, db: Session) -> HandlerResult:
    """Process one stored IPN log end to end.

    Args:
        raw_log: Raw webhook row written at intake
        db: Database session

    Returns:
        HandlerResult; ok is False for unsupported and fatal events
    """
    try:
        result = _process(raw_log, db)
    except UnsupportedEventError as e:
        db.rollback()
        ipn_logger.warning(f"IPN log {raw_log.id} not handled: {e}")
        result = HandlerResult(ok=False, outcome=OUTCOME_UNSUPPORTED, reason=str(e))
    except FatalEventError as e:
        db.rollback()
        ipn_logger.critical(f"IPN log {raw_log.id} failed: {e} {e.context}")
        result = HandlerResult(ok=False, outcome=OUTCOME_FAILED, reason=str(e))

    ipn_events_counter.labels(processor=raw_log.processor, outcome=result.outcome).inc()
    return result
