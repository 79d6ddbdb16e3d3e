"""Delivery and notification dispatcher

Runs the side effects of an event once its ledger write is committed:
access grants and revocations, product delivery, stock and sale notices,
post notifications and abuse incidents. Every step is isolated; a failing
step is logged and the next one still runs.
"""
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ipnledger.core.config import settings
from ipnledger.core.exceptions import DeliveryRefused
from ipnledger.core.logging import delivery_logger
from ipnledger.core.metrics import deliveries_counter
from ipnledger.db.redis import set_latest_payment_provider
from ipnledger.db.task_queue import enqueue_task
from ipnledger.models import (
    BlacklistIncident, CheckoutAbandoned, Customer, Member, MemberProductAccess,
    MembershipSiteProduct, Product, ProductDelivery, ProductOrder,
    ProductPricing
)
from ipnledger.schemas.events import (
    Purchase, SubscriptionPayment, SubscriptionActivated, PlanChanged,
    Chargeback, Cancellation, PURCHASE_CLASS, REVOKING_CLASS
)
from ipnledger.services import email_service, notification_service
from ipnledger.utils.payloads import parse_json_field

logger = logging.getLogger(__name__)

# Dispatch results
DISPATCH_DELIVERED = "delivered"
DISPATCH_SKIPPED = "skipped"
DISPATCH_REFUSED = "refused"
DISPATCH_MISSING_DELIVERY = "missing_delivery"


class DispatchContext:
    """Everything the dispatcher needs about one committed event"""

    def __init__(
        self,
        event,
        product: Product,
        pricing: ProductPricing,
        order: ProductOrder,
        customer: Optional[Customer] = None,
        first_purchase: bool = False,
        is_rebill: bool = False,
        old_pricing: Optional[ProductPricing] = None,
        params: Optional[Dict[str, Any]] = None,
        raw_payload: Optional[str] = None
    ):
        self.event = event
        self.product = product
        self.pricing = pricing
        self.order = order
        self.customer = customer
        self.first_purchase = first_purchase
        self.is_rebill = is_rebill
        self.old_pricing = old_pricing
        self.params = params or {}
        self.raw_payload = raw_payload

    @property
    def delivers(self) -> bool:
        """Whether this event hands the product to the buyer"""
        event = self.event
        if isinstance(event, (Purchase, SubscriptionActivated)):
            return self.order.deliv_accessid is None
        if isinstance(event, PlanChanged):
            return True
        if isinstance(event, SubscriptionPayment):
            return (
                self.first_purchase
                and event.delivers_on_first_payment
                and self.order.deliv_accessid is None
            )
        return False


def _run_step(name: str, step: Callable, *args) -> Any:
    """Run one dispatcher step, logging instead of propagating failures"""
    try:
        return step(*args)
    except DeliveryRefused:
        raise
    except Exception as e:
        delivery_logger.error(f"Delivery step '{name}' failed: {e}", exc_info=True)
        return None


def check_abuse(db: Session, ctx: DispatchContext) -> None:
    """Refuse delivery when the buyer's blacklist severity exceeds the product maximum"""
    customer = ctx.customer
    if customer is None or not customer.track_id:
        return

    max_severity = ctx.product.get_setting("severity")
    if max_severity is None:
        return

    incident = db.query(BlacklistIncident).filter(BlacklistIncident.track_id == customer.track_id).first()
    if incident is None or incident.severity <= int(max_severity):
        return

    delivery_logger.warning(
        f"Delivery of order {ctx.order.id} refused: severity {incident.severity} "
        f"over product maximum {max_severity}"
    )
    email_service.send_refused_email(customer, ctx.product)
    notification_service.notify_owner(
        ctx.product,
        notification_service.KIND_DELIVERY_REFUSED,
        f"Delivery of {ctx.product.name} to {customer.cust_pay_email} was refused",
        {"product_order_id": ctx.order.id, "customer_score": incident.severity,
         "max_score": int(max_severity)},
    )
    raise DeliveryRefused("severity")


def mark_checkouts_purchased(db: Session, ctx: DispatchContext) -> int:
    if ctx.customer is None:
        return 0
    updated = db.query(CheckoutAbandoned).filter(
        CheckoutAbandoned.customer_email == ctx.customer.cust_pay_email,
        CheckoutAbandoned.product_pricing_id == ctx.pricing.id,
    ).update({"purchased": True}, synchronize_session=False)
    db.commit()
    return updated


def check_member_only(db: Session, ctx: DispatchContext) -> None:
    """Member-only pricings deliver only to members of a site selling the product"""
    if ctx.pricing.availability != ProductPricing.AVAILABILITY_MEMBER:
        return

    email = ctx.customer.cust_pay_email if ctx.customer else None
    member = None
    if email:
        member = db.query(Member.id).join(
            MembershipSiteProduct,
            MembershipSiteProduct.membership_site_id == Member.membership_site_id,
        ).filter(
            MembershipSiteProduct.product_id == ctx.product.id,
            Member.email == email,
        ).first()

    if member is None:
        delivery_logger.warning(f"Order {ctx.order.id}: {email} bought member-only pricing {ctx.pricing.id}")
        if ctx.customer is not None:
            email_service.send_member_only_email(ctx.customer, ctx.product)
        notification_service.notify_owner(
            ctx.product,
            notification_service.KIND_DELIVERY_REFUSED,
            f"Non-member {email} purchased member-only {ctx.product.name}",
            {"product_order_id": ctx.order.id, "reason": "member_only"},
        )
        raise DeliveryRefused("member_only")


def remember_provider(ctx: DispatchContext) -> None:
    if ctx.customer is not None:
        set_latest_payment_provider(ctx.customer.id, ctx.event.processor)


def grant_membership_access(db: Session, product: Product, order: ProductOrder,
                            customer: Optional[Customer]) -> int:
    """Give the buyer access on every membership site linked to the product.

    Returns:
        Number of new access rows
    """
    if customer is None:
        delivery_logger.warning(f"Order {order.id} has no customer; membership access not granted")
        return 0

    granted = 0
    for link in product.membership_sites:
        member = db.query(Member).filter(
            Member.membership_site_id == link.membership_site_id,
            Member.email == customer.cust_pay_email,
        ).first()
        if member is None:
            member = Member(membership_site_id=link.membership_site_id, email=customer.cust_pay_email)
            db.add(member)
            db.flush()

        exists = db.query(MemberProductAccess.id).filter(
            MemberProductAccess.member_id == member.id,
            MemberProductAccess.product_order_id == order.id,
        ).first()
        if exists:
            continue
        db.add(MemberProductAccess(member_id=member.id, product_id=product.id, product_order_id=order.id))
        granted += 1

    db.commit()
    if granted:
        delivery_logger.info(f"Granted {granted} membership access(es) for order {order.id}")
    return granted


def revoke_membership_access(db: Session, order: ProductOrder) -> int:
    """Remove every access granted by this order"""
    removed = db.query(MemberProductAccess).filter(
        MemberProductAccess.product_order_id == order.id
    ).delete(synchronize_session=False)
    db.commit()
    if removed:
        delivery_logger.info(f"Revoked {removed} membership access(es) for order {order.id}")
    return removed


def grant_linked_sites(db: Session, ctx: DispatchContext) -> int:
    """Products sold through membership sites get access even without a membership delivery"""
    if not ctx.product.membership_sites or ctx.product.product_type == Product.TYPE_MEMBERSHIP:
        return 0
    return grant_membership_access(db, ctx.product, ctx.order, ctx.customer)


def notify_stock(ctx: DispatchContext) -> None:
    stock_left = ctx.pricing.stock_left
    if stock_left is None:
        return
    if stock_left in settings.STOCK_REMINDER_LEVELS:
        notification_service.notify_owner(
            ctx.product,
            notification_service.KIND_LOW_STOCK,
            f"Only {stock_left} left of {ctx.product.name}",
            {"product_pricing_id": ctx.pricing.id, "stock_left": stock_left},
        )
    elif stock_left == 0:
        notification_service.notify_owner(
            ctx.product,
            notification_service.KIND_OUT_OF_STOCK,
            f"{ctx.product.name} was purchased while out of stock",
            {"product_pricing_id": ctx.pricing.id, "product_order_id": ctx.order.id},
        )


def execute_delivery(db: Session, ctx: DispatchContext, delivery: ProductDelivery) -> bool:
    """Run one configured delivery method for the order"""
    method = delivery.delivery_method
    if method == ProductDelivery.METHOD_POST_NOTIFICATION:
        # Sent for every event kind by send_post_notification
        return True

    if method == ProductDelivery.METHOD_MEMBERSHIP:
        grant_membership_access(db, ctx.product, ctx.order, ctx.customer)
        sent = True
    elif method in (ProductDelivery.METHOD_EMAIL, ProductDelivery.METHOD_REDIRECT_URL,
                    ProductDelivery.METHOD_FILE_UPLOAD):
        if ctx.customer is None:
            delivery_logger.warning(f"Order {ctx.order.id} has no customer to deliver {method} to")
            sent = False
        else:
            sent = email_service.send_delivery_email(ctx.customer, ctx.product, ctx.order, delivery)
    else:
        delivery_logger.error(f"Unknown delivery method '{method}' on pricing {delivery.product_pricing_id}")
        sent = False

    deliveries_counter.labels(method=method, status="sent" if sent else "failed").inc()
    return sent


def deliver_main(db: Session, ctx: DispatchContext, delivery: ProductDelivery) -> bool:
    """Stamp the access id and run the pricing's delivery once"""
    ctx.order.deliv_accessid = uuid.uuid4().hex
    db.commit()
    delivery_logger.info(
        f"Delivering order {ctx.order.id} via {delivery.delivery_method} "
        f"(access id {ctx.order.deliv_accessid})"
    )
    return execute_delivery(db, ctx, delivery)


def notify_sale(ctx: DispatchContext) -> None:
    if not ctx.product.owner_sale_notification:
        return
    email_service.send_owner_sale_email(ctx.product, ctx.customer, ctx.order)
    notification_service.notify_owner(
        ctx.product,
        notification_service.KIND_SALE,
        f"New sale of {ctx.product.name}",
        {"product_order_id": ctx.order.id, "amount": str(ctx.order.amount), "currency": ctx.order.currency},
    )


def send_receipt(ctx: DispatchContext) -> None:
    """Subscription establishment receipt"""
    is_subscription_start = isinstance(ctx.event, SubscriptionActivated) or (
        isinstance(ctx.event, SubscriptionPayment) and ctx.first_purchase
    )
    if is_subscription_start and ctx.customer is not None:
        email_service.send_subscription_receipt(ctx.customer, ctx.product, ctx.order)


def cross_sell_pricing_ids(params: Dict[str, Any]) -> List[int]:
    """Cross-sell pricing ids from intake metadata (a JSON list)"""
    values = parse_json_field(params.get("cross_sell_pricing_id"))
    if not isinstance(values, list):
        return []
    ids = []
    for value in values:
        try:
            ids.append(int(value))
        except (ValueError, TypeError):
            logger.warning(f"Ignoring cross-sell pricing id {value!r}")
    return ids


def deliver_cross_sells(db: Session, ctx: DispatchContext) -> int:
    """Deliver each cross-sell pricing bought with the order; failures are per item"""
    ids = cross_sell_pricing_ids(ctx.params)
    if not ids:
        return 0

    pricings = db.query(ProductPricing).filter(
        ProductPricing.product_id == ctx.product.id,
        ProductPricing.id.in_(ids),
    ).all()

    delivered = 0
    for pricing in pricings:
        delivery = pricing.delivery
        if delivery is None:
            delivery_logger.error(f"Cross-sell pricing {pricing.id} has no delivery configured")
            notification_service.notify_owner(
                ctx.product,
                notification_service.KIND_MISSING_DELIVERY,
                f"Cross-sell pricing {pricing.id} of {ctx.product.name} has no delivery method",
                {"product_pricing_id": pricing.id},
            )
            continue
        if _run_step(f"cross-sell {pricing.id}", execute_delivery, db, ctx, delivery):
            delivered += 1
    return delivered


def build_post_notification(ctx: DispatchContext) -> Dict[str, Any]:
    """Raw event payload plus product data and the intake request headers"""
    data = parse_json_field(ctx.raw_payload) if ctx.raw_payload else None
    if not isinstance(data, dict):
        data = {}

    prod_data = {
        "product_order_id": ctx.order.id,
        "prod_name": ctx.product.name,
        "price_variant_id": ctx.pricing.id,
    }
    if ctx.old_pricing is not None:
        prod_data["old_price_variant_id"] = ctx.old_pricing.id
    data["_prod_data"] = [prod_data]
    data["headers"] = ctx.params.get("request_headers") or {}
    return data


def send_post_notification(ctx: DispatchContext, delivery: ProductDelivery) -> bool:
    """Relay the event to the owner's post notification URL"""
    if delivery.delivery_method != ProductDelivery.METHOD_POST_NOTIFICATION:
        return False
    if not delivery.post_notification_url:
        delivery_logger.error(f"Pricing {delivery.product_pricing_id} has no post notification URL")
        return False

    payload = build_post_notification(ctx)
    try:
        response = httpx.post(
            delivery.post_notification_url,
            json=payload,
            headers={"X-Ipn-Processor": ctx.event.processor},
            timeout=settings.POST_NOTIFICATION_TIMEOUT,
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        delivery_logger.error(f"Post notification for order {ctx.order.id} failed: {e}")
        deliveries_counter.labels(method=delivery.delivery_method, status="failed").inc()
        notification_service.notify_owner(
            ctx.product,
            notification_service.KIND_POST_NOTIFICATION_FAILED,
            f"Post notification to {delivery.post_notification_url} failed",
            {"product_order_id": ctx.order.id, "error": str(e)},
        )
        return False

    deliveries_counter.labels(method=delivery.delivery_method, status="sent").inc()
    delivery_logger.info(f"Post notification for order {ctx.order.id} sent ({response.status_code})")
    return True


def enqueue_blacklist_incident(ctx: DispatchContext) -> Optional[str]:
    kind = "chargeback" if isinstance(ctx.event, Chargeback) else "refund"
    return enqueue_task(
        "blacklist_incident",
        {
            "kind": kind,
            "customer_id": ctx.order.customer_id,
            "product_order_id": ctx.order.id,
            "amount": str(ctx.order.amount),
        },
        queue=settings.BLACKLIST_QUEUE,
    )


def dispatch(db: Session, ctx: DispatchContext) -> str:
    """Run post-ledger side effects for one event.

    Returns:
        DISPATCH_DELIVERED, DISPATCH_SKIPPED, DISPATCH_REFUSED or
        DISPATCH_MISSING_DELIVERY
    """
    event = ctx.event

    if isinstance(event, REVOKING_CLASS):
        _run_step("revoke access", revoke_membership_access, db, ctx.order)
        if not isinstance(event, Cancellation):
            _run_step("blacklist incident", enqueue_blacklist_incident, ctx)

    delivery = ctx.pricing.delivery
    if delivery is None:
        notification_service.notify_owner(
            ctx.product,
            notification_service.KIND_MISSING_DELIVERY,
            f"Pricing {ctx.pricing.id} of {ctx.product.name} has no delivery method",
            {"product_pricing_id": ctx.pricing.id, "product_order_id": ctx.order.id},
        )
        delivery_logger.critical(
            f"Pricing {ctx.pricing.id} has no delivery; order {ctx.order.id} recorded but not delivered"
        )
        return DISPATCH_MISSING_DELIVERY

    result = DISPATCH_SKIPPED
    if isinstance(event, PURCHASE_CLASS) and ctx.delivers:
        try:
            _run_step("abuse check", check_abuse, db, ctx)
            _run_step("abandoned checkouts", mark_checkouts_purchased, db, ctx)
            _run_step("member-only check", check_member_only, db, ctx)
        except DeliveryRefused as e:
            delivery_logger.warning(f"Delivery refused for order {ctx.order.id}: {e.reason}")
            return DISPATCH_REFUSED

        _run_step("provider preference", remember_provider, ctx)
        _run_step("membership sites", grant_linked_sites, db, ctx)
        _run_step("stock notice", notify_stock, ctx)
        _run_step("main delivery", deliver_main, db, ctx, delivery)
        _run_step("sale notification", notify_sale, ctx)
        _run_step("subscription receipt", send_receipt, ctx)
        _run_step("cross-sells", deliver_cross_sells, db, ctx)
        result = DISPATCH_DELIVERED
    elif isinstance(event, SubscriptionPayment) and ctx.is_rebill and ctx.customer is not None:
        _run_step("renewal email", email_service.send_renewal_email, ctx.customer, ctx.product, ctx.order)

    _run_step("post notification", send_post_notification, ctx, delivery)
    return result
