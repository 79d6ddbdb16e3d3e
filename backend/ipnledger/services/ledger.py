"""Ledger writer: customers, orders and transactions"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ipnledger.core.exceptions import FatalEventError
from ipnledger.core.metrics import order_create_conflicts_counter
from ipnledger.db.redis import cache_tag, flush_tag
from ipnledger.models import Customer, ProductOrder, Transaction
from ipnledger.schemas.events import CustomerInfo

logger = logging.getLogger(__name__)

# CustomerInfo field -> Customer column
CUSTOMER_FIELDS = {
    "first_name": "cust_fname",
    "last_name": "cust_lname",
    "address1": "cust_address1",
    "city": "cust_city",
    "country": "cust_country",
    "zipcode": "cust_zipcode",
    "stripe_customer_id": "stripe_customer_id",
    "paypal_payer_id": "paypal_payer_id",
    "track_id": "track_id",
}


def _find_customer(db: Session, email: str) -> Optional[Customer]:
    return db.query(Customer).filter(Customer.cust_pay_email == email).first()


def upsert_customer(db: Session, info: CustomerInfo) -> Optional[Customer]:
    """Create or merge a customer keyed by payment email.

    Known values are never replaced by empty ones, and the placeholder
    name "Unknown" never overwrites a real name. The insert runs inside a
    SAVEPOINT; when a concurrent worker created the same email first, its
    row is merged into instead.

    Args:
        db: Database session
        info: Customer details from the event

    Returns:
        Customer, or None when the event carries no email
    """
    if not info.email:
        logger.warning("Event carries no customer email; customer not recorded")
        return None

    email = info.email.strip().lower()
    customer = _find_customer(db, email)
    if customer is None:
        customer = Customer(cust_pay_email=email, cust_email=email)
        try:
            with db.begin_nested():
                db.add(customer)
            logger.info(f"Creating customer {email}")
        except IntegrityError:
            logger.warning(f"Customer {email} was created concurrently; merging into it instead")
            customer = _find_customer(db, email)
            if customer is None:
                raise FatalEventError(
                    f"Customer insert for {email} conflicted but no customer exists",
                    context={"email": email},
                )

    for field, column in CUSTOMER_FIELDS.items():
        value = getattr(info, field)
        if not value:
            continue
        if field == "first_name" and value == "Unknown" and getattr(customer, column):
            continue
        setattr(customer, column, value)

    if not customer.cust_fname:
        customer.cust_fname = "Unknown"

    db.flush()
    return customer


def _find_order(db: Session, subscription_id: str) -> Optional[ProductOrder]:
    return db.query(ProductOrder).filter(ProductOrder.subscription_id == subscription_id).first()


def find_order(db: Session, subscription_id: Optional[str]) -> Optional[ProductOrder]:
    """Existing order for a charge/subscription id"""
    if not subscription_id:
        return None
    return _find_order(db, subscription_id)


def get_or_create_order(
    db: Session,
    subscription_id: str,
    fields: Dict[str, Any]
) -> Tuple[ProductOrder, bool]:
    """Atomic create-or-get of the order for a subscription/charge id.

    The insert runs inside a SAVEPOINT. When a concurrent worker inserted the
    same subscription_id first, the UNIQUE constraint fails, the savepoint is
    rolled back and the winner's row is returned instead.

    Returns:
        (order, created)
    """
    order = _find_order(db, subscription_id)
    if order is not None:
        return order, False

    order = ProductOrder(subscription_id=subscription_id, **fields)
    try:
        with db.begin_nested():
            db.add(order)
        logger.info(f"Created order {order.id} for {subscription_id}")
        return order, True
    except IntegrityError:
        order_create_conflicts_counter.inc()
        logger.warning(f"Order for {subscription_id} was created concurrently; updating it instead")

    order = _find_order(db, subscription_id)
    if order is None:
        raise FatalEventError(
            f"Order insert for {subscription_id} conflicted but no order exists",
            context={"subscription_id": subscription_id},
        )
    return order, False


def add_transaction(
    db: Session,
    order: ProductOrder,
    event,
    trans_type: str,
    is_test: int,
    is_rebill: bool = False,
    amount: Optional[Decimal] = None,
    buyer_email: Optional[str] = None
) -> Optional[Transaction]:
    """Append one transaction to the order.

    Returns:
        The new Transaction, or None when (gateway, txn_id, type) already
        exists, i.e. a concurrent worker recorded the same event
    """
    if amount is None:
        amount = event.amount if event.amount is not None else Decimal("0")
    txn = Transaction(
        product_order_id=order.id,
        txn_id=event.txn_id,
        trans_amount=amount,
        trans_currency=event.currency or order.currency,
        trans_date=event.occurred_at,
        trans_gateway=event.gateway,
        trans_type=trans_type,
        is_rebill=is_rebill,
        is_refunded=False,
        buyer_email=buyer_email,
        ipn_hash=event.raw_hash,
        is_test=is_test,
    )
    try:
        with db.begin_nested():
            db.add(txn)
    except IntegrityError:
        logger.warning(f"Transaction {event.txn_id} ({trans_type}) was recorded concurrently")
        return None

    db.refresh(order, attribute_names=["transactions"])
    logger.info(f"Recorded {trans_type} transaction {txn.txn_id} on order {order.id}")
    return txn


def record_refund(txn: Transaction, amount_refunded: Optional[Decimal]) -> ProductOrder:
    """Flip the transaction to refunded and move the order status.

    Only a refunded purchase moves the order; refunding a single rebill or
    plan change leaves the subscription as it is. A refunded amount below
    the order amount (Stripe reports it) is a partial refund. Cancelled
    orders keep their status.
    """
    order = txn.product_order
    txn.is_refunded = True

    if txn.trans_type != Transaction.TYPE_PURCHASE:
        logger.info(f"Refunded {txn.trans_type} {txn.txn_id}; order {order.id} stays {order.status}")
        return order

    if order.status == ProductOrder.STATUS_CANCELLED:
        logger.info(f"Order {order.id} is cancelled; status kept after refund of {txn.txn_id}")
        return order

    if amount_refunded is not None and amount_refunded < Decimal(order.amount):
        order.status = ProductOrder.STATUS_PARTIAL_REFUND
    else:
        order.status = ProductOrder.STATUS_REFUNDED
    logger.info(f"Order {order.id} marked {order.status} (transaction {txn.txn_id})")
    return order


def flush_order_cache(owner_user_id: Optional[int]) -> None:
    flush_tag(cache_tag(ProductOrder.cache_key, owner_user_id))


def flush_customer_cache(owner_user_id: Optional[int]) -> None:
    flush_tag(cache_tag(Customer.cache_key, owner_user_id))
