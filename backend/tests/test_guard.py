"""Idempotence and classification guard tests"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from ipnledger.core.exceptions import FatalEventError
from ipnledger.models import ProductCoupon, ProductOrder, Transaction
from ipnledger.services import guard
from ipnledger.services.normalizer import normalize


def _order(db_session, catalog, subscription_id="sub_test123", pricing=None):
    pricing = pricing or catalog.monthly
    order = ProductOrder(
        product_id=catalog.product.id,
        product_pricing_id=pricing.id,
        amount=pricing.price,
        currency="USD",
        payment_processor="stripe",
        subscription_id=subscription_id,
    )
    db_session.add(order)
    db_session.commit()
    return order


def _transaction(db_session, order, txn_id, trans_type=Transaction.TYPE_PURCHASE, created_at=None,
                 gateway="stripe", ipn_hash=None, is_refunded=False):
    txn = Transaction(
        product_order_id=order.id,
        txn_id=txn_id,
        trans_amount=order.amount,
        trans_currency="USD",
        trans_date=datetime.now(timezone.utc),
        trans_gateway=gateway,
        trans_type=trans_type,
        ipn_hash=ipn_hash,
        is_refunded=is_refunded,
    )
    if created_at is not None:
        txn.created_at = created_at
    db_session.add(txn)
    db_session.commit()
    return txn


@pytest.mark.critical
class TestClassifyTest:
    """Test sandbox / low-value / live classification"""

    def test_sandbox_is_two_and_notifies_owner(self, catalog, stripe_payment_intent):
        event = normalize("stripe", json.dumps(stripe_payment_intent(livemode=False)))
        with patch('ipnledger.services.guard.notification_service.notify_owner') as mock_notify:
            assert guard.classify_test(event, catalog.product) == ProductOrder.SANDBOX
        mock_notify.assert_called_once()
        assert mock_notify.call_args[0][1] == "test_transaction"

    def test_below_threshold_is_low_value(self, catalog, stripe_payment_intent):
        event = normalize("stripe", json.dumps(stripe_payment_intent(amount=450)))
        assert guard.classify_test(event, catalog.product) == ProductOrder.LOW_VALUE

    def test_threshold_itself_is_live(self, catalog, stripe_payment_intent):
        event = normalize("stripe", json.dumps(stripe_payment_intent(amount=500)))
        assert guard.classify_test(event, catalog.product) == ProductOrder.LIVE


@pytest.mark.critical
class TestDuplicateDetection:
    """Test redelivery detection"""

    def test_same_payload_hash_is_duplicate(self, db_session, catalog, stripe_payment_intent):
        raw = json.dumps(stripe_payment_intent())
        event = normalize("stripe", raw)
        order = _order(db_session, catalog, subscription_id="ch_test123", pricing=catalog.one_time)
        _transaction(db_session, order, "other_txn", ipn_hash=event.raw_hash)

        assert guard.is_duplicate(db_session, event, [Transaction.TYPE_PURCHASE]) is True

    def test_same_txn_in_gateway_family_is_duplicate(self, db_session, catalog, stripe_payment_intent):
        event = normalize("stripe", json.dumps(stripe_payment_intent()), {"is_stripe_connect": True})
        order = _order(db_session, catalog, subscription_id="ch_test123", pricing=catalog.one_time)
        _transaction(db_session, order, "ch_test123", gateway="stripe")

        assert guard.is_duplicate(db_session, event, [Transaction.TYPE_PURCHASE]) is True

    def test_other_type_is_not_duplicate(self, db_session, catalog, stripe_payment_intent):
        event = normalize("stripe", json.dumps(stripe_payment_intent()))
        order = _order(db_session, catalog, subscription_id="ch_test123", pricing=catalog.one_time)
        _transaction(db_session, order, "ch_test123", trans_type=Transaction.TYPE_CHARGEBACK)

        assert guard.is_duplicate(db_session, event, [Transaction.TYPE_PURCHASE]) is False


@pytest.mark.critical
class TestFirstPurchaseHeuristic:
    """Test first purchase versus rebill"""

    def test_no_order_is_first_purchase(self):
        assert guard.is_first_purchase(None, datetime.now(timezone.utc)) is True

    def test_order_without_transactions(self, db_session, catalog):
        order = _order(db_session, catalog)
        assert guard.is_first_purchase(order, datetime.now(timezone.utc)) is True

    def test_single_same_day_transaction_is_not_rebill(self, db_session, catalog):
        order = _order(db_session, catalog)
        _transaction(db_session, order, "ch_1")
        db_session.refresh(order)

        assert guard.is_first_purchase(order, datetime.now(timezone.utc)) is True

    def test_single_earlier_transaction_is_rebill(self, db_session, catalog):
        order = _order(db_session, catalog)
        _transaction(db_session, order, "ch_1", created_at=datetime.now(timezone.utc) - timedelta(days=30))
        db_session.refresh(order)

        assert guard.is_first_purchase(order, datetime.now(timezone.utc)) is False

    def test_two_transactions_is_rebill(self, db_session, catalog):
        order = _order(db_session, catalog)
        _transaction(db_session, order, "ch_1")
        _transaction(db_session, order, "ch_2", trans_type=Transaction.TYPE_REBILL)
        db_session.refresh(order)

        assert guard.is_first_purchase(order, datetime.now(timezone.utc)) is False


@pytest.mark.high
class TestPlanChange:
    """Test plan id resolution and upgrade/downgrade"""

    def test_paypal_plan_id_resolves_pricing(self, db_session, catalog, paypal_event):
        event = normalize("paypal", json.dumps(paypal_event("BILLING.SUBSCRIPTION.UPDATED",
                                                           {"id": "I-1", "plan_id": "P-YEARLY"})))
        assert guard.resolve_plan_pricing(db_session, catalog.product, event).id == catalog.yearly.id

    def test_stripe_falls_back_to_metadata_pricing(self, db_session, catalog, stripe_invoice):
        event = normalize("stripe", json.dumps(stripe_invoice(billing_reason="subscription_update",
                                                             price_id="price_unknown")))
        pricing = guard.resolve_plan_pricing(db_session, catalog.product, event, catalog.yearly.id)
        assert pricing.id == catalog.yearly.id

    def test_unknown_paypal_plan(self, db_session, catalog, paypal_event):
        event = normalize("paypal", json.dumps(paypal_event("BILLING.SUBSCRIPTION.UPDATED",
                                                           {"id": "I-1", "plan_id": "P-NOPE"})))
        assert guard.resolve_plan_pricing(db_session, catalog.product, event, catalog.yearly.id) is None

    def test_upgrade_and_downgrade(self, catalog):
        assert guard.plan_change_type(catalog.monthly, catalog.yearly) == Transaction.TYPE_UPGRADE
        assert guard.plan_change_type(catalog.yearly, catalog.monthly) == Transaction.TYPE_DOWNGRADE


@pytest.mark.critical
class TestRefundLookup:
    """Test refund transaction lookup"""

    def test_finds_non_refunded_transaction(self, db_session, catalog, stripe_charge_refunded):
        order = _order(db_session, catalog, subscription_id="ch_test123", pricing=catalog.one_time)
        txn = _transaction(db_session, order, "ch_test123")
        event = normalize("stripe", json.dumps(stripe_charge_refunded()))

        found, already_refunded = guard.find_refundable_transaction(db_session, event)
        assert found.id == txn.id
        assert already_refunded is False

    def test_already_refunded(self, db_session, catalog, stripe_charge_refunded):
        order = _order(db_session, catalog, subscription_id="ch_test123", pricing=catalog.one_time)
        _transaction(db_session, order, "ch_test123", is_refunded=True)
        event = normalize("stripe", json.dumps(stripe_charge_refunded()))

        _, already_refunded = guard.find_refundable_transaction(db_session, event)
        assert already_refunded is True

    def test_unknown_transaction_is_fatal(self, db_session, catalog, stripe_charge_refunded):
        event = normalize("stripe", json.dumps(stripe_charge_refunded(charge_id="ch_missing")))
        with pytest.raises(FatalEventError):
            guard.find_refundable_transaction(db_session, event)


@pytest.mark.high
class TestCoupons:
    """Test coupon binding"""

    def test_coupon_counted_once_per_order(self, db_session, catalog):
        coupon = ProductCoupon(code="SAVE10", product_id=catalog.product.id, max_uses=5, used=0)
        db_session.add(coupon)
        order = _order(db_session, catalog)

        guard.apply_coupon(db_session, order, catalog.monthly, "SAVE10")
        guard.apply_coupon(db_session, order, catalog.monthly, "SAVE10")
        db_session.commit()

        assert coupon.used == 1
        assert order.coupon_code == "SAVE10"
        assert catalog.monthly.applied_coupon_id == coupon.id

    def test_unknown_coupon_recorded_on_order_only(self, db_session, catalog):
        order = _order(db_session, catalog)
        assert guard.apply_coupon(db_session, order, catalog.monthly, "GHOST") is None
        assert order.coupon_code == "GHOST"
        assert catalog.monthly.applied_coupon_id is None
