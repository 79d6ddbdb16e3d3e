"""Delivery and notification dispatcher tests"""
import json
import logging
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from ipnledger.models import (
    BlacklistIncident, CheckoutAbandoned, Member, MemberProductAccess, MembershipSite,
    MembershipSiteProduct, Product, ProductDelivery, ProductPricing, ProductSetting
)
from ipnledger.schemas.events import CustomerInfo
from ipnledger.services import delivery, ledger
from ipnledger.services.delivery import (
    DispatchContext, dispatch, DISPATCH_DELIVERED, DISPATCH_SKIPPED, DISPATCH_REFUSED,
    DISPATCH_MISSING_DELIVERY
)
from ipnledger.services.normalizer import normalize


def _queued(mock_redis, lane):
    return [json.loads(item) for item in mock_redis.lrange(f"task:queue:{lane}", 0, -1)]


def _owner_notice_kinds(mock_redis):
    return [task["payload"]["kind"] for task in _queued(mock_redis, "notifications")]


def _sent_subjects(mock_email_service):
    return [call.args[0]["subject"] for call in mock_email_service.Emails.send.call_args_list]


@pytest.fixture
def purchase_ctx(db_session, catalog, stripe_payment_intent):
    """Factory for a committed one-time purchase ready to dispatch"""
    def _build(pricing=None, params=None, track_id=None, payload=None):
        pricing = pricing or catalog.one_time
        payload = payload or stripe_payment_intent()
        raw = json.dumps(payload)
        event = normalize("stripe", raw, params or {})
        customer = ledger.upsert_customer(
            db_session,
            CustomerInfo(email="delivered@resend.dev", first_name="Jane", last_name="Doe", track_id=track_id),
        )
        order, _ = ledger.get_or_create_order(db_session, event.txn_id, {
            "customer_id": customer.id,
            "product_id": catalog.product.id,
            "product_pricing_id": pricing.id,
            "amount": event.amount,
            "currency": event.currency,
            "payment_processor": event.gateway,
            "is_test": 0,
        })
        ledger.add_transaction(db_session, order, event, "purchase", 0, buyer_email=customer.cust_pay_email)
        db_session.commit()
        return DispatchContext(event, catalog.product, pricing, order, customer, first_purchase=True,
                               params=params or {}, raw_payload=raw)
    return _build


@pytest.mark.critical
class TestDelivers:
    """Test which events hand over the product"""

    def test_purchase_delivers_once(self, purchase_ctx):
        ctx = purchase_ctx()
        assert ctx.delivers is True
        ctx.order.deliv_accessid = "already"
        assert ctx.delivers is False

    def test_paypal_first_payment_waits_for_activation(self, db_session, catalog, purchase_ctx, paypal_event):
        ctx = purchase_ctx()
        resource = {"id": "SALE-1", "billing_agreement_id": "I-SUB1",
                    "amount": {"total": "19.00", "currency": "USD"}}
        ctx.event = normalize("paypal", json.dumps(paypal_event("PAYMENT.SALE.COMPLETED", resource)))
        assert ctx.delivers is False

    def test_rebill_does_not_deliver(self, purchase_ctx, stripe_invoice):
        ctx = purchase_ctx()
        ctx.event = normalize("stripe", json.dumps(stripe_invoice(billing_reason="subscription_cycle")))
        ctx.order.deliv_accessid = None
        ctx.first_purchase = False
        assert ctx.delivers is False


@pytest.mark.critical
class TestDispatchPurchase:
    """Test the purchase delivery steps"""

    def test_email_delivery_stamps_access_id(self, db_session, purchase_ctx, mock_email_service):
        ctx = purchase_ctx()

        assert dispatch(db_session, ctx) == DISPATCH_DELIVERED
        assert ctx.order.deliv_accessid is not None
        assert len(ctx.order.deliv_accessid) == 32
        assert "Your Growth Course" in _sent_subjects(mock_email_service)

    def test_failing_step_does_not_stop_delivery(self, db_session, purchase_ctx):
        ctx = purchase_ctx()
        with patch('ipnledger.services.delivery.set_latest_payment_provider', side_effect=RuntimeError("redis down")):
            assert dispatch(db_session, ctx) == DISPATCH_DELIVERED
        assert ctx.order.deliv_accessid is not None

    def test_remembers_provider(self, db_session, purchase_ctx, mock_redis):
        ctx = purchase_ctx()
        dispatch(db_session, ctx)
        assert mock_redis.get(f"customer_latest_payment_provider_{ctx.customer.id}") == "stripe"

    def test_marks_abandoned_checkouts(self, db_session, catalog, purchase_ctx):
        db_session.add(CheckoutAbandoned(customer_email="delivered@resend.dev",
                                         product_pricing_id=catalog.one_time.id))
        db_session.commit()

        dispatch(db_session, purchase_ctx())

        assert db_session.query(CheckoutAbandoned).first().purchased is True

    def test_sale_notification(self, db_session, catalog, purchase_ctx, mock_email_service, mock_redis):
        catalog.product.owner_sale_notification = True
        db_session.commit()

        dispatch(db_session, purchase_ctx())

        assert "New sale: Growth Course" in _sent_subjects(mock_email_service)
        assert "sale" in _owner_notice_kinds(mock_redis)

    def test_missing_delivery(self, db_session, catalog, purchase_ctx, mock_redis, caplog):
        pricing = ProductPricing(product_id=catalog.product.id, price=Decimal("9.00"), price_currency="USD")
        db_session.add(pricing)
        db_session.commit()
        ctx = purchase_ctx(pricing=pricing)

        with caplog.at_level(logging.CRITICAL, logger="delivery"):
            assert dispatch(db_session, ctx) == DISPATCH_MISSING_DELIVERY

        assert ctx.order.deliv_accessid is None
        assert "delivery_method_missing" in _owner_notice_kinds(mock_redis)
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)


@pytest.mark.critical
class TestRefusals:
    """Test abuse and member-only refusals"""

    def _severity(self, db_session, catalog, customer_score, max_score):
        db_session.add(BlacklistIncident(track_id="track-1", severity=customer_score))
        db_session.add(ProductSetting(product_id=catalog.product.id, key="severity", value=str(max_score)))
        db_session.commit()

    def test_score_over_maximum_refuses(self, db_session, catalog, purchase_ctx, mock_email_service, mock_redis):
        self._severity(db_session, catalog, customer_score=5, max_score=3)
        ctx = purchase_ctx(track_id="track-1")

        assert dispatch(db_session, ctx) == DISPATCH_REFUSED
        assert ctx.order.deliv_accessid is None
        assert "About your purchase of Growth Course" in _sent_subjects(mock_email_service)
        assert "delivery_refused" in _owner_notice_kinds(mock_redis)

    def test_score_at_maximum_delivers(self, db_session, catalog, purchase_ctx):
        self._severity(db_session, catalog, customer_score=3, max_score=3)
        ctx = purchase_ctx(track_id="track-1")

        assert dispatch(db_session, ctx) == DISPATCH_DELIVERED

    def test_member_only_refuses_non_member(self, db_session, catalog, purchase_ctx, mock_email_service):
        catalog.one_time.availability = ProductPricing.AVAILABILITY_MEMBER
        db_session.commit()

        assert dispatch(db_session, purchase_ctx()) == DISPATCH_REFUSED
        assert "Growth Course is available to members only" in _sent_subjects(mock_email_service)

    def test_member_only_delivers_to_member(self, db_session, catalog, purchase_ctx):
        catalog.one_time.availability = ProductPricing.AVAILABILITY_MEMBER
        site = MembershipSite(user_id=42, name="Academy")
        db_session.add(site)
        db_session.flush()
        db_session.add(MembershipSiteProduct(membership_site_id=site.id, product_id=catalog.product.id))
        db_session.add(Member(membership_site_id=site.id, email="delivered@resend.dev"))
        db_session.commit()

        assert dispatch(db_session, purchase_ctx()) == DISPATCH_DELIVERED


@pytest.mark.high
class TestMembershipAccess:
    """Test membership grants and revocations"""

    def _membership_product(self, db_session, catalog):
        catalog.product.product_type = Product.TYPE_MEMBERSHIP
        catalog.one_time.deliveries[0].delivery_method = ProductDelivery.METHOD_MEMBERSHIP
        site = MembershipSite(user_id=42, name="Academy")
        db_session.add(site)
        db_session.flush()
        db_session.add(MembershipSiteProduct(membership_site_id=site.id, product_id=catalog.product.id))
        db_session.commit()
        return site

    def test_grant_creates_member_and_access(self, db_session, catalog, purchase_ctx):
        site = self._membership_product(db_session, catalog)
        ctx = purchase_ctx()

        assert dispatch(db_session, ctx) == DISPATCH_DELIVERED

        member = db_session.query(Member).filter(Member.membership_site_id == site.id).one()
        assert member.email == "delivered@resend.dev"
        assert db_session.query(MemberProductAccess).filter(
            MemberProductAccess.product_order_id == ctx.order.id
        ).count() == 1

    def test_grant_is_idempotent(self, db_session, catalog, purchase_ctx):
        self._membership_product(db_session, catalog)
        ctx = purchase_ctx()

        assert delivery.grant_membership_access(db_session, catalog.product, ctx.order, ctx.customer) == 1
        assert delivery.grant_membership_access(db_session, catalog.product, ctx.order, ctx.customer) == 0

    def test_refund_revokes_and_records_incident(self, db_session, catalog, purchase_ctx,
                                                  stripe_charge_refunded, mock_redis):
        self._membership_product(db_session, catalog)
        ctx = purchase_ctx()
        dispatch(db_session, ctx)

        refund_ctx = DispatchContext(normalize("stripe", json.dumps(stripe_charge_refunded())),
                                     catalog.product, catalog.one_time, ctx.order, ctx.customer)
        assert dispatch(db_session, refund_ctx) == DISPATCH_SKIPPED

        assert db_session.query(MemberProductAccess).count() == 0
        incidents = _queued(mock_redis, "blacklist_incidents")
        assert len(incidents) == 1
        assert incidents[0]["task_type"] == "blacklist_incident"
        assert incidents[0]["payload"]["kind"] == "refund"
        assert incidents[0]["payload"]["product_order_id"] == ctx.order.id

    def test_cancellation_revokes_without_incident(self, db_session, catalog, purchase_ctx, mock_redis):
        self._membership_product(db_session, catalog)
        ctx = purchase_ctx()
        dispatch(db_session, ctx)

        payload = {
            "id": "evt_del", "type": "customer.subscription.deleted", "livemode": True, "created": 1700000000,
            "data": {"object": {"id": "sub_test123"}},
        }
        cancel_ctx = DispatchContext(normalize("stripe", json.dumps(payload)),
                                     catalog.product, catalog.one_time, ctx.order, ctx.customer)
        dispatch(db_session, cancel_ctx)

        assert db_session.query(MemberProductAccess).count() == 0
        assert _queued(mock_redis, "blacklist_incidents") == []


@pytest.mark.high
class TestStockNotices:
    """Test low and out of stock owner notices"""

    @pytest.mark.parametrize("stock_left,expected", [(4, "low_stock"), (0, "out_of_stock")])
    def test_stock_notice(self, db_session, catalog, purchase_ctx, mock_redis, stock_left, expected):
        catalog.one_time.stock_left = stock_left
        db_session.commit()

        dispatch(db_session, purchase_ctx())

        assert expected in _owner_notice_kinds(mock_redis)

    def test_no_notice_between_levels(self, db_session, catalog, purchase_ctx, mock_redis):
        catalog.one_time.stock_left = 7
        db_session.commit()

        dispatch(db_session, purchase_ctx())

        kinds = _owner_notice_kinds(mock_redis)
        assert "low_stock" not in kinds
        assert "out_of_stock" not in kinds


@pytest.mark.high
class TestCrossSells:
    """Test cross-sell delivery"""

    def test_cross_sell_ids_from_json(self):
        assert delivery.cross_sell_pricing_ids({"cross_sell_pricing_id": "[3, \"4\", \"x\"]"}) == [3, 4]
        assert delivery.cross_sell_pricing_ids({}) == []

    def test_each_cross_sell_is_delivered(self, db_session, catalog, purchase_ctx, mock_email_service):
        ctx = purchase_ctx(params={"cross_sell_pricing_id": json.dumps([catalog.yearly.id])})

        dispatch(db_session, ctx)

        # main delivery plus one cross-sell
        assert _sent_subjects(mock_email_service).count("Your Growth Course") == 2

    def test_cross_sell_without_delivery_notifies_owner(self, db_session, catalog, purchase_ctx, mock_redis):
        bare = ProductPricing(product_id=catalog.product.id, price=Decimal("5.00"), price_currency="USD")
        db_session.add(bare)
        db_session.commit()
        ctx = purchase_ctx(params={"cross_sell_pricing_id": json.dumps([bare.id])})

        assert dispatch(db_session, ctx) == DISPATCH_DELIVERED
        assert "delivery_method_missing" in _owner_notice_kinds(mock_redis)


@pytest.mark.high
class TestPostNotification:
    """Test outbound post notifications"""

    def _post_delivery(self, db_session, catalog):
        deliv = catalog.one_time.deliveries[0]
        deliv.delivery_method = ProductDelivery.METHOD_POST_NOTIFICATION
        deliv.post_notification_url = "https://owner.example.com/hook"
        db_session.commit()

    def test_payload_carries_product_data_and_headers(self, db_session, catalog, purchase_ctx,
                                                      mock_post_notification):
        self._post_delivery(db_session, catalog)
        ctx = purchase_ctx(params={"request_headers": {"user-agent": "PayPal/AUHD-214.0"}})

        dispatch(db_session, ctx)

        mock_post_notification.assert_called_once()
        args, kwargs = mock_post_notification.call_args
        assert args[0] == "https://owner.example.com/hook"
        body = kwargs["json"]
        assert body["type"] == "payment_intent.succeeded"
        assert body["_prod_data"] == [{
            "product_order_id": ctx.order.id,
            "prod_name": "Growth Course",
            "price_variant_id": catalog.one_time.id,
        }]
        assert body["headers"] == {"user-agent": "PayPal/AUHD-214.0"}

    def test_plan_change_includes_old_pricing(self, catalog, purchase_ctx):
        ctx = purchase_ctx()
        ctx.old_pricing = catalog.monthly
        body = delivery.build_post_notification(ctx)
        assert body["_prod_data"][0]["old_price_variant_id"] == catalog.monthly.id

    def test_failure_notifies_owner(self, db_session, catalog, purchase_ctx, mock_post_notification, mock_redis):
        self._post_delivery(db_session, catalog)
        mock_post_notification.side_effect = httpx.ConnectError("connection refused")

        assert dispatch(db_session, purchase_ctx()) == DISPATCH_DELIVERED
        assert "post_notification_failed" in _owner_notice_kinds(mock_redis)

    def test_email_delivery_posts_nothing(self, db_session, purchase_ctx, mock_post_notification):
        dispatch(db_session, purchase_ctx())
        mock_post_notification.assert_not_called()
