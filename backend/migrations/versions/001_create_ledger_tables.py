"""Create IPN log, catalog, membership and ledger tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*names):
    return [sa.Column(name, sa.DateTime(timezone=True), nullable=False) for name in names]


def upgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'ipn_raw_logs' not in existing_tables:
        op.create_table(
            'ipn_raw_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('processor', sa.String(length=20), nullable=False),
            sa.Column('transaction_type', sa.String(length=100), nullable=False),
            sa.Column('ipn_data', sa.Text(), nullable=False),
            sa.Column('params', sa.JSON(), nullable=True),
            *_timestamps('created_at'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_ipn_raw_logs_id', 'ipn_raw_logs', ['id'])
        op.create_index('ix_ipn_raw_logs_processor', 'ipn_raw_logs', ['processor'])
        op.create_index('ix_ipn_raw_logs_transaction_type', 'ipn_raw_logs', ['transaction_type'])

    if 'customers' not in existing_tables:
        op.create_table(
            'customers',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('cust_pay_email', sa.String(length=255), nullable=False),
            sa.Column('cust_email', sa.String(length=255), nullable=True),
            sa.Column('cust_fname', sa.String(length=100), nullable=True),
            sa.Column('cust_lname', sa.String(length=100), nullable=True),
            sa.Column('cust_address1', sa.String(length=255), nullable=True),
            sa.Column('cust_city', sa.String(length=100), nullable=True),
            sa.Column('cust_country', sa.String(length=100), nullable=True),
            sa.Column('cust_zipcode', sa.String(length=20), nullable=True),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('paypal_payer_id', sa.String(length=255), nullable=True),
            sa.Column('track_id', sa.String(length=255), nullable=True),
            *_timestamps('created_at', 'updated_at'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_customers_id', 'customers', ['id'])
        op.create_index('ix_customers_cust_pay_email', 'customers', ['cust_pay_email'], unique=True)
        op.create_index('ix_customers_stripe_customer_id', 'customers', ['stripe_customer_id'])
        op.create_index('ix_customers_paypal_payer_id', 'customers', ['paypal_payer_id'])
        op.create_index('ix_customers_track_id', 'customers', ['track_id'])

    if 'products' not in existing_tables:
        op.create_table(
            'products',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('owner_email', sa.String(length=255), nullable=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('product_type', sa.String(length=50), nullable=False),
            sa.Column('owner_sale_notification', sa.Boolean(), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_products_id', 'products', ['id'])
        op.create_index('ix_products_user_id', 'products', ['user_id'])

    if 'product_coupons' not in existing_tables:
        op.create_table(
            'product_coupons',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('code', sa.String(length=100), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=True),
            sa.Column('max_uses', sa.Integer(), nullable=True),
            sa.Column('used', sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_product_coupons_id', 'product_coupons', ['id'])
        op.create_index('ix_product_coupons_code', 'product_coupons', ['code'], unique=True)

    if 'product_pricings' not in existing_tables:
        op.create_table(
            'product_pricings',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('price', sa.Numeric(12, 2), nullable=False),
            sa.Column('price_currency', sa.String(length=3), nullable=False),
            sa.Column('is_subscription', sa.Boolean(), nullable=False),
            sa.Column('has_trial', sa.Boolean(), nullable=False),
            sa.Column('trial_price', sa.Numeric(12, 2), nullable=True),
            sa.Column('stock_left', sa.Integer(), nullable=True),
            sa.Column('availability', sa.String(length=20), nullable=False),
            sa.Column('applied_coupon_id', sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['applied_coupon_id'], ['product_coupons.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_product_pricings_id', 'product_pricings', ['id'])
        op.create_index('ix_product_pricings_product_id', 'product_pricings', ['product_id'])

    if 'product_settings' not in existing_tables:
        op.create_table(
            'product_settings',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('product_pricing_id', sa.Integer(), nullable=True),
            sa.Column('key', sa.String(length=100), nullable=False),
            sa.Column('value', sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['product_pricing_id'], ['product_pricings.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_product_settings_id', 'product_settings', ['id'])
        op.create_index('ix_product_settings_product_id', 'product_settings', ['product_id'])
        op.create_index('ix_product_settings_key_value', 'product_settings', ['key', 'value'])

    if 'product_deliveries' not in existing_tables:
        op.create_table(
            'product_deliveries',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('product_pricing_id', sa.Integer(), nullable=False),
            sa.Column('delivery_method', sa.String(length=50), nullable=False),
            sa.Column('email_subject', sa.String(length=255), nullable=True),
            sa.Column('email_body', sa.Text(), nullable=True),
            sa.Column('redirect_url', sa.String(length=1024), nullable=True),
            sa.Column('file_url', sa.String(length=1024), nullable=True),
            sa.Column('post_notification_url', sa.String(length=1024), nullable=True),
            sa.ForeignKeyConstraint(['product_pricing_id'], ['product_pricings.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_product_deliveries_id', 'product_deliveries', ['id'])
        op.create_index('ix_product_deliveries_product_pricing_id', 'product_deliveries', ['product_pricing_id'])

    if 'membership_sites' not in existing_tables:
        op.create_table(
            'membership_sites',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_membership_sites_id', 'membership_sites', ['id'])
        op.create_index('ix_membership_sites_user_id', 'membership_sites', ['user_id'])

    if 'membership_site_products' not in existing_tables:
        op.create_table(
            'membership_site_products',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('membership_site_id', sa.Integer(), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(['membership_site_id'], ['membership_sites.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_membership_site_products_id', 'membership_site_products', ['id'])
        op.create_index('ix_membership_site_products_membership_site_id', 'membership_site_products', ['membership_site_id'])
        op.create_index('ix_membership_site_products_product_id', 'membership_site_products', ['product_id'])

    if 'members' not in existing_tables:
        op.create_table(
            'members',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('membership_site_id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            *_timestamps('created_at'),
            sa.ForeignKeyConstraint(['membership_site_id'], ['membership_sites.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('membership_site_id', 'email', name='uq_members_site_email')
        )
        op.create_index('ix_members_id', 'members', ['id'])
        op.create_index('ix_members_membership_site_id', 'members', ['membership_site_id'])
        op.create_index('ix_members_email', 'members', ['email'])

    if 'checkout_abandoned' not in existing_tables:
        op.create_table(
            'checkout_abandoned',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('customer_email', sa.String(length=255), nullable=False),
            sa.Column('product_pricing_id', sa.Integer(), nullable=False),
            sa.Column('purchased', sa.Boolean(), nullable=False),
            *_timestamps('created_at'),
            sa.ForeignKeyConstraint(['product_pricing_id'], ['product_pricings.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_checkout_abandoned_id', 'checkout_abandoned', ['id'])
        op.create_index('ix_checkout_abandoned_customer_email', 'checkout_abandoned', ['customer_email'])

    if 'blacklist_incidents' not in existing_tables:
        op.create_table(
            'blacklist_incidents',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('track_id', sa.String(length=255), nullable=False),
            sa.Column('severity', sa.Integer(), nullable=False),
            *_timestamps('updated_at'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_blacklist_incidents_id', 'blacklist_incidents', ['id'])
        op.create_index('ix_blacklist_incidents_track_id', 'blacklist_incidents', ['track_id'], unique=True)

    if 'product_orders' not in existing_tables:
        op.create_table(
            'product_orders',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('customer_id', sa.Integer(), nullable=True),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('product_pricing_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('amount', sa.Numeric(12, 2), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('payment_processor', sa.String(length=30), nullable=False),
            sa.Column('subscription_id', sa.String(length=255), nullable=True),
            sa.Column('coupon_code', sa.String(length=100), nullable=True),
            sa.Column('marketing_consent', sa.Boolean(), nullable=True),
            sa.Column('is_test', sa.Integer(), nullable=False),
            sa.Column('deliv_accessid', sa.String(length=64), nullable=True),
            *_timestamps('created_at', 'updated_at'),
            sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
            sa.ForeignKeyConstraint(['product_id'], ['products.id']),
            sa.ForeignKeyConstraint(['product_pricing_id'], ['product_pricings.id']),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_product_orders_id', 'product_orders', ['id'])
        op.create_index('ix_product_orders_customer_id', 'product_orders', ['customer_id'])
        op.create_index('ix_product_orders_product_id', 'product_orders', ['product_id'])
        # Unique: concurrent workers cannot open two orders for one subscription
        op.create_index('ix_product_orders_subscription_id', 'product_orders', ['subscription_id'], unique=True)

    if 'member_product_accesses' not in existing_tables:
        op.create_table(
            'member_product_accesses',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('member_id', sa.Integer(), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('product_order_id', sa.Integer(), nullable=False),
            *_timestamps('created_at'),
            sa.ForeignKeyConstraint(['member_id'], ['members.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['product_order_id'], ['product_orders.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('member_id', 'product_order_id', name='uq_member_access_order')
        )
        op.create_index('ix_member_product_accesses_id', 'member_product_accesses', ['id'])
        op.create_index('ix_member_product_accesses_member_id', 'member_product_accesses', ['member_id'])
        op.create_index('ix_member_product_accesses_product_order_id', 'member_product_accesses', ['product_order_id'])

    if 'transactions' not in existing_tables:
        op.create_table(
            'transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('product_order_id', sa.Integer(), nullable=False),
            sa.Column('txn_id', sa.String(length=255), nullable=False),
            sa.Column('trans_amount', sa.Numeric(12, 2), nullable=False),
            sa.Column('trans_currency', sa.String(length=3), nullable=False),
            sa.Column('trans_date', sa.DateTime(timezone=True), nullable=False),
            sa.Column('trans_gateway', sa.String(length=30), nullable=False),
            sa.Column('trans_type', sa.String(length=20), nullable=False),
            sa.Column('is_rebill', sa.Boolean(), nullable=False),
            sa.Column('is_refunded', sa.Boolean(), nullable=False),
            sa.Column('buyer_email', sa.String(length=255), nullable=True),
            sa.Column('ipn_hash', sa.String(length=64), nullable=True),
            sa.Column('is_test', sa.Integer(), nullable=False),
            *_timestamps('created_at'),
            sa.ForeignKeyConstraint(['product_order_id'], ['product_orders.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('trans_gateway', 'txn_id', 'trans_type', name='uq_transactions_gateway_txn_type')
        )
        op.create_index('ix_transactions_id', 'transactions', ['id'])
        op.create_index('ix_transactions_product_order_id', 'transactions', ['product_order_id'])
        op.create_index('ix_transactions_ipn_hash', 'transactions', ['ipn_hash'])
        op.create_index('ix_transactions_txn_refunded', 'transactions', ['txn_id', 'is_refunded'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    for table in (
        'transactions', 'member_product_accesses', 'product_orders', 'blacklist_incidents',
        'checkout_abandoned', 'members', 'membership_site_products', 'membership_sites',
        'product_deliveries', 'product_settings', 'product_pricings', 'product_coupons',
        'products', 'customers', 'ipn_raw_logs',
    ):
        if table in existing_tables:
            op.drop_table(table)
