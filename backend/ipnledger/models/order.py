"""ProductOrder and Transaction models"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Numeric, ForeignKey,
    Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ipnledger.models.base import Base


class ProductOrder(Base):
    """One purchase or subscription lifecycle"""
    __tablename__ = "product_orders"

    cache_key = "product_orders"

    STATUS_COMPLETED = "completed"
    STATUS_REFUNDED = "refunded"
    STATUS_PARTIAL_REFUND = "partial_refund"
    STATUS_CANCELLED = "cancelled"
    STATUS_CHARGEBACK = "chargeback"

    # is_test values
    LIVE = 0
    LOW_VALUE = 1
    SANDBOX = 2

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    product_pricing_id = Column(Integer, ForeignKey("product_pricings.id"), nullable=False)
    status = Column(String(20), nullable=False, default=STATUS_COMPLETED)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_processor = Column(String(30), nullable=False)  # 'stripe', 'stripe connect', 'paypal'
    # Charge id for one-time purchases, subscription/billing agreement id for recurring
    subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    coupon_code = Column(String(100), nullable=True)
    marketing_consent = Column(Boolean, nullable=True)
    is_test = Column(Integer, nullable=False, default=LIVE)
    deliv_accessid = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    customer = relationship("Customer", back_populates="orders")
    product = relationship("Product")
    product_pricing = relationship("ProductPricing")
    transactions = relationship("Transaction", back_populates="product_order", order_by="Transaction.id")


class Transaction(Base):
    """One discrete monetary event on an order"""
    __tablename__ = "transactions"

    TYPE_PURCHASE = "purchase"
    TYPE_REBILL = "rebill"
    TYPE_UPGRADE = "upgrade"
    TYPE_DOWNGRADE = "downgrade"
    TYPE_CHARGEBACK = "chargeback"
    TYPE_CANCELLATION = "cancellation"

    id = Column(Integer, primary_key=True, index=True)
    product_order_id = Column(Integer, ForeignKey("product_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    txn_id = Column(String(255), nullable=False)
    trans_amount = Column(Numeric(12, 2), nullable=False)
    trans_currency = Column(String(3), nullable=False)
    trans_date = Column(DateTime(timezone=True), nullable=False)
    trans_gateway = Column(String(30), nullable=False)
    trans_type = Column(String(20), nullable=False)
    is_rebill = Column(Boolean, default=False, nullable=False)
    is_refunded = Column(Boolean, default=False, nullable=False)
    buyer_email = Column(String(255), nullable=True)
    ipn_hash = Column(String(64), nullable=True, index=True)  # sha-256 of the raw payload
    is_test = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    product_order = relationship("ProductOrder", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint('trans_gateway', 'txn_id', 'trans_type', name='uq_transactions_gateway_txn_type'),
        Index('ix_transactions_txn_refunded', 'txn_id', 'is_refunded'),
    )
