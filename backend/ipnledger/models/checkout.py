"""Checkout side tables: abandoned checkouts and abuse incidents"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from datetime import datetime, timezone
from ipnledger.models.base import Base


class CheckoutAbandoned(Base):
    """Checkout started but (so far) not paid"""
    __tablename__ = "checkout_abandoned"

    id = Column(Integer, primary_key=True, index=True)
    customer_email = Column(String(255), nullable=False, index=True)
    product_pricing_id = Column(Integer, ForeignKey("product_pricings.id", ondelete="CASCADE"), nullable=False)
    purchased = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)


class BlacklistIncident(Base):
    """Accumulated abuse severity for a tracking id"""
    __tablename__ = "blacklist_incidents"

    id = Column(Integer, primary_key=True, index=True)
    track_id = Column(String(255), unique=True, nullable=False, index=True)
    severity = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
