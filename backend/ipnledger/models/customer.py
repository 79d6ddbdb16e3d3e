"""Customer model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ipnledger.models.base import Base


class Customer(Base):
    """Buyer identified by payment email"""
    __tablename__ = "customers"

    cache_key = "customers"

    id = Column(Integer, primary_key=True, index=True)
    cust_pay_email = Column(String(255), unique=True, nullable=False, index=True)
    cust_email = Column(String(255), nullable=True)
    cust_fname = Column(String(100), nullable=True)
    cust_lname = Column(String(100), nullable=True)
    cust_address1 = Column(String(255), nullable=True)
    cust_city = Column(String(100), nullable=True)
    cust_country = Column(String(100), nullable=True)
    cust_zipcode = Column(String(20), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    paypal_payer_id = Column(String(255), nullable=True, index=True)
    track_id = Column(String(255), nullable=True, index=True)  # cross-system marketing id
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    orders = relationship("ProductOrder", back_populates="customer")
