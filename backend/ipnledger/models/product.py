"""Catalog models (read-only for the reconciliation core)"""
from sqlalchemy import Column, Integer, String, Text, Boolean, Numeric, ForeignKey, Index
from sqlalchemy.orm import relationship
from ipnledger.models.base import Base


class Product(Base):
    """Sellable product owned by a platform user"""
    __tablename__ = "products"

    TYPE_DIGITAL = "digital"
    TYPE_MEMBERSHIP = "membership"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)  # owning platform user
    owner_email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False)
    product_type = Column(String(50), nullable=False, default=TYPE_DIGITAL)
    owner_sale_notification = Column(Boolean, default=False, nullable=False)

    # Relationships
    pricings = relationship("ProductPricing", back_populates="product")
    settings = relationship("ProductSetting", back_populates="product")
    membership_sites = relationship("MembershipSiteProduct", back_populates="product")

    def get_setting(self, key: str, product_pricing_id: int = None):
        """Return the value of a product-level (or pricing-level) setting, or None"""
        for setting in self.settings:
            if setting.key == key and setting.product_pricing_id == product_pricing_id:
                return setting.value
        return None


class ProductPricing(Base):
    """Price variant of a product"""
    __tablename__ = "product_pricings"

    AVAILABILITY_PUBLIC = "public"
    AVAILABILITY_MEMBER = "member"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    price_currency = Column(String(3), nullable=False, default="USD")
    is_subscription = Column(Boolean, default=False, nullable=False)
    has_trial = Column(Boolean, default=False, nullable=False)
    trial_price = Column(Numeric(12, 2), nullable=True)
    stock_left = Column(Integer, nullable=True)  # None means unlimited
    availability = Column(String(20), nullable=False, default=AVAILABILITY_PUBLIC)
    applied_coupon_id = Column(Integer, ForeignKey("product_coupons.id", ondelete="SET NULL"), nullable=True)

    # Relationships
    product = relationship("Product", back_populates="pricings")
    deliveries = relationship("ProductDelivery", back_populates="pricing", order_by="ProductDelivery.id")

    @property
    def delivery(self):
        """First configured delivery, or None"""
        return self.deliveries[0] if self.deliveries else None


class ProductSetting(Base):
    """Key/value settings per product, optionally scoped to a pricing"""
    __tablename__ = "product_settings"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    product_pricing_id = Column(Integer, ForeignKey("product_pricings.id", ondelete="CASCADE"), nullable=True)
    key = Column(String(100), nullable=False)
    value = Column(Text, nullable=True)

    # Relationship
    product = relationship("Product", back_populates="settings")

    __table_args__ = (
        Index('ix_product_settings_key_value', 'key', 'value'),
    )


class ProductDelivery(Base):
    """How a pricing is delivered once paid"""
    __tablename__ = "product_deliveries"

    METHOD_MEMBERSHIP = "membership"
    METHOD_EMAIL = "email"
    METHOD_REDIRECT_URL = "redirect_url"
    METHOD_FILE_UPLOAD = "file_upload"
    METHOD_POST_NOTIFICATION = "post_notification"

    id = Column(Integer, primary_key=True, index=True)
    product_pricing_id = Column(Integer, ForeignKey("product_pricings.id", ondelete="CASCADE"), nullable=False, index=True)
    delivery_method = Column(String(50), nullable=False)
    email_subject = Column(String(255), nullable=True)
    email_body = Column(Text, nullable=True)
    redirect_url = Column(String(1024), nullable=True)
    file_url = Column(String(1024), nullable=True)
    post_notification_url = Column(String(1024), nullable=True)

    # Relationship
    pricing = relationship("ProductPricing", back_populates="deliveries")


class ProductCoupon(Base):
    """Discount coupon with a usage counter"""
    __tablename__ = "product_coupons"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(100), unique=True, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=True)
    max_uses = Column(Integer, nullable=True)  # None means unlimited
    used = Column(Integer, default=0, nullable=False)

    @property
    def remaining(self):
        if self.max_uses is None:
            return None
        return max(self.max_uses - self.used, 0)
