"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from ipnledger.models.base import Base
from ipnledger.models.ipn_raw_log import IpnRawLog
from ipnledger.models.customer import Customer
from ipnledger.models.product import (
    Product, ProductPricing, ProductSetting, ProductDelivery, ProductCoupon
)
from ipnledger.models.membership import (
    MembershipSite, MembershipSiteProduct, Member, MemberProductAccess
)
from ipnledger.models.order import ProductOrder, Transaction
from ipnledger.models.checkout import CheckoutAbandoned, BlacklistIncident

# Export all for convenience
__all__ = [
    "Base", "IpnRawLog", "Customer",
    "Product", "ProductPricing", "ProductSetting", "ProductDelivery", "ProductCoupon",
    "MembershipSite", "MembershipSiteProduct", "Member", "MemberProductAccess",
    "ProductOrder", "Transaction", "CheckoutAbandoned", "BlacklistIncident",
]
