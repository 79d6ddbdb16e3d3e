"""Membership site models"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ipnledger.models.base import Base


class MembershipSite(Base):
    """Membership site that can grant access to products"""
    __tablename__ = "membership_sites"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Relationships
    products = relationship("MembershipSiteProduct", back_populates="membership_site")
    members = relationship("Member", back_populates="membership_site")


class MembershipSiteProduct(Base):
    """Link between a membership site and a product"""
    __tablename__ = "membership_site_products"

    id = Column(Integer, primary_key=True, index=True)
    membership_site_id = Column(Integer, ForeignKey("membership_sites.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)

    # Relationships
    membership_site = relationship("MembershipSite", back_populates="products")
    product = relationship("Product", back_populates="membership_sites")


class Member(Base):
    """Member of a membership site"""
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    membership_site_id = Column(Integer, ForeignKey("membership_sites.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    membership_site = relationship("MembershipSite", back_populates="members")
    accesses = relationship("MemberProductAccess", back_populates="member", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('membership_site_id', 'email', name='uq_members_site_email'),
    )


class MemberProductAccess(Base):
    """Access granted to a member by a specific order"""
    __tablename__ = "member_product_accesses"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    product_order_id = Column(Integer, ForeignKey("product_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    member = relationship("Member", back_populates="accesses")

    __table_args__ = (
        UniqueConstraint('member_id', 'product_order_id', name='uq_member_access_order'),
    )
