"""IpnRawLog model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime, timezone
from ipnledger.models.base import Base


class IpnRawLog(Base):
    """Append-only log of every inbound webhook payload"""
    __tablename__ = "ipn_raw_logs"

    PROCESSOR_STRIPE = "stripe"
    PROCESSOR_PAYPAL = "paypal"
    PROCESSOR_PADDLE = "paddle"
    PROCESSORS = (PROCESSOR_STRIPE, PROCESSOR_PAYPAL, PROCESSOR_PADDLE)

    id = Column(Integer, primary_key=True, index=True)
    processor = Column(String(20), nullable=False, index=True)
    transaction_type = Column(String(100), nullable=False, index=True)
    ipn_data = Column(Text, nullable=False)  # raw body, kept verbatim so the hash is reproducible
    params = Column(JSON, default=dict)  # side-channel metadata captured at intake
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
