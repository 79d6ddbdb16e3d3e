"""Pydantic schemas for the IPN intake API and handler results"""
from pydantic import BaseModel
from typing import Optional


class IpnQueuedResponse(BaseModel):
    status: str = "queued"
    ipn_log_id: int
    task_id: str


class HandlerResult(BaseModel):
    """Outcome of processing one raw IPN log"""
    ok: bool
    outcome: str  # 'processed', 'duplicate', 'ignored', 'refused', 'failed', 'unsupported'
    reason: Optional[str] = None
    product_order_id: Optional[int] = None
    transaction_id: Optional[int] = None
