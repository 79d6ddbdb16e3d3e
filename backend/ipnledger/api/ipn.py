"""IPN webhook API routes"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ipnledger.db.session import get_db
from ipnledger.schemas.ipn import IpnQueuedResponse
from ipnledger.services.intake import (
    receive_stripe_webhook, receive_paypal_webhook, replay_ipn_log
)

router = APIRouter(prefix="/api/ipn", tags=["ipn"])
logger = logging.getLogger(__name__)


@router.post("/stripe", response_model=IpnQueuedResponse)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Receive a Stripe webhook

    The body is read as raw bytes so the signature check and the stored
    payload hash see exactly what Stripe sent.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        return receive_stripe_webhook(payload, sig_header, db)
    except ValueError as e:
        logger.error(f"Invalid Stripe webhook payload: {e}")
        raise HTTPException(400, str(e))
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid Stripe webhook signature: {e}")
        raise HTTPException(400, "Invalid signature")


@router.post("/paypal", response_model=IpnQueuedResponse)
async def paypal_webhook(request: Request, db: Session = Depends(get_db)):
    """Receive a PayPal webhook

    Query parameters: product_id, product_pricing_id, sandbox_mode
    """
    payload = await request.body()

    try:
        return receive_paypal_webhook(payload, request.query_params, request.headers, db)
    except ValueError as e:
        logger.error(f"Invalid PayPal webhook payload: {e}")
        raise HTTPException(400, str(e))


@router.post("/logs/{ipn_log_id}/replay", response_model=IpnQueuedResponse)
def replay_log(ipn_log_id: int, db: Session = Depends(get_db)):
    """Queue a stored IPN log for processing again"""
    result = replay_ipn_log(ipn_log_id, db)
    if result is None:
        raise HTTPException(404, "IPN log not found")
    return result
