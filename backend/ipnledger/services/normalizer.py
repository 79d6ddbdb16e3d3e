"""Single normalization boundary: raw IPN log -> canonical event"""
import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ipnledger.core.exceptions import FatalEventError, UnsupportedEventError
from ipnledger.models.ipn_raw_log import IpnRawLog
from ipnledger.schemas.events import IpnEvent
from ipnledger.services.paypal_normalizer import normalize_paypal
from ipnledger.services.stripe_normalizer import normalize_stripe
from ipnledger.utils.payloads import payload_hash

logger = logging.getLogger(__name__)

NORMALIZERS = {
    IpnRawLog.PROCESSOR_STRIPE: normalize_stripe,
    IpnRawLog.PROCESSOR_PAYPAL: normalize_paypal,
}


def normalize(processor: str, raw_text: str, params: Optional[Dict[str, Any]] = None) -> IpnEvent:
    """Decode and normalize one raw payload.

    Args:
        processor: 'stripe', 'paypal' or 'paddle'
        raw_text: Raw JSON body exactly as received
        params: Side-channel metadata captured at intake

    Returns:
        One canonical event variant

    Raises:
        UnsupportedEventError: unknown processor or event type
        FatalEventError: payload cannot be decoded or lacks required fields
    """
    normalizer = NORMALIZERS.get(processor)
    if normalizer is None:
        raise UnsupportedEventError(f"No normalizer for processor '{processor}'")

    try:
        event = json.loads(raw_text)
    except (ValueError, TypeError) as e:
        raise FatalEventError(f"Malformed {processor} payload: {e}")
    if not isinstance(event, dict):
        raise FatalEventError(f"Malformed {processor} payload: expected a JSON object")

    try:
        return normalizer(event, params or {}, payload_hash(raw_text))
    except (ValidationError, KeyError) as e:
        raise FatalEventError(
            f"Incomplete {processor} payload",
            context={"error": str(e), "event_id": event.get("id")}
        )
