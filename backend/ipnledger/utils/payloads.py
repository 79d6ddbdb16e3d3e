"""Helpers for reading provider payloads"""
import hashlib
import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple


def payload_hash(raw: str) -> str:
    """sha-256 hex digest of the raw payload text"""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def dig(data: Any, *path, default=None):
    """Walk nested dicts/lists, returning default on the first missing step.

    Example:
        dig(event, "resource", "purchase_units", 0, "amount", "value")
    """
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return default
        elif not isinstance(current, dict) or step not in current:
            return default
        current = current[step]
    return default if current is None else current


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    """Split "First Last" on the first whitespace run.

    Each part is title-cased; a missing name yields ("Unknown", "").
    """
    if not full_name or not full_name.strip():
        return "Unknown", ""
    parts = full_name.strip().split(None, 1)
    first = parts[0].lower().title()
    last = parts[1].lower().title() if len(parts) > 1 else ""
    return first, last


def to_decimal(value: Any) -> Optional[Decimal]:
    """Major-unit amount (PayPal style "12.50") as Decimal"""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def minor_to_major(value: Any) -> Optional[Decimal]:
    """Minor-unit amount (Stripe cents) as a major-unit Decimal"""
    if value is None or value == "":
        return None
    try:
        return (Decimal(int(value)) / Decimal(100)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError, TypeError):
        return None


def from_unix(timestamp: Any) -> Optional[datetime]:
    """UTC datetime from a unix timestamp"""
    if timestamp in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError):
        return None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """UTC datetime from an ISO-8601 string such as '2024-05-01T10:00:00Z'"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_json_field(value: Any) -> Any:
    """Decode a JSON string field (PayPal custom_id, Stripe metadata lists)"""
    if value is None or isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (ValueError, TypeError):
        return None


def is_truthy_flag(value: Any) -> bool:
    """Interpret intake flags such as sandbox_mode ('on', 1, 'true')"""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("on", "1", "true", "yes")


def upper_or_none(value: Optional[str]) -> Optional[str]:
    return value.upper() if value else None
