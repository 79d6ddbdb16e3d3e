"""Exceptions raised inside the IPN pipeline"""
from typing import Any, Dict, Optional


class FatalEventError(RuntimeError):
    """The event can never be processed (missing catalog row, order or transaction).

    Raised deep in the pipeline and caught by the handler, which logs it at
    critical level and reports failure without re-raising, so the queue does
    not retry it.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context = context or {}


class UnsupportedEventError(ValueError):
    """The processor sent an event type this service does not reconcile"""


class DeliveryRefused(Exception):
    """Delivery stopped on purpose (abuse score, member-only pricing)"""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
