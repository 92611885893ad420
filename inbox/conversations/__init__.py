"""Conversation model, storage and routing."""

from . import schemas
from .models import DeliveryReceipt, DeliveryResult, InboundMessage, OutboundMessage

__all__ = [
    "DeliveryReceipt",
    "DeliveryResult",
    "InboundMessage",
    "OutboundMessage",
    "schemas",
]
