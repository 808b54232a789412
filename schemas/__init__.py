"""Schemas package for request/response validation."""

from .payment import InvoiceItem, InvoiceRef, InvoiceRequest, PaymentEvent
from .subscription import (
    CheckoutSessionResponse,
    PlanChangePreview,
    PlanChangeResponse,
    SubscriptionResponse,
)

__all__ = [
    "CheckoutSessionResponse",
    "InvoiceItem",
    "InvoiceRef",
    "InvoiceRequest",
    "PaymentEvent",
    "PlanChangePreview",
    "PlanChangeResponse",
    "SubscriptionResponse",
]
