"""Gateway-neutral payment schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from core.constants import PaymentEventKind


class InvoiceItem(BaseModel):
    """A line on a gateway invoice."""

    sku: str = Field(..., description="Item code")
    name: str = Field(..., description="Item name shown to the payer")
    price: Decimal = Field(..., description="Unit price in whole currency units")
    quantity: int = Field(default=1, description="Quantity")


class InvoiceRequest(BaseModel):
    """Everything a gateway needs to open a payment page."""

    session_id: str = Field(..., description="Checkout session UUID")
    amount: Decimal = Field(..., description="Chargeable amount in whole currency units")
    currency: str = Field(default="IDR", description="ISO currency code")
    customer_email: str = Field(..., description="Payer email")
    customer_name: str = Field(..., description="Payer name")
    description: str = Field(..., description="Invoice description")
    items: list[InvoiceItem] = Field(default_factory=list, description="Invoice lines")
    expires_at: datetime = Field(..., description="When the payment page stops accepting payment")
    success_url: str | None = Field(default=None, description="Redirect after payment")
    failure_url: str | None = Field(default=None, description="Redirect after failure")


class InvoiceRef(BaseModel):
    """What a gateway returned for a created invoice."""

    gateway: str = Field(..., description="Gateway name")
    merchant_reference: str = Field(..., description="Our reference as sent to the gateway")
    provider_ref: str = Field(..., description="Gateway-side invoice identifier")
    redirect_url: str = Field(..., description="Hosted payment page")
    token: str | None = Field(default=None, description="Client-side payment token, if any")


class PaymentEvent(BaseModel):
    """A verified webhook notification in gateway-neutral form."""

    kind: PaymentEventKind = Field(..., description="Canonical outcome")
    gateway: str = Field(..., description="Gateway that sent the event")
    merchant_reference: str = Field(..., description="Reference we sent to the gateway")
    session_id: str = Field(..., description="Checkout session decoded from the reference")
    gateway_transaction_id: str | None = Field(
        default=None, description="Gateway transaction or invoice identifier"
    )
    amount_received: Decimal | None = Field(default=None, description="Amount actually paid")
    payment_method: str | None = Field(default=None, description="Channel used by the payer")
    paid_at: datetime | None = Field(default=None, description="Settlement time")
    failure_reason: str | None = Field(default=None, description="Gateway status text for failures")
    raw: dict[str, Any] = Field(default_factory=dict, description="Original payload")

    @property
    def external_id(self) -> str:
        """Stable per-gateway key used to deduplicate payments."""
        return self.gateway_transaction_id or self.merchant_reference
