"""Xendit invoice gateway client."""

import hashlib
import hmac
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from clients.payment_gateway import GatewayAdapter
from core.config import settings
from core.constants import GatewayName, PaymentEventKind
from core.exceptions import GatewayError, MalformedPayloadError, SignatureVerificationError
from schemas.payment import InvoiceRef, InvoiceRequest, PaymentEvent
from utils.dates import ensure_utc, utc_now

logger = logging.getLogger(__name__)

STATUS_MAP: dict[str, PaymentEventKind] = {
    "PAID": PaymentEventKind.PAID,
    "SETTLED": PaymentEventKind.PAID,
    "PENDING": PaymentEventKind.PENDING,
    "EXPIRED": PaymentEventKind.EXPIRED,
    "FAILED": PaymentEventKind.FAILED,
}

# Older callbacks carry an event name instead of a status
EVENT_MAP: dict[str, PaymentEventKind] = {
    "invoice.paid": PaymentEventKind.PAID,
    "invoice.expired": PaymentEventKind.EXPIRED,
    "invoice.failed": PaymentEventKind.FAILED,
}


class XenditClient(GatewayAdapter):
    """Xendit hosted invoices and invoice callbacks."""

    name = GatewayName.XENDIT.value
    reference_prefix = "checkout_"

    def __init__(
        self,
        secret_key: str | None = None,
        callback_key: str | None = None,
        base_url: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.secret_key = secret_key if secret_key is not None else settings.xendit_secret_key
        self.callback_key = (
            callback_key if callback_key is not None else settings.xendit_callback_key
        )
        self.base_url = (base_url or settings.xendit_base_url).rstrip("/")

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceRef:
        """
        Create a Xendit invoice.

        Args:
            request: Invoice details; amount must already be a whole number

        Returns:
            InvoiceRef: Invoice ID and hosted invoice URL
        """
        external_id = self.encode_reference(request.session_id)
        duration = max(60, int((ensure_utc(request.expires_at) - utc_now()).total_seconds()))

        payload: dict[str, Any] = {
            "external_id": external_id,
            "amount": int(request.amount),
            "currency": request.currency,
            "payer_email": request.customer_email,
            "description": request.description,
            "invoice_duration": duration,
            "customer": {"given_names": request.customer_name, "email": request.customer_email},
            "items": [
                {"name": item.name, "quantity": item.quantity, "price": int(item.price)}
                for item in request.items
            ],
        }
        if request.success_url:
            payload["success_redirect_url"] = request.success_url
        if request.failure_url:
            payload["failure_redirect_url"] = request.failure_url

        data = await self._post_json(
            f"{self.base_url}/v2/invoices",
            payload,
            auth=(self.secret_key, ""),
        )

        invoice_id = data.get("id")
        invoice_url = data.get("invoice_url")
        if not invoice_id or not invoice_url:
            raise GatewayError(self.name, "invoice response is missing id or invoice_url")

        logger.info(f"Created Xendit invoice {invoice_id} for {external_id}")
        return InvoiceRef(
            gateway=self.name,
            merchant_reference=external_id,
            provider_ref=invoice_id,
            redirect_url=invoice_url,
        )

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.callback_key.encode(), raw_body, hashlib.sha256).hexdigest()

    def verify_and_parse(self, raw_body: bytes, signature: str | None) -> PaymentEvent:
        """Verify the ``X-CALLBACK-TOKEN`` header, then read the invoice callback."""
        if not signature:
            raise SignatureVerificationError("missing X-CALLBACK-TOKEN", {"gateway": self.name})
        if not hmac.compare_digest(self.sign(raw_body), signature):
            logger.warning("Xendit callback token mismatch")
            raise SignatureVerificationError("invalid Xendit callback token", {"gateway": self.name})

        payload = self._load_json(raw_body)
        external_id = str(self._require(payload, "external_id"))

        kind = None
        if payload.get("status"):
            kind = STATUS_MAP.get(str(payload["status"]).upper())
        elif payload.get("webhook_type"):
            kind = EVENT_MAP.get(str(payload["webhook_type"]))
        if kind is None:
            raise MalformedPayloadError(
                "unknown Xendit invoice status",
                {"gateway": self.name, "status": payload.get("status")},
            )

        amount = None
        raw_amount = payload.get("paid_amount", payload.get("amount"))
        if raw_amount is not None:
            try:
                amount = Decimal(str(raw_amount))
            except InvalidOperation as e:
                raise MalformedPayloadError("Xendit amount is not a number") from e

        return PaymentEvent(
            kind=kind,
            gateway=self.name,
            merchant_reference=external_id,
            session_id=self.decode_reference(external_id),
            gateway_transaction_id=payload.get("id"),
            amount_received=amount,
            payment_method=payload.get("payment_method") or payload.get("payment_channel"),
            paid_at=self._parse_time(payload.get("paid_at")),
            failure_reason=payload.get("failure_code") if kind == PaymentEventKind.FAILED else None,
            raw=payload,
        )

    def _parse_time(self, value: Any) -> datetime | None:
        if not value:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
        except ValueError:
            logger.warning(f"Unparseable Xendit time '{value}'")
            return None
