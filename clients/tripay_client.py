"""Tripay closed-payment gateway client."""

import hashlib
import hmac
import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from clients.payment_gateway import GatewayAdapter
from core.config import settings
from core.constants import GatewayName, PaymentEventKind
from core.exceptions import GatewayError, MalformedPayloadError, SignatureVerificationError
from schemas.payment import InvoiceRef, InvoiceRequest, PaymentEvent

logger = logging.getLogger(__name__)

STATUS_MAP: dict[str, PaymentEventKind] = {
    "PAID": PaymentEventKind.PAID,
    "UNPAID": PaymentEventKind.PENDING,
    "EXPIRED": PaymentEventKind.EXPIRED,
    "FAILED": PaymentEventKind.FAILED,
    "REFUND": PaymentEventKind.FAILED,
}


class TripayClient(GatewayAdapter):
    """Tripay closed transactions and payment_status callbacks."""

    name = GatewayName.TRIPAY.value
    reference_prefix = "checkout_"

    def __init__(
        self,
        api_key: str | None = None,
        private_key: str | None = None,
        merchant_code: str | None = None,
        base_url: str | None = None,
        payment_method: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key if api_key is not None else settings.tripay_api_key
        self.private_key = private_key if private_key is not None else settings.tripay_private_key
        self.merchant_code = (
            merchant_code if merchant_code is not None else settings.tripay_merchant_code
        )
        self.base_url = (base_url or settings.tripay_base_url).rstrip("/")
        self.payment_method = payment_method or settings.tripay_payment_method

    def _hmac(self, message: bytes) -> str:
        return hmac.new(self.private_key.encode(), message, hashlib.sha256).hexdigest()

    def transaction_signature(self, merchant_ref: str, amount: int) -> str:
        return self._hmac(f"{self.merchant_code}{merchant_ref}{amount}".encode())

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceRef:
        """
        Create a closed Tripay transaction.

        Args:
            request: Invoice details; amount must already be a whole number

        Returns:
            InvoiceRef: Tripay reference and checkout URL
        """
        merchant_ref = self.encode_reference(request.session_id)
        amount = int(request.amount)

        payload: dict[str, Any] = {
            "method": self.payment_method,
            "merchant_ref": merchant_ref,
            "amount": amount,
            "customer_name": request.customer_name,
            "customer_email": request.customer_email,
            "order_items": [
                {
                    "sku": item.sku,
                    "name": item.name,
                    "price": int(item.price),
                    "quantity": item.quantity,
                }
                for item in request.items
            ],
            "callback_url": f"{settings.webhook_base_url}/api/v1/webhooks/tripay",
            "expired_time": int(request.expires_at.timestamp()),
            "signature": self.transaction_signature(merchant_ref, amount),
        }
        if request.success_url:
            payload["return_url"] = request.success_url

        body = await self._post_json(
            f"{self.base_url}/transaction/create",
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        if not body.get("success"):
            raise GatewayError(self.name, f"Tripay rejected the transaction: {body.get('message')}")
        data = body.get("data") or {}
        reference = data.get("reference")
        checkout_url = data.get("checkout_url")
        if not reference or not checkout_url:
            raise GatewayError(self.name, "transaction response is missing reference or checkout_url")

        logger.info(f"Created Tripay transaction {reference} for {merchant_ref}")
        return InvoiceRef(
            gateway=self.name,
            merchant_reference=merchant_ref,
            provider_ref=reference,
            redirect_url=checkout_url,
        )

    def verify_and_parse(self, raw_body: bytes, signature: str | None) -> PaymentEvent:
        """Verify ``X-Callback-Signature`` over the raw body, then read the callback."""
        if not signature:
            raise SignatureVerificationError("missing X-Callback-Signature", {"gateway": self.name})
        if not hmac.compare_digest(self._hmac(raw_body), signature):
            logger.warning("Tripay callback signature mismatch")
            raise SignatureVerificationError("invalid Tripay signature", {"gateway": self.name})

        payload = self._load_json(raw_body)
        merchant_ref = str(self._require(payload, "merchant_ref"))
        status = str(self._require(payload, "status")).upper()
        kind = STATUS_MAP.get(status)
        if kind is None:
            raise MalformedPayloadError(
                f"unknown Tripay status '{status}'", {"gateway": self.name}
            )

        amount = None
        raw_amount = payload.get("amount_received", payload.get("total_amount"))
        if raw_amount is not None:
            try:
                amount = Decimal(str(raw_amount))
            except InvalidOperation as e:
                raise MalformedPayloadError("Tripay amount is not a number") from e

        paid_at = None
        if payload.get("paid_at"):
            try:
                paid_at = datetime.fromtimestamp(int(payload["paid_at"]), tz=UTC)
            except (TypeError, ValueError):
                logger.warning(f"Unparseable Tripay paid_at '{payload['paid_at']}'")

        return PaymentEvent(
            kind=kind,
            gateway=self.name,
            merchant_reference=merchant_ref,
            session_id=self.decode_reference(merchant_ref),
            gateway_transaction_id=payload.get("reference"),
            amount_received=amount,
            payment_method=payload.get("payment_method_code") or payload.get("payment_method"),
            paid_at=paid_at,
            failure_reason=payload.get("note") if kind == PaymentEventKind.FAILED else None,
            raw=payload,
        )
