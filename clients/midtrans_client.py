"""Midtrans Snap gateway client."""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from clients.payment_gateway import GatewayAdapter
from core.config import settings
from core.constants import GatewayName, PaymentEventKind
from core.exceptions import GatewayError, MalformedPayloadError, SignatureVerificationError
from schemas.payment import InvoiceRef, InvoiceRequest, PaymentEvent
from utils.dates import ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Midtrans reports local times in Western Indonesia Time
WIB = timezone(timedelta(hours=7))

STATUS_MAP: dict[str, PaymentEventKind] = {
    "capture": PaymentEventKind.PAID,
    "settlement": PaymentEventKind.PAID,
    "pending": PaymentEventKind.PENDING,
    "expire": PaymentEventKind.EXPIRED,
    "deny": PaymentEventKind.FAILED,
    "cancel": PaymentEventKind.FAILED,
    "failure": PaymentEventKind.FAILED,
}


class MidtransClient(GatewayAdapter):
    """Snap payment pages and HTTP notifications."""

    name = GatewayName.MIDTRANS.value
    reference_prefix = "HRIS-"

    def __init__(
        self,
        server_key: str | None = None,
        snap_url: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.server_key = server_key if server_key is not None else settings.midtrans_server_key
        self.snap_url = (snap_url or settings.midtrans_snap_url).rstrip("/")

    def _auth_header(self) -> str:
        encoded = base64.b64encode(f"{self.server_key}:".encode()).decode()
        return f"Basic {encoded}"

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceRef:
        """
        Create a Snap transaction.

        Args:
            request: Invoice details; amount must already be a whole number

        Returns:
            InvoiceRef: Snap token and redirect URL
        """
        order_id = self.encode_reference(request.session_id)
        gross_amount = int(request.amount)
        expiry_minutes = max(
            1, int((ensure_utc(request.expires_at) - utc_now()).total_seconds() // 60)
        )

        payload: dict[str, Any] = {
            "transaction_details": {"order_id": order_id, "gross_amount": gross_amount},
            "customer_details": {
                "first_name": request.customer_name,
                "email": request.customer_email,
            },
            "item_details": [
                {
                    "id": item.sku,
                    "name": item.name[:50],
                    "price": int(item.price),
                    "quantity": item.quantity,
                }
                for item in request.items
            ],
            "expiry": {"unit": "minute", "duration": expiry_minutes},
            "custom_field1": request.session_id,
        }
        if request.success_url:
            payload["callbacks"] = {"finish": request.success_url}

        data = await self._post_json(
            f"{self.snap_url}/transactions",
            payload,
            expected_status=(201,),
            headers={"Authorization": self._auth_header(), "Accept": "application/json"},
        )

        token = data.get("token")
        redirect_url = data.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayError(self.name, "Snap response is missing token or redirect_url")

        logger.info(f"Created Midtrans Snap transaction for order {order_id}")
        return InvoiceRef(
            gateway=self.name,
            merchant_reference=order_id,
            provider_ref=token,
            redirect_url=redirect_url,
            token=token,
        )

    def expected_signature(self, order_id: str, status_code: str, gross_amount: str) -> str:
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(raw.encode()).hexdigest()

    def verify_and_parse(self, raw_body: bytes, signature: str | None) -> PaymentEvent:
        """
        Verify a Snap notification.

        The signature is the payload's ``signature_key`` (or the
        ``X-Signature-Key`` header when the caller forwards one).
        """
        payload = self._load_json(raw_body)
        order_id = str(self._require(payload, "order_id"))
        status_code = str(self._require(payload, "status_code"))
        gross_amount = str(self._require(payload, "gross_amount"))

        provided = signature or payload.get("signature_key")
        if not provided:
            raise SignatureVerificationError("missing Midtrans signature", {"gateway": self.name})
        expected = self.expected_signature(order_id, status_code, gross_amount)
        if not hmac.compare_digest(expected, str(provided)):
            logger.warning(f"Midtrans signature mismatch for order {order_id}")
            raise SignatureVerificationError("invalid Midtrans signature", {"gateway": self.name})

        transaction_status = str(self._require(payload, "transaction_status")).lower()
        kind = STATUS_MAP.get(transaction_status)
        if kind is None:
            raise MalformedPayloadError(
                f"unknown Midtrans transaction_status '{transaction_status}'",
                {"gateway": self.name},
            )
        if transaction_status == "capture" and payload.get("fraud_status") == "challenge":
            kind = PaymentEventKind.PENDING

        try:
            amount = Decimal(gross_amount)
        except InvalidOperation as e:
            raise MalformedPayloadError("Midtrans gross_amount is not a number") from e

        paid_at = None
        if kind == PaymentEventKind.PAID:
            paid_at = self._parse_time(
                payload.get("settlement_time") or payload.get("transaction_time")
            )

        return PaymentEvent(
            kind=kind,
            gateway=self.name,
            merchant_reference=order_id,
            session_id=self.decode_reference(order_id),
            gateway_transaction_id=payload.get("transaction_id"),
            amount_received=amount,
            payment_method=payload.get("payment_type"),
            paid_at=paid_at,
            failure_reason=transaction_status if kind == PaymentEventKind.FAILED else None,
            raw=payload,
        )

    def _parse_time(self, value: Any) -> datetime | None:
        if not value:
            return None
        try:
            return datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S").replace(tzinfo=WIB)
        except ValueError:
            logger.warning(f"Unparseable Midtrans time '{value}'")
            return None
