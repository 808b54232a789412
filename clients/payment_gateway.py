"""Common contract for payment gateway clients."""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any

import httpx

from core.config import settings
from core.exceptions import GatewayError, GatewayTimeoutError, MalformedPayloadError
from schemas.payment import InvoiceRef, InvoiceRequest, PaymentEvent

logger = logging.getLogger(__name__)


class GatewayAdapter(ABC):
    """
    One payment provider behind a uniform interface.

    Subclasses own their merchant-reference encoding, signature scheme and
    status vocabulary; callers only ever see ``InvoiceRef`` and ``PaymentEvent``.
    """

    name: str
    reference_prefix: str

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self._transport = transport

    # ----- merchant references -----

    def encode_reference(self, session_id: str) -> str:
        return f"{self.reference_prefix}{session_id}"

    def decode_reference(self, reference: str) -> str:
        """
        Recover the checkout session ID from a merchant reference.

        Raises:
            MalformedPayloadError: If the prefix or UUID is wrong
        """
        if not reference or not reference.startswith(self.reference_prefix):
            raise MalformedPayloadError(
                f"unrecognized {self.name} merchant reference",
                {"gateway": self.name, "reference": reference},
            )
        candidate = reference[len(self.reference_prefix) :]
        try:
            return str(uuid.UUID(candidate))
        except ValueError as e:
            raise MalformedPayloadError(
                f"{self.name} merchant reference does not carry a session ID",
                {"gateway": self.name, "reference": reference},
            ) from e

    # ----- gateway operations -----

    @abstractmethod
    async def create_invoice(self, request: InvoiceRequest) -> InvoiceRef:
        """Open a hosted payment page for ``request``."""

    @abstractmethod
    def verify_and_parse(self, raw_body: bytes, signature: str | None) -> PaymentEvent:
        """Authenticate a webhook body and translate it into a PaymentEvent."""

    # ----- helpers for subclasses -----

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport, **kwargs)

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        expected_status: tuple[int, ...] = (200, 201),
        **client_kwargs: Any,
    ) -> dict[str, Any]:
        """POST a JSON body and return the decoded response."""
        try:
            async with self._client(**client_kwargs) as client:
                response = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.name} request timed out: {e}")
            raise GatewayTimeoutError(self.name, f"{self.name} did not respond in time") from e
        except httpx.HTTPError as e:
            logger.error(f"{self.name} request failed: {e}")
            raise GatewayError(self.name, f"{self.name} request failed: {e}") from e

        if response.status_code not in expected_status:
            logger.error(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:500]}"
            )
            raise GatewayError(
                self.name,
                f"{self.name} rejected the request",
                status_code=response.status_code,
            )

        try:
            return response.json()  # type: ignore[no-any-return]
        except ValueError as e:
            raise GatewayError(self.name, f"{self.name} returned a non-JSON body") from e

    def _load_json(self, raw_body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedPayloadError(f"{self.name} webhook body is not JSON") from e
        if not isinstance(payload, dict):
            raise MalformedPayloadError(f"{self.name} webhook body is not an object")
        return payload

    def _require(self, payload: dict[str, Any], field: str) -> Any:
        value = payload.get(field)
        if value in (None, ""):
            raise MalformedPayloadError(
                f"{self.name} webhook is missing '{field}'", {"gateway": self.name}
            )
        return value
