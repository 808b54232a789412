"""Transactional email client (Resend HTTP API)."""

import logging
from typing import Any

import httpx

from core.config import settings
from core.exceptions import ExternalAPIError

logger = logging.getLogger(__name__)


class EmailClient:
    """Client for sending billing emails."""

    def __init__(
        self,
        api_key: str | None = None,
        sender: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.sender = sender or settings.email_from
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, html: str) -> str | None:
        """
        Send one HTML email.

        Args:
            to: Recipient address
            subject: Subject line
            html: HTML body

        Returns:
            Provider message ID, or None when email is not configured
        """
        if not self.enabled:
            logger.info(f"Email disabled; skipped '{subject}' to {to}")
            return None

        payload: dict[str, Any] = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        try:
            async with httpx.AsyncClient(
                timeout=settings.gateway_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    settings.resend_api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalAPIError(
                "Resend", f"email rejected: {e.response.text[:200]}", e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise ExternalAPIError("Resend", f"email request failed: {e}") from e

        message_id = response.json().get("id")
        logger.info(f"Sent email '{subject}' to {to} ({message_id})")
        return message_id  # type: ignore[no-any-return]


# Global instance
email_client = EmailClient()
