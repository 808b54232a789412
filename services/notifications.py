"""Billing email notifications, sent off the request path."""

import asyncio
import html
import logging
from typing import Any

from clients.email_client import EmailClient, email_client
from core.constants import NotificationType
from core.exceptions import ExternalAPIError

logger = logging.getLogger(__name__)

SUBJECTS: dict[NotificationType, str] = {
    NotificationType.TRIAL_ACTIVATED: "Your free trial has started",
    NotificationType.TRIAL_WARNING: "Your trial ends in {days_remaining} day(s)",
    NotificationType.TRIAL_EXPIRED: "Your free trial has ended",
    NotificationType.PAYMENT_SUCCESS: "Payment received",
    NotificationType.RENEWAL_INVOICE: "Your subscription renewal invoice",
}

BODIES: dict[NotificationType, str] = {
    NotificationType.TRIAL_ACTIVATED: (
        "<p>Hi {name},</p><p>Your {plan_name} trial is active until {trial_end_date}.</p>"
    ),
    NotificationType.TRIAL_WARNING: (
        "<p>Hi {name},</p><p>Your trial ends in {days_remaining} day(s), on "
        "{trial_end_date}. Choose a plan to keep your data and access.</p>"
    ),
    NotificationType.TRIAL_EXPIRED: (
        "<p>Hi {name},</p><p>Your trial has ended. Subscribe to restore access.</p>"
    ),
    NotificationType.PAYMENT_SUCCESS: (
        "<p>Hi {name},</p><p>We received your payment of {currency} {amount}. "
        "Your subscription is active until {next_billing_date}.</p>"
    ),
    NotificationType.RENEWAL_INVOICE: (
        "<p>Hi {name},</p><p>Your subscription renews on {next_billing_date}. "
        'Pay {currency} {amount} here: <a href="{payment_url}">{payment_url}</a></p>'
    ),
}


class _SafeDict(dict[str, Any]):
    def __missing__(self, key: str) -> str:
        return ""


def render(notification_type: NotificationType, context: dict[str, Any]) -> tuple[str, str]:
    """Build the subject and HTML body for a notification."""
    values = _SafeDict(name="there")
    values.update({k: v for k, v in context.items() if v is not None})
    subject = SUBJECTS[notification_type].format_map(values)
    escaped = _SafeDict({k: html.escape(str(v)) for k, v in values.items()})
    body = BODIES[notification_type].format_map(escaped)
    return subject, body


class NotificationService:
    """
    Fire-and-forget email dispatch.

    ``dispatch`` schedules the send on the running event loop and returns
    immediately; send failures are logged and counted, never raised to the
    caller.
    """

    def __init__(self, client: EmailClient | None = None) -> None:
        self.client = client or email_client
        self._tasks: set[asyncio.Task[None]] = set()
        self.failures = 0

    def dispatch(
        self,
        notification_type: NotificationType,
        to: str | None,
        context: dict[str, Any] | None = None,
    ) -> None:
        if not to:
            logger.warning(f"No recipient for {notification_type.value} notification; skipped")
            return
        task = asyncio.create_task(self._send(notification_type, to, context or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(
        self, notification_type: NotificationType, to: str, context: dict[str, Any]
    ) -> None:
        subject, html = render(notification_type, context)
        try:
            await self.client.send(to=to, subject=subject, html=html)
        except ExternalAPIError as e:
            self.failures += 1
            logger.error(f"Failed to send {notification_type.value} email to {to}: {e.message}")

    async def drain(self) -> None:
        """Wait for in-flight sends; used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


# Global instance
notification_service = NotificationService()
