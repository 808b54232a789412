"""Services package for business logic."""

from .billing_automation import BillingAutomationScheduler, SweepResult
from .checkout_service import CheckoutService
from .lifecycle import SubscriptionLifecycleManager
from .notifications import NotificationService, notification_service
from .webhook_processor import WebhookOutcome, WebhookProcessor

__all__ = [
    "BillingAutomationScheduler",
    "CheckoutService",
    "NotificationService",
    "SubscriptionLifecycleManager",
    "SweepResult",
    "WebhookOutcome",
    "WebhookProcessor",
    "notification_service",
]
