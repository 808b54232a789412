"""Application constants and enumerations."""

from enum import Enum


class PlanType(str, Enum):
    """Subscription plan families."""

    STANDARD = "standard"
    PREMIUM = "premium"
    ULTRA = "ultra"


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a subscription."""

    TRIAL = "trial"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class CheckoutStatus(str, Enum):
    """Checkout session states."""

    INITIATED = "initiated"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_CHECKOUT_STATUSES = frozenset(
    {
        CheckoutStatus.COMPLETED,
        CheckoutStatus.FAILED,
        CheckoutStatus.EXPIRED,
        CheckoutStatus.CANCELLED,
    }
)


class CheckoutType(str, Enum):
    """What a checkout session pays for."""

    TRIAL = "trial"
    NEW_SUBSCRIPTION = "new_subscription"
    PLAN_UPGRADE = "plan_upgrade"
    SEAT_UPGRADE = "seat_upgrade"
    TRIAL_CONVERSION = "trial_conversion"
    RENEWAL = "renewal"


class BillingPeriod(str, Enum):
    """Billing cycle lengths."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, Enum):
    """Payment transaction states."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PaymentEventKind(str, Enum):
    """Canonical payment outcomes reported by any gateway."""

    PAID = "paid"
    PENDING = "pending"
    EXPIRED = "expired"
    FAILED = "failed"


class GatewayName(str, Enum):
    """Supported payment gateways."""

    MIDTRANS = "midtrans"
    XENDIT = "xendit"
    TRIPAY = "tripay"


class ChangeType(str, Enum):
    """Plan change classifications."""

    PLAN_UPGRADE = "plan_upgrade"
    PLAN_DOWNGRADE = "plan_downgrade"
    SEAT_UPGRADE = "seat_upgrade"
    SEAT_DOWNGRADE = "seat_downgrade"
    TRIAL_CONVERSION = "trial_conversion"


class NotificationType(str, Enum):
    """Kinds of billing notifications."""

    TRIAL_ACTIVATED = "trial_activated"
    TRIAL_WARNING = "trial_warning"
    TRIAL_EXPIRED = "trial_expired"
    PAYMENT_SUCCESS = "payment_success"
    RENEWAL_INVOICE = "renewal_invoice"


class UserRole(str, Enum):
    """Roles that matter for billing."""

    ADMIN = "admin"
    HR = "hr"
    EMPLOYEE = "employee"


class EmploymentStatus(str, Enum):
    """Employee states counted for seat usage."""

    ACTIVE = "active"
    INACTIVE = "inactive"


# A billing cycle at least this long counts as yearly when pricing a renewal
YEARLY_CYCLE_MIN_DAYS = 350
