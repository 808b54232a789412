"""Database models for subscriptions and billing."""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

from core.constants import (
    TERMINAL_CHECKOUT_STATUSES,
    BillingPeriod,
    CheckoutStatus,
    CheckoutType,
    EmploymentStatus,
    NotificationType,
    PaymentStatus,
    PlanType,
    SubscriptionStatus,
    UserRole,
)
from core.exceptions import InvalidStateError
from utils.dates import ensure_utc, utc_now

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime that always comes back in UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        return ensure_utc(value) if value is not None else None


def _enum(enum_cls: type[Enum]) -> SAEnum:
    """Store an enum by value in a plain string column."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """Audit timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )


class User(TimestampMixin, Base):
    """Local user record linked to an Auth0 identity."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    auth0_user_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(320))
    name: Mapped[str | None] = mapped_column(String(200))
    role: Mapped[UserRole] = mapped_column(
        _enum(UserRole), nullable=False, default=UserRole.ADMIN
    )
    has_used_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_users_auth0_user_id", "auth0_user_id"),)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, auth0_user_id={self.auth0_user_id})>"


class Employee(TimestampMixin, Base):
    """Employee belonging to an admin's company; only counted here."""

    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    admin_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    employment_status: Mapped[EmploymentStatus] = mapped_column(
        _enum(EmploymentStatus), nullable=False, default=EmploymentStatus.ACTIVE
    )

    __table_args__ = (Index("idx_employees_admin_user_id", "admin_user_id"),)


class SubscriptionPlan(TimestampMixin, Base):
    """A sellable plan family (standard, premium, ...)."""

    __tablename__ = "subscription_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_type: Mapped[PlanType] = mapped_column(_enum(PlanType), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name={self.name})>"


class SeatPlan(TimestampMixin, Base):
    """An employee band within a plan, with monthly and yearly prices."""

    __tablename__ = "seat_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_plan_id: Mapped[int] = mapped_column(
        ForeignKey("subscription_plans.id"), nullable=False
    )
    size_tier_id: Mapped[str] = mapped_column(String(50), nullable=False)
    min_employees: Mapped[int] = mapped_column(Integer, nullable=False)
    max_employees: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_month: Mapped[Decimal] = mapped_column(Money, nullable=False)
    price_per_year: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_seat_plans_plan_band", "subscription_plan_id", "min_employees", "max_employees"),
    )

    def price_for(self, is_monthly: bool) -> Decimal:
        return self.price_per_month if is_monthly else self.price_per_year

    def __repr__(self) -> str:
        return (
            f"<SeatPlan(id={self.id}, plan={self.subscription_plan_id}, "
            f"band={self.min_employees}-{self.max_employees})>"
        )


class Subscription(TimestampMixin, Base):
    """The single subscription owned by an admin user."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    admin_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, unique=True
    )
    subscription_plan_id: Mapped[int] = mapped_column(
        ForeignKey("subscription_plans.id"), nullable=False
    )
    seat_plan_id: Mapped[int] = mapped_column(ForeignKey("seat_plans.id"), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.TRIAL
    )

    # Written only when a trial starts
    is_trial_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trial_start_date: Mapped[datetime | None] = mapped_column(UTCDateTime)
    trial_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime)

    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime)
    is_auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    current_employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_subscriptions_status", "status"),
        Index("idx_subscriptions_next_billing", "status", "next_billing_date"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, admin={self.admin_user_id}, status={self.status})>"


class CheckoutSession(TimestampMixin, Base):
    """One payment attempt, from initiation to a terminal state."""

    __tablename__ = "checkout_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    subscription_plan_id: Mapped[int] = mapped_column(
        ForeignKey("subscription_plans.id"), nullable=False
    )
    seat_plan_id: Mapped[int] = mapped_column(ForeignKey("seat_plans.id"), nullable=False)
    checkout_type: Mapped[CheckoutType] = mapped_column(_enum(CheckoutType), nullable=False)
    billing_period: Mapped[BillingPeriod | None] = mapped_column(_enum(BillingPeriod))
    is_trial_checkout: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    status: Mapped[CheckoutStatus] = mapped_column(
        _enum(CheckoutStatus), nullable=False, default=CheckoutStatus.INITIATED
    )

    gateway: Mapped[str | None] = mapped_column(String(20))
    payment_reference: Mapped[str | None] = mapped_column(String(100))
    gateway_invoice_id: Mapped[str | None] = mapped_column(String(255))
    payment_token: Mapped[str | None] = mapped_column(String(255))
    payment_url: Mapped[str | None] = mapped_column(Text)

    initiated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    subscription_id: Mapped[int | None] = mapped_column(ForeignKey("subscriptions.id"))
    payment_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("payment_transactions.id")
    )

    __table_args__ = (
        CheckConstraint(
            "(is_trial_checkout AND amount = 0) OR (NOT is_trial_checkout AND amount > 0)",
            name="ck_checkout_sessions_trial_amount",
        ),
        Index("idx_checkout_sessions_user", "user_id"),
        Index("idx_checkout_sessions_status_expiry", "status", "expires_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CHECKOUT_STATUSES

    def is_stale(self, now: datetime) -> bool:
        """A non-terminal session past its expiry."""
        return not self.is_terminal and now >= self.expires_at

    def transition_to(self, status: CheckoutStatus, now: datetime | None = None) -> None:
        """Move to ``status``; terminal sessions never change again."""
        if self.is_terminal:
            raise InvalidStateError(
                f"checkout session {self.session_id} is already {self.status.value}",
                {"session_id": self.session_id, "status": self.status.value},
            )
        self.status = status
        if status == CheckoutStatus.COMPLETED:
            self.completed_at = now

    def __repr__(self) -> str:
        return f"<CheckoutSession(session_id={self.session_id}, status={self.status})>"


class PaymentTransaction(TimestampMixin, Base):
    """A confirmed gateway payment."""

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int | None] = mapped_column(ForeignKey("subscriptions.id"))
    checkout_session_id: Mapped[int | None] = mapped_column(Integer, index=True)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255))
    order_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    payment_method: Mapped[str | None] = mapped_column(String(50))
    description: Mapped[str | None] = mapped_column(Text)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    gateway_response: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    __table_args__ = (
        UniqueConstraint("gateway", "gateway_external_id", name="uq_payment_gateway_external_id"),
        Index("idx_payment_transactions_subscription", "subscription_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(id={self.id}, gateway={self.gateway}, "
            f"external_id={self.gateway_external_id})>"
        )


class TrialActivity(TimestampMixin, Base):
    """Trial engagement tracking for a subscription."""

    __tablename__ = "trial_activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, unique=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    employees_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    features_used: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    last_activity_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    converted_to_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    conversion_date: Mapped[datetime | None] = mapped_column(UTCDateTime)

    def mark_as_converted(self, now: datetime) -> None:
        self.converted_to_paid = True
        self.conversion_date = now


class CustomerBillingInfo(TimestampMixin, Base):
    """Invoice details for the company behind a subscription."""

    __tablename__ = "customer_billing_info"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, unique=True
    )
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_address: Mapped[str | None] = mapped_column(Text)
    company_phone: Mapped[str | None] = mapped_column(String(50))
    company_email: Mapped[str | None] = mapped_column(String(320))
    tax_number: Mapped[str | None] = mapped_column(String(50))
    billing_contact_name: Mapped[str | None] = mapped_column(String(200))
    billing_contact_email: Mapped[str | None] = mapped_column(String(320))
    billing_contact_phone: Mapped[str | None] = mapped_column(String(50))
    bank_name: Mapped[str | None] = mapped_column(String(100))
    bank_account_number: Mapped[str | None] = mapped_column(String(50))
    bank_account_holder: Mapped[str | None] = mapped_column(String(200))


class SubscriptionUsage(Base):
    """Daily employee-count snapshot."""

    __tablename__ = "subscription_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(ForeignKey("subscriptions.id"), nullable=False)
    employee_count: Mapped[int] = mapped_column(Integer, nullable=False)
    active_employee_count: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_on: Mapped[date] = mapped_column(Date, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("subscription_id", "recorded_on", name="uq_subscription_usage_day"),
    )


class NotificationLog(Base):
    """Record of a notification sent, at most one per type per day."""

    __tablename__ = "notification_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(ForeignKey("subscriptions.id"), nullable=False)
    notification_type: Mapped[NotificationType] = mapped_column(
        _enum(NotificationType), nullable=False
    )
    sent_on: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "notification_type", "sent_on", name="uq_notification_once_per_day"
        ),
    )
