"""Database service layer for billing records."""

import logging
from collections.abc import Sequence
from datetime import date, datetime
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import (
    CheckoutStatus,
    CheckoutType,
    EmploymentStatus,
    NotificationType,
    PlanType,
    SubscriptionStatus,
)
from database.models import (
    CheckoutSession,
    CustomerBillingInfo,
    Employee,
    NotificationLog,
    PaymentTransaction,
    SeatPlan,
    Subscription,
    SubscriptionPlan,
    SubscriptionUsage,
    TrialActivity,
    User,
)

logger = logging.getLogger(__name__)

OPEN_CHECKOUT_STATUSES = (CheckoutStatus.INITIATED, CheckoutStatus.PENDING)


class DatabaseService:
    """Queries shared by the billing services.

    Methods never commit; transaction boundaries belong to the caller.
    """

    def __init__(self, db_session: AsyncSession):
        """Initialize with database session."""
        self.db = db_session

    # ==================== USERS ====================

    async def get_user(self, user_id: UUID, for_update: bool = False) -> User | None:
        if not for_update:
            return await self.db.get(User, user_id)
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_user(
        self, auth0_user_id: str, email: str | None = None, name: str | None = None
    ) -> User:
        """
        Get or create the local user for an Auth0 identity.

        Safe to call on every authenticated request.

        Args:
            auth0_user_id: Auth0 user identifier
            email: Optional email from the token
            name: Optional display name from the token

        Returns:
            User: The user record
        """
        result = await self.db.execute(select(User).where(User.auth0_user_id == auth0_user_id))
        user = result.scalar_one_or_none()

        if user:
            if email and user.email != email:
                user.email = email
            if name and user.name != name:
                user.name = name
        else:
            user = User(auth0_user_id=auth0_user_id, email=email, name=name)
            self.db.add(user)
            logger.info("Created new user")

        await self.db.commit()
        return user

    async def count_employees(self, admin_user_id: UUID) -> tuple[int, int]:
        """
        Count the employees of an admin's company.

        Returns:
            tuple: (all employees, active employees)
        """
        total = await self.db.scalar(
            select(func.count(Employee.id)).where(Employee.admin_user_id == admin_user_id)
        )
        active = await self.db.scalar(
            select(func.count(Employee.id)).where(
                Employee.admin_user_id == admin_user_id,
                Employee.employment_status == EmploymentStatus.ACTIVE,
            )
        )
        return int(total or 0), int(active or 0)

    # ==================== CATALOG ====================

    async def list_active_plans(self) -> Sequence[SubscriptionPlan]:
        result = await self.db.execute(
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.id)
        )
        return result.scalars().all()

    async def get_plan(self, plan_id: int) -> SubscriptionPlan | None:
        return await self.db.get(SubscriptionPlan, plan_id)

    async def list_seat_plans(self, plan_id: int) -> Sequence[SeatPlan]:
        result = await self.db.execute(
            select(SeatPlan)
            .where(SeatPlan.subscription_plan_id == plan_id, SeatPlan.is_active.is_(True))
            .order_by(SeatPlan.min_employees)
        )
        return result.scalars().all()

    async def get_seat_plan(self, seat_plan_id: int) -> SeatPlan | None:
        return await self.db.get(SeatPlan, seat_plan_id)

    async def find_seat_plan_in_band(
        self, plan_id: int, min_employees: int, max_employees: int
    ) -> SeatPlan | None:
        """Find the seat plan of ``plan_id`` covering the same employee band."""
        result = await self.db.execute(
            select(SeatPlan).where(
                SeatPlan.subscription_plan_id == plan_id,
                SeatPlan.min_employees == min_employees,
                SeatPlan.max_employees == max_employees,
                SeatPlan.is_active.is_(True),
            )
        )
        return result.scalars().first()

    async def find_entry_seat_plan(
        self, plan_type: PlanType
    ) -> tuple[SubscriptionPlan, SeatPlan] | None:
        """Smallest active seat tier of the first active plan of a type."""
        result = await self.db.execute(
            select(SubscriptionPlan, SeatPlan)
            .join(SeatPlan, SeatPlan.subscription_plan_id == SubscriptionPlan.id)
            .where(
                SubscriptionPlan.plan_type == plan_type,
                SubscriptionPlan.is_active.is_(True),
                SeatPlan.is_active.is_(True),
            )
            .order_by(SubscriptionPlan.id, SeatPlan.min_employees)
            .limit(1)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    # ==================== SUBSCRIPTIONS ====================

    async def get_subscription(
        self, subscription_id: int, for_update: bool = False
    ) -> Subscription | None:
        query = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_subscription_by_user(
        self, user_id: UUID, for_update: bool = False
    ) -> Subscription | None:
        query = select(Subscription).where(Subscription.admin_user_id == user_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_subscription_ids(
        self, statuses: Sequence[SubscriptionStatus]
    ) -> list[int]:
        result = await self.db.execute(
            select(Subscription.id)
            .where(Subscription.status.in_(statuses))
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def list_due_renewal_ids(self, cutoff: datetime) -> list[int]:
        """Active auto-renewing subscriptions billed on or before ``cutoff``."""
        result = await self.db.execute(
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.is_auto_renew.is_(True),
                Subscription.next_billing_date.is_not(None),
                Subscription.next_billing_date <= cutoff,
            )
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def get_billing_info(self, subscription_id: int) -> CustomerBillingInfo | None:
        result = await self.db.execute(
            select(CustomerBillingInfo).where(
                CustomerBillingInfo.subscription_id == subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def get_trial_activity(self, subscription_id: int) -> TrialActivity | None:
        result = await self.db.execute(
            select(TrialActivity).where(TrialActivity.subscription_id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_usage_for_day(self, subscription_id: int, day: date) -> SubscriptionUsage | None:
        result = await self.db.execute(
            select(SubscriptionUsage).where(
                SubscriptionUsage.subscription_id == subscription_id,
                SubscriptionUsage.recorded_on == day,
            )
        )
        return result.scalar_one_or_none()

    # ==================== CHECKOUT / PAYMENTS ====================

    async def get_checkout_session(
        self, session_id: str, for_update: bool = False
    ) -> CheckoutSession | None:
        query = select(CheckoutSession).where(CheckoutSession.session_id == session_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_checkout_session_by_pk(
        self, pk: int, for_update: bool = False
    ) -> CheckoutSession | None:
        query = select(CheckoutSession).where(CheckoutSession.id == pk)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_open_checkout(
        self, user_id: UUID, checkout_types: Sequence[CheckoutType], now: datetime
    ) -> CheckoutSession | None:
        """Newest unexpired non-terminal session of one of ``checkout_types``."""
        result = await self.db.execute(
            select(CheckoutSession)
            .where(
                CheckoutSession.user_id == user_id,
                CheckoutSession.checkout_type.in_(checkout_types),
                CheckoutSession.status.in_(OPEN_CHECKOUT_STATUSES),
                CheckoutSession.expires_at > now,
            )
            .order_by(CheckoutSession.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_open_checkout(
        self, user_id: UUID, checkout_type: CheckoutType, now: datetime
    ) -> bool:
        """True when an unexpired non-terminal session of this type exists."""
        count = await self.db.scalar(
            select(func.count(CheckoutSession.id)).where(
                and_(
                    CheckoutSession.user_id == user_id,
                    CheckoutSession.checkout_type == checkout_type,
                    CheckoutSession.status.in_(OPEN_CHECKOUT_STATUSES),
                    CheckoutSession.expires_at > now,
                )
            )
        )
        return bool(count)

    async def list_stale_checkout_ids(self, now: datetime) -> list[int]:
        result = await self.db.execute(
            select(CheckoutSession.id)
            .where(
                CheckoutSession.status.in_(OPEN_CHECKOUT_STATUSES),
                CheckoutSession.expires_at <= now,
            )
            .order_by(CheckoutSession.id)
        )
        return list(result.scalars().all())

    async def get_payment_by_external_id(
        self, gateway: str, gateway_external_id: str
    ) -> PaymentTransaction | None:
        result = await self.db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.gateway == gateway,
                PaymentTransaction.gateway_external_id == gateway_external_id,
            )
        )
        return result.scalar_one_or_none()

    # ==================== NOTIFICATIONS ====================

    async def notification_sent(
        self, subscription_id: int, notification_type: NotificationType, day: date
    ) -> bool:
        count = await self.db.scalar(
            select(func.count(NotificationLog.id)).where(
                NotificationLog.subscription_id == subscription_id,
                NotificationLog.notification_type == notification_type,
                NotificationLog.sent_on == day,
            )
        )
        return bool(count)

    async def record_notification(
        self, subscription_id: int, notification_type: NotificationType, day: date
    ) -> NotificationLog:
        """Add the dedup row; the unique constraint rejects a concurrent twin."""
        entry = NotificationLog(
            subscription_id=subscription_id,
            notification_type=notification_type,
            sent_on=day,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry
