"""Subscription lifecycle rules: trials, activation, expiry."""

import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.constants import BillingPeriod, NotificationType, PlanType, SubscriptionStatus
from core.exceptions import ConflictError, NotFoundError, ValidationError
from database.connection import unit_of_work
from database.models import CheckoutSession, SeatPlan, Subscription, TrialActivity, User
from database.service import DatabaseService
from services.notifications import NotificationService, notification_service
from utils.dates import Clock, add_billing_period, utc_now

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


# ==================== TRIAL PREDICATES ====================


def is_in_trial(subscription: Subscription, now: datetime) -> bool:
    return (
        subscription.status == SubscriptionStatus.TRIAL
        and subscription.trial_end_date is not None
        and now < subscription.trial_end_date
    )


def is_trial_expired(subscription: Subscription, now: datetime) -> bool:
    return (
        subscription.status == SubscriptionStatus.TRIAL
        and subscription.trial_end_date is not None
        and now >= subscription.trial_end_date
    )


def remaining_trial_days(subscription: Subscription, now: datetime) -> int:
    """Whole days left in the trial; 0 outside a trial, never negative."""
    if not is_in_trial(subscription, now) or subscription.trial_end_date is None:
        return 0
    seconds = (subscription.trial_end_date - now).total_seconds()
    return max(0, math.floor(seconds / SECONDS_PER_DAY))


# ==================== BILLING PERIODS ====================


def infer_billing_period(amount: Decimal, seat_plan: SeatPlan) -> BillingPeriod:
    """Guess the period a payment covers: monthly iff it equals the monthly price."""
    if amount == seat_plan.price_per_month:
        return BillingPeriod.MONTHLY
    return BillingPeriod.YEARLY


def resolve_billing_period(session: CheckoutSession, seat_plan: SeatPlan) -> BillingPeriod:
    """
    The period a completed checkout pays for.

    Sessions record their period when created; older rows without one fall
    back to comparing the amount with the seat plan's monthly price.
    """
    if session.billing_period is not None:
        return session.billing_period
    return infer_billing_period(session.amount, seat_plan)


# ==================== LIFECYCLE MANAGER ====================


class SubscriptionLifecycleManager:
    """Owns every subscription state transition and the one-per-admin rule."""

    def __init__(
        self,
        db_session: AsyncSession,
        notifier: NotificationService | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db_session
        self.db_service = DatabaseService(db_session)
        self.notifier = notifier or notification_service
        self.clock = clock

    def start_trial(self, subscription: Subscription, now: datetime) -> None:
        """The only place trial fields are written."""
        subscription.status = SubscriptionStatus.TRIAL
        subscription.is_trial_used = True
        subscription.trial_start_date = now
        subscription.trial_end_date = now + timedelta(days=settings.trial_duration_days)

    async def _ensure_no_subscription(self, user_id: UUID) -> None:
        existing = await self.db_service.get_subscription_by_user(user_id)
        if existing is not None:
            raise ValidationError(
                "user already has a subscription",
                {"subscription_id": existing.id, "status": existing.status.value},
            )

    async def _flush_new_subscription(self) -> None:
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise ConflictError("a subscription was created concurrently for this user") from e

    async def create_trial_subscription(
        self, user: User, seat_plan: SeatPlan, employee_count: int
    ) -> Subscription:
        """
        Create a trial subscription with its activity tracker.

        Runs inside the caller's unit of work.

        Raises:
            ValidationError: If the user already has a subscription or used a trial
        """
        if user.has_used_trial:
            raise ValidationError("free trial already used")
        await self._ensure_no_subscription(user.id)

        now = self.clock()
        subscription = Subscription(
            admin_user_id=user.id,
            subscription_plan_id=seat_plan.subscription_plan_id,
            seat_plan_id=seat_plan.id,
            start_date=now,
            is_auto_renew=True,
            current_employee_count=employee_count,
        )
        self.start_trial(subscription, now)
        subscription.end_date = subscription.trial_end_date
        self.db.add(subscription)
        await self._flush_new_subscription()

        self.db.add(
            TrialActivity(
                subscription_id=subscription.id,
                user_id=user.id,
                employees_added=max(0, employee_count - 1),
                features_used=[],
                last_activity_date=now,
            )
        )
        user.has_used_trial = True
        logger.info(f"Started trial subscription {subscription.id} for user {user.id}")
        return subscription

    async def create_automatic_trial(self, user: User) -> Subscription:
        """
        Give an eligible admin the premium trial on the smallest seat tier.

        The admin counts as the first employee.
        """
        entry = await self.db_service.find_entry_seat_plan(PlanType.PREMIUM)
        if entry is None:
            raise NotFoundError("no active premium plan is available for trials")
        plan, seat_plan = entry

        async with unit_of_work(self.db):
            subscription = await self.create_trial_subscription(user, seat_plan, employee_count=1)

        self.notifier.dispatch(
            NotificationType.TRIAL_ACTIVATED,
            user.email,
            {
                "name": user.name,
                "plan_name": plan.name,
                "trial_end_date": f"{subscription.trial_end_date:%Y-%m-%d}",
            },
        )
        return subscription

    async def create_active_subscription(
        self,
        user_id: UUID,
        seat_plan: SeatPlan,
        period: BillingPeriod,
        employee_count: int = 0,
    ) -> Subscription:
        """A paid subscription for a user who never had one."""
        await self._ensure_no_subscription(user_id)
        now = self.clock()
        subscription = Subscription(
            admin_user_id=user_id,
            subscription_plan_id=seat_plan.subscription_plan_id,
            seat_plan_id=seat_plan.id,
            status=SubscriptionStatus.ACTIVE,
            start_date=now,
            is_auto_renew=True,
            current_employee_count=employee_count,
        )
        self._begin_period(subscription, period, now)
        self.db.add(subscription)
        await self._flush_new_subscription()
        logger.info(f"Created active subscription {subscription.id} for user {user_id}")
        return subscription

    def _begin_period(self, subscription: Subscription, period: BillingPeriod, start: datetime) -> None:
        subscription.current_period_start = start
        subscription.next_billing_date = add_billing_period(start, period)
        subscription.end_date = subscription.next_billing_date

    async def convert_trial_to_active(
        self, subscription: Subscription, seat_plan: SeatPlan, period: BillingPeriod
    ) -> None:
        """Trial to active after payment; trial fields stay as they were."""
        if subscription.status != SubscriptionStatus.TRIAL:
            raise ValidationError("subscription is not in trial")
        now = self.clock()
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.subscription_plan_id = seat_plan.subscription_plan_id
        subscription.seat_plan_id = seat_plan.id
        self._begin_period(subscription, period, now)

        activity = await self.db_service.get_trial_activity(subscription.id)
        if activity is not None:
            activity.mark_as_converted(now)
        logger.info(f"Converted trial subscription {subscription.id} to active")

    def reactivate(
        self, subscription: Subscription, seat_plan: SeatPlan, period: BillingPeriod
    ) -> None:
        """Bring a lapsed subscription back with a fresh period."""
        now = self.clock()
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.subscription_plan_id = seat_plan.subscription_plan_id
        subscription.seat_plan_id = seat_plan.id
        self._begin_period(subscription, period, now)
        logger.info(f"Reactivated subscription {subscription.id}")

    def apply_plan(self, subscription: Subscription, seat_plan: SeatPlan) -> None:
        subscription.subscription_plan_id = seat_plan.subscription_plan_id
        subscription.seat_plan_id = seat_plan.id

    def renew_period(self, subscription: Subscription, period: BillingPeriod) -> None:
        """Extend an active subscription by one period from its due date."""
        start = subscription.next_billing_date or self.clock()
        self._begin_period(subscription, period, start)
        logger.info(
            f"Renewed subscription {subscription.id} until {subscription.next_billing_date}"
        )

    def expire_trial(self, subscription: Subscription) -> None:
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.end_date = subscription.trial_end_date

    async def record_trial_feature_usage(self, user_id: UUID, feature_code: str) -> TrialActivity:
        """Note that a trial user touched a feature."""
        subscription = await self.db_service.get_subscription_by_user(user_id)
        if subscription is None or not is_in_trial(subscription, self.clock()):
            raise ValidationError("user is not in an active trial")

        async with unit_of_work(self.db):
            activity = await self.db_service.get_trial_activity(subscription.id)
            if activity is None:
                raise NotFoundError("trial activity not found")
            if feature_code not in activity.features_used:
                # Reassign so the JSON column is flagged dirty
                activity.features_used = [*activity.features_used, feature_code]
            activity.last_activity_date = self.clock()
        return activity
