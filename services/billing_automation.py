"""Externally triggered billing sweeps (trial expiry, warnings, renewals, usage)."""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, time

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clients import GatewayAdapter
from core.config import settings
from core.constants import (
    YEARLY_CYCLE_MIN_DAYS,
    BillingPeriod,
    CheckoutStatus,
    CheckoutType,
    NotificationType,
    SubscriptionStatus,
)
from core.exceptions import BillingError, ConflictError
from database.connection import unit_of_work
from database.models import Subscription, SubscriptionUsage
from database.service import DatabaseService
from services.checkout_service import CheckoutService
from services.lifecycle import (
    SubscriptionLifecycleManager,
    is_trial_expired,
    remaining_trial_days,
)
from services.notifications import NotificationService, notification_service
from utils.dates import Clock, utc_now

logger = logging.getLogger(__name__)


class SweepResult(BaseModel):
    """Counters reported by every sweep."""

    sweep: str = Field(..., description="Sweep name")
    examined: int = Field(default=0, description="Candidates looked at")
    affected: int = Field(default=0, description="Candidates changed")
    skipped: int = Field(default=0, description="Candidates that needed nothing")
    failed: int = Field(default=0, description="Candidates that raised an error")


def renewal_period(subscription: Subscription) -> BillingPeriod:
    """Yearly when the cycle ending now lasted at least 350 days."""
    if subscription.next_billing_date is None or subscription.current_period_start is None:
        return BillingPeriod.MONTHLY
    cycle_days = (subscription.next_billing_date - subscription.current_period_start).days
    return BillingPeriod.YEARLY if cycle_days >= YEARLY_CYCLE_MIN_DAYS else BillingPeriod.MONTHLY


class BillingAutomationScheduler:
    """
    Idempotent sweeps run by an external scheduler.

    Each candidate gets its own unit of work: its predicate is re-checked
    under a row lock, and a failure is logged and counted without stopping
    the sweep. Notifications are deduplicated through the notification log,
    written in the same transaction as the state change.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: GatewayAdapter | None = None,
        notifier: NotificationService | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db_session
        self.db_service = DatabaseService(db_session)
        self.notifier = notifier or notification_service
        self.clock = clock
        self.lifecycle = SubscriptionLifecycleManager(db_session, self.notifier, clock)
        self.checkout = CheckoutService(db_session, gateway, self.notifier, clock)

    async def _run(
        self,
        name: str,
        candidate_ids: list[int],
        handle: Callable[[int], Awaitable[bool]],
    ) -> SweepResult:
        result = SweepResult(sweep=name, examined=len(candidate_ids))
        # End the read transaction that produced the candidate list
        await self.db.commit()
        for candidate_id in candidate_ids:
            try:
                changed = await handle(candidate_id)
            except (BillingError, IntegrityError) as e:
                await self.db.rollback()
                result.failed += 1
                logger.error(f"{name}: candidate {candidate_id} failed: {e}")
                continue
            except Exception as e:
                await self.db.rollback()
                result.failed += 1
                logger.error(f"{name}: candidate {candidate_id} crashed: {e}", exc_info=True)
                continue
            if changed:
                result.affected += 1
            else:
                result.skipped += 1
        logger.info(
            f"{name}: examined={result.examined} affected={result.affected} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        return result

    async def _claim_notification(
        self, subscription_id: int, notification_type: NotificationType, now: datetime
    ) -> bool:
        """Reserve today's slot for a notification; False if already used."""
        today = now.date()
        if await self.db_service.notification_sent(subscription_id, notification_type, today):
            return False
        await self.db_service.record_notification(subscription_id, notification_type, today)
        return True

    # ==================== TRIAL EXPIRY ====================

    async def expire_trials(self) -> SweepResult:
        """Move trials past their end date to expired and tell the admin once."""
        ids = await self.db_service.list_subscription_ids([SubscriptionStatus.TRIAL])
        return await self._run("expire_trials", ids, self._expire_trial)

    async def _expire_trial(self, subscription_id: int) -> bool:
        now = self.clock()
        notify = False
        async with unit_of_work(self.db):
            subscription = await self.db_service.get_subscription(subscription_id, for_update=True)
            if subscription is None or not is_trial_expired(subscription, now):
                return False
            self.lifecycle.expire_trial(subscription)
            notify = await self._claim_notification(
                subscription.id, NotificationType.TRIAL_EXPIRED, now
            )
            user = await self.db_service.get_user(subscription.admin_user_id)

        logger.info(f"Expired trial subscription {subscription_id}")
        if notify and user is not None:
            self.notifier.dispatch(NotificationType.TRIAL_EXPIRED, user.email, {"name": user.name})
        return True

    # ==================== TRIAL WARNINGS ====================

    async def send_trial_warnings(self) -> SweepResult:
        """Warn trials with 7, 3 or 1 days left; at most once per subscription per day."""
        ids = await self.db_service.list_subscription_ids([SubscriptionStatus.TRIAL])
        return await self._run("send_trial_warnings", ids, self._warn_trial)

    async def _warn_trial(self, subscription_id: int) -> bool:
        now = self.clock()
        async with unit_of_work(self.db):
            subscription = await self.db_service.get_subscription(subscription_id, for_update=True)
            if subscription is None:
                return False
            days_left = remaining_trial_days(subscription, now)
            if days_left not in settings.trial_warning_days:
                return False
            if not await self._claim_notification(
                subscription.id, NotificationType.TRIAL_WARNING, now
            ):
                return False
            trial_end = subscription.trial_end_date
            user = await self.db_service.get_user(subscription.admin_user_id)

        if user is not None:
            self.notifier.dispatch(
                NotificationType.TRIAL_WARNING,
                user.email,
                {
                    "name": user.name,
                    "days_remaining": days_left,
                    "trial_end_date": f"{trial_end:%Y-%m-%d}" if trial_end else "",
                },
            )
        return True

    # ==================== AUTO RENEWAL ====================

    async def process_auto_renewals(self) -> SweepResult:
        """Open a renewal checkout for every auto-renewing subscription due today."""
        now = self.clock()
        end_of_today = datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)
        ids = await self.db_service.list_due_renewal_ids(end_of_today)
        return await self._run("process_auto_renewals", ids, self._renew)

    async def _renew(self, subscription_id: int) -> bool:
        now = self.clock()
        subscription = await self.db_service.get_subscription(subscription_id)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.ACTIVE
            or not subscription.is_auto_renew
        ):
            return False
        if await self.db_service.has_open_checkout(
            subscription.admin_user_id, CheckoutType.RENEWAL, now
        ):
            return False
        user = await self.db_service.get_user(subscription.admin_user_id)
        if user is None:
            return False

        period = renewal_period(subscription)
        try:
            # Re-checked under the user lock; an overlapping sweep may have won
            session = await self.checkout.create_renewal_checkout(user, subscription, period)
        except ConflictError:
            logger.info(f"Renewal for subscription {subscription_id} already in progress")
            return False
        self.notifier.dispatch(
            NotificationType.RENEWAL_INVOICE,
            user.email,
            {
                "name": user.name,
                "amount": f"{session.amount:,.0f}",
                "currency": session.currency,
                "payment_url": session.payment_url,
                "next_billing_date": (
                    f"{subscription.next_billing_date:%Y-%m-%d}"
                    if subscription.next_billing_date
                    else ""
                ),
            },
        )
        logger.info(
            f"Opened {period.value} renewal checkout {session.session_id} "
            f"for subscription {subscription_id}"
        )
        return True

    # ==================== USAGE ====================

    async def update_usage_statistics(self) -> SweepResult:
        """Refresh employee counts and keep one usage row per subscription per day."""
        ids = await self.db_service.list_subscription_ids(
            [SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE]
        )
        return await self._run("update_usage_statistics", ids, self._snapshot_usage)

    async def _snapshot_usage(self, subscription_id: int) -> bool:
        now = self.clock()
        async with unit_of_work(self.db):
            subscription = await self.db_service.get_subscription(subscription_id, for_update=True)
            if subscription is None:
                return False
            total, active = await self.db_service.count_employees(subscription.admin_user_id)
            subscription.current_employee_count = active

            usage = await self.db_service.get_usage_for_day(subscription.id, now.date())
            if usage is None:
                self.db.add(
                    SubscriptionUsage(
                        subscription_id=subscription.id,
                        employee_count=total,
                        active_employee_count=active,
                        recorded_on=now.date(),
                        recorded_at=now,
                    )
                )
            else:
                usage.employee_count = total
                usage.active_employee_count = active
                usage.recorded_at = now
        return True

    # ==================== STALE CHECKOUTS ====================

    async def expire_stale_checkout_sessions(self) -> SweepResult:
        """Close initiated/pending sessions whose expiry has passed."""
        ids = await self.db_service.list_stale_checkout_ids(self.clock())
        return await self._run("expire_stale_checkout_sessions", ids, self._expire_session)

    async def _expire_session(self, checkout_pk: int) -> bool:
        now = self.clock()
        async with unit_of_work(self.db):
            session = await self.db_service.get_checkout_session_by_pk(checkout_pk, for_update=True)
            if session is None or not session.is_stale(now):
                return False
            session.transition_to(CheckoutStatus.EXPIRED)
        return True
