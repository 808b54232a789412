"""Checkout orchestration: sessions, trial/paid checkout, plan and seat changes."""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from clients import GatewayAdapter, get_gateway
from core.config import settings
from core.constants import (
    BillingPeriod,
    ChangeType,
    CheckoutStatus,
    CheckoutType,
    NotificationType,
    SubscriptionStatus,
)
from core.exceptions import (
    ConflictError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from database.connection import unit_of_work
from database.models import (
    CheckoutSession,
    CustomerBillingInfo,
    SeatPlan,
    Subscription,
    SubscriptionPlan,
    User,
)
from database.service import DatabaseService
from schemas.payment import InvoiceItem, InvoiceRequest
from schemas.subscription import (
    BillingInfoRequest,
    CheckoutSessionResponse,
    PlanChangePreview,
    PlanChangeResponse,
)
from services.lifecycle import SubscriptionLifecycleManager
from services.notifications import NotificationService, notification_service
from utils.dates import Clock, add_billing_period, utc_now
from utils.money import chargeable_amount

logger = logging.getLogger(__name__)

CHANGEABLE_STATUSES = (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE)

# Paid sessions that choose a plan; a user has at most one of these open at a time
PLAN_CHECKOUT_TYPES = (
    CheckoutType.NEW_SUBSCRIPTION,
    CheckoutType.TRIAL_CONVERSION,
    CheckoutType.PLAN_UPGRADE,
    CheckoutType.SEAT_UPGRADE,
)
NEEDS_ACTIVE_SUBSCRIPTION = (
    CheckoutType.PLAN_UPGRADE,
    CheckoutType.SEAT_UPGRADE,
    CheckoutType.RENEWAL,
)


def _period(is_monthly: bool) -> BillingPeriod:
    return BillingPeriod.MONTHLY if is_monthly else BillingPeriod.YEARLY


class CheckoutService:
    """
    Builds checkout sessions and drives plan changes.

    Sessions are committed as ``initiated`` before any gateway call so the
    database transaction is never held across network I/O. If the gateway
    fails the session is marked ``failed`` and the error propagates.
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
        self._gateway = gateway
        self.notifier = notifier or notification_service
        self.clock = clock
        self.lifecycle = SubscriptionLifecycleManager(db_session, self.notifier, clock)

    @property
    def gateway(self) -> GatewayAdapter:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    # ==================== CATALOG ====================

    async def _load_catalog(self, plan_id: int, seat_plan_id: int) -> tuple[SubscriptionPlan, SeatPlan]:
        plan = await self.db_service.get_plan(plan_id)
        if plan is None or not plan.is_active:
            raise NotFoundError("subscription plan not found", {"subscription_plan_id": plan_id})
        seat_plan = await self.db_service.get_seat_plan(seat_plan_id)
        if seat_plan is None or not seat_plan.is_active:
            raise NotFoundError("seat plan not found", {"seat_plan_id": seat_plan_id})
        if seat_plan.subscription_plan_id != plan.id:
            raise ValidationError(
                "seat plan does not belong to the subscription plan",
                {"subscription_plan_id": plan_id, "seat_plan_id": seat_plan_id},
            )
        return plan, seat_plan

    async def _require_seat_plan(self, seat_plan_id: int) -> SeatPlan:
        seat_plan = await self.db_service.get_seat_plan(seat_plan_id)
        if seat_plan is None:
            raise NotFoundError("seat plan not found", {"seat_plan_id": seat_plan_id})
        return seat_plan

    # ==================== SESSIONS ====================

    async def get_checkout_session(self, user: User, session_id: str) -> CheckoutSession:
        """Return one of the caller's sessions, reporting staleness as expired."""
        session = await self.db_service.get_checkout_session(session_id)
        if session is None or session.user_id != user.id:
            raise NotFoundError("checkout session not found", {"session_id": session_id})
        if session.is_stale(self.clock()):
            async with unit_of_work(self.db):
                locked = await self.db_service.get_checkout_session(session_id, for_update=True)
                if locked is not None and locked.is_stale(self.clock()):
                    locked.transition_to(CheckoutStatus.EXPIRED)
        return session

    def _new_session(
        self,
        user: User,
        seat_plan: SeatPlan,
        checkout_type: CheckoutType,
        amount: Decimal,
        period: BillingPeriod | None,
        expires_in: timedelta,
    ) -> CheckoutSession:
        is_trial = checkout_type == CheckoutType.TRIAL
        if is_trial != (amount == 0):
            raise ValidationError("trial checkouts are free and paid checkouts must charge")
        now = self.clock()
        return CheckoutSession(
            session_id=str(uuid.uuid4()),
            user_id=user.id,
            subscription_plan_id=seat_plan.subscription_plan_id,
            seat_plan_id=seat_plan.id,
            checkout_type=checkout_type,
            billing_period=period,
            is_trial_checkout=is_trial,
            amount=amount,
            currency=settings.currency,
            status=CheckoutStatus.INITIATED,
            initiated_at=now,
            expires_at=now + expires_in,
        )

    async def _claim_checkout_slot(
        self,
        user_id: uuid.UUID,
        checkout_type: CheckoutType,
        now: datetime,
        renews_from: datetime | None = None,
    ) -> None:
        """
        Check, under the user's row lock, that a new paid session may be opened.

        Must run in the unit of work that inserts the session, so concurrent
        initiations for one user are serialized and only one of them passes.

        Raises:
            ConflictError: Another session of a conflicting type is still open, or
                the renewal it was asked to open has already happened
            ValidationError: The subscription status no longer allows this checkout
        """
        if await self.db_service.get_user(user_id, for_update=True) is None:
            raise NotFoundError("user not found", {"user_id": str(user_id)})

        conflicting = (
            (CheckoutType.RENEWAL,) if checkout_type == CheckoutType.RENEWAL else PLAN_CHECKOUT_TYPES
        )
        open_session = await self.db_service.get_open_checkout(user_id, conflicting, now)
        if open_session is not None:
            raise ConflictError(
                "another checkout is already in progress",
                {
                    "session_id": open_session.session_id,
                    "checkout_type": open_session.checkout_type.value,
                },
            )

        subscription = await self.db_service.get_subscription_by_user(user_id, for_update=True)
        status = subscription.status if subscription is not None else None
        if checkout_type in NEEDS_ACTIVE_SUBSCRIPTION and status != SubscriptionStatus.ACTIVE:
            raise ValidationError(f"{checkout_type.value} checkout needs an active subscription")
        if checkout_type not in NEEDS_ACTIVE_SUBSCRIPTION and status == SubscriptionStatus.ACTIVE:
            raise ValidationError("subscription is already active; change plans instead")
        if (
            renews_from is not None
            and subscription is not None
            and subscription.next_billing_date != renews_from
        ):
            raise ConflictError(
                "subscription was renewed concurrently",
                {"subscription_id": subscription.id},
            )

    async def _open_paid_session(
        self,
        user: User,
        plan: SubscriptionPlan,
        seat_plan: SeatPlan,
        checkout_type: CheckoutType,
        price: Decimal,
        period: BillingPeriod,
        expires_in: timedelta | None = None,
        customer_name: str | None = None,
        renews_from: datetime | None = None,
    ) -> CheckoutSession:
        """
        Persist a paid session, then open the gateway invoice for it.

        Raises:
            GatewayError: If the gateway call fails (the session is marked failed)
        """
        gateway = self.gateway
        amount = chargeable_amount(price)
        session = self._new_session(
            user,
            seat_plan,
            checkout_type,
            amount,
            period,
            expires_in or timedelta(hours=settings.checkout_expiry_hours),
        )
        session.gateway = gateway.name
        session.payment_reference = gateway.encode_reference(session.session_id)
        async with unit_of_work(self.db):
            await self._claim_checkout_slot(
                user.id, checkout_type, session.initiated_at, renews_from
            )
            self.db.add(session)

        description = (
            f"{plan.name} {seat_plan.min_employees}-{seat_plan.max_employees} employees "
            f"({period.value})"
        )
        request = InvoiceRequest(
            session_id=session.session_id,
            amount=amount,
            currency=session.currency,
            customer_email=user.email or "",
            customer_name=customer_name or user.name or user.email or "Customer",
            description=description,
            items=[
                InvoiceItem(
                    sku=f"SEAT-{seat_plan.id}",
                    name=f"{checkout_type.value.replace('_', ' ').title()}: {plan.name}",
                    price=amount,
                )
            ],
            expires_at=session.expires_at,
            success_url=settings.checkout_success_url,
            failure_url=settings.checkout_failure_url,
        )

        try:
            invoice = await gateway.create_invoice(request)
        except GatewayError as e:
            logger.error(f"Gateway {gateway.name} failed for session {session.session_id}: {e.message}")
            async with unit_of_work(self.db):
                locked = await self.db_service.get_checkout_session(session.session_id, for_update=True)
                if locked is not None and not locked.is_terminal:
                    locked.transition_to(CheckoutStatus.FAILED)
            raise

        async with unit_of_work(self.db):
            locked = await self.db_service.get_checkout_session(session.session_id, for_update=True)
            if locked is None:
                raise NotFoundError("checkout session disappeared", {"session_id": session.session_id})
            locked.payment_reference = invoice.merchant_reference
            locked.gateway_invoice_id = invoice.provider_ref
            locked.payment_token = invoice.token
            locked.payment_url = invoice.redirect_url
            if not locked.is_terminal:
                locked.transition_to(CheckoutStatus.PENDING)

        logger.info(
            f"Opened {checkout_type.value} checkout {session.session_id} for {amount} "
            f"{session.currency} via {gateway.name}"
        )
        return locked

    # ==================== TRIAL ====================

    async def initiate_trial_checkout(
        self, user: User, plan_id: int, seat_plan_id: int
    ) -> CheckoutSession:
        """Create a free trial session; no gateway is involved."""
        _, seat_plan = await self._load_catalog(plan_id, seat_plan_id)
        if user.has_used_trial:
            raise ValidationError("free trial already used")
        if await self.db_service.get_subscription_by_user(user.id) is not None:
            raise ValidationError("user already has a subscription")

        session = self._new_session(
            user,
            seat_plan,
            CheckoutType.TRIAL,
            Decimal("0"),
            None,
            timedelta(hours=settings.checkout_expiry_hours),
        )
        async with unit_of_work(self.db):
            self.db.add(session)
        logger.info(f"Initiated trial checkout {session.session_id} for user {user.id}")
        return session

    async def complete_trial_checkout(
        self, user: User, session_id: str, billing: BillingInfoRequest
    ) -> Subscription:
        """
        Turn a trial session into a trial subscription with billing details.

        Raises:
            NotFoundError: Unknown session or owned by someone else
            InvalidStateError: Session already finished
            ValidationError: Not a trial session, expired, or user not eligible
        """
        now = self.clock()
        async with unit_of_work(self.db):
            session = await self.db_service.get_checkout_session(session_id, for_update=True)
            if session is None or session.user_id != user.id:
                raise NotFoundError("checkout session not found", {"session_id": session_id})
            if not session.is_trial_checkout:
                raise ValidationError("checkout session is not a trial checkout")
            if session.is_terminal:
                raise InvalidStateError(
                    f"checkout session is already {session.status.value}",
                    {"session_id": session_id},
                )
            if session.is_stale(now):
                raise ValidationError("checkout session has expired", {"session_id": session_id})

            seat_plan = await self._require_seat_plan(session.seat_plan_id)
            _, active_employees = await self.db_service.count_employees(user.id)
            subscription = await self.lifecycle.create_trial_subscription(
                user, seat_plan, employee_count=max(1, active_employees)
            )
            self.db.add(
                CustomerBillingInfo(subscription_id=subscription.id, **billing.model_dump())
            )
            session.subscription_id = subscription.id
            session.transition_to(CheckoutStatus.COMPLETED, now)

        plan = await self.db_service.get_plan(subscription.subscription_plan_id)
        self.notifier.dispatch(
            NotificationType.TRIAL_ACTIVATED,
            user.email,
            {
                "name": user.name,
                "plan_name": plan.name if plan else "",
                "trial_end_date": f"{subscription.trial_end_date:%Y-%m-%d}",
            },
        )
        logger.info(f"Completed trial checkout {session_id}; subscription {subscription.id}")
        return subscription

    # ==================== PAID CHECKOUT ====================

    async def initiate_paid_checkout(
        self, user: User, plan_id: int, seat_plan_id: int, is_monthly: bool
    ) -> CheckoutSession:
        """
        Create a paid session and its gateway invoice.

        Trial users may pay here as well; the webhook converts their trial.
        """
        plan, seat_plan = await self._load_catalog(plan_id, seat_plan_id)
        subscription = await self.db_service.get_subscription_by_user(user.id)
        if subscription is not None and subscription.status == SubscriptionStatus.ACTIVE:
            raise ValidationError("subscription is already active; change plans instead")

        checkout_type = (
            CheckoutType.TRIAL_CONVERSION
            if subscription is not None and subscription.status == SubscriptionStatus.TRIAL
            else CheckoutType.NEW_SUBSCRIPTION
        )
        period = _period(is_monthly)
        return await self._open_paid_session(
            user, plan, seat_plan, checkout_type, seat_plan.price_for(is_monthly), period
        )

    async def convert_trial_to_paid(
        self,
        user: User,
        plan_id: int | None = None,
        seat_plan_id: int | None = None,
        is_monthly: bool = True,
    ) -> CheckoutSession:
        """Checkout for the full price of the (possibly new) plan of a trial subscription."""
        subscription = await self.db_service.get_subscription_by_user(user.id)
        if subscription is None:
            raise NotFoundError("subscription not found")
        if subscription.status != SubscriptionStatus.TRIAL:
            raise ValidationError("subscription is not in trial")

        target_plan_id = plan_id or subscription.subscription_plan_id
        if seat_plan_id is not None:
            target_seat_id = seat_plan_id
        elif target_plan_id == subscription.subscription_plan_id:
            target_seat_id = subscription.seat_plan_id
        else:
            current_seat = await self._require_seat_plan(subscription.seat_plan_id)
            match = await self.db_service.find_seat_plan_in_band(
                target_plan_id, current_seat.min_employees, current_seat.max_employees
            )
            if match is None:
                raise ValidationError("no matching seat plan found")
            target_seat_id = match.id

        plan, seat_plan = await self._load_catalog(target_plan_id, target_seat_id)
        return await self._open_paid_session(
            user,
            plan,
            seat_plan,
            CheckoutType.TRIAL_CONVERSION,
            seat_plan.price_for(is_monthly),
            _period(is_monthly),
        )

    async def create_renewal_checkout(
        self, user: User, subscription: Subscription, period: BillingPeriod
    ) -> CheckoutSession:
        """
        Renewal invoice for the subscription's current plan.

        Raises:
            ConflictError: A renewal is already open or the period already moved on
        """
        due = subscription.next_billing_date
        plan, seat_plan = await self._load_catalog(
            subscription.subscription_plan_id, subscription.seat_plan_id
        )
        billing = await self.db_service.get_billing_info(subscription.id)
        return await self._open_paid_session(
            user,
            plan,
            seat_plan,
            CheckoutType.RENEWAL,
            seat_plan.price_for(period == BillingPeriod.MONTHLY),
            period,
            expires_in=timedelta(days=settings.renewal_checkout_expiry_days),
            customer_name=billing.company_name if billing else None,
            renews_from=due,
        )

    # ==================== PLAN / SEAT CHANGES ====================

    async def _require_subscription(self, user: User) -> Subscription:
        subscription = await self.db_service.get_subscription_by_user(user.id)
        if subscription is None:
            raise NotFoundError("subscription not found")
        if subscription.status not in CHANGEABLE_STATUSES:
            raise ValidationError(
                f"subscription is {subscription.status.value}",
                {"status": subscription.status.value},
            )
        return subscription

    def _build_preview(
        self,
        subscription: Subscription,
        current_seat: SeatPlan,
        new_seat: SeatPlan,
        is_monthly: bool,
        is_plan_change: bool,
    ) -> PlanChangePreview:
        current_price = current_seat.price_for(is_monthly)
        new_price = new_seat.price_for(is_monthly)
        difference = new_price - current_price
        is_upgrade = difference > 0

        if is_plan_change:
            change_type = ChangeType.PLAN_UPGRADE if is_upgrade else ChangeType.PLAN_DOWNGRADE
        else:
            change_type = ChangeType.SEAT_UPGRADE if is_upgrade else ChangeType.SEAT_DOWNGRADE

        return PlanChangePreview(
            change_type=change_type,
            current_subscription_plan_id=subscription.subscription_plan_id,
            current_seat_plan_id=subscription.seat_plan_id,
            new_subscription_plan_id=new_seat.subscription_plan_id,
            new_seat_plan_id=new_seat.id,
            billing_period=_period(is_monthly),
            current_price=current_price,
            new_price=new_price,
            price_difference=difference,
            is_upgrade=is_upgrade,
            requires_payment=is_upgrade,
            payment_amount=chargeable_amount(difference) if is_upgrade else Decimal("0"),
        )

    async def _resolve_plan_target(
        self, subscription: Subscription, new_plan_id: int, new_seat_plan_id: int | None
    ) -> tuple[SeatPlan, SeatPlan]:
        current_seat = await self._require_seat_plan(subscription.seat_plan_id)
        new_plan = await self.db_service.get_plan(new_plan_id)
        if new_plan is None or not new_plan.is_active:
            raise NotFoundError("subscription plan not found", {"subscription_plan_id": new_plan_id})

        if new_seat_plan_id is not None:
            new_seat = await self._require_seat_plan(new_seat_plan_id)
            if new_seat.subscription_plan_id != new_plan.id:
                raise ValidationError(
                    "specified seat plan does not belong to the new subscription plan",
                    {"subscription_plan_id": new_plan_id, "seat_plan_id": new_seat_plan_id},
                )
        else:
            match = await self.db_service.find_seat_plan_in_band(
                new_plan.id, current_seat.min_employees, current_seat.max_employees
            )
            if match is None:
                raise ValidationError(
                    "no matching seat plan found",
                    {
                        "subscription_plan_id": new_plan_id,
                        "min_employees": current_seat.min_employees,
                        "max_employees": current_seat.max_employees,
                    },
                )
            new_seat = match
        return current_seat, new_seat

    async def _resolve_seat_target(
        self, subscription: Subscription, new_seat_plan_id: int
    ) -> tuple[SeatPlan, SeatPlan]:
        current_seat = await self._require_seat_plan(subscription.seat_plan_id)
        new_seat = await self._require_seat_plan(new_seat_plan_id)
        if new_seat.subscription_plan_id != subscription.subscription_plan_id:
            raise ValidationError(
                "seat plan does not belong to current subscription plan",
                {
                    "subscription_plan_id": subscription.subscription_plan_id,
                    "seat_plan_id": new_seat_plan_id,
                },
            )
        return current_seat, new_seat

    async def preview_plan_change(
        self, user: User, new_plan_id: int, new_seat_plan_id: int | None, is_monthly: bool
    ) -> PlanChangePreview:
        """Flat price comparison against another plan; never prorated."""
        subscription = await self._require_subscription(user)
        current_seat, new_seat = await self._resolve_plan_target(
            subscription, new_plan_id, new_seat_plan_id
        )
        return self._build_preview(subscription, current_seat, new_seat, is_monthly, True)

    async def preview_seat_plan_change(
        self, user: User, new_seat_plan_id: int, is_monthly: bool
    ) -> PlanChangePreview:
        subscription = await self._require_subscription(user)
        current_seat, new_seat = await self._resolve_seat_target(subscription, new_seat_plan_id)
        return self._build_preview(subscription, current_seat, new_seat, is_monthly, False)

    async def change_subscription_plan(
        self, user: User, new_plan_id: int, new_seat_plan_id: int | None, is_monthly: bool
    ) -> PlanChangeResponse:
        """Upgrade through a checkout for the difference, or apply a downgrade now."""
        subscription = await self._require_subscription(user)
        current_seat, new_seat = await self._resolve_plan_target(
            subscription, new_plan_id, new_seat_plan_id
        )
        preview = self._build_preview(subscription, current_seat, new_seat, is_monthly, True)
        return await self._execute_change(
            user, subscription, new_seat, preview, CheckoutType.PLAN_UPGRADE
        )

    async def change_seat_plan(
        self, user: User, new_seat_plan_id: int, is_monthly: bool
    ) -> PlanChangeResponse:
        """Same as a plan change, restricted to seat plans of the current plan."""
        subscription = await self._require_subscription(user)
        current_seat, new_seat = await self._resolve_seat_target(subscription, new_seat_plan_id)
        preview = self._build_preview(subscription, current_seat, new_seat, is_monthly, False)
        return await self._execute_change(
            user, subscription, new_seat, preview, CheckoutType.SEAT_UPGRADE
        )

    async def _execute_change(
        self,
        user: User,
        subscription: Subscription,
        new_seat: SeatPlan,
        preview: PlanChangePreview,
        upgrade_type: CheckoutType,
    ) -> PlanChangeResponse:
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise ValidationError(
                "plan changes need an active subscription; convert the trial first"
            )
        if new_seat.id == subscription.seat_plan_id:
            raise ValidationError("subscription already uses this seat plan")
        if subscription.current_employee_count > new_seat.max_employees:
            raise ValidationError(
                f"cannot downgrade: current employee count ({subscription.current_employee_count}) "
                f"exceeds new seat plan limit ({new_seat.max_employees})",
                {
                    "current_employee_count": subscription.current_employee_count,
                    "max_employees": new_seat.max_employees,
                },
            )

        if preview.requires_payment:
            plan = await self.db_service.get_plan(new_seat.subscription_plan_id)
            if plan is None:
                raise NotFoundError("subscription plan not found")
            session = await self._open_paid_session(
                user,
                plan,
                new_seat,
                upgrade_type,
                preview.price_difference,
                preview.billing_period,
            )
            return PlanChangeResponse(
                preview=preview,
                applied=False,
                checkout=CheckoutSessionResponse.model_validate(session),
            )

        await self.apply_plan_change(subscription.id, new_seat, preview.billing_period)
        return PlanChangeResponse(preview=preview, applied=True)

    async def apply_plan_change(
        self, subscription_id: int, new_seat: SeatPlan, period: BillingPeriod
    ) -> Subscription:
        """Switch plans immediately and restart the billing cycle from now."""
        async with unit_of_work(self.db):
            subscription = await self.db_service.get_subscription(subscription_id, for_update=True)
            if subscription is None:
                raise NotFoundError("subscription not found")
            if subscription.current_employee_count > new_seat.max_employees:
                raise ValidationError(
                    f"cannot downgrade: current employee count ({subscription.current_employee_count}) "
                    f"exceeds new seat plan limit ({new_seat.max_employees})"
                )
            now = self.clock()
            self.lifecycle.apply_plan(subscription, new_seat)
            subscription.current_period_start = now
            subscription.next_billing_date = add_billing_period(now, period)
            subscription.end_date = subscription.next_billing_date
        logger.info(
            f"Applied plan change on subscription {subscription_id} to seat plan {new_seat.id}"
        )
        return subscription

    # ==================== BILLING INFO ====================

    async def update_billing_info(self, user: User, billing: BillingInfoRequest) -> CustomerBillingInfo:
        """Create or replace the invoice details of the caller's subscription."""
        subscription = await self.db_service.get_subscription_by_user(user.id)
        if subscription is None:
            raise NotFoundError("subscription not found")

        async with unit_of_work(self.db):
            info = await self.db_service.get_billing_info(subscription.id)
            if info is None:
                info = CustomerBillingInfo(subscription_id=subscription.id)
                self.db.add(info)
            for field, value in billing.model_dump().items():
                setattr(info, field, value)
        return info
