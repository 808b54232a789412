"""Apply verified gateway events to checkout sessions and subscriptions."""

import logging
from datetime import datetime
from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import (
    CheckoutStatus,
    CheckoutType,
    NotificationType,
    PaymentEventKind,
    PaymentStatus,
    SubscriptionStatus,
)
from core.exceptions import NotFoundError
from database.connection import is_unique_violation, unit_of_work
from database.models import CheckoutSession, CustomerBillingInfo, PaymentTransaction, Subscription
from database.service import DatabaseService
from schemas.payment import PaymentEvent
from services.lifecycle import SubscriptionLifecycleManager, resolve_billing_period
from services.notifications import NotificationService, notification_service
from utils.dates import Clock, utc_now

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    """What happened to a delivered event."""

    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    SUPERSEDED = "superseded"


class DuplicatePaymentError(Exception):
    """A payment with the same gateway key already exists."""


NON_PAID_TRANSITIONS: dict[PaymentEventKind, CheckoutStatus] = {
    PaymentEventKind.PENDING: CheckoutStatus.PENDING,
    PaymentEventKind.EXPIRED: CheckoutStatus.EXPIRED,
    PaymentEventKind.FAILED: CheckoutStatus.FAILED,
}

# Payments that pick a plan for a subscription that is not active yet
NEW_PLAN_CHECKOUT_TYPES = (CheckoutType.NEW_SUBSCRIPTION, CheckoutType.TRIAL_CONVERSION)


class WebhookProcessor:
    """
    Turns a PaymentEvent into state changes, at most once.

    Replays are absorbed two ways: a terminal session is left alone, and the
    unique ``(gateway, gateway_external_id)`` key on payment transactions
    rejects a second insert for the same payment. Everything for one event is
    committed together or not at all.

    Money that cannot be applied (late, or for a plan choice the subscription
    has already moved past) is still recorded, with a ``failure_reason``.
    """

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
        self.lifecycle = SubscriptionLifecycleManager(db_session, self.notifier, clock)

    async def process(self, event: PaymentEvent) -> WebhookOutcome:
        """
        Apply one verified event.

        Args:
            event: Canonical event from a gateway client

        Returns:
            WebhookOutcome: What the event did

        Raises:
            NotFoundError: If no checkout session matches the reference
        """
        logger.info(
            f"Processing {event.gateway} {event.kind.value} event for session {event.session_id}"
        )
        try:
            async with unit_of_work(self.db):
                outcome, notice = await self._apply(event)
        except DuplicatePaymentError:
            logger.info(
                f"Payment {event.gateway}/{event.external_id} already recorded; ignoring replay"
            )
            return WebhookOutcome.DUPLICATE

        if notice is not None:
            self.notifier.dispatch(*notice)
        logger.info(f"Event for session {event.session_id}: {outcome.value}")
        return outcome

    async def _apply(
        self, event: PaymentEvent
    ) -> tuple[WebhookOutcome, tuple[NotificationType, str | None, dict] | None]:
        session = await self.db_service.get_checkout_session(event.session_id, for_update=True)
        if session is None:
            raise NotFoundError(
                "checkout session not found",
                {"session_id": event.session_id, "reference": event.merchant_reference},
            )

        if session.is_terminal:
            return WebhookOutcome.ALREADY_PROCESSED, None

        now = self.clock()
        if session.is_stale(now):
            logger.warning(
                f"{event.kind.value} event for expired session {session.session_id}; "
                "marking expired"
            )
            session.transition_to(CheckoutStatus.EXPIRED)
            if event.kind == PaymentEventKind.PAID:
                # Unapplied, but kept for reconciliation
                await self._record_payment(session, event, now, failure_reason="session expired")
            return WebhookOutcome.STALE, None

        if event.kind != PaymentEventKind.PAID:
            target = NON_PAID_TRANSITIONS[event.kind]
            if target != session.status:
                session.transition_to(target)
            return WebhookOutcome.PROCESSED, None

        subscription = await self.db_service.get_subscription_by_user(
            session.user_id, for_update=True
        )
        if (
            session.checkout_type in NEW_PLAN_CHECKOUT_TYPES
            and subscription is not None
            and subscription.status == SubscriptionStatus.ACTIVE
        ):
            payment = await self._record_payment(
                session, event, now, failure_reason="subscription already active"
            )
            payment.subscription_id = subscription.id
            session.payment_transaction_id = payment.id
            session.transition_to(CheckoutStatus.CANCELLED)
            logger.warning(
                f"{session.checkout_type.value} payment for session {session.session_id} "
                f"arrived after subscription {subscription.id} became active; not applied"
            )
            return WebhookOutcome.SUPERSEDED, None

        payment = await self._record_payment(session, event, now)
        subscription = await self._resolve_subscription(session, subscription)
        payment.subscription_id = subscription.id
        session.subscription_id = subscription.id
        session.payment_transaction_id = payment.id
        session.transition_to(CheckoutStatus.COMPLETED, now)

        user = await self.db_service.get_user(session.user_id)
        notice = (
            NotificationType.PAYMENT_SUCCESS,
            user.email if user else None,
            {
                "name": user.name if user else None,
                "amount": f"{payment.amount:,.0f}",
                "currency": payment.currency,
                "next_billing_date": (
                    f"{subscription.next_billing_date:%Y-%m-%d}"
                    if subscription.next_billing_date
                    else ""
                ),
            },
        )
        return WebhookOutcome.PROCESSED, notice

    async def _record_payment(
        self,
        session: CheckoutSession,
        event: PaymentEvent,
        now: datetime,
        failure_reason: str | None = None,
    ) -> PaymentTransaction:
        """Insert the payment row; a second row for the same gateway key is a duplicate."""
        if await self.db_service.get_payment_by_external_id(event.gateway, event.external_id):
            raise DuplicatePaymentError()

        payment = PaymentTransaction(
            checkout_session_id=session.id,
            gateway=event.gateway,
            gateway_external_id=event.external_id,
            gateway_transaction_id=event.gateway_transaction_id,
            order_id=event.merchant_reference,
            amount=event.amount_received if event.amount_received is not None else session.amount,
            currency=session.currency,
            status=PaymentStatus.PAID,
            payment_method=event.payment_method,
            description=f"{session.checkout_type.value} {session.session_id}",
            paid_at=event.paid_at or now,
            failure_reason=failure_reason,
            gateway_response=event.raw,
        )
        self.db.add(payment)
        try:
            await self.db.flush()
        except IntegrityError as e:
            if is_unique_violation(e):
                raise DuplicatePaymentError() from e
            raise
        return payment

    async def _resolve_subscription(
        self, session: CheckoutSession, subscription: Subscription | None
    ) -> Subscription:
        """Create, convert, extend or re-plan the user's subscription for a paid session."""
        seat_plan = await self.db_service.get_seat_plan(session.seat_plan_id)
        if seat_plan is None:
            raise NotFoundError("seat plan not found", {"seat_plan_id": session.seat_plan_id})
        period = resolve_billing_period(session, seat_plan)

        if subscription is None:
            _, active_employees = await self.db_service.count_employees(session.user_id)
            subscription = await self.lifecycle.create_active_subscription(
                session.user_id, seat_plan, period, employee_count=active_employees
            )
            user = await self.db_service.get_user(session.user_id)
            self.db.add(
                CustomerBillingInfo(
                    subscription_id=subscription.id,
                    company_name=(user.name or user.email or "Company") if user else "Company",
                    company_email=user.email if user else None,
                    billing_contact_email=user.email if user else None,
                )
            )
            return subscription

        if subscription.status == SubscriptionStatus.TRIAL:
            await self.lifecycle.convert_trial_to_active(subscription, seat_plan, period)
        elif subscription.status == SubscriptionStatus.ACTIVE:
            self.lifecycle.apply_plan(subscription, seat_plan)
            if session.checkout_type == CheckoutType.RENEWAL:
                self.lifecycle.renew_period(subscription, period)
        else:
            self.lifecycle.reactivate(subscription, seat_plan, period)
        return subscription
