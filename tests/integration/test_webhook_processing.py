"""Integration tests for applying gateway events."""

from decimal import Decimal

import pytest
from conftest import RecordingNotifier, paid_event
from sqlalchemy import func, select

from core.constants import (
    BillingPeriod,
    CheckoutStatus,
    CheckoutType,
    NotificationType,
    PaymentEventKind,
    PaymentStatus,
    SubscriptionStatus,
)
from core.exceptions import NotFoundError
from database.connection import unit_of_work
from database.models import CheckoutSession, PaymentTransaction, User
from database.service import DatabaseService
from schemas.subscription import BillingInfoRequest
from services.billing_automation import BillingAutomationScheduler
from services.checkout_service import CheckoutService
from services.lifecycle import SubscriptionLifecycleManager
from services.webhook_processor import WebhookOutcome, WebhookProcessor
from utils.dates import add_billing_period


@pytest.fixture
def checkout(db_session, gateway, notifier, clock) -> CheckoutService:
    return CheckoutService(db_session, gateway, notifier, clock)


@pytest.fixture
def processor(db_session, notifier, clock) -> WebhookProcessor:
    return WebhookProcessor(db_session, notifier, clock)


async def count_payments(db_session) -> int:
    return await db_session.scalar(select(func.count(PaymentTransaction.id)))


async def open_monthly(checkout, catalog, user, seat="standard_small", plan="standard"):
    return await checkout.initiate_paid_checkout(
        user, catalog[plan].id, catalog[seat].id, is_monthly=True
    )


async def activate(db_session, user, seat_plan, clock):
    lifecycle = SubscriptionLifecycleManager(db_session, RecordingNotifier(), clock)
    async with unit_of_work(db_session):
        subscription = await lifecycle.create_active_subscription(
            user.id, seat_plan, BillingPeriod.MONTHLY, employee_count=5
        )
    return subscription


# ==================== FIRST PAYMENT ====================


async def test_paid_event_creates_active_subscription(
    checkout, processor, db_session, catalog, admin_user, notifier, clock
):
    session = await open_monthly(checkout, catalog, admin_user)

    outcome = await processor.process(paid_event(session.session_id, Decimal("500000")))

    assert outcome == WebhookOutcome.PROCESSED
    payment = (await db_session.execute(select(PaymentTransaction))).scalar_one()
    assert payment.amount == Decimal("500000")
    assert payment.status == PaymentStatus.PAID
    assert payment.gateway_external_id == "tx-1"

    db_service = DatabaseService(db_session)
    stored = await db_service.get_checkout_session(session.session_id)
    assert stored.status == CheckoutStatus.COMPLETED
    assert stored.payment_transaction_id == payment.id

    subscription = await db_service.get_subscription_by_user(admin_user.id)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.seat_plan_id == catalog["standard_small"].id
    assert subscription.next_billing_date == add_billing_period(clock(), BillingPeriod.MONTHLY)
    assert payment.subscription_id == subscription.id
    assert await db_service.get_billing_info(subscription.id) is not None

    sent = notifier.of_type(NotificationType.PAYMENT_SUCCESS)
    assert len(sent) == 1
    assert sent[0][1] == "admin@acme.test"
    assert sent[0][2]["amount"] == "500,000"


async def test_replayed_event_is_absorbed(
    checkout, processor, db_session, catalog, admin_user, notifier
):
    session = await open_monthly(checkout, catalog, admin_user)
    event = paid_event(session.session_id, Decimal("500000"))

    assert await processor.process(event) == WebhookOutcome.PROCESSED
    assert await processor.process(event) == WebhookOutcome.ALREADY_PROCESSED

    assert await count_payments(db_session) == 1
    assert len(notifier.of_type(NotificationType.PAYMENT_SUCCESS)) == 1


async def test_same_gateway_transaction_is_recorded_once(
    checkout, processor, db_session, catalog, admin_user
):
    other = User(auth0_user_id="auth0|other", email="other@acme.test")
    db_session.add(other)
    await db_session.commit()

    first = await open_monthly(checkout, catalog, admin_user)
    second = await open_monthly(checkout, catalog, other)
    second_id = second.session_id

    await processor.process(paid_event(first.session_id, Decimal("500000"), "tx-shared"))
    outcome = await processor.process(paid_event(second_id, Decimal("500000"), "tx-shared"))

    assert outcome == WebhookOutcome.DUPLICATE
    assert await count_payments(db_session) == 1
    stored = await DatabaseService(db_session).get_checkout_session(second_id)
    assert stored.status == CheckoutStatus.PENDING
    assert stored.subscription_id is None


async def test_unknown_session_is_not_found(processor):
    with pytest.raises(NotFoundError):
        await processor.process(
            paid_event("6b1f8c1e-0000-4000-8000-000000000000", Decimal("500000"))
        )


# ==================== NON-PAID EVENTS ====================


@pytest.mark.parametrize(
    "kind,expected",
    [
        (PaymentEventKind.EXPIRED, CheckoutStatus.EXPIRED),
        (PaymentEventKind.FAILED, CheckoutStatus.FAILED),
        (PaymentEventKind.PENDING, CheckoutStatus.PENDING),
    ],
)
async def test_non_paid_events_only_move_the_session(
    checkout, processor, db_session, catalog, admin_user, kind, expected
):
    session = await open_monthly(checkout, catalog, admin_user)

    outcome = await processor.process(paid_event(session.session_id, Decimal("500000"), kind=kind))

    assert outcome == WebhookOutcome.PROCESSED
    db_service = DatabaseService(db_session)
    assert (await db_service.get_checkout_session(session.session_id)).status == expected
    assert await db_service.get_subscription_by_user(admin_user.id) is None
    assert await count_payments(db_session) == 0


async def test_event_for_stale_session_expires_it(
    checkout, processor, db_session, catalog, admin_user, clock
):
    session = await open_monthly(checkout, catalog, admin_user)
    clock.advance(hours=25)

    outcome = await processor.process(paid_event(session.session_id, Decimal("500000")))

    assert outcome == WebhookOutcome.STALE
    db_service = DatabaseService(db_session)
    assert (await db_service.get_checkout_session(session.session_id)).status == (
        CheckoutStatus.EXPIRED
    )
    assert await db_service.get_subscription_by_user(admin_user.id) is None
    payment = (await db_session.execute(select(PaymentTransaction))).scalar_one()
    assert payment.failure_reason == "session expired"
    assert payment.subscription_id is None
    assert payment.amount == Decimal("500000")


# ==================== EXISTING SUBSCRIPTIONS ====================


async def test_yearly_payment_converts_trial(
    checkout, processor, db_session, catalog, admin_user, clock
):
    trial = await checkout.initiate_trial_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id
    )
    subscription = await checkout.complete_trial_checkout(
        admin_user, trial.session_id, BillingInfoRequest(company_name="Acme")
    )
    trial_end = subscription.trial_end_date
    clock.advance(days=3)

    session = await checkout.initiate_paid_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id, is_monthly=False
    )
    assert session.checkout_type == CheckoutType.TRIAL_CONVERSION
    assert session.amount == Decimal("5000000")

    await processor.process(paid_event(session.session_id, Decimal("5000000")))

    db_service = DatabaseService(db_session)
    converted = await db_service.get_subscription_by_user(admin_user.id)
    assert converted.id == subscription.id
    assert converted.status == SubscriptionStatus.ACTIVE
    assert converted.trial_end_date == trial_end
    assert converted.next_billing_date == add_billing_period(clock(), BillingPeriod.YEARLY)
    activity = await db_service.get_trial_activity(subscription.id)
    assert activity.converted_to_paid
    assert activity.conversion_date == clock()


async def test_renewal_payment_extends_from_due_date(
    processor, db_session, catalog, admin_user, gateway, notifier, clock
):
    subscription = await activate(db_session, admin_user, catalog["standard_small"], clock)
    due = subscription.next_billing_date
    clock.advance(days=31)

    scheduler = BillingAutomationScheduler(db_session, gateway, notifier, clock)
    assert (await scheduler.process_auto_renewals()).affected == 1
    renewal = (
        await db_session.execute(
            select(CheckoutSession).where(CheckoutSession.checkout_type == CheckoutType.RENEWAL)
        )
    ).scalar_one()

    # Paid two days late: the period still runs from the due date
    clock.advance(days=2)
    await processor.process(paid_event(renewal.session_id, Decimal("500000"), "tx-renew"))

    renewed = await DatabaseService(db_session).get_subscription_by_user(admin_user.id)
    assert renewed.current_period_start == due
    assert renewed.next_billing_date == add_billing_period(due, BillingPeriod.MONTHLY)


async def test_seat_upgrade_payment_switches_seat_plan(
    checkout, processor, db_session, catalog, admin_user, clock
):
    subscription = await activate(db_session, admin_user, catalog["standard_small"], clock)
    next_billing = subscription.next_billing_date

    response = await checkout.change_seat_plan(
        admin_user, catalog["standard_large"].id, is_monthly=True
    )
    assert not response.applied
    session_id = response.checkout.session_id

    await processor.process(paid_event(session_id, Decimal("700000"), "tx-upgrade"))

    upgraded = await DatabaseService(db_session).get_subscription_by_user(admin_user.id)
    assert upgraded.seat_plan_id == catalog["standard_large"].id
    assert upgraded.next_billing_date == next_billing


async def test_payment_reactivates_lapsed_subscription(
    checkout, processor, db_session, catalog, admin_user, clock
):
    subscription = await activate(db_session, admin_user, catalog["standard_small"], clock)
    subscription.status = SubscriptionStatus.EXPIRED
    await db_session.commit()
    clock.advance(days=60)

    session = await checkout.initiate_paid_checkout(
        admin_user, catalog["premium"].id, catalog["premium_small"].id, is_monthly=True
    )
    assert session.checkout_type == CheckoutType.NEW_SUBSCRIPTION

    await processor.process(paid_event(session.session_id, Decimal("800000"), "tx-back"))

    revived = await DatabaseService(db_session).get_subscription_by_user(admin_user.id)
    assert revived.id == subscription.id
    assert revived.status == SubscriptionStatus.ACTIVE
    assert revived.seat_plan_id == catalog["premium_small"].id
    assert revived.next_billing_date == add_billing_period(clock(), BillingPeriod.MONTHLY)


async def test_second_plan_payment_after_activation_is_not_applied(
    checkout, processor, db_session, catalog, admin_user, notifier, clock
):
    first = await open_monthly(checkout, catalog, admin_user)
    # A session opened before the first payment landed
    straggler = CheckoutSession(
        session_id="0f6c3a52-5d1e-4c41-9a63-2f8f4b1f9e10",
        user_id=admin_user.id,
        subscription_plan_id=catalog["premium"].id,
        seat_plan_id=catalog["premium_small"].id,
        checkout_type=CheckoutType.NEW_SUBSCRIPTION,
        billing_period=BillingPeriod.MONTHLY,
        is_trial_checkout=False,
        amount=Decimal("800000"),
        currency="IDR",
        status=CheckoutStatus.PENDING,
        initiated_at=clock(),
        expires_at=first.expires_at,
    )
    db_session.add(straggler)
    await db_session.commit()

    await processor.process(paid_event(first.session_id, Decimal("500000"), "tx-first"))
    outcome = await processor.process(
        paid_event(straggler.session_id, Decimal("800000"), "tx-second")
    )

    assert outcome == WebhookOutcome.SUPERSEDED
    db_service = DatabaseService(db_session)
    subscription = await db_service.get_subscription_by_user(admin_user.id)
    assert subscription.seat_plan_id == catalog["standard_small"].id
    stored = await db_service.get_checkout_session(straggler.session_id)
    assert stored.status == CheckoutStatus.CANCELLED
    assert stored.subscription_id is None

    unapplied = await db_service.get_payment_by_external_id("midtrans", "tx-second")
    assert unapplied.failure_reason == "subscription already active"
    assert unapplied.subscription_id == subscription.id
    assert await count_payments(db_session) == 2
    assert len(notifier.of_type(NotificationType.PAYMENT_SUCCESS)) == 1
