"""Integration tests for checkout sessions and plan changes."""

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import FakeGateway, RecordingNotifier, add_employees
from sqlalchemy import func, select

from core.constants import (
    BillingPeriod,
    ChangeType,
    CheckoutStatus,
    CheckoutType,
    NotificationType,
    SubscriptionStatus,
)
from core.exceptions import ConflictError, GatewayError, NotFoundError, ValidationError
from database.connection import unit_of_work
from database.models import CheckoutSession, User
from database.service import DatabaseService
from schemas.subscription import BillingInfoRequest
from services.checkout_service import CheckoutService
from services.lifecycle import SubscriptionLifecycleManager, is_in_trial, remaining_trial_days
from utils.dates import add_billing_period


@pytest.fixture
def service(db_session, gateway, notifier, clock) -> CheckoutService:
    return CheckoutService(db_session, gateway, notifier, clock)


async def activate(db_session, user, seat_plan, clock, employees=5, period=BillingPeriod.MONTHLY):
    lifecycle = SubscriptionLifecycleManager(db_session, RecordingNotifier(), clock)
    async with unit_of_work(db_session):
        subscription = await lifecycle.create_active_subscription(
            user.id, seat_plan, period, employee_count=employees
        )
    return subscription


async def count_sessions(db_session) -> int:
    return await db_session.scalar(select(func.count(CheckoutSession.id)))


# ==================== TRIAL ====================


async def test_trial_checkout_starts_a_fourteen_day_trial(
    service, db_session, catalog, admin_user, gateway, notifier, clock
):
    session = await service.initiate_trial_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id
    )
    assert session.is_trial_checkout
    assert session.amount == 0
    assert session.status == CheckoutStatus.INITIATED
    assert gateway.requests == []

    subscription = await service.complete_trial_checkout(
        admin_user, session.session_id, BillingInfoRequest(company_name="Acme Corp")
    )

    assert subscription.status == SubscriptionStatus.TRIAL
    assert is_in_trial(subscription, clock())
    assert remaining_trial_days(subscription, clock()) == 14
    assert admin_user.has_used_trial

    db_service = DatabaseService(db_session)
    stored = await db_service.get_checkout_session(session.session_id)
    assert stored.status == CheckoutStatus.COMPLETED
    assert stored.subscription_id == subscription.id
    billing = await db_service.get_billing_info(subscription.id)
    assert billing.company_name == "Acme Corp"
    activity = await db_service.get_trial_activity(subscription.id)
    assert activity is not None and not activity.converted_to_paid
    assert len(notifier.of_type(NotificationType.TRIAL_ACTIVATED)) == 1


async def test_second_trial_is_refused(service, catalog, admin_user):
    session = await service.initiate_trial_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id
    )
    await service.complete_trial_checkout(
        admin_user, session.session_id, BillingInfoRequest(company_name="Acme")
    )

    with pytest.raises(ValidationError):
        await service.initiate_trial_checkout(
            admin_user, catalog["premium"].id, catalog["premium_small"].id
        )


async def test_expired_trial_session_cannot_be_completed(service, catalog, admin_user, clock):
    session = await service.initiate_trial_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id
    )
    clock.advance(hours=25)

    with pytest.raises(ValidationError):
        await service.complete_trial_checkout(
            admin_user, session.session_id, BillingInfoRequest(company_name="Acme")
        )


async def test_seat_plan_must_belong_to_plan(service, catalog, admin_user):
    with pytest.raises(ValidationError):
        await service.initiate_trial_checkout(
            admin_user, catalog["standard"].id, catalog["premium_small"].id
        )


# ==================== PAID CHECKOUT ====================


async def test_paid_checkout_opens_gateway_invoice(service, catalog, admin_user, gateway):
    session = await service.initiate_paid_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id, is_monthly=True
    )

    assert session.status == CheckoutStatus.PENDING
    assert session.checkout_type == CheckoutType.NEW_SUBSCRIPTION
    assert session.billing_period == BillingPeriod.MONTHLY
    assert session.amount == Decimal("500000")
    assert session.payment_reference == f"HRIS-{session.session_id}"
    assert session.payment_url.endswith(session.session_id)
    assert len(gateway.requests) == 1
    assert gateway.requests[0].amount == Decimal("500000")


async def test_gateway_failure_marks_session_failed(
    db_session, catalog, admin_user, notifier, clock
):
    service = CheckoutService(db_session, FakeGateway(fail=True), notifier, clock)

    with pytest.raises(GatewayError):
        await service.initiate_paid_checkout(
            admin_user, catalog["standard"].id, catalog["standard_small"].id, is_monthly=False
        )

    session = (await db_session.execute(select(CheckoutSession))).scalar_one()
    assert session.status == CheckoutStatus.FAILED
    assert session.billing_period == BillingPeriod.YEARLY


async def test_active_subscription_cannot_start_new_checkout(
    service, db_session, catalog, admin_user, clock
):
    await activate(db_session, admin_user, catalog["standard_small"], clock)

    with pytest.raises(ValidationError):
        await service.initiate_paid_checkout(
            admin_user, catalog["premium"].id, catalog["premium_small"].id, is_monthly=True
        )


async def test_second_paid_checkout_waits_for_the_first(
    service, db_session, catalog, admin_user, gateway, clock
):
    standard_id, standard_small_id = catalog["standard"].id, catalog["standard_small"].id
    premium_id, premium_small_id = catalog["premium"].id, catalog["premium_small"].id
    first = await service.initiate_paid_checkout(
        admin_user, standard_id, standard_small_id, is_monthly=True
    )
    first_id = first.session_id

    with pytest.raises(ConflictError) as exc_info:
        await service.initiate_paid_checkout(
            admin_user, premium_id, premium_small_id, is_monthly=True
        )

    assert exc_info.value.details["session_id"] == first_id
    assert len(gateway.requests) == 1
    assert await count_sessions(db_session) == 1

    await db_session.refresh(admin_user)
    clock.advance(hours=24, seconds=1)
    second = await service.initiate_paid_checkout(
        admin_user, premium_id, premium_small_id, is_monthly=True
    )
    assert second.status == CheckoutStatus.PENDING
    assert len(gateway.requests) == 2


async def test_stale_session_reads_as_expired(service, catalog, admin_user, clock):
    session = await service.initiate_paid_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id, is_monthly=True
    )
    clock.advance(hours=24, seconds=1)

    fetched = await service.get_checkout_session(admin_user, session.session_id)
    assert fetched.status == CheckoutStatus.EXPIRED


async def test_sessions_are_private_to_their_owner(service, db_session, catalog, admin_user):
    other = User(auth0_user_id="auth0|other", email="other@acme.test")
    db_session.add(other)
    await db_session.commit()
    session = await service.initiate_paid_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id, is_monthly=True
    )

    with pytest.raises(NotFoundError):
        await service.get_checkout_session(other, session.session_id)


async def test_convert_trial_charges_full_price(service, catalog, admin_user):
    trial = await service.initiate_trial_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id
    )
    await service.complete_trial_checkout(
        admin_user, trial.session_id, BillingInfoRequest(company_name="Acme")
    )

    session = await service.convert_trial_to_paid(
        admin_user, catalog["premium"].id, None, is_monthly=True
    )

    assert session.checkout_type == CheckoutType.TRIAL_CONVERSION
    assert session.seat_plan_id == catalog["premium_small"].id
    assert session.amount == Decimal("800000")


# ==================== PLAN CHANGES ====================


async def test_seat_upgrade_preview_is_flat_difference(
    service, db_session, catalog, admin_user, clock
):
    await activate(db_session, admin_user, catalog["standard_small"], clock)

    preview = await service.preview_seat_plan_change(
        admin_user, catalog["standard_large"].id, is_monthly=True
    )

    assert preview.change_type == ChangeType.SEAT_UPGRADE
    assert preview.price_difference == Decimal("700000")
    assert preview.is_upgrade and preview.requires_payment
    assert preview.payment_amount == Decimal("700000")


async def test_plan_downgrade_preview_needs_no_payment(
    service, db_session, catalog, admin_user, clock
):
    await activate(db_session, admin_user, catalog["premium_small"], clock)

    preview = await service.preview_plan_change(
        admin_user, catalog["standard"].id, None, is_monthly=True
    )

    assert preview.change_type == ChangeType.PLAN_DOWNGRADE
    assert preview.new_seat_plan_id == catalog["standard_small"].id
    assert preview.price_difference == Decimal("-300000")
    assert not preview.is_upgrade and not preview.requires_payment
    assert preview.payment_amount == 0


async def test_seat_change_across_plans_is_rejected(
    service, db_session, catalog, admin_user, clock
):
    subscription = await activate(db_session, admin_user, catalog["standard_small"], clock)

    with pytest.raises(ValidationError) as exc_info:
        await service.change_seat_plan(admin_user, catalog["premium_small"].id, is_monthly=True)

    assert exc_info.value.message == "seat plan does not belong to current subscription plan"
    await db_session.refresh(subscription)
    assert subscription.seat_plan_id == catalog["standard_small"].id
    assert await count_sessions(db_session) == 0


async def test_upgrade_returns_checkout_and_leaves_plan_alone(
    service, db_session, catalog, admin_user, clock
):
    subscription = await activate(db_session, admin_user, catalog["standard_small"], clock)

    result = await service.change_seat_plan(
        admin_user, catalog["standard_large"].id, is_monthly=True
    )

    assert not result.applied
    assert result.checkout.checkout_type == CheckoutType.SEAT_UPGRADE
    assert result.checkout.amount == Decimal("700000")
    await db_session.refresh(subscription)
    assert subscription.seat_plan_id == catalog["standard_small"].id


async def test_downgrade_applies_immediately(
    service, db_session, catalog, admin_user, clock, gateway
):
    subscription = await activate(db_session, admin_user, catalog["premium_small"], clock)
    clock.advance(days=3)

    result = await service.change_subscription_plan(
        admin_user, catalog["standard"].id, None, is_monthly=True
    )

    assert result.applied and result.checkout is None
    assert gateway.requests == []
    await db_session.refresh(subscription)
    assert subscription.seat_plan_id == catalog["standard_small"].id
    assert subscription.subscription_plan_id == catalog["standard"].id
    assert subscription.next_billing_date == add_billing_period(clock(), BillingPeriod.MONTHLY)


async def test_downgrade_below_employee_count_is_rejected(
    service, db_session, catalog, admin_user, clock
):
    await add_employees(db_session, admin_user, active=30)
    subscription = await activate(
        db_session, admin_user, catalog["standard_large"], clock, employees=30
    )

    with pytest.raises(ValidationError) as exc_info:
        await service.change_seat_plan(admin_user, catalog["standard_small"].id, is_monthly=True)

    assert exc_info.value.message == (
        "cannot downgrade: current employee count (30) exceeds new seat plan limit (10)"
    )
    await db_session.refresh(subscription)
    assert subscription.seat_plan_id == catalog["standard_large"].id


async def test_trial_must_convert_before_changing_plan(service, catalog, admin_user):
    trial = await service.initiate_trial_checkout(
        admin_user, catalog["standard"].id, catalog["standard_small"].id
    )
    await service.complete_trial_checkout(
        admin_user, trial.session_id, BillingInfoRequest(company_name="Acme")
    )

    with pytest.raises(ValidationError):
        await service.change_seat_plan(admin_user, catalog["standard_large"].id, is_monthly=True)


# ==================== BILLING INFO ====================


async def test_update_billing_info_replaces_fields(service, db_session, catalog, admin_user, clock):
    await activate(db_session, admin_user, catalog["standard_small"], clock)

    info = await service.update_billing_info(
        admin_user, BillingInfoRequest(company_name="Acme", tax_number="01.234.567.8-901.000")
    )
    info = await service.update_billing_info(
        admin_user, BillingInfoRequest(company_name="Acme Indonesia")
    )

    assert info.company_name == "Acme Indonesia"
    assert info.tax_number is None


async def test_trial_feature_usage_is_recorded_once(db_session, catalog, admin_user, clock):
    lifecycle = SubscriptionLifecycleManager(db_session, RecordingNotifier(), clock)
    await lifecycle.create_automatic_trial(admin_user)
    clock.advance(days=1)

    await lifecycle.record_trial_feature_usage(admin_user.id, "payroll")
    activity = await lifecycle.record_trial_feature_usage(admin_user.id, "payroll")

    assert activity.features_used == ["payroll"]
    assert activity.last_activity_date == clock()


async def test_automatic_trial_uses_smallest_premium_tier(
    db_session, catalog, admin_user, clock, notifier
):
    lifecycle = SubscriptionLifecycleManager(db_session, notifier, clock)

    subscription = await lifecycle.create_automatic_trial(admin_user)

    assert subscription.seat_plan_id == catalog["premium_small"].id
    assert subscription.trial_end_date == clock() + timedelta(days=14)
    assert subscription.current_employee_count == 1
    assert notifier.of_type(NotificationType.TRIAL_ACTIVATED)
