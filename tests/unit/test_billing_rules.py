"""Unit tests for date, money and lifecycle rules."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from core.constants import (
    BillingPeriod,
    CheckoutStatus,
    CheckoutType,
    NotificationType,
    SubscriptionStatus,
)
from core.exceptions import InvalidStateError
from database.models import CheckoutSession, SeatPlan, Subscription
from services.billing_automation import renewal_period
from services.lifecycle import (
    infer_billing_period,
    is_in_trial,
    is_trial_expired,
    remaining_trial_days,
    resolve_billing_period,
)
from services.notifications import render
from utils.dates import add_billing_period, add_months, ensure_utc
from utils.money import chargeable_amount, to_whole_currency

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


def trial_subscription(end: datetime) -> Subscription:
    return Subscription(
        admin_user_id=uuid.uuid4(),
        subscription_plan_id=1,
        seat_plan_id=1,
        status=SubscriptionStatus.TRIAL,
        trial_start_date=end - timedelta(days=14),
        trial_end_date=end,
        start_date=end - timedelta(days=14),
    )


def seat_plan() -> SeatPlan:
    return SeatPlan(
        subscription_plan_id=1,
        size_tier_id="1-10",
        min_employees=1,
        max_employees=10,
        price_per_month=Decimal("500000"),
        price_per_year=Decimal("5000000"),
    )


def checkout(status: CheckoutStatus, expires_at: datetime) -> CheckoutSession:
    return CheckoutSession(
        session_id=str(uuid.uuid4()),
        checkout_type=CheckoutType.NEW_SUBSCRIPTION,
        amount=Decimal("500000"),
        is_trial_checkout=False,
        status=status,
        expires_at=expires_at,
    )


# ==================== DATES / MONEY ====================


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)
    assert add_months(datetime(2028, 1, 31, tzinfo=UTC), 1) == datetime(2028, 2, 29, tzinfo=UTC)
    assert add_months(datetime(2026, 11, 15, tzinfo=UTC), 3) == datetime(2027, 2, 15, tzinfo=UTC)


def test_add_billing_period_yearly_handles_leap_day():
    start = datetime(2028, 2, 29, tzinfo=UTC)
    assert add_billing_period(start, BillingPeriod.YEARLY) == datetime(2029, 2, 28, tzinfo=UTC)
    assert add_billing_period(start, BillingPeriod.MONTHLY) == datetime(2028, 3, 29, tzinfo=UTC)


def test_ensure_utc_treats_naive_as_utc():
    assert ensure_utc(datetime(2026, 1, 1)).tzinfo == UTC


def test_chargeable_amount_rounds_and_floors():
    assert to_whole_currency(Decimal("1499.5")) == Decimal("1500")
    assert chargeable_amount(Decimal("300000.40")) == Decimal("300000")
    assert chargeable_amount(Decimal("250")) == Decimal("1000")
    assert chargeable_amount(Decimal("250"), minimum=Decimal("100")) == Decimal("250")


# ==================== TRIAL PREDICATES ====================


def test_trial_window_predicates():
    subscription = trial_subscription(NOW + timedelta(days=14))
    assert is_in_trial(subscription, NOW)
    assert not is_trial_expired(subscription, NOW)
    assert remaining_trial_days(subscription, NOW) == 14

    at_end = NOW + timedelta(days=14)
    assert not is_in_trial(subscription, at_end)
    assert is_trial_expired(subscription, at_end)
    assert remaining_trial_days(subscription, at_end) == 0


def test_remaining_trial_days_is_monotone_and_non_negative():
    subscription = trial_subscription(NOW + timedelta(days=14))
    previous = None
    for hours in range(0, 24 * 20, 7):
        days = remaining_trial_days(subscription, NOW + timedelta(hours=hours))
        assert days >= 0
        if previous is not None:
            assert days <= previous
        previous = days


def test_no_trial_outside_trial_status():
    subscription = trial_subscription(NOW + timedelta(days=5))
    subscription.status = SubscriptionStatus.ACTIVE
    assert not is_in_trial(subscription, NOW)
    assert not is_trial_expired(subscription, NOW + timedelta(days=30))
    assert remaining_trial_days(subscription, NOW) == 0


# ==================== BILLING PERIOD ====================


def test_infer_billing_period_from_amount():
    plan = seat_plan()
    assert infer_billing_period(Decimal("500000"), plan) == BillingPeriod.MONTHLY
    assert infer_billing_period(Decimal("5000000"), plan) == BillingPeriod.YEARLY


def test_recorded_period_wins_over_amount():
    session = checkout(CheckoutStatus.PENDING, NOW + timedelta(hours=1))
    session.billing_period = BillingPeriod.YEARLY
    assert resolve_billing_period(session, seat_plan()) == BillingPeriod.YEARLY

    session.billing_period = None
    assert resolve_billing_period(session, seat_plan()) == BillingPeriod.MONTHLY


def test_renewal_period_uses_cycle_length():
    subscription = trial_subscription(NOW)
    subscription.current_period_start = NOW
    subscription.next_billing_date = add_billing_period(NOW, BillingPeriod.YEARLY)
    assert renewal_period(subscription) == BillingPeriod.YEARLY

    subscription.next_billing_date = add_billing_period(NOW, BillingPeriod.MONTHLY)
    assert renewal_period(subscription) == BillingPeriod.MONTHLY


# ==================== CHECKOUT SESSION STATE ====================


def test_terminal_session_refuses_transitions():
    session = checkout(CheckoutStatus.COMPLETED, NOW + timedelta(hours=1))
    with pytest.raises(InvalidStateError):
        session.transition_to(CheckoutStatus.PENDING)


def test_completion_stamps_time():
    session = checkout(CheckoutStatus.PENDING, NOW + timedelta(hours=1))
    session.transition_to(CheckoutStatus.COMPLETED, NOW)
    assert session.completed_at == NOW
    assert session.is_terminal


def test_stale_means_open_and_past_expiry():
    session = checkout(CheckoutStatus.PENDING, NOW)
    assert session.is_stale(NOW)
    assert not session.is_stale(NOW - timedelta(seconds=1))
    session.status = CheckoutStatus.EXPIRED
    assert not session.is_stale(NOW + timedelta(days=1))


# ==================== NOTIFICATIONS ====================


def test_render_fills_missing_values_with_blanks():
    subject, body = render(NotificationType.TRIAL_WARNING, {"days_remaining": 3, "name": None})
    assert subject == "Your trial ends in 3 day(s)"
    assert "Hi there" in body


def test_render_escapes_values_in_the_html_body():
    subject, body = render(
        NotificationType.RENEWAL_INVOICE,
        {
            "name": "<b>Eve</b> & Co",
            "amount": "500,000",
            "currency": "IDR",
            "payment_url": 'https://pay.test/x?a=1&b="2"',
        },
    )

    assert subject == "Your subscription renewal invoice"
    assert "Hi &lt;b&gt;Eve&lt;/b&gt; &amp; Co" in body
    assert "<b>Eve" not in body
    assert 'href="https://pay.test/x?a=1&amp;b=&quot;2&quot;"' in body
