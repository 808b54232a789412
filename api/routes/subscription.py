"""Subscription, checkout and plan change routes."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clients import GatewayAdapter, get_gateway
from core.auth import get_current_admin
from core.exceptions import NotFoundError
from database.connection import get_db_session
from database.models import Subscription, User
from database.service import DatabaseService
from schemas.subscription import (
    BillingInfoRequest,
    BillingInfoResponse,
    CheckoutSessionResponse,
    CompleteTrialCheckoutRequest,
    ConvertTrialRequest,
    PaidCheckoutRequest,
    PlanChangePreview,
    PlanChangeRequest,
    PlanChangeResponse,
    SeatChangeRequest,
    SeatPlanResponse,
    SubscriptionPlanResponse,
    SubscriptionResponse,
    TrialActivityResponse,
    TrialCheckoutRequest,
    TrialFeatureUsageRequest,
)
from services.checkout_service import CheckoutService
from services.lifecycle import (
    SubscriptionLifecycleManager,
    is_in_trial,
    remaining_trial_days,
)
from utils.dates import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


def get_payment_gateway() -> GatewayAdapter:
    """Gateway used for outgoing invoices."""
    return get_gateway()


def get_checkout_service(
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
    gateway: GatewayAdapter = Depends(get_payment_gateway),  # noqa: B008
) -> CheckoutService:
    return CheckoutService(db_session, gateway)


def to_subscription_response(subscription: Subscription) -> SubscriptionResponse:
    """Subscription view with the trial predicates evaluated now."""
    now = utc_now()
    return SubscriptionResponse(
        id=subscription.id,
        admin_user_id=subscription.admin_user_id,
        subscription_plan_id=subscription.subscription_plan_id,
        seat_plan_id=subscription.seat_plan_id,
        status=subscription.status,
        is_in_trial=is_in_trial(subscription, now),
        remaining_trial_days=remaining_trial_days(subscription, now),
        trial_start_date=subscription.trial_start_date,
        trial_end_date=subscription.trial_end_date,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        next_billing_date=subscription.next_billing_date,
        is_auto_renew=subscription.is_auto_renew,
        current_employee_count=subscription.current_employee_count,
    )


# ==================== CATALOG ====================


@router.get("/plans", response_model=list[SubscriptionPlanResponse])
async def list_plans(
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> list[SubscriptionPlanResponse]:
    """List the active subscription plans."""
    plans = await DatabaseService(db_session).list_active_plans()
    return [SubscriptionPlanResponse.model_validate(plan) for plan in plans]


@router.get("/plans/{plan_id}/seat-plans", response_model=list[SeatPlanResponse])
async def list_seat_plans(
    plan_id: int,
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> list[SeatPlanResponse]:
    """List the active seat tiers of a plan, smallest first."""
    db_service = DatabaseService(db_session)
    plan = await db_service.get_plan(plan_id)
    if plan is None or not plan.is_active:
        raise NotFoundError("subscription plan not found", {"subscription_plan_id": plan_id})
    seat_plans = await db_service.list_seat_plans(plan_id)
    return [SeatPlanResponse.model_validate(seat_plan) for seat_plan in seat_plans]


# ==================== CHECKOUT ====================


@router.post("/checkout/trial", response_model=CheckoutSessionResponse)
async def create_trial_checkout(
    checkout_request: TrialCheckoutRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> CheckoutSessionResponse:
    """Start a free trial checkout; no payment is taken."""
    session = await service.initiate_trial_checkout(
        user, checkout_request.subscription_plan_id, checkout_request.seat_plan_id
    )
    return CheckoutSessionResponse.model_validate(session)


@router.post("/checkout/trial/complete", response_model=SubscriptionResponse)
async def complete_trial_checkout(
    complete_request: CompleteTrialCheckoutRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> SubscriptionResponse:
    """Finish a trial checkout with company billing details."""
    billing = BillingInfoRequest.model_validate(
        complete_request.model_dump(exclude={"session_id"})
    )
    subscription = await service.complete_trial_checkout(
        user, complete_request.session_id, billing
    )
    return to_subscription_response(subscription)


@router.post("/checkout/paid", response_model=CheckoutSessionResponse)
async def create_paid_checkout(
    checkout_request: PaidCheckoutRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> CheckoutSessionResponse:
    """
    Start a paid checkout.

    Returns the hosted payment page; the subscription is activated by the
    gateway webhook once payment settles.
    """
    session = await service.initiate_paid_checkout(
        user,
        checkout_request.subscription_plan_id,
        checkout_request.seat_plan_id,
        checkout_request.is_monthly,
    )
    return CheckoutSessionResponse.model_validate(session)


@router.get("/checkout/{session_id}", response_model=CheckoutSessionResponse)
async def get_checkout_session(
    session_id: str,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> CheckoutSessionResponse:
    session = await service.get_checkout_session(user, session_id)
    return CheckoutSessionResponse.model_validate(session)


# ==================== SUBSCRIPTION ====================


@router.get("/me", response_model=SubscriptionResponse)
async def get_my_subscription(
    user: User = Depends(get_current_admin),  # noqa: B008
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> SubscriptionResponse:
    """The caller's subscription with trial status."""
    subscription = await DatabaseService(db_session).get_subscription_by_user(user.id)
    if subscription is None:
        raise NotFoundError("subscription not found")
    return to_subscription_response(subscription)


@router.post("/trial/activate", response_model=SubscriptionResponse)
async def activate_trial(
    user: User = Depends(get_current_admin),  # noqa: B008
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> SubscriptionResponse:
    """Start the premium trial on the smallest seat tier without a checkout."""
    subscription = await SubscriptionLifecycleManager(db_session).create_automatic_trial(user)
    return to_subscription_response(subscription)


@router.post("/trial/features", response_model=TrialActivityResponse)
async def record_trial_feature(
    usage_request: TrialFeatureUsageRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> TrialActivityResponse:
    activity = await SubscriptionLifecycleManager(db_session).record_trial_feature_usage(
        user.id, usage_request.feature_code
    )
    return TrialActivityResponse.model_validate(activity)


@router.post("/convert-trial", response_model=CheckoutSessionResponse)
async def convert_trial(
    convert_request: ConvertTrialRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> CheckoutSessionResponse:
    """Pay the full price to turn the trial into a paid subscription."""
    session = await service.convert_trial_to_paid(
        user,
        convert_request.subscription_plan_id,
        convert_request.seat_plan_id,
        convert_request.is_monthly,
    )
    return CheckoutSessionResponse.model_validate(session)


# ==================== PLAN CHANGES ====================


@router.post("/plan-change/preview", response_model=PlanChangePreview)
async def preview_plan_change(
    change_request: PlanChangeRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> PlanChangePreview:
    return await service.preview_plan_change(
        user,
        change_request.new_subscription_plan_id,
        change_request.new_seat_plan_id,
        change_request.is_monthly,
    )


@router.post("/plan-change", response_model=PlanChangeResponse)
async def change_plan(
    change_request: PlanChangeRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> PlanChangeResponse:
    """
    Change plan.

    Upgrades return a checkout for the flat price difference; downgrades
    apply immediately.
    """
    return await service.change_subscription_plan(
        user,
        change_request.new_subscription_plan_id,
        change_request.new_seat_plan_id,
        change_request.is_monthly,
    )


@router.post("/seat-change/preview", response_model=PlanChangePreview)
async def preview_seat_change(
    change_request: SeatChangeRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> PlanChangePreview:
    return await service.preview_seat_plan_change(
        user, change_request.new_seat_plan_id, change_request.is_monthly
    )


@router.post("/seat-change", response_model=PlanChangeResponse)
async def change_seats(
    change_request: SeatChangeRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> PlanChangeResponse:
    return await service.change_seat_plan(
        user, change_request.new_seat_plan_id, change_request.is_monthly
    )


# ==================== BILLING INFO ====================


@router.get("/billing-info", response_model=BillingInfoResponse)
async def get_billing_info(
    user: User = Depends(get_current_admin),  # noqa: B008
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> BillingInfoResponse:
    db_service = DatabaseService(db_session)
    subscription = await db_service.get_subscription_by_user(user.id)
    if subscription is None:
        raise NotFoundError("subscription not found")
    info = await db_service.get_billing_info(subscription.id)
    if info is None:
        raise NotFoundError("billing info not found")
    return BillingInfoResponse.model_validate(info)


@router.put("/billing-info", response_model=BillingInfoResponse)
async def update_billing_info(
    billing_request: BillingInfoRequest,
    user: User = Depends(get_current_admin),  # noqa: B008
    service: CheckoutService = Depends(get_checkout_service),  # noqa: B008
) -> BillingInfoResponse:
    info = await service.update_billing_info(user, billing_request)
    logger.info(f"Updated billing info for subscription {info.subscription_id}")
    return BillingInfoResponse.model_validate(info)
