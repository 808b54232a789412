"""Scheduler-triggered billing sweeps."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clients import GatewayAdapter
from core.auth import verify_cron_key
from database.connection import get_db_session
from services.billing_automation import BillingAutomationScheduler, SweepResult

from .subscription import get_payment_gateway

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_cron_key)])


def get_scheduler(
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
    gateway: GatewayAdapter = Depends(get_payment_gateway),  # noqa: B008
) -> BillingAutomationScheduler:
    return BillingAutomationScheduler(db_session, gateway)


@router.post("/trial-expiry", response_model=SweepResult)
async def run_trial_expiry(
    scheduler: BillingAutomationScheduler = Depends(get_scheduler),  # noqa: B008
) -> SweepResult:
    """Expire trials whose end date has passed."""
    return await scheduler.expire_trials()


@router.post("/trial-warnings", response_model=SweepResult)
async def run_trial_warnings(
    scheduler: BillingAutomationScheduler = Depends(get_scheduler),  # noqa: B008
) -> SweepResult:
    """Email admins whose trial ends in 7, 3 or 1 days."""
    return await scheduler.send_trial_warnings()


@router.post("/auto-renewals", response_model=SweepResult)
async def run_auto_renewals(
    scheduler: BillingAutomationScheduler = Depends(get_scheduler),  # noqa: B008
) -> SweepResult:
    """Open renewal checkouts for subscriptions due today."""
    return await scheduler.process_auto_renewals()


@router.post("/usage-statistics", response_model=SweepResult)
async def run_usage_statistics(
    scheduler: BillingAutomationScheduler = Depends(get_scheduler),  # noqa: B008
) -> SweepResult:
    return await scheduler.update_usage_statistics()


@router.post("/checkout-expiry", response_model=SweepResult)
async def run_checkout_expiry(
    scheduler: BillingAutomationScheduler = Depends(get_scheduler),  # noqa: B008
) -> SweepResult:
    return await scheduler.expire_stale_checkout_sessions()
