"""Subscription and checkout schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from core.constants import (
    BillingPeriod,
    ChangeType,
    CheckoutStatus,
    CheckoutType,
    PlanType,
    SubscriptionStatus,
)

# ==================== CATALOG ====================


class SeatPlanResponse(BaseModel):
    """Seat plan as shown in the catalog."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Seat plan ID")
    subscription_plan_id: int = Field(..., description="Owning plan")
    size_tier_id: str = Field(..., description="Size tier code")
    min_employees: int = Field(..., description="Smallest company size covered")
    max_employees: int = Field(..., description="Largest company size covered")
    price_per_month: Decimal = Field(..., description="Monthly price")
    price_per_year: Decimal = Field(..., description="Yearly price")


class SubscriptionPlanResponse(BaseModel):
    """Plan as shown in the catalog."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Plan ID")
    name: str = Field(..., description="Plan name")
    plan_type: PlanType = Field(..., description="Plan family")
    description: str | None = Field(default=None, description="Marketing description")


# ==================== CHECKOUT ====================


class TrialCheckoutRequest(BaseModel):
    """Start a trial checkout."""

    subscription_plan_id: int = Field(..., description="Plan to trial")
    seat_plan_id: int = Field(..., description="Seat plan to trial")


class PaidCheckoutRequest(BaseModel):
    """Start a paid checkout."""

    subscription_plan_id: int = Field(..., description="Plan to buy")
    seat_plan_id: int = Field(..., description="Seat plan to buy")
    is_monthly: bool = Field(default=True, description="Monthly (true) or yearly (false) billing")


class BillingInfoRequest(BaseModel):
    """Company details printed on invoices."""

    company_name: str = Field(..., min_length=1, max_length=255, description="Company name")
    company_address: str | None = Field(default=None, description="Company address")
    company_phone: str | None = Field(default=None, description="Company phone")
    company_email: str | None = Field(default=None, description="Company email")
    tax_number: str | None = Field(default=None, description="Tax ID (NPWP)")
    billing_contact_name: str | None = Field(default=None, description="Billing contact")
    billing_contact_email: str | None = Field(default=None, description="Billing contact email")
    billing_contact_phone: str | None = Field(default=None, description="Billing contact phone")
    bank_name: str | None = Field(default=None, description="Bank name")
    bank_account_number: str | None = Field(default=None, description="Bank account number")
    bank_account_holder: str | None = Field(default=None, description="Bank account holder")


class CompleteTrialCheckoutRequest(BillingInfoRequest):
    """Finish a trial checkout with billing details."""

    session_id: str = Field(..., description="Trial checkout session ID")


class CheckoutSessionResponse(BaseModel):
    """Checkout session state."""

    model_config = ConfigDict(from_attributes=True)

    session_id: str = Field(..., description="Checkout session ID")
    checkout_type: CheckoutType = Field(..., description="What the session pays for")
    status: CheckoutStatus = Field(..., description="Session status")
    is_trial_checkout: bool = Field(..., description="Whether this is a free trial checkout")
    subscription_plan_id: int = Field(..., description="Plan")
    seat_plan_id: int = Field(..., description="Seat plan")
    billing_period: BillingPeriod | None = Field(default=None, description="Period paid for")
    amount: Decimal = Field(..., description="Amount to pay")
    currency: str = Field(..., description="Currency")
    gateway: str | None = Field(default=None, description="Payment gateway")
    payment_url: str | None = Field(default=None, description="Hosted payment page")
    payment_token: str | None = Field(default=None, description="Client payment token")
    payment_reference: str | None = Field(default=None, description="Merchant reference")
    expires_at: datetime = Field(..., description="Session expiry")
    completed_at: datetime | None = Field(default=None, description="Completion time")
    subscription_id: int | None = Field(default=None, description="Linked subscription")


class ConvertTrialRequest(BaseModel):
    """Pay for a trial subscription."""

    subscription_plan_id: int | None = Field(default=None, description="Plan to convert to")
    seat_plan_id: int | None = Field(default=None, description="Seat plan to convert to")
    is_monthly: bool = Field(default=True, description="Monthly (true) or yearly (false) billing")


# ==================== PLAN CHANGES ====================


class PlanChangeRequest(BaseModel):
    """Change to another subscription plan."""

    new_subscription_plan_id: int = Field(..., description="Target plan")
    new_seat_plan_id: int | None = Field(
        default=None, description="Target seat plan; defaults to the same employee band"
    )
    is_monthly: bool = Field(default=True, description="Price comparison period")


class SeatChangeRequest(BaseModel):
    """Change to another seat plan within the current plan."""

    new_seat_plan_id: int = Field(..., description="Target seat plan")
    is_monthly: bool = Field(default=True, description="Price comparison period")


class PlanChangePreview(BaseModel):
    """Price comparison for a plan or seat change; flat difference, no proration."""

    change_type: ChangeType = Field(..., description="Kind of change")
    current_subscription_plan_id: int = Field(..., description="Current plan")
    current_seat_plan_id: int = Field(..., description="Current seat plan")
    new_subscription_plan_id: int = Field(..., description="Target plan")
    new_seat_plan_id: int = Field(..., description="Target seat plan")
    billing_period: BillingPeriod = Field(..., description="Period the prices refer to")
    current_price: Decimal = Field(..., description="Current price for the period")
    new_price: Decimal = Field(..., description="New price for the period")
    price_difference: Decimal = Field(..., description="New price minus current price")
    is_upgrade: bool = Field(..., description="True when the new price is higher")
    requires_payment: bool = Field(..., description="True when a checkout is needed")
    payment_amount: Decimal = Field(..., description="Amount charged if payment is required")


class PlanChangeResponse(BaseModel):
    """Outcome of a plan or seat change."""

    preview: PlanChangePreview = Field(..., description="Price comparison used")
    applied: bool = Field(..., description="True when the change took effect immediately")
    checkout: CheckoutSessionResponse | None = Field(
        default=None, description="Checkout to pay when payment is required"
    )


# ==================== SUBSCRIPTION ====================


class SubscriptionResponse(BaseModel):
    """The caller's subscription."""

    id: int = Field(..., description="Subscription ID")
    admin_user_id: UUID = Field(..., description="Owning admin user")
    subscription_plan_id: int = Field(..., description="Plan")
    seat_plan_id: int = Field(..., description="Seat plan")
    status: SubscriptionStatus = Field(..., description="Lifecycle status")
    is_in_trial: bool = Field(..., description="Currently inside the trial window")
    remaining_trial_days: int = Field(..., description="Whole trial days left")
    trial_start_date: datetime | None = Field(default=None, description="Trial start")
    trial_end_date: datetime | None = Field(default=None, description="Trial end")
    start_date: datetime = Field(..., description="Subscription start")
    end_date: datetime | None = Field(default=None, description="Current access end")
    next_billing_date: datetime | None = Field(default=None, description="Next billing date")
    is_auto_renew: bool = Field(..., description="Auto-renewal flag")
    current_employee_count: int = Field(..., description="Employees counted at last snapshot")


class BillingInfoResponse(BillingInfoRequest):
    """Stored billing details."""

    model_config = ConfigDict(from_attributes=True)

    subscription_id: int = Field(..., description="Subscription")


class TrialFeatureUsageRequest(BaseModel):
    """Record a feature touched during the trial."""

    feature_code: str = Field(..., min_length=1, max_length=100, description="Feature code")


class TrialActivityResponse(BaseModel):
    """Trial engagement summary."""

    model_config = ConfigDict(from_attributes=True)

    subscription_id: int = Field(..., description="Subscription")
    employees_added: int = Field(..., description="Employees added during the trial")
    features_used: list[str] = Field(..., description="Features touched")
    last_activity_date: datetime = Field(..., description="Last recorded activity")
    converted_to_paid: bool = Field(..., description="Whether the trial converted")
