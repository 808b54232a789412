"""create_billing_tables

Revision ID: 3c1e7a9d2f40
Revises:
Create Date: 2026-10-19 09:12:44.502118

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c1e7a9d2f40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("auth0_user_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="admin"),
        sa.Column("has_used_trial", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("auth0_user_id"),
    )
    op.create_index("idx_users_auth0_user_id", "users", ["auth0_user_id"])

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("admin_user_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("full_name", sa.String(length=200), nullable=False),
        sa.Column(
            "employment_status", sa.String(length=32), nullable=False, server_default="active"
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["admin_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_employees_admin_user_id", "employees", ["admin_user_id"])

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("plan_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "seat_plans",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_plan_id", sa.Integer(), nullable=False),
        sa.Column("size_tier_id", sa.String(length=50), nullable=False),
        sa.Column("min_employees", sa.Integer(), nullable=False),
        sa.Column("max_employees", sa.Integer(), nullable=False),
        sa.Column("price_per_month", sa.Numeric(12, 2), nullable=False),
        sa.Column("price_per_year", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_plan_id"], ["subscription_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_seat_plans_plan_band",
        "seat_plans",
        ["subscription_plan_id", "min_employees", "max_employees"],
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("admin_user_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_plan_id", sa.Integer(), nullable=False),
        sa.Column("seat_plan_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="trial"),
        sa.Column("is_trial_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("current_employee_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["admin_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["subscription_plan_id"], ["subscription_plans.id"]),
        sa.ForeignKeyConstraint(["seat_plan_id"], ["seat_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("admin_user_id"),
    )
    op.create_index("idx_subscriptions_status", "subscriptions", ["status"])
    op.create_index(
        "idx_subscriptions_next_billing", "subscriptions", ["status", "next_billing_date"]
    )

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("checkout_session_id", sa.Integer(), nullable=True),
        sa.Column("gateway", sa.String(length=20), nullable=False),
        sa.Column("gateway_external_id", sa.String(length=255), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("order_id", sa.String(length=100), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="IDR"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("gateway_response", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "gateway", "gateway_external_id", name="uq_payment_gateway_external_id"
        ),
    )
    op.create_index(
        "idx_payment_transactions_subscription", "payment_transactions", ["subscription_id"]
    )
    op.create_index(
        "ix_payment_transactions_checkout_session_id",
        "payment_transactions",
        ["checkout_session_id"],
    )

    op.create_table(
        "checkout_sessions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_plan_id", sa.Integer(), nullable=False),
        sa.Column("seat_plan_id", sa.Integer(), nullable=False),
        sa.Column("checkout_type", sa.String(length=32), nullable=False),
        sa.Column("billing_period", sa.String(length=32), nullable=True),
        sa.Column("is_trial_checkout", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="IDR"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="initiated"),
        sa.Column("gateway", sa.String(length=20), nullable=True),
        sa.Column("payment_reference", sa.String(length=100), nullable=True),
        sa.Column("gateway_invoice_id", sa.String(length=255), nullable=True),
        sa.Column("payment_token", sa.String(length=255), nullable=True),
        sa.Column("payment_url", sa.Text(), nullable=True),
        sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("payment_transaction_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "(is_trial_checkout AND amount = 0) OR (NOT is_trial_checkout AND amount > 0)",
            name="ck_checkout_sessions_trial_amount",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["subscription_plan_id"], ["subscription_plans.id"]),
        sa.ForeignKeyConstraint(["seat_plan_id"], ["seat_plans.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["payment_transaction_id"], ["payment_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id"),
    )
    op.create_index("idx_checkout_sessions_user", "checkout_sessions", ["user_id"])
    op.create_index(
        "idx_checkout_sessions_status_expiry", "checkout_sessions", ["status", "expires_at"]
    )

    op.create_table(
        "trial_activities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("employees_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("features_used", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("last_activity_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("converted_to_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("conversion_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id"),
    )

    op.create_table(
        "customer_billing_info",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("company_name", sa.String(length=255), nullable=False),
        sa.Column("company_address", sa.Text(), nullable=True),
        sa.Column("company_phone", sa.String(length=50), nullable=True),
        sa.Column("company_email", sa.String(length=320), nullable=True),
        sa.Column("tax_number", sa.String(length=50), nullable=True),
        sa.Column("billing_contact_name", sa.String(length=200), nullable=True),
        sa.Column("billing_contact_email", sa.String(length=320), nullable=True),
        sa.Column("billing_contact_phone", sa.String(length=50), nullable=True),
        sa.Column("bank_name", sa.String(length=100), nullable=True),
        sa.Column("bank_account_number", sa.String(length=50), nullable=True),
        sa.Column("bank_account_holder", sa.String(length=200), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id"),
    )

    op.create_table(
        "subscription_usage",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("employee_count", sa.Integer(), nullable=False),
        sa.Column("active_employee_count", sa.Integer(), nullable=False),
        sa.Column("recorded_on", sa.Date(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "recorded_on", name="uq_subscription_usage_day"),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("notification_type", sa.String(length=32), nullable=False),
        sa.Column("sent_on", sa.Date(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "subscription_id", "notification_type", "sent_on", name="uq_notification_once_per_day"
        ),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("notification_logs")
    op.drop_table("subscription_usage")
    op.drop_table("customer_billing_info")
    op.drop_table("trial_activities")
    op.drop_index("idx_checkout_sessions_status_expiry", table_name="checkout_sessions")
    op.drop_index("idx_checkout_sessions_user", table_name="checkout_sessions")
    op.drop_table("checkout_sessions")
    op.drop_index(
        "ix_payment_transactions_checkout_session_id", table_name="payment_transactions"
    )
    op.drop_index("idx_payment_transactions_subscription", table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index("idx_subscriptions_next_billing", table_name="subscriptions")
    op.drop_index("idx_subscriptions_status", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("idx_seat_plans_plan_band", table_name="seat_plans")
    op.drop_table("seat_plans")
    op.drop_table("subscription_plans")
    op.drop_index("idx_employees_admin_user_id", table_name="employees")
    op.drop_table("employees")
    op.drop_index("idx_users_auth0_user_id", table_name="users")
    op.drop_table("users")
