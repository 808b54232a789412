"""Application configuration management."""

from decimal import Decimal
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = Field(default="HRIS Billing Service", description="Service name")
    debug: bool = Field(default=False, description="Debug mode", alias="DEBUG")
    version: str = Field(default="0.1.0", description="Application version")
    log_level: str = Field(default="INFO", description="Root log level", alias="LOG_LEVEL")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", alias="PORT")

    # Auth0
    auth0_domain: str = Field(..., description="Auth0 domain", alias="AUTH0_DOMAIN")
    auth0_api_audience: str = Field(
        ..., description="Auth0 API audience", alias="AUTH0_API_AUDIENCE"
    )
    auth0_issuer: str = Field(
        default="", description="Auth0 issuer URL (auto-generated from domain)"
    )
    auth0_jwks_url: str = Field(
        default="", description="Auth0 JWKS URL (auto-generated from domain)"
    )

    # Cron
    cron_api_key: str = Field(
        ..., description="Bearer key for scheduler endpoints", alias="CRON_API_KEY"
    )

    # Payment gateways
    payment_gateway: Literal["midtrans", "xendit", "tripay"] = Field(
        default="midtrans",
        description="Gateway used for outgoing invoices",
        alias="PAYMENT_GATEWAY",
    )
    gateway_timeout_seconds: float = Field(
        default=30.0, description="HTTP timeout for gateway calls", alias="GATEWAY_TIMEOUT_SECONDS"
    )

    midtrans_server_key: str = Field(
        default="", description="Midtrans server key", alias="MIDTRANS_SERVER_KEY"
    )
    midtrans_snap_url: str = Field(
        default="https://app.sandbox.midtrans.com/snap/v1",
        description="Midtrans Snap API base URL",
        alias="MIDTRANS_SNAP_URL",
    )

    xendit_secret_key: str = Field(
        default="", description="Xendit secret API key", alias="XENDIT_SECRET_KEY"
    )
    xendit_callback_key: str = Field(
        default="", description="Xendit callback verification key", alias="XENDIT_CALLBACK_KEY"
    )
    xendit_base_url: str = Field(
        default="https://api.xendit.co", description="Xendit API base URL", alias="XENDIT_BASE_URL"
    )

    tripay_api_key: str = Field(default="", description="Tripay API key", alias="TRIPAY_API_KEY")
    tripay_private_key: str = Field(
        default="", description="Tripay private key", alias="TRIPAY_PRIVATE_KEY"
    )
    tripay_merchant_code: str = Field(
        default="", description="Tripay merchant code", alias="TRIPAY_MERCHANT_CODE"
    )
    tripay_base_url: str = Field(
        default="https://tripay.co.id/api-sandbox",
        description="Tripay API base URL",
        alias="TRIPAY_BASE_URL",
    )
    tripay_payment_method: str = Field(
        default="BCAVA", description="Tripay channel for closed payments", alias="TRIPAY_PAYMENT_METHOD"
    )

    # Redirects
    checkout_success_url: str = Field(
        default="http://localhost:3000/subscription/success",
        description="Checkout success redirect URL",
        alias="CHECKOUT_SUCCESS_URL",
    )
    checkout_failure_url: str = Field(
        default="http://localhost:3000/subscription/failed",
        description="Checkout failure redirect URL",
        alias="CHECKOUT_FAILURE_URL",
    )
    webhook_base_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL gateways call back to",
        alias="WEBHOOK_BASE_URL",
    )

    # Billing
    currency: str = Field(default="IDR", description="Billing currency")
    trial_duration_days: int = Field(default=14, description="Trial length in days")
    checkout_expiry_hours: int = Field(
        default=24, description="Lifetime of a checkout session in hours"
    )
    renewal_checkout_expiry_days: int = Field(
        default=7, description="Lifetime of a renewal checkout session in days"
    )
    minimum_charge: Decimal = Field(
        default=Decimal("1000"), description="Smallest amount a gateway accepts"
    )
    trial_warning_days: list[int] = Field(
        default=[7, 3, 1], description="Remaining trial days that trigger a warning"
    )

    # Email
    resend_api_key: str = Field(default="", description="Resend API key", alias="RESEND_API_KEY")
    resend_api_url: str = Field(
        default="https://api.resend.com/emails", description="Resend send endpoint"
    )
    email_from: str = Field(
        default="billing@example.com", description="Sender address", alias="EMAIL_FROM"
    )

    # Database Configuration
    database_url: str = Field(
        ...,
        description="Database connection URL",
        alias="DATABASE_URL",
    )
    database_pool_size: int = Field(
        default=20, description="Database connection pool size"
    )
    database_max_overflow: int = Field(
        default=30, description="Database connection pool max overflow"
    )
    use_null_pool: bool = Field(
        default=True, description="Use NullPool for serverless databases", alias="USE_NULL_POOL"
    )

    # CORS
    allowed_origins: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        description="CORS allowed origins",
    )
    allowed_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        description="CORS allowed methods",
    )
    allowed_headers: list[str] = Field(
        default=["*"], description="CORS allowed headers"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    def __init__(self, **kwargs: Any) -> None:
        """Initialize settings and auto-generate Auth0 URLs."""
        super().__init__(**kwargs)

        if not self.auth0_issuer and self.auth0_domain:
            self.auth0_issuer = f"https://{self.auth0_domain}/"

        if not self.auth0_jwks_url and self.auth0_domain:
            self.auth0_jwks_url = f"https://{self.auth0_domain}/.well-known/jwks.json"


# Global settings instance
settings = Settings()
