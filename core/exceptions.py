"""Custom exceptions for the application."""

from typing import Any


class BillingError(Exception):
    """Base exception for the billing service."""

    status_code: int = 500
    error_code: str = "billing_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BillingError):
    """Raised when a request breaks a business rule."""

    status_code = 400
    error_code = "validation_error"


class AuthorizationError(BillingError):
    """Raised when the caller may not perform billing operations."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(BillingError):
    """Raised when a requested resource is not found."""

    status_code = 404
    error_code = "not_found"


class InvalidStateError(BillingError):
    """Raised when an entity is asked to make a transition it cannot make."""

    status_code = 409
    error_code = "invalid_state"


class ConflictError(BillingError):
    """Raised when a concurrent writer won; the caller may retry."""

    status_code = 409
    error_code = "conflict"


class SignatureVerificationError(BillingError):
    """Raised when a webhook signature does not match."""

    status_code = 401
    error_code = "invalid_signature"


class MalformedPayloadError(BillingError):
    """Raised when a webhook body cannot be parsed."""

    status_code = 400
    error_code = "malformed_payload"


class ExternalAPIError(BillingError):
    """Raised when external API calls fail."""

    status_code = 502
    error_code = "external_api_error"

    def __init__(self, service: str, message: str, status_code: int | None = None):
        self.service = service
        self.upstream_status = status_code
        details: dict[str, Any] = {"service": service}
        if status_code:
            details["upstream_status"] = status_code
        super().__init__(message, details)


class GatewayError(ExternalAPIError):
    """Raised when a payment gateway call fails; safe to retry."""

    error_code = "gateway_error"
    retryable = True


class GatewayTimeoutError(GatewayError):
    """Raised when a payment gateway does not answer in time."""

    status_code = 504
    error_code = "gateway_timeout"


class DatabaseError(BillingError):
    """Raised when database operations fail."""

    status_code = 503
    error_code = "database_error"
