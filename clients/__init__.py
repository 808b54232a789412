"""Clients package for external API integrations."""

from core.config import settings
from core.exceptions import ValidationError

from .email_client import EmailClient, email_client
from .midtrans_client import MidtransClient
from .payment_gateway import GatewayAdapter
from .tripay_client import TripayClient
from .xendit_client import XenditClient

GATEWAYS: dict[str, type[GatewayAdapter]] = {
    MidtransClient.name: MidtransClient,
    XenditClient.name: XenditClient,
    TripayClient.name: TripayClient,
}


def get_gateway(name: str | None = None) -> GatewayAdapter:
    """Build the client for ``name``, or for the configured default gateway."""
    gateway_name = name or settings.payment_gateway
    try:
        return GATEWAYS[gateway_name]()
    except KeyError as e:
        raise ValidationError(f"unsupported payment gateway '{gateway_name}'") from e


__all__ = [
    "GATEWAYS",
    "EmailClient",
    "GatewayAdapter",
    "MidtransClient",
    "TripayClient",
    "XenditClient",
    "email_client",
    "get_gateway",
]
