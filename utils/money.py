"""Currency helpers for gateway-facing amounts."""

from decimal import ROUND_HALF_UP, Decimal

from core.config import settings


def to_whole_currency(amount: Decimal) -> Decimal:
    """Round to whole units; IDR has no minor unit at the gateways."""
    return amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def chargeable_amount(amount: Decimal, minimum: Decimal | None = None) -> Decimal:
    """
    Convert a price into the amount actually sent to a gateway.

    Args:
        amount: Positive price in the billing currency
        minimum: Floor accepted by the gateways (defaults to settings)

    Returns:
        Decimal: Whole-unit amount, never below the minimum
    """
    floor = settings.minimum_charge if minimum is None else minimum
    return max(to_whole_currency(amount), floor)
