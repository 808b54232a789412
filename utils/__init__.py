"""Utilities package."""

from .dates import add_billing_period, add_months, ensure_utc, utc_now
from .money import chargeable_amount, to_whole_currency

__all__ = [
    "add_billing_period",
    "add_months",
    "chargeable_amount",
    "ensure_utc",
    "to_whole_currency",
    "utc_now",
]
