from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union


XERO_DESCRIPTION_MAX = 4000
XERO_REFERENCE_MAX = 255
SYNC_ERROR_MAX = 500

_CENT = Decimal("0.01")


def cents_to_amount(cents: int) -> Decimal:
    """Convert integer cents to a currency amount with exactly two places."""
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise TypeError("cents must be an integer")
    sign = "-" if cents < 0 else ""
    units, remainder = divmod(abs(cents), 100)
    return Decimal(f"{sign}{units}.{remainder:02d}")


def format_amount(cents: int) -> str:
    return str(cents_to_amount(cents))


def amount_to_cents(value: Union[Decimal, float, int, str]) -> int:
    amount = Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(amount * 100)


def format_xero_date(value: Union[date, datetime, str, None]) -> Optional[str]:
    """Render a date as ``YYYY-MM-DD``, dropping any time component."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value.split("T", 1)[0].split(" ", 1)[0]


def parse_xero_date(value: Optional[str]) -> Optional[date]:
    """Parse Xero dates, either ISO (``2025-03-15T00:00:00``) or ``/Date(1741996800000+0000)/``."""
    if not value:
        return None
    if value.startswith("/Date("):
        millis = value[len("/Date("):].split(")", 1)[0]
        for separator in ("+", "-"):
            if separator in millis[1:]:
                millis = millis[: millis.index(separator, 1)]
                break
        return datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc).date()
    return date.fromisoformat(format_xero_date(value) or "")


def truncate(value: Optional[str], max_length: int) -> Optional[str]:
    if value is None:
        return None
    if len(value) <= max_length:
        return value
    return value[:max_length]
