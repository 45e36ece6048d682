"""Money helpers: cents rounding and even splits."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

CENTS = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def split_evenly(total: Decimal, parts: int) -> list[Decimal]:
    """Split `total` into `parts` cent amounts; the last part absorbs the residual."""
    if parts <= 0:
        return []
    share = to_cents(Decimal(total) / parts)
    return [share] * (parts - 1) + [to_cents(total) - share * (parts - 1)]


def percent_change(current: Decimal, previous: Decimal) -> Optional[float]:
    """(current - previous) / |previous| * 100, or None when previous is zero."""
    if previous == 0:
        return None
    return float((Decimal(current) - Decimal(previous)) / abs(Decimal(previous)) * HUNDRED)
