"""
Accrual model: balances double every growth period, continuously in between.

    balance = principal * 2**full * 2**(remainder / period)

where ``full`` is the number of whole periods since the anchor and
``remainder`` the leftover days. All arithmetic is Decimal and the result is
truncated to whole drops, so the same inputs always give the same balance.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal, localcontext
from typing import Optional

from django.conf import settings

MICROSECONDS_PER_DAY = 86_400_000_000
PRECISION = 50


@dataclass(frozen=True)
class AccrualSnapshot:
    principal: int
    anchor: Optional[datetime]
    balance: int
    profit: int


def balance(
    principal: int,
    anchor: Optional[datetime],
    now: datetime,
    period_days: int = 10,
) -> int:
    if principal <= 0:
        return 0
    if anchor is None:
        return principal
    elapsed_us = (now - anchor) // timedelta(microseconds=1)
    if elapsed_us <= 0:
        return principal

    with localcontext() as ctx:
        ctx.prec = PRECISION
        period = Decimal(period_days)
        elapsed_days = Decimal(elapsed_us) / Decimal(MICROSECONDS_PER_DAY)
        full = int(elapsed_days // period)
        remainder = elapsed_days - full * period
        factor = Decimal(2) ** full * Decimal(2) ** (remainder / period)
        value = Decimal(principal) * factor
        return int(value.to_integral_value(rounding=ROUND_DOWN))


def profit(principal: int, anchor: Optional[datetime], now: datetime, period_days: int = 10) -> int:
    return max(0, balance(principal, anchor, now, period_days) - principal)


def snapshot(account, now: datetime) -> AccrualSnapshot:
    """Accrual state of an account at ``now``, from its principal and growth anchor."""
    period = settings.GROWTH_PERIOD_DAYS
    anchor = account.growth_anchor
    current = balance(account.principal, anchor, now, period)
    return AccrualSnapshot(
        principal=account.principal,
        anchor=anchor,
        balance=current,
        profit=max(0, current - account.principal),
    )
