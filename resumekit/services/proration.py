"""
Plan-change classification and proration.

Pure functions only: no database, no clock. Callers pass ``now`` so the same
inputs always produce the same amounts.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from resumekit.core.plan_tables import PlanChangeType, round_money

_MICROSECOND = timedelta(microseconds=1)
_MICROSECONDS_PER_DAY = Decimal(86400 * 10 ** 6)


@dataclass(frozen=True)
class ProrationResult:
    proration_amount: Decimal
    remaining_value: Decimal
    new_plan_price: Decimal
    currency: str
    days_remaining: Decimal
    total_days: Decimal

    def as_dict(self) -> dict:
        return {
            "proration_amount": self.proration_amount,
            "remaining_value": self.remaining_value,
            "new_plan_price": self.new_plan_price,
            "currency": self.currency,
            "days_remaining": self.days_remaining,
            "total_days": self.total_days,
        }


def classify_plan_change(current_price: Decimal, new_price: Decimal) -> PlanChangeType:
    """
    The one place that decides upgrade vs downgrade.

    Strictly more expensive is an upgrade; everything else, including a
    same-price switch, is a downgrade deferred to the cycle end.
    """
    if Decimal(new_price) > Decimal(current_price):
        return PlanChangeType.UPGRADE
    return PlanChangeType.DOWNGRADE


def _remaining_fraction(cycle_start: datetime, cycle_end: datetime, now: datetime):
    total = (cycle_end - cycle_start) // _MICROSECOND
    if total <= 0:
        return Decimal(0), Decimal(0)
    remaining = min(max((cycle_end - now) // _MICROSECOND, 0), total)
    return Decimal(remaining), Decimal(total)


def unused_value(
    plan_price: Decimal,
    cycle_start: datetime,
    cycle_end: datetime,
    now: datetime,
    currency: str,
) -> Decimal:
    """Value of the time left in the current cycle, rounded to the currency."""
    remaining, total = _remaining_fraction(cycle_start, cycle_end, now)
    if total == 0:
        return round_money(Decimal(0), currency)
    return round_money(Decimal(plan_price) * remaining / total, currency)


def compute_proration(
    current_plan_price: Decimal,
    current_cycle_start: datetime,
    current_cycle_end: datetime,
    new_plan_price: Decimal,
    now: datetime,
    currency: str,
    current_is_freemium: bool = False,
) -> ProrationResult:
    """
    Charge for switching plans mid-cycle.

    ``remaining_value`` is the credit for unused time on the current plan
    (zero when leaving a freemium plan); ``proration_amount`` is the new
    plan's price less that credit, never negative.

    Example: 10 USD plan, 30-day cycle, 15 days left, switching to 25 USD
    gives 25 - 10 * 15/30 = 20.00 USD.
    """
    remaining, total = _remaining_fraction(current_cycle_start, current_cycle_end, now)
    new_price = round_money(Decimal(new_plan_price), currency)

    if current_is_freemium:
        remaining_value = round_money(Decimal(0), currency)
    else:
        remaining_value = unused_value(current_plan_price, current_cycle_start, current_cycle_end, now, currency)

    proration_amount = round_money(max(new_price - remaining_value, Decimal(0)), currency)

    return ProrationResult(
        proration_amount=proration_amount,
        remaining_value=remaining_value,
        new_plan_price=new_price,
        currency=currency,
        days_remaining=(remaining / _MICROSECONDS_PER_DAY).quantize(Decimal("0.01")),
        total_days=(total / _MICROSECONDS_PER_DAY).quantize(Decimal("0.01")),
    )
