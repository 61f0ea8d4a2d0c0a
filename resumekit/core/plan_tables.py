"""
Closed lookup tables for plans, regions and billing cycles.

Single source of truth for every (cycle, region, currency) branch. Code looks
values up here instead of branching on plan or region names.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Optional

from dateutil.relativedelta import relativedelta

from resumekit.core.errors import CycleInvariantError


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Region(str, Enum):
    GLOBAL = "GLOBAL"
    INDIA = "INDIA"


class Currency(str, Enum):
    USD = "USD"
    INR = "INR"


class LimitType(str, Enum):
    UNLIMITED = "UNLIMITED"
    COUNT = "COUNT"
    BOOLEAN = "BOOLEAN"


class ResetFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    NEVER = "NEVER"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    GRACE_PERIOD = "GRACE_PERIOD"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class PlanChangeType(str, Enum):
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"


# Length of one billing period. Calendar arithmetic: Jan 31 + 1 month = Feb 28/29.
CYCLE_PERIODS: Dict[BillingCycle, relativedelta] = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.YEARLY: relativedelta(years=1),
}

REGION_CURRENCY: Dict[Region, Currency] = {
    Region.GLOBAL: Currency.USD,
    Region.INDIA: Currency.INR,
}

# ISO-3166 alpha-2 country -> pricing region. Anything else is GLOBAL.
COUNTRY_REGIONS: Dict[str, Region] = {
    "IN": Region.INDIA,
}

# Digits after the decimal point charged in each currency.
CURRENCY_MINOR_UNITS: Dict[Currency, int] = {
    Currency.USD: 2,
    Currency.INR: 0,
}


def region_for_country(country: Optional[str]) -> Region:
    """Map a two-letter country code to its pricing region."""
    if not country:
        return Region.GLOBAL
    return COUNTRY_REGIONS.get(country.strip().upper(), Region.GLOBAL)


def cycle_end(start: datetime, billing_cycle: str) -> datetime:
    """End of the billing period that starts at ``start``."""
    return start + CYCLE_PERIODS[BillingCycle(billing_cycle)]


def assert_cycle_length(start: datetime, end: datetime, billing_cycle: str) -> None:
    """
    Enforce that [start, end) spans exactly one billing period.

    Raises:
        CycleInvariantError: if the span drifts (e.g. a yearly end on a monthly plan)
    """
    expected = cycle_end(start, billing_cycle)
    if end != expected:
        raise CycleInvariantError(
            f"{billing_cycle} period starting {start.isoformat()} must end "
            f"{expected.isoformat()}, got {end.isoformat()}"
        )


def round_money(amount: Decimal, currency: str) -> Decimal:
    """Round half-up to the currency's minor unit."""
    places = CURRENCY_MINOR_UNITS[Currency(currency)]
    quantum = Decimal(1).scaleb(-places)
    return Decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP)
