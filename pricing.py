import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from errors import InvalidDateRange, PricingUnavailable


class RateTier(str, Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"

    @property
    def hours(self) -> int:
        return TIER_HOURS[self]

    @property
    def price_field(self) -> str:
        return f"price_{self.value.lower()}"


TIER_HOURS = {
    RateTier.HOURLY: 1,
    RateTier.DAILY: 24,
    RateTier.WEEKLY: 168,
    RateTier.MONTHLY: 720,
}


class PricingPolicy(str, Enum):
    DAILY = "daily"
    BANDED = "banded"
    CHEAPEST = "cheapest"


# Fallback order for the daily policy when a variant has no daily rate
DAILY_PREFERENCE = [RateTier.DAILY, RateTier.HOURLY, RateTier.WEEKLY, RateTier.MONTHLY]

# (tier, exclusive upper bound in hours) for the banded policy
BANDS = [
    (RateTier.HOURLY, 24),
    (RateTier.DAILY, 168),
    (RateTier.WEEKLY, 720),
    (RateTier.MONTHLY, math.inf),
]


def money(value: float) -> float:
    return round(float(value) + 0.0, 2)


def as_utc(value) -> datetime:
    """Normalize a date or datetime to an aware UTC datetime."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


@dataclass(frozen=True)
class RentalDuration:
    hours: float
    days: int

    @property
    def billable_hours(self) -> int:
        return math.ceil(self.hours)


def rental_duration(start, end) -> RentalDuration:
    if start is None or end is None:
        raise InvalidDateRange("Both start and end dates are required")
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise InvalidDateRange()
    hours = (end - start).total_seconds() / 3600
    return RentalDuration(hours=hours, days=math.ceil(hours / 24))


def rate_for(variant, tier: RateTier) -> Optional[float]:
    """Configured rate of a tier, or None. Zero counts as not configured."""
    if isinstance(variant, dict):
        rate = variant.get(tier.price_field)
    else:
        rate = getattr(variant, tier.price_field, None)
    if not rate:
        return None
    return float(rate)


def configured_tiers(variant) -> Dict[RateTier, float]:
    tiers = {}
    for tier in RateTier:
        rate = rate_for(variant, tier)
        if rate is not None:
            tiers[tier] = rate
    return tiers


def is_rentable(variant) -> bool:
    return bool(configured_tiers(variant))


def display_rate(variant) -> float:
    """Rate shown next to a variant in a cart: daily, else hourly."""
    return rate_for(variant, RateTier.DAILY) or rate_for(variant, RateTier.HOURLY) or 0.0


@dataclass
class RentalPrice:
    unit: str
    periods: int
    rate: Optional[float]
    per_unit_price: float
    hours: float
    days: int
    breakdown: List[Tuple[RateTier, int]] = field(default_factory=list)

    @property
    def price_per_day(self) -> float:
        if self.unit == RateTier.DAILY.value and self.rate is not None:
            return self.rate
        return money(self.per_unit_price / self.days)


@dataclass
class LinePrice(RentalPrice):
    quantity: int = 1
    line_total: float = 0.0


def _single_tier(tier: RateTier, rate: float, duration: RentalDuration) -> RentalPrice:
    periods = math.ceil(duration.hours / tier.hours)
    return RentalPrice(
        unit=tier.value,
        periods=periods,
        rate=rate,
        per_unit_price=money(rate * periods),
        hours=duration.hours,
        days=duration.days,
        breakdown=[(tier, periods)],
    )


def _daily_policy(tiers, duration):
    for tier in DAILY_PREFERENCE:
        if tier in tiers:
            return _single_tier(tier, tiers[tier], duration)
    raise PricingUnavailable()


def _banded_policy(tiers, duration):
    selected = RateTier.MONTHLY
    for tier, upper in BANDS:
        if duration.hours < upper and tier in tiers:
            selected = tier
            break
    if selected not in tiers:
        raise PricingUnavailable(f"No {selected.value.lower()} pricing configured for this product")
    return _single_tier(selected, tiers[selected], duration)


def _cheapest_policy(tiers, duration):
    if not tiers:
        raise PricingUnavailable()
    target = duration.billable_hours
    units = sorted(tiers.items(), key=lambda item: item[0].hours)
    cost = [0.0] + [math.inf] * target
    choice = [None] * (target + 1)
    for h in range(1, target + 1):
        for tier, rate in units:
            candidate = rate + cost[max(0, h - tier.hours)]
            if candidate < cost[h]:
                cost[h] = candidate
                choice[h] = tier

    counts = {}
    h = target
    while h > 0:
        tier = choice[h]
        counts[tier] = counts.get(tier, 0) + 1
        h = max(0, h - tier.hours)
    breakdown = sorted(counts.items(), key=lambda item: -item[0].hours)

    if len(breakdown) == 1:
        tier, periods = breakdown[0]
        unit, rate = tier.value, tiers[tier]
    else:
        unit, rate, periods = "MIXED", None, sum(count for _, count in breakdown)
    return RentalPrice(
        unit=unit,
        periods=periods,
        rate=rate,
        per_unit_price=money(cost[target]),
        hours=duration.hours,
        days=duration.days,
        breakdown=breakdown,
    )


POLICIES = {
    PricingPolicy.DAILY: _daily_policy,
    PricingPolicy.BANDED: _banded_policy,
    PricingPolicy.CHEAPEST: _cheapest_policy,
}


def price_variant(variant, start, end, policy=PricingPolicy.DAILY) -> RentalPrice:
    duration = rental_duration(start, end)
    return POLICIES[PricingPolicy(policy)](configured_tiers(variant), duration)


def price_line(variant, start, end, quantity: int = 1, policy=PricingPolicy.DAILY) -> LinePrice:
    if quantity < 1:
        raise ValueError("quantity must be at least 1")
    price = price_variant(variant, start, end, policy)
    return LinePrice(
        **price.__dict__,
        quantity=quantity,
        line_total=money(price.per_unit_price * quantity),
    )
