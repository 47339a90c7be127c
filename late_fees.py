import math
from dataclasses import dataclass

from pricing import as_utc, money

DEFAULT_LATE_FEE_RATE = 0.20


@dataclass(frozen=True)
class LateFee:
    is_late: bool
    days_late: int
    late_fee: float

    def to_dict(self) -> dict:
        return {"isLate": self.is_late, "daysLate": self.days_late, "lateFee": self.late_fee}


def calculate_late_fee(scheduled_return, actual_return, base_price: float, late_fee_rate: float = DEFAULT_LATE_FEE_RATE) -> LateFee:
    """
    Overdue penalty for a return.

    Every started day past the scheduled return costs `late_fee_rate` of the
    base daily price. Returns on or before the scheduled date cost nothing.
    """
    scheduled = as_utc(scheduled_return)
    actual = as_utc(actual_return)
    if actual <= scheduled:
        return LateFee(is_late=False, days_late=0, late_fee=0.0)

    days_late = math.ceil((actual - scheduled).total_seconds() / 86400)
    return LateFee(
        is_late=True,
        days_late=days_late,
        late_fee=money(days_late * float(base_price) * late_fee_rate),
    )
