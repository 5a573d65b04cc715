"""Linear day-rate proration shared by tier changes and billing previews."""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
SECONDS_PER_DAY = Decimal(86400)


@dataclass(frozen=True)
class Proration:
    total_days: Decimal
    days_remaining: Decimal
    credit_for_unused: Decimal
    charge_for_new: Decimal
    net_amount: Decimal

    @property
    def is_upgrade(self) -> bool:
        return self.net_amount > 0

    def as_dict(self) -> dict:
        return {
            "total_days": self.total_days,
            "days_remaining": self.days_remaining,
            "credit_for_unused": self.credit_for_unused,
            "charge_for_new": self.charge_for_new,
            "net_amount": self.net_amount,
            "is_upgrade": self.is_upgrade,
        }


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_proration(
    old_amount: Decimal,
    new_amount: Decimal,
    total_days: Decimal | int,
    days_remaining: Decimal | int,
) -> Proration:
    total = Decimal(total_days)
    remaining = min(max(Decimal(days_remaining), Decimal(0)), max(total, Decimal(0)))
    if total <= 0:
        zero = Decimal("0.00")
        return Proration(total, remaining, zero, zero, zero)
    credit = Decimal(old_amount) / total * remaining
    charge = Decimal(new_amount) / total * remaining
    return Proration(
        total_days=total,
        days_remaining=remaining,
        credit_for_unused=_money(credit),
        charge_for_new=_money(charge),
        net_amount=_money(charge - credit),
    )


def fractional_days(start: datetime, end: datetime) -> Decimal:
    seconds = Decimal(str((end - start).total_seconds()))
    return seconds / SECONDS_PER_DAY


def whole_days(start: datetime, end: datetime) -> int:
    return max(0, math.ceil((end - start).total_seconds() / 86400))
