# backend/hrm8/core/ledger.py
"""
Ledger primitives shared by the commission, settlement and withdrawal code.

Money is always an integer count of minor units (cents). Percentages are stored
as integer basis points (1% == 100 bps) so no float or Decimal ever reaches the
database. Periods are closed-open: [start, end).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Decimal, InvalidOperation

from hrm8.core.errors import ValidationFailedError

BPS_PER_UNIT = 10_000  # 100.00% expressed in basis points
_CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# -----------------------------
# Percentages
# -----------------------------
def percent_to_bps(percent: Decimal | int | str) -> int:
    """
    "12.5" -> 1250. Rejects anything outside 0..100 or finer than 0.01%.
    """
    try:
        value = Decimal(str(percent))
    except InvalidOperation:
        raise ValidationFailedError(f"Invalid percentage: {percent!r}")

    if value < 0 or value > 100:
        raise ValidationFailedError("Percentage must be between 0 and 100", details={"percent": str(value)})
    if value.quantize(_CENT) != value:
        raise ValidationFailedError("Percentage supports at most two decimal places", details={"percent": str(value)})
    return int(value * 100)


def bps_to_percent(bps: int) -> Decimal:
    return (Decimal(bps) / Decimal(100)).quantize(_CENT)


# -----------------------------
# Amounts
# -----------------------------
def require_minor_units(amount: int, *, field: str = "amount", allow_zero: bool = True) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationFailedError(f"{field} must be an integer number of minor units")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationFailedError(f"{field} must be {'>= 0' if allow_zero else '> 0'}", details={field: amount})
    return amount


def apply_rate(amount: int, rate_bps: int) -> int:
    """
    amount * rate, rounded half-to-even on minor units.

    Used for commissions: 1005 cents at 5% -> 50.25 -> 50; 1015 at 5% -> 50.75 -> 51.
    """
    require_minor_units(amount, field="base_value")
    _require_bps(rate_bps)
    exact = Decimal(amount) * Decimal(rate_bps) / Decimal(BPS_PER_UNIT)
    return int(exact.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


@dataclass(frozen=True)
class RevenueSplit:
    total_revenue: int
    licensee_share: int
    hrm8_share: int


def split_revenue(total_revenue: int, licensee_share_bps: int) -> RevenueSplit:
    """
    Licensee share is truncated to whole minor units; HRM8 keeps the remainder,
    so licensee_share + hrm8_share == total_revenue for every input.
    """
    require_minor_units(total_revenue, field="total_revenue")
    _require_bps(licensee_share_bps)
    licensee = int(
        (Decimal(total_revenue) * Decimal(licensee_share_bps) / Decimal(BPS_PER_UNIT)).quantize(
            Decimal(1), rounding=ROUND_DOWN
        )
    )
    return RevenueSplit(
        total_revenue=total_revenue,
        licensee_share=licensee,
        hrm8_share=total_revenue - licensee,
    )


def _require_bps(bps: int) -> None:
    if isinstance(bps, bool) or not isinstance(bps, int) or not 0 <= bps <= BPS_PER_UNIT:
        raise ValidationFailedError("Rate must be between 0 and 10000 basis points", details={"rate_bps": bps})


# -----------------------------
# Periods
# -----------------------------
@dataclass(frozen=True)
class Period:
    start: datetime
    end: datetime

    @classmethod
    def of(cls, start: datetime, end: datetime) -> "Period":
        start = ensure_aware(start)
        end = ensure_aware(end)
        if start >= end:
            raise ValidationFailedError(
                "period_start must be before period_end",
                details={"period_start": start.isoformat(), "period_end": end.isoformat()},
            )
        return cls(start=start, end=end)

    def contains(self, moment: datetime) -> bool:
        moment = ensure_aware(moment)
        return self.start <= moment < self.end

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return ensure_aware(start) < self.end and self.start < ensure_aware(end)

    def same_bounds(self, start: datetime, end: datetime) -> bool:
        return ensure_aware(start) == self.start and ensure_aware(end) == self.end
