"""
Time-accrual calculator.

Pure functions turning (principal, weekly rate, elapsed seconds) into an
earned amount. No I/O, no clock reads: callers pass `now`.

All amounts are Decimal floored to 8 fractional digits, so the engine can
never credit more than was mathematically earned.
"""

from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Union

SECONDS_PER_WEEK = 604800
PRECISION = Decimal("0.00000001")
ZERO = Decimal("0")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Coerce to Decimal, going through str for floats to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def floor_amount(value: Number) -> Decimal:
    """Round down to 8 fractional digits."""
    return to_decimal(value).quantize(PRECISION, rounding=ROUND_DOWN)


def elapsed_seconds(start: datetime, end: datetime) -> Decimal:
    """Exact elapsed seconds between two instants, microsecond resolution."""
    delta: timedelta = end - start
    return (
        Decimal(delta.days) * 86400
        + Decimal(delta.seconds)
        + Decimal(delta.microseconds) / Decimal(1000000)
    )


def clamp_elapsed(elapsed: Number, window_seconds: Optional[Number] = None) -> Decimal:
    """Clamp elapsed time to [0, window_seconds]."""
    elapsed = to_decimal(elapsed)
    if elapsed < 0:
        return ZERO
    if window_seconds is not None:
        window = to_decimal(window_seconds)
        if elapsed > window:
            return window
    return elapsed


def project(
    principal: Number,
    weekly_rate: Number,
    elapsed: Number,
    window_seconds: Optional[Number] = None,
) -> Decimal:
    """
    Earnings for `elapsed` seconds: principal * weekly_rate * elapsed / 604800.

    Args:
        principal: Invested amount
        weekly_rate: Fractional yield per 7 days (0.07 == 7%)
        elapsed: Seconds of accrual, clamped to [0, window_seconds]
        window_seconds: Length of the slot window, if capping applies

    Returns:
        Earned amount floored to 8 fractional digits
    """
    seconds = clamp_elapsed(elapsed, window_seconds)
    if seconds == 0:
        return ZERO.quantize(PRECISION)
    raw = to_decimal(principal) * to_decimal(weekly_rate) * seconds / SECONDS_PER_WEEK
    return floor_amount(raw)


def per_second_rate(principal: Number, weekly_rate: Number) -> Decimal:
    """Earnings per second, floored. Display only; never used for crediting."""
    return floor_amount(to_decimal(principal) * to_decimal(weekly_rate) / SECONDS_PER_WEEK)


def accrual_cutoff(slot, now: datetime) -> datetime:
    """The latest instant the slot can accrue up to: min(now, expires_at)."""
    return min(now, slot.expires_at)


def checkpoint_target(slot, now: datetime) -> datetime:
    """
    Where a checkpoint taken at `now` lands.

    Never behind the current checkpoint, never past expiry.
    """
    return max(slot.last_accrued_at, accrual_cutoff(slot, now))


def incremental_earnings(slot, now: datetime) -> Decimal:
    """Virtual earnings since the slot's checkpoint, capped at expiry."""
    remaining_window = elapsed_seconds(slot.last_accrued_at, slot.expires_at)
    elapsed = elapsed_seconds(slot.last_accrued_at, accrual_cutoff(slot, now))
    return project(slot.principal, slot.weekly_rate, elapsed, remaining_window)


def final_earnings(slot) -> Decimal:
    """Virtual earnings over the frozen window [last_accrued_at, expires_at]."""
    return incremental_earnings(slot, slot.expires_at)


def total_window_earnings(slot) -> Decimal:
    """Lifetime earnings of the slot at its current principal."""
    window = elapsed_seconds(slot.start_at, slot.expires_at)
    return project(slot.principal, slot.weekly_rate, window, window)


def current_value(slot, now: datetime) -> Decimal:
    """Realized plus virtual earnings: what a claim at `now` would credit."""
    return to_decimal(slot.accrued_earnings or ZERO) + incremental_earnings(slot, now)


def progress_percent(slot, now: datetime) -> Decimal:
    """Share of the slot window already elapsed, 0..100."""
    window = elapsed_seconds(slot.start_at, slot.expires_at)
    if window <= 0:
        return Decimal("100")
    elapsed = clamp_elapsed(elapsed_seconds(slot.start_at, now), window)
    return (elapsed * 100 / window).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
