"""
Capacity state machine and period arithmetic for usage pools and buckets.

Everything here is pure: models call these helpers after each mutation
instead of scattering status writes across save paths.

States:
    active  → depleted   remaining capacity reaches zero
    depleted → active    capacity restored by reset, adjustment or refund
    active ⇄ suspended   explicit operator action only
    any → expired        past expires_at, terminal
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from dateutil.relativedelta import relativedelta

from . import config

ZERO = Decimal("0")
HUNDRED = Decimal("100")

STATUS_ACTIVE = "active"
STATUS_DEPLETED = "depleted"
STATUS_SUSPENDED = "suspended"
STATUS_EXPIRED = "expired"

GRANULARITY_DAY = "day"
GRANULARITY_WEEK = "week"
GRANULARITY_MONTH = "month"


@dataclass(frozen=True)
class CapacityState:
    """Snapshot of a ledger: the most it may absorb, what it used, its stored status"""

    limit: Decimal
    used: Decimal
    status: str = STATUS_ACTIVE
    expires_at: datetime | None = None


def remaining(limit: Decimal, used: Decimal) -> Decimal:
    return max(ZERO, limit - used)


def utilization_percentage(capacity: Decimal, used: Decimal) -> Decimal:
    """Used share of capacity in percent, two decimals"""
    if capacity <= 0:
        return HUNDRED if used > 0 else ZERO
    return (used / capacity * HUNDRED).quantize(config.PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def overallocation_ceiling(total: Decimal, allow_overallocation: bool, overallocation_limit: Decimal) -> Decimal:
    """``total × (1 + limit/100)`` when overallocation is enabled, else ``total``"""
    if not allow_overallocation:
        return total
    return total + total * max(ZERO, overallocation_limit) / HUNDRED


def absorb(limit: Decimal, used: Decimal, amount: Decimal) -> tuple[Decimal, Decimal]:
    """Split ``amount`` into (absorbed, remainder) against what is left under ``limit``"""
    if amount <= 0:
        return ZERO, ZERO
    absorbed = min(amount, remaining(limit, used))
    return absorbed, amount - absorbed


def derive_status(state: CapacityState, now: datetime) -> str:
    """Status implied by capacity, honouring the explicit suspended/expired states"""
    if state.status == STATUS_EXPIRED:
        return STATUS_EXPIRED
    if state.expires_at is not None and now >= state.expires_at:
        return STATUS_EXPIRED
    if state.status == STATUS_SUSPENDED:
        return STATUS_SUSPENDED
    if remaining(state.limit, state.used) <= 0:
        return STATUS_DEPLETED
    return STATUS_ACTIVE


def is_at_threshold(capacity: Decimal, used: Decimal, threshold: Decimal | None) -> bool:
    if threshold is None:
        return False
    return utilization_percentage(capacity, used) >= threshold


# ===============================================================================
# COUNTERS
# ===============================================================================


def same_period(first: datetime | None, second: datetime, granularity: str) -> bool:
    """Whether two moments fall in the same calendar day, ISO week or month"""
    if first is None:
        return False
    if granularity == GRANULARITY_DAY:
        return first.date() == second.date()
    if granularity == GRANULARITY_WEEK:
        return first.isocalendar()[:2] == second.isocalendar()[:2]
    if granularity == GRANULARITY_MONTH:
        return (first.year, first.month) == (second.year, second.month)
    raise ValueError(f"Unknown granularity: {granularity}")


def rolled_counter(current: Decimal, last_usage_at: datetime | None, moment: datetime, granularity: str) -> Decimal:
    """Counter value to add onto: kept inside the same period, restarted in a new one"""
    return current if same_period(last_usage_at, moment, granularity) else ZERO


# ===============================================================================
# PERIODS
# ===============================================================================

PERIOD_DELTAS: dict[str, relativedelta] = {
    "daily": relativedelta(days=1),
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "yearly": relativedelta(years=1),
}


def period_delta(frequency: str) -> relativedelta:
    try:
        return PERIOD_DELTAS[frequency]
    except KeyError:
        raise ValueError(f"Unknown period frequency: {frequency}") from None


def start_of_next_month(moment: datetime) -> datetime:
    return (moment + relativedelta(months=1)).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_reset_after(frequency: str, previous: datetime | None, now: datetime) -> datetime:
    """
    First reset boundary strictly after ``now``.

    Boundaries advance from ``previous`` so a late scheduler run does not
    drift the schedule; a boundary still in the future is returned unchanged.
    """
    if frequency == "billing_cycle":
        if previous is not None and previous > now:
            return previous
        return start_of_next_month(now)

    delta = period_delta(frequency)
    if previous is None:
        return now + delta
    boundary = previous
    while boundary <= now:
        boundary = boundary + delta
    return boundary


def advance_cycle(
    billing_cycle: str, cycle_start: datetime | None, cycle_end: datetime | None, now: datetime
) -> tuple[datetime, datetime]:
    """Cycle window containing ``now``, stepping from the stored window when there is one"""
    delta = period_delta(billing_cycle)
    if cycle_end is None:
        return now, now + delta
    start, end = cycle_start or cycle_end - delta, cycle_end
    while end <= now:
        start, end = end, end + delta
    return start, end


def rollover_amount(unused: Decimal, rollover_percentage: Decimal) -> Decimal:
    """Share of unused capacity banked for the next period"""
    if unused <= 0 or rollover_percentage <= 0:
        return ZERO
    return unused * min(rollover_percentage, HUNDRED) / HUNDRED
