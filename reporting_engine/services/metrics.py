"""Derived business metrics computed from raw aggregates.

All arithmetic is done on full-precision ``Decimal`` values. Rounding to two
places (half-up) happens only in :func:`round_half_up` / :func:`fmt_decimal`,
which the report assembler calls when serializing. Percentages are never
clamped here; a project can sit at 150% of its budget.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
Q2 = Decimal("0.01")
HUNDRED = Decimal("100")
MINUTES_PER_HOUR = Decimal("60")


def round_half_up(value: Decimal) -> Decimal:
    return value.quantize(Q2, rounding=ROUND_HALF_UP)


def fmt_decimal(value: Decimal) -> str:
    return str(round_half_up(value))


def minutes_to_hours(minutes: int) -> Decimal:
    return Decimal(minutes) / MINUTES_PER_HOUR


def _percent(numerator: Decimal, denominator: Decimal) -> Decimal:
    if denominator <= ZERO:
        return ZERO
    return numerator / denominator * HUNDRED


def utilization_rate(billable_hours: Decimal, total_hours: Decimal) -> Decimal:
    """Share of billable time in percent; 0 when nothing was logged."""

    return _percent(billable_hours, total_hours)


def completion_rate(completed_tasks: int, total_tasks: int) -> Decimal:
    return _percent(Decimal(completed_tasks), Decimal(total_tasks))


def budget_used(actual_hours: Decimal, hourly_rate: Decimal) -> Decimal:
    return actual_hours * hourly_rate


def budget_utilization(used: Decimal, budget: Decimal | None) -> Decimal:
    """Money consumed against budget in percent; 0 when no positive budget is set."""

    return _percent(used, budget or ZERO)


def budget_remaining(budget: Decimal | None, used: Decimal) -> Decimal:
    return (budget or ZERO) - used


def hours_variance(actual_hours: Decimal, estimated_hours: Decimal) -> Decimal:
    return actual_hours - estimated_hours


def variance_percent(variance: Decimal, estimated_hours: Decimal) -> Decimal:
    return _percent(variance, estimated_hours)


def average_hours_per_day(total_hours: Decimal, days_worked: int) -> Decimal:
    """Hours per distinct worked date, not per calendar day in the range."""

    if days_worked <= 0:
        return ZERO
    return total_hours / Decimal(days_worked)


@dataclass(frozen=True, slots=True)
class ResolvedRate:
    value: Decimal
    source: str


def resolve_hourly_rate(
    explicit_rate: Decimal | None,
    tenant_default: Decimal | None,
    system_default: Decimal,
) -> ResolvedRate:
    """Pick the effective hourly rate.

    Precedence: explicit user/project rate, then the tenant default, then the
    system default from settings.
    """

    if explicit_rate is not None:
        return ResolvedRate(value=Decimal(explicit_rate), source="explicit")
    if tenant_default is not None:
        return ResolvedRate(value=Decimal(tenant_default), source="tenant_default")
    return ResolvedRate(value=Decimal(system_default), source="system_default")
