from __future__ import annotations

from decimal import Decimal

from reporting_engine.services.metrics import (
    ZERO,
    average_hours_per_day,
    budget_remaining,
    budget_used,
    budget_utilization,
    completion_rate,
    fmt_decimal,
    hours_variance,
    minutes_to_hours,
    resolve_hourly_rate,
    round_half_up,
    utilization_rate,
    variance_percent,
)


def test_zero_denominators_yield_zero() -> None:
    assert completion_rate(0, 0) == ZERO
    assert utilization_rate(Decimal("0"), Decimal("0")) == ZERO
    assert budget_utilization(Decimal("100"), None) == ZERO
    assert budget_utilization(Decimal("100"), Decimal("0")) == ZERO
    assert variance_percent(Decimal("5"), Decimal("0")) == ZERO
    assert average_hours_per_day(Decimal("8"), 0) == ZERO


def test_rounding_is_half_up_and_only_at_presentation() -> None:
    assert fmt_decimal(Decimal("2.675")) == "2.68"
    assert fmt_decimal(Decimal("2.665")) == "2.67"
    assert round_half_up(Decimal("-0.005")) == Decimal("-0.01")

    # 20 minutes is 0.333... hours; three of them must add to exactly one hour.
    third = minutes_to_hours(20)
    assert fmt_decimal(third) == "0.33"
    assert fmt_decimal(third * 3) == "1.00"


def test_budget_over_consumption_is_not_clamped() -> None:
    used = budget_used(Decimal("25"), Decimal("50"))

    assert used == Decimal("1250")
    assert fmt_decimal(budget_utilization(used, Decimal("1000"))) == "125.00"
    assert budget_remaining(Decimal("1000"), used) == Decimal("-250")


def test_hours_variance_and_percent() -> None:
    variance = hours_variance(Decimal("12"), Decimal("10"))

    assert variance == Decimal("2")
    assert fmt_decimal(variance_percent(variance, Decimal("10"))) == "20.00"


def test_utilization_and_average_per_worked_day() -> None:
    assert fmt_decimal(utilization_rate(Decimal("3.5"), Decimal("4"))) == "87.50"
    assert fmt_decimal(average_hours_per_day(Decimal("10"), 4)) == "2.50"
    assert fmt_decimal(completion_rate(1, 3)) == "33.33"


def test_hourly_rate_precedence() -> None:
    system_default = Decimal("50.00")

    explicit = resolve_hourly_rate(Decimal("40"), Decimal("45"), system_default)
    tenant = resolve_hourly_rate(None, Decimal("45"), system_default)
    fallback = resolve_hourly_rate(None, None, system_default)

    assert (explicit.value, explicit.source) == (Decimal("40"), "explicit")
    assert (tenant.value, tenant.source) == (Decimal("45"), "tenant_default")
    assert (fallback.value, fallback.source) == (Decimal("50.00"), "system_default")
