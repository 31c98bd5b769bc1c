from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tokenops.policy.burn_model import (
    BEFORE_BURN_WINDOW,
    burn_gate,
    clock_for_timezone,
    compute_burn,
    current_quarter,
    quarter_key,
)


def test_compute_burn_on_full_supply() -> None:
    assert compute_burn(20_000_000_000_000, 0.025) == 500_000_000_000


def test_compute_burn_floors_and_handles_zero() -> None:
    assert compute_burn(0, 0.025) == 0
    assert compute_burn(39, 0.025) == 0
    assert compute_burn(40, 0.025) == 1
    assert compute_burn(1_000, 0.0) == 0


def test_compute_burn_uses_decimal_rate() -> None:
    # 0.1 * 30 in binary floats is 3.0000000000000004; the burn must still be 3.
    assert compute_burn(30, 0.1) == 3
    # 0.07 * 100 in binary floats is 7.000000000000001.
    assert compute_burn(100, 0.07) == 7


@pytest.mark.parametrize("balance,rate", [(-1, 0.025), (100, 1.0), (100, -0.1)])
def test_compute_burn_rejects_bad_inputs(balance: int, rate: float) -> None:
    with pytest.raises(ValueError):
        compute_burn(balance, rate)


@pytest.mark.parametrize(
    "month,quarter",
    [(1, 1), (2, 1), (3, 1), (4, 2), (5, 2), (6, 2), (7, 3), (8, 3), (9, 3), (10, 4), (11, 4), (12, 4)],
)
def test_current_quarter_month_groupings(month: int, quarter: int) -> None:
    for year in (1999, 2024, 2100):
        assert current_quarter(datetime(year, month, 15)) == quarter


def test_current_quarter_reads_timestamp_fields_without_conversion() -> None:
    # 2024-06-30 23:30 at UTC-2 is already July in UTC.
    local = datetime(2024, 6, 30, 23, 30, tzinfo=timezone(timedelta(hours=-2)))
    assert current_quarter(local) == 2
    assert current_quarter(local.astimezone(timezone.utc)) == 3


def test_quarter_key() -> None:
    assert quarter_key(datetime(2025, 11, 2)) == (2025, 4)


def test_burn_gate_before_window_is_not_an_error() -> None:
    d = burn_gate(datetime(2025, 5, 1, tzinfo=timezone.utc), start_quarter=3)
    assert d.eligible is False
    assert d.reason == BEFORE_BURN_WINDOW
    assert (d.year, d.quarter) == (2025, 2)


def test_burn_gate_opens_at_start_quarter() -> None:
    assert burn_gate(datetime(2025, 7, 1), start_quarter=3).eligible
    assert burn_gate(datetime(2025, 12, 31), start_quarter=3).eligible


def test_burn_gate_without_start_year_reopens_each_year() -> None:
    # Q1 of the following year is before the window again.
    assert not burn_gate(datetime(2026, 2, 1), start_quarter=3).eligible


def test_burn_gate_with_start_year_stays_open() -> None:
    assert not burn_gate(datetime(2025, 5, 1), start_quarter=3, start_year=2025).eligible
    assert burn_gate(datetime(2025, 8, 1), start_quarter=3, start_year=2025).eligible
    assert burn_gate(datetime(2026, 2, 1), start_quarter=3, start_year=2025).eligible
    assert not burn_gate(datetime(2024, 11, 1), start_quarter=3, start_year=2025).eligible


def test_clock_for_timezone() -> None:
    assert clock_for_timezone("utc")().utcoffset() == timedelta(0)
    assert clock_for_timezone("local")().tzinfo is not None
    with pytest.raises(ValueError):
        clock_for_timezone("mars")


def test_compute_burn_is_exact_where_float_product_rounds_down() -> None:
    # 100 * 0.29 is 28.999999999999996 as a binary float.
    assert compute_burn(100, 0.29) == 29
