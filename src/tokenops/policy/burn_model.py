# src/tokenops/policy/burn_model.py
from __future__ import annotations

"""Periodic burn policy.

  - compute_burn: floor(balance * rate), exact for large balances
  - current_quarter: calendar quarter from the timestamp's own fields
  - burn_gate: is burning allowed at `now`?

Quarter timezone:
  current_quarter never converts. A timestamp carrying UTC fields yields the
  UTC quarter; a local wall-clock timestamp yields the local quarter. Use
  clock_for_timezone() to get a clock that matches the configured
  `quarter_timezone` ("utc" or "local").
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, Tuple

BEFORE_BURN_WINDOW = "before burn window"


def compute_burn(balance: int, rate: float) -> int:
    """floor(balance * rate).

    The rate is read through its shortest decimal repr, so 0.025 means
    exactly 25/1000 rather than the nearest binary float. This deliberately
    differs from a plain float product, which can land one unit low:
    compute_burn(100, 0.29) is 29 here, while floor(100 * 0.29) is 28
    because 100 * 0.29 == 28.999999999999996 in binary floating point.
    """

    balance = int(balance)
    if balance < 0:
        raise ValueError(f"balance must be >= 0; got: {balance}")
    r = Decimal(repr(float(rate)))
    if not Decimal(0) <= r < Decimal(1):
        raise ValueError(f"rate must be in [0, 1); got: {rate}")
    return int(math.floor(Decimal(balance) * r))


def current_quarter(timestamp: datetime) -> int:
    """Months 1-3 -> 1, 4-6 -> 2, 7-9 -> 3, 10-12 -> 4."""

    return (int(timestamp.month) - 1) // 3 + 1


def quarter_key(timestamp: datetime) -> Tuple[int, int]:
    return int(timestamp.year), current_quarter(timestamp)


def clock_for_timezone(quarter_timezone: str) -> Callable[[], datetime]:
    tz = (quarter_timezone or "").strip().lower()
    if tz == "utc":
        return lambda: datetime.now(timezone.utc)
    if tz == "local":
        return lambda: datetime.now().astimezone()
    raise ValueError(f"quarter_timezone must be 'utc' or 'local'; got: {quarter_timezone!r}")


@dataclass(frozen=True)
class BurnGateDecision:
    eligible: bool
    year: int
    quarter: int
    reason: str = ""


def burn_gate(now: datetime, start_quarter: int, start_year: Optional[int] = None) -> BurnGateDecision:
    """Quarter gate for the burn stage.

    Without `start_year` only the quarter index is compared, so the window
    reopens at `start_quarter` every year. With `start_year` the (year,
    quarter) pair must be on or after (start_year, start_quarter).
    """

    year, quarter = quarter_key(now)
    if start_year is None:
        eligible = quarter >= int(start_quarter)
    else:
        eligible = (year, quarter) >= (int(start_year), int(start_quarter))

    return BurnGateDecision(
        eligible=eligible,
        year=year,
        quarter=quarter,
        reason="" if eligible else BEFORE_BURN_WINDOW,
    )
