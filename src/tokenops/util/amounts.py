# src/tokenops/util/amounts.py
from __future__ import annotations


def format_amount(amount: int, decimals: int) -> str:
    """Render a base-unit integer as a decimal string.

    format_amount(1_234_500, 3) -> "1234.5"
    format_amount(7, 3)         -> "0.007"
    """

    amount = int(amount)
    decimals = int(decimals)
    if decimals < 0:
        raise ValueError("decimals must be >= 0")

    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10**decimals)
    if decimals == 0 or frac == 0:
        return f"{sign}{whole}"
    frac_s = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_s}"
