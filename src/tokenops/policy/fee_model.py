# src/tokenops/policy/fee_model.py
from __future__ import annotations

BASIS_POINTS_DENOMINATOR: int = 10_000


def compute_fee(amount: int, basis_points: int, cap: int) -> int:
    """Proportional transfer fee, bounded by `cap`.

    fee = floor(amount * basis_points / 10_000), then min(fee, cap).
    Integer arithmetic only, so large base-unit amounts stay exact.
    """

    amount = int(amount)
    basis_points = int(basis_points)
    cap = int(cap)

    if amount < 0:
        raise ValueError(f"amount must be >= 0; got: {amount}")
    if not 0 <= basis_points <= BASIS_POINTS_DENOMINATOR:
        raise ValueError(f"basis_points must be 0..{BASIS_POINTS_DENOMINATOR}; got: {basis_points}")
    if cap < 0:
        raise ValueError(f"cap must be >= 0; got: {cap}")

    fee = (amount * basis_points) // BASIS_POINTS_DENOMINATOR
    return min(fee, cap)


def net_amount(amount: int, fee: int) -> int:
    """What the destination ends up holding once the fee is withheld."""

    return int(amount) - int(fee)
