"""
Fixed-point constants and helpers for FarmFlow reward accounting.

All amounts are plain Python integers (smallest indivisible unit of each
asset).  Fractional reward-per-share values are carried as scaled
integers:

    acc_reward_per_share = Σ emission × ACC_PRECISION // staked_supply

so a position's accrued reward is recovered with a single multiply and
floor-divide.  Truncation always rounds toward the ledger, which means
the sum of every depositor's pending reward never exceeds what was
minted to custody.
"""

from __future__ import annotations

from typing import Sequence

# Scale factor for accumulated-reward-per-share values.
ACC_PRECISION: int = 10 ** 12


def scale_share(emission: int, staked_supply: int) -> int:
    """Per-share increment for *emission* spread over *staked_supply*.

    >>> scale_share(5000, 10)
    500000000000000
    """
    if staked_supply <= 0:
        return 0
    return emission * ACC_PRECISION // staked_supply


def accrued(amount: int, acc_per_share: int) -> int:
    """Reward accrued by *amount* of stake at accumulator *acc_per_share*.

    >>> accrued(10, 500 * ACC_PRECISION)
    5000
    """
    return amount * acc_per_share // ACC_PRECISION


def accrued_all(amount: int, accs: Sequence[int]) -> list[int]:
    """Vector form of :func:`accrued`, one entry per reward asset."""
    return [accrued(amount, acc) for acc in accs]


def require_int(value: object, name: str = "amount") -> int:
    """Reject floats, bools and other non-integers before they reach the math."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer, got {type(value).__name__}")
    return value
