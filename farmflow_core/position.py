"""
Per-depositor bookkeeping for FarmFlow.

A position's pending reward for asset ``i`` is

    pending_i = amount × acc_i // ACC_PRECISION − reward_debt_i

Settling re-prices the debt at the current accumulator, so right after
any deposit, withdraw or claim there is nothing pending for that asset.
"""

from __future__ import annotations

from typing import Sequence

from farmflow_core.precision import accrued
from farmflow_core.state import LedgerState, UserInfo


class PositionStore:
    """(pool id, depositor) → ``UserInfo`` inside a ``LedgerState``."""

    def __init__(self, state: LedgerState) -> None:
        self.state = state

    def get(self, pool_id: int, depositor: str) -> UserInfo | None:
        key = (pool_id, depositor)
        self.state.touch(key)
        return self.state.positions.get(key)

    def get_or_empty(self, pool_id: int, depositor: str) -> UserInfo:
        """Stored position, or a detached zero position if none exists."""
        found = self.get(pool_id, depositor)
        if found is not None:
            return found
        return UserInfo(reward_debt=[0] * self.state.config.reward_count)

    def get_or_create(self, pool_id: int, depositor: str) -> UserInfo:
        key = (pool_id, depositor)
        self.state.touch(key)
        if key not in self.state.positions:
            self.state.positions[key] = UserInfo(
                reward_debt=[0] * self.state.config.reward_count,
            )
        return self.state.positions[key]

    @staticmethod
    def pending_rewards(position: UserInfo, acc: Sequence[int]) -> list[int]:
        return [
            accrued(position.amount, a) - debt
            for a, debt in zip(acc, position.reward_debt)
        ]

    @staticmethod
    def settle(position: UserInfo, acc: Sequence[int]) -> None:
        position.reward_debt = [accrued(position.amount, a) for a in acc]

    @staticmethod
    def settle_one(position: UserInfo, acc: Sequence[int], index: int) -> None:
        position.reward_debt[index] = accrued(position.amount, acc[index])

    @staticmethod
    def reset(position: UserInfo) -> int:
        """Zero the position and its debts; return the stake it held."""
        amount = position.amount
        position.amount = 0
        position.reward_debt = [0] * len(position.reward_debt)
        return amount
