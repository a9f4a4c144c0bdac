"""
Ledger state aggregate for FarmFlow.

``LedgerState`` bundles everything the reward engine mutates:

  - ``GlobalConfig``  emission schedule, fixed at construction
                      (``dev_address`` is the only mutable field)
  - ``total_alloc_point``  sum of every pool's weight
  - ``pools``         ordered pool table, index == pool id
  - ``positions``     (pool id, depositor) → ``UserInfo``

The engine holds exactly one ``LedgerState`` and passes it to the pool
registry and position store; nothing lives in module globals.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field

from farmflow_core.errors import InvalidRewardData


@dataclass
class GlobalConfig:
    """Emission schedule and payout addresses."""
    start_block: int
    bonus_end_block: int
    reward_assets: tuple[str, ...]
    reward_per_block: tuple[int, ...]
    dev_address: str
    bonus_multiplier: int = 10
    dev_cut_divisor: int = 10
    custody_address: str = "farm-custody"

    def __post_init__(self) -> None:
        self.reward_assets = tuple(self.reward_assets)
        self.reward_per_block = tuple(self.reward_per_block)
        if len(self.reward_assets) != len(self.reward_per_block):
            raise InvalidRewardData(
                f"{len(self.reward_assets)} reward assets but "
                f"{len(self.reward_per_block)} reward rates"
            )
        if not self.reward_assets:
            raise InvalidRewardData("at least one reward asset is required")
        if len(set(self.reward_assets)) != len(self.reward_assets):
            raise InvalidRewardData("duplicate reward asset")
        if any(
            isinstance(r, bool) or not isinstance(r, int) or r < 0
            for r in self.reward_per_block
        ):
            raise InvalidRewardData("reward rates must be non-negative integers")
        if self.bonus_multiplier < 1:
            raise ValueError("bonus_multiplier must be >= 1")
        if self.dev_cut_divisor < 1:
            raise ValueError("dev_cut_divisor must be >= 1")

    @property
    def reward_count(self) -> int:
        return len(self.reward_assets)

    def reward_index(self, asset_id: str) -> int | None:
        try:
            return self.reward_assets.index(asset_id)
        except ValueError:
            return None

    def to_dict(self) -> dict:
        return {
            "start_block": self.start_block,
            "bonus_end_block": self.bonus_end_block,
            "bonus_multiplier": self.bonus_multiplier,
            "reward_assets": list(self.reward_assets),
            "reward_per_block": list(self.reward_per_block),
            "dev_address": self.dev_address,
            "dev_cut_divisor": self.dev_cut_divisor,
            "custody_address": self.custody_address,
        }


@dataclass
class PoolInfo:
    """One stake bucket and its accrual state."""
    pool_id: int
    stake_asset: str
    alloc_point: int
    last_reward_block: int
    acc_reward_per_share: list[int]
    total_staked: int = 0

    def to_dict(self) -> dict:
        return {
            "pool_id": self.pool_id,
            "stake_asset": self.stake_asset,
            "alloc_point": self.alloc_point,
            "last_reward_block": self.last_reward_block,
            # Accumulators can exceed 2**53; keep them exact for JSON clients.
            "acc_reward_per_share": [str(a) for a in self.acc_reward_per_share],
            "total_staked": self.total_staked,
        }


@dataclass
class UserInfo:
    """A depositor's stake in one pool."""
    amount: int = 0
    reward_debt: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "reward_debt": [str(d) for d in self.reward_debt],
        }


@dataclass
class LedgerState:
    config: GlobalConfig
    total_alloc_point: int = 0
    pools: list[PoolInfo] = field(default_factory=list)
    positions: dict[tuple[int, str], UserInfo] = field(default_factory=dict)
    # Pre-call copies of positions handed out for writing; None when idle.
    _touched: dict[tuple[int, str], UserInfo | None] | None = field(
        default=None, init=False, repr=False, compare=False,
    )

    def restore(self, saved: LedgerState) -> None:
        """Restore in place so components holding this object stay valid."""
        self.config = saved.config
        self.total_alloc_point = saved.total_alloc_point
        self.pools = saved.pools
        self.positions = saved.positions
        self._touched = None

    # ── per-call rollback ────────────────────────────────────────

    def begin(self) -> LedgerState:
        """Open a rollback point for one ledger call.

        Config and the pool table are copied up front.  Positions are not:
        ``touch`` saves each one the first time the call asks for it, so the
        cost follows the positions a call reaches rather than all of them.
        The returned state therefore has an empty ``positions`` table.
        """
        self._touched = {}
        return LedgerState(
            config=copy.deepcopy(self.config),
            total_alloc_point=self.total_alloc_point,
            pools=copy.deepcopy(self.pools),
        )

    def touch(self, key: tuple[int, str]) -> None:
        if self._touched is not None and key not in self._touched:
            self._touched[key] = copy.deepcopy(self.positions.get(key))

    def rollback(self, saved: LedgerState) -> None:
        """Undo the call opened by ``begin``."""
        self.config = saved.config
        self.total_alloc_point = saved.total_alloc_point
        self.pools = saved.pools
        for key, original in (self._touched or {}).items():
            if original is None:
                self.positions.pop(key, None)
            else:
                self.positions[key] = original
        self._touched = None

    def commit(self) -> None:
        self._touched = None
