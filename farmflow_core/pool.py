"""
Pool registry and lazy accrual for FarmFlow.

Each pool carries one ``acc_reward_per_share`` accumulator per reward
asset.  Accumulators only move when someone touches the pool: the next
call computes the block equivalents since ``last_reward_block``, mints
the pool's share of emission (plus the developer cut), and spreads the
pool share over the stake present during that interval.

Accrual step for reward asset ``i``::

    blocks      = get_multiplier(last_reward_block, now, bonus_end, k)
    emission_i  = blocks × rate_i × alloc_point // total_alloc_point
    dev_i       = emission_i // dev_cut_divisor       (outside user accounting)
    acc_i      += emission_i × ACC_PRECISION // total_staked

A pool with no stake (or no weight) just advances ``last_reward_block``:
emission for that interval is forgone, never banked.
"""

from __future__ import annotations

import logging
from typing import Mapping

from farmflow_core.assets import BlockClock, RewardAsset
from farmflow_core.errors import InvalidAmount, UnknownPool
from farmflow_core.multiplier import get_multiplier
from farmflow_core.precision import require_int, scale_share
from farmflow_core.state import LedgerState, PoolInfo

logger = logging.getLogger("farmflow_pool")


class PoolRegistry:
    """Owns the ordered pool table inside a ``LedgerState``."""

    def __init__(
        self,
        state: LedgerState,
        clock: BlockClock,
        reward_tokens: Mapping[str, RewardAsset],
    ) -> None:
        self.state = state
        self.clock = clock
        self.reward_tokens = reward_tokens

    # ── lookup ──────────────────────────────────────────────────────

    def pool_length(self) -> int:
        return len(self.state.pools)

    def get_pool(self, pool_id: int) -> PoolInfo:
        if isinstance(pool_id, bool) or not isinstance(pool_id, int) \
                or not 0 <= pool_id < len(self.state.pools):
            raise UnknownPool(f"pool {pool_id} does not exist")
        return self.state.pools[pool_id]

    # ── weight management ───────────────────────────────────────────

    def add_pool(
        self, alloc_point: int, stake_asset: str, with_update: bool = False,
    ) -> int:
        require_int(alloc_point, "alloc_point")
        if alloc_point < 0:
            raise InvalidAmount("alloc_point must be non-negative")
        if with_update:
            self.mass_update_pools()

        cfg = self.state.config
        now = self.clock.current_block()
        pool = PoolInfo(
            pool_id=len(self.state.pools),
            stake_asset=stake_asset,
            alloc_point=alloc_point,
            last_reward_block=max(now, cfg.start_block),
            acc_reward_per_share=[0] * cfg.reward_count,
        )
        self.state.pools.append(pool)
        self.state.total_alloc_point += alloc_point
        logger.info(
            f"Pool {pool.pool_id} added: asset={stake_asset} alloc={alloc_point} "
            f"total_alloc={self.state.total_alloc_point}"
        )
        return pool.pool_id

    def set_pool(
        self, pool_id: int, alloc_point: int, with_update: bool = False,
    ) -> None:
        require_int(alloc_point, "alloc_point")
        if alloc_point < 0:
            raise InvalidAmount("alloc_point must be non-negative")
        pool = self.get_pool(pool_id)
        if with_update:
            self.mass_update_pools()

        self.state.total_alloc_point += alloc_point - pool.alloc_point
        old = pool.alloc_point
        pool.alloc_point = alloc_point
        logger.info(
            f"Pool {pool_id} weight {old} -> {alloc_point} "
            f"total_alloc={self.state.total_alloc_point}"
        )

    # ── accrual ─────────────────────────────────────────────────────

    def pool_emission(self, pool: PoolInfo, to_block: int) -> list[int]:
        """Pool-side emission per reward asset from ``last_reward_block`` to *to_block*."""
        cfg = self.state.config
        if to_block <= pool.last_reward_block or self.state.total_alloc_point == 0:
            return [0] * cfg.reward_count
        blocks = get_multiplier(
            pool.last_reward_block, to_block,
            cfg.bonus_end_block, cfg.bonus_multiplier,
        )
        return [
            blocks * rate * pool.alloc_point // self.state.total_alloc_point
            for rate in cfg.reward_per_block
        ]

    def projected_acc(self, pool_id: int, at_block: int | None = None) -> list[int]:
        """Accumulators as they would be after an update at *at_block*.

        Read-only: the stored pool is not touched and nothing is minted.
        """
        pool = self.get_pool(pool_id)
        if at_block is None:
            at_block = self.clock.current_block()
        acc = list(pool.acc_reward_per_share)
        if at_block <= pool.last_reward_block or pool.total_staked == 0 \
                or pool.alloc_point == 0:
            return acc
        for i, emission in enumerate(self.pool_emission(pool, at_block)):
            acc[i] += scale_share(emission, pool.total_staked)
        return acc

    def update_pool(self, pool_id: int) -> PoolInfo:
        pool = self.get_pool(pool_id)
        now = self.clock.current_block()
        if now <= pool.last_reward_block:
            return pool
        if pool.total_staked == 0 or pool.alloc_point == 0:
            pool.last_reward_block = now
            return pool

        cfg = self.state.config
        emissions = self.pool_emission(pool, now)
        for i, emission in enumerate(emissions):
            if emission == 0:
                continue
            token = self.reward_tokens[cfg.reward_assets[i]]
            token.mint(cfg.custody_address, emission)
            dev_cut = emission // cfg.dev_cut_divisor
            if dev_cut:
                token.mint(cfg.dev_address, dev_cut)
            pool.acc_reward_per_share[i] += scale_share(emission, pool.total_staked)

        logger.debug(
            f"Pool {pool_id} accrued blocks {pool.last_reward_block}->{now} "
            f"emission={emissions} staked={pool.total_staked}"
        )
        pool.last_reward_block = now
        return pool

    def mass_update_pools(self) -> None:
        for pool_id in range(len(self.state.pools)):
            self.update_pool(pool_id)
