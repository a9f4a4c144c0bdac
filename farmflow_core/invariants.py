"""
Post-call invariant checks for FarmFlow.

Run after a ledger call (when ``check_invariants`` is on) against the
state snapshot taken before the call:

  - total_alloc_point equals the sum of pool weights
  - each pool's ``total_staked`` equals the sum of its positions
  - custody holds at least the stake every pool has recorded
  - no position amount or reward debt is negative
  - accumulators never decrease
  - no position has negative pending reward
  - reward payouts never spend custody balance that backs stake

If any check fails the engine raises ``InvariantViolation`` and rolls the
call back.

Every check walks the whole position table, so a call costs O(positions)
while checking is on.  It is meant for tests and staging nodes; production
nodes run with ``check_invariants = false``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from farmflow_core.errors import InvariantViolation
from farmflow_core.state import LedgerState

if TYPE_CHECKING:
    from farmflow_core.engine import RewardEngine


class InvariantChecker:
    """Compares the live ledger against a pre-call snapshot."""

    def __init__(self, before: LedgerState | None = None):
        self._before = before

    def verify(self, engine: RewardEngine) -> tuple[bool, str]:
        """Run every check; return ``(passed, joined_error_messages)``."""
        errors: list[str] = []
        for check in (
            self._check_alloc_total,
            self._check_pool_stake_totals,
            self._check_custody_covers_stake,
            self._check_non_negative,
            self._check_monotonic_accumulators,
            self._check_reward_solvency,
        ):
            ok, msg = check(engine)
            if not ok:
                errors.append(msg)
        return (not errors), "; ".join(errors)

    def enforce(self, engine: RewardEngine) -> None:
        ok, msg = self.verify(engine)
        if not ok:
            raise InvariantViolation(msg)

    # ── individual checks ───────────────────────────────────────────

    @staticmethod
    def _check_alloc_total(engine: RewardEngine) -> tuple[bool, str]:
        state = engine.state
        expected = sum(p.alloc_point for p in state.pools)
        if state.total_alloc_point != expected:
            return False, (
                f"total_alloc_point {state.total_alloc_point} != sum of pools {expected}"
            )
        return True, ""

    @staticmethod
    def _check_pool_stake_totals(engine: RewardEngine) -> tuple[bool, str]:
        held_by_pool: dict[int, int] = {}
        for (pid, _), info in engine.state.positions.items():
            held_by_pool[pid] = held_by_pool.get(pid, 0) + info.amount
        for pool in engine.state.pools:
            held = held_by_pool.get(pool.pool_id, 0)
            if held != pool.total_staked:
                return False, (
                    f"pool {pool.pool_id}: positions hold {held}, "
                    f"pool records {pool.total_staked}"
                )
        return True, ""

    @staticmethod
    def _check_custody_covers_stake(engine: RewardEngine) -> tuple[bool, str]:
        by_asset: dict[str, int] = {}
        for pool in engine.state.pools:
            by_asset[pool.stake_asset] = by_asset.get(pool.stake_asset, 0) + pool.total_staked
        for asset_id, staked in by_asset.items():
            token = engine.stake_tokens.get(asset_id)
            if token is None:
                continue
            held = token.balance_of(engine.custody)
            if held < staked:
                return False, f"custody holds {held} {asset_id}, pools record {staked}"
        return True, ""

    @staticmethod
    def _check_non_negative(engine: RewardEngine) -> tuple[bool, str]:
        for (pid, who), info in engine.state.positions.items():
            if info.amount < 0 or any(d < 0 for d in info.reward_debt):
                return False, f"negative position for {who} in pool {pid}"
        for pool in engine.state.pools:
            if pool.total_staked < 0 or pool.alloc_point < 0:
                return False, f"negative totals in pool {pool.pool_id}"
        return True, ""

    def _check_monotonic_accumulators(self, engine: RewardEngine) -> tuple[bool, str]:
        if self._before is None:
            return True, ""
        for old in self._before.pools:
            new = engine.state.pools[old.pool_id]
            for i, (a, b) in enumerate(zip(old.acc_reward_per_share, new.acc_reward_per_share)):
                if b < a:
                    return False, (
                        f"pool {old.pool_id} accumulator {i} decreased {a} -> {b}"
                    )
        return True, ""

    @staticmethod
    def _check_reward_solvency(engine: RewardEngine) -> tuple[bool, str]:
        for (pid, who), info in engine.state.positions.items():
            pool = engine.state.pools[pid]
            pending = engine.positions.pending_rewards(info, pool.acc_reward_per_share)
            for amount in pending:
                if amount < 0:
                    return False, f"negative pending {amount} for {who} in pool {pid}"
        for asset_id in engine.config.reward_assets:
            # Payouts are capped at the reserve, so they never dip into stake.
            reserve = engine.reward_reserve(asset_id)
            if reserve < 0:
                return False, f"reward payouts consumed {-reserve} {asset_id} of stake"
        return True, ""
