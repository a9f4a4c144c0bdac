"""
Tests for the reward engine entry points.

Covers:
  - Construction validation
  - deposit / withdraw / claims / claim / emergency_withdraw
  - Proportional rewards across depositors and pools
  - Owner and dev capabilities
  - Developer cut truncation
  - All-or-nothing rollback of rejected calls
  - Checks and mutations serialized under the ledger lock
  - Receipts and the event log
"""

import threading

import pytest

from conftest import DEV, OWNER, fund
from farmflow_core.assets import AssetBook, ManualBlockClock
from farmflow_core.engine import RewardEngine
from farmflow_core.errors import (
    AssetError,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvalidRewardData,
    UnauthorizedAccess,
    UnknownPool,
)


# ═══════════════════════════════════════════════════════════════════
#  Construction
# ═══════════════════════════════════════════════════════════════════

class TestConstruction:
    def test_mismatched_reward_lists(self, clock, tka, tkb):
        with pytest.raises(InvalidRewardData):
            RewardEngine(OWNER, 100, DEV, [tka, tkb], [100], 1000, clock)

    def test_empty_reward_lists(self, clock):
        with pytest.raises(InvalidRewardData):
            RewardEngine(OWNER, 100, DEV, [], [], 1000, clock)

    def test_negative_rate(self, clock, tka):
        with pytest.raises(InvalidRewardData):
            RewardEngine(OWNER, 100, DEV, [tka], [-1], 1000, clock)

    def test_empty_owner(self, clock, tka):
        with pytest.raises(InvalidAddress):
            RewardEngine("", 100, DEV, [tka], [1], 1000, clock)

    def test_defaults(self, engine):
        assert engine.config.bonus_multiplier == 10
        assert engine.config.dev_cut_divisor == 10
        assert engine.pool_length() == 0
        assert engine.total_alloc_point == 0


# ═══════════════════════════════════════════════════════════════════
#  Deposit
# ═══════════════════════════════════════════════════════════════════

class TestDeposit:
    def test_moves_stake_into_custody(self, farm, clock, lp):
        clock.advance_to(110)
        receipt = farm.deposit("alice", 0, 100)
        assert lp.balance_of("alice") == 900
        assert lp.balance_of(farm.custody) == 100
        assert farm.user_info(0, "alice").amount == 100
        assert farm.pool_info(0).total_staked == 100
        assert receipt.action == "deposit"
        assert receipt.rewards == {}

    def test_single_depositor_earns_full_pool_share(self, farm, clock, tka, tkb):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        assert farm.pending_rewards(0, "alice") == [10_000, 15_000]
        farm.claims("alice", 0)
        assert tka.balance_of("alice") == 10_000
        assert tkb.balance_of("alice") == 15_000
        assert tka.balance_of(DEV) == 1_000
        assert tkb.balance_of(DEV) == 1_500
        assert tka.balance_of(farm.custody) == 0

    def test_stake_before_start_accrues_from_start(self, farm, clock):
        clock.advance_to(50)
        farm.deposit("alice", 0, 100)
        clock.advance_to(110)
        assert farm.pending_rewards(0, "alice") == [10_000, 15_000]

    def test_proportional_split(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        farm.deposit("bob", 0, 300)
        clock.advance_to(130)
        assert farm.pending_rewards(0, "alice") == [12_500, 18_750]
        assert farm.pending_rewards(0, "bob") == [7_500, 11_250]

    def test_zero_deposit_harvests(self, farm, clock, lp):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        receipt = farm.deposit("alice", 0, 0)
        assert receipt.rewards == {"TKA": 10_000, "TKB": 15_000}
        assert lp.balance_of("alice") == 900
        assert farm.pending_rewards(0, "alice") == [0, 0]

    def test_top_up_pays_pending_first(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        receipt = farm.deposit("alice", 0, 50)
        assert receipt.rewards == {"TKA": 10_000, "TKB": 15_000}
        assert farm.user_info(0, "alice").amount == 150
        assert farm.pending_rewards(0, "alice") == [0, 0]

    def test_missing_allowance_rolls_back_everything(self, farm, clock, tka, lp):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        lp.mint("dave", 50)
        events = len(farm.events)
        with pytest.raises(AssetError) as exc:
            farm.deposit("dave", 0, 10)
        assert exc.value.code == "InsufficientAllowance"
        # The pool update that minted rewards is undone too.
        assert tka.total_supply == 0
        assert farm.pool_info(0).last_reward_block == 110
        assert farm.pool_info(0).acc_reward_per_share == [0, 0]
        assert (0, "dave") not in farm.state.positions
        assert len(farm.events) == events
        assert farm.pending_rewards(0, "alice") == [10_000, 15_000]

    def test_negative_amount(self, farm):
        with pytest.raises(InvalidAmount):
            farm.deposit("alice", 0, -1)

    def test_float_amount(self, farm):
        with pytest.raises(TypeError):
            farm.deposit("alice", 0, 1.5)

    def test_unknown_pool(self, farm):
        with pytest.raises(UnknownPool):
            farm.deposit("alice", 7, 10)


# ═══════════════════════════════════════════════════════════════════
#  Withdraw
# ═══════════════════════════════════════════════════════════════════

class TestWithdraw:
    def test_partial_withdraw_pays_rewards(self, farm, clock, lp):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        receipt = farm.withdraw("alice", 0, 40)
        assert receipt.rewards == {"TKA": 10_000, "TKB": 15_000}
        assert lp.balance_of("alice") == 940
        assert farm.user_info(0, "alice").amount == 60
        assert farm.pool_info(0).total_staked == 60

    def test_over_withdraw_rejected_without_side_effects(self, farm, clock, tka):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        with pytest.raises(InsufficientBalance):
            farm.withdraw("alice", 0, 101)
        assert tka.total_supply == 0
        assert farm.user_info(0, "alice").amount == 100

    def test_withdraw_without_position(self, farm):
        with pytest.raises(InsufficientBalance):
            farm.withdraw("bob", 0, 1)
        receipt = farm.withdraw("bob", 0, 0)
        assert receipt.rewards == {}
        assert (0, "bob") not in farm.state.positions

    def test_full_withdraw_stops_accrual(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        farm.withdraw("alice", 0, 100)
        clock.advance_to(130)
        assert farm.pending_rewards(0, "alice") == [0, 0]
        assert farm.pool_info(0).total_staked == 0


# ═══════════════════════════════════════════════════════════════════
#  Claims
# ═══════════════════════════════════════════════════════════════════

class TestClaims:
    def test_no_double_payment_in_one_block(self, farm, clock, tka):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        assert farm.pending_rewards(0, "alice") == farm.pending_rewards(0, "alice")
        farm.claims("alice", 0)
        second = farm.claims("alice", 0)
        assert second.rewards == {}
        assert tka.balance_of("alice") == 10_000

    def test_claim_single_asset(self, farm, clock, tka, tkb):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        receipt = farm.claim("alice", 0, "TKA")
        assert receipt.rewards == {"TKA": 10_000}
        assert farm.pending_rewards(0, "alice") == [0, 15_000]
        assert farm.claim("alice", 0, "TKB").rewards == {"TKB": 15_000}
        assert tkb.balance_of("alice") == 15_000

    def test_claim_unknown_asset_is_noop(self, farm, clock, tka):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        events = len(farm.events)
        receipt = farm.claim("alice", 0, "NOPE")
        assert receipt.rewards == {}
        assert tka.total_supply == 0
        assert farm.pool_info(0).last_reward_block == 110
        assert len(farm.events) == events

    def test_claims_without_position(self, farm, clock):
        clock.advance_to(120)
        assert farm.claims("bob", 0).rewards == {}
        assert (0, "bob") not in farm.state.positions


# ═══════════════════════════════════════════════════════════════════
#  Emergency withdraw
# ═══════════════════════════════════════════════════════════════════

class TestEmergencyWithdraw:
    def test_returns_stake_and_forfeits_rewards(self, farm, clock, lp, tka):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        receipt = farm.emergency_withdraw("alice", 0)
        assert receipt.amount == 100
        assert receipt.rewards == {}
        assert lp.balance_of("alice") == 1_000
        assert farm.user_info(0, "alice").amount == 0
        assert farm.pending_rewards(0, "alice") == [0, 0]
        assert farm.pool_info(0).total_staked == 0
        # No accrual happened.
        assert tka.total_supply == 0
        assert farm.pool_info(0).last_reward_block == 110

    def test_can_deposit_again(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        farm.emergency_withdraw("alice", 0)
        clock.advance_to(130)
        farm.deposit("alice", 0, 10)
        clock.advance_to(140)
        assert farm.pending_rewards(0, "alice") == [10_000, 15_000]

    def test_without_position(self, farm):
        assert farm.emergency_withdraw("bob", 0).amount == 0


# ═══════════════════════════════════════════════════════════════════
#  Owner / dev capabilities
# ═══════════════════════════════════════════════════════════════════

class TestOwner:
    def test_add_pool_requires_owner(self, engine, lp):
        with pytest.raises(UnauthorizedAccess):
            engine.add_pool("mallory", 100, lp)
        assert engine.pool_length() == 0

    def test_set_pool_requires_owner(self, farm):
        with pytest.raises(UnauthorizedAccess):
            farm.set_pool("mallory", 0, 5)
        assert farm.pool_info(0).alloc_point == 100

    def test_late_pool_seeded_at_current_block(self, engine, clock, lp):
        clock.advance_to(500)
        pid = engine.add_pool(OWNER, 10, lp)
        assert engine.pool_info(pid).last_reward_block == 500

    def test_set_pool_with_update_settles_old_weight(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        farm.set_pool(OWNER, 0, 0, with_update=True)
        clock.advance_to(130)
        assert farm.pending_rewards(0, "alice") == [10_000, 15_000]
        assert farm.total_alloc_point == 0

    def test_conflicting_stake_asset_rejected(self, farm):
        with pytest.raises(InvalidAddress):
            farm.add_pool(OWNER, 10, AssetBook("LP"))

    def test_transfer_ownership(self, farm, lp):
        farm.transfer_ownership(OWNER, "new-owner")
        with pytest.raises(UnauthorizedAccess):
            farm.add_pool(OWNER, 10, lp)
        assert farm.add_pool("new-owner", 10, lp) == 1

    def test_pools_sharing_a_stake_asset(self, farm, clock, lp):
        farm.add_pool(OWNER, 100, lp)
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        farm.deposit("bob", 1, 100)
        clock.advance_to(120)
        assert farm.pending_rewards(0, "alice") == [5_000, 7_500]
        assert farm.pending_rewards(1, "bob") == [5_000, 7_500]
        farm.emergency_withdraw("alice", 0)
        assert lp.balance_of(farm.custody) == 100
        assert farm.pool_info(1).total_staked == 100


class TestDev:
    def test_requires_current_dev(self, engine):
        with pytest.raises(UnauthorizedAccess):
            engine.dev(OWNER, "elsewhere")

    def test_empty_address(self, engine):
        with pytest.raises(InvalidAddress):
            engine.dev(DEV, "")

    def test_handoff_redirects_cut(self, farm, clock, tka):
        farm.dev(DEV, "dev2")
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        farm.claims("alice", 0)
        assert tka.balance_of("dev2") == 1_000
        assert tka.balance_of(DEV) == 0
        with pytest.raises(UnauthorizedAccess):
            farm.dev(DEV, DEV)


class TestDevCut:
    def _engine(self, divisor):
        clock = ManualBlockClock(0)
        tka, lp = AssetBook("TKA"), AssetBook("LP")
        engine = RewardEngine(
            OWNER, 0, DEV, [tka], [7], 0, clock,
            dev_cut_divisor=divisor, check_invariants=True,
        )
        engine.add_pool(OWNER, 1, lp)
        fund(engine, lp, "alice", 10)
        engine.deposit("alice", 0, 10)
        return engine, clock, tka

    def test_default_cut_truncates(self):
        engine, clock, tka = self._engine(10)
        clock.advance_to(3)
        engine.claims("alice", 0)
        assert tka.balance_of("alice") == 21
        assert tka.balance_of(DEV) == 2
        assert tka.total_supply == 23

    def test_custom_divisor(self):
        engine, clock, tka = self._engine(4)
        clock.advance_to(3)
        engine.update_pool(0)
        assert tka.balance_of(DEV) == 5


# ═══════════════════════════════════════════════════════════════════
#  Reward asset staked in its own pool
# ═══════════════════════════════════════════════════════════════════

class TestRewardAssetAsStake:
    def test_stake_is_not_paid_out_as_reward(self, engine, clock, tka, funder):
        engine.add_pool(OWNER, 100, tka)
        funder(tka, "alice", 1_000)
        clock.advance_to(110)
        engine.deposit("alice", 0, 100)
        clock.advance_to(120)
        engine.claims("alice", 0)
        assert tka.balance_of(engine.custody) == 100
        assert engine.reward_reserve("TKA") == 0
        engine.withdraw("alice", 0, 100)
        assert tka.balance_of("alice") == 11_000


# ═══════════════════════════════════════════════════════════════════
#  Queries and events
# ═══════════════════════════════════════════════════════════════════

class TestQueries:
    def test_pending_by_asset(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        assert farm.pending_by_asset(0, "alice") == {"TKA": 10_000, "TKB": 15_000}

    def test_pending_query_does_not_mint(self, farm, clock, tka):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        clock.advance_to(120)
        farm.pending_rewards(0, "alice")
        assert tka.total_supply == 0

    def test_status(self, farm):
        s = farm.status()
        assert s["owner"] == OWNER
        assert s["pool_count"] == 1
        assert s["total_alloc_point"] == 100
        assert s["config"]["reward_assets"] == ["TKA", "TKB"]

    def test_events_record_accepted_calls_only(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        with pytest.raises(InsufficientBalance):
            farm.withdraw("alice", 0, 500)
        actions = [e.action for e in farm.events]
        assert actions == ["add_pool", "deposit"]
        assert farm.events[-1].to_dict()["account"] == "alice"


# ═══════════════════════════════════════════════════════════════════
#  Serialization and rollback scope
# ═══════════════════════════════════════════════════════════════════

def _held_elsewhere(lock) -> bool:
    """True if another thread cannot take *lock* right now."""
    blocked = []

    def try_acquire():
        got = lock.acquire(blocking=False)
        if got:
            lock.release()
        blocked.append(not got)

    t = threading.Thread(target=try_acquire)
    t.start()
    t.join()
    return blocked[0]


class TestSerialization:
    def test_withdraw_checks_balance_under_the_lock(self, farm, clock, monkeypatch):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        seen = []
        lookup = farm.positions.get_or_empty

        def watched(pool_id, depositor):
            seen.append(_held_elsewhere(farm._lock))
            return lookup(pool_id, depositor)

        monkeypatch.setattr(farm.positions, "get_or_empty", watched)
        farm.withdraw("alice", 0, 40)
        assert seen and all(seen)

    def test_owner_check_runs_under_the_lock(self, farm, monkeypatch):
        seen = []
        check = farm.owner.check

        def watched(caller):
            seen.append(_held_elsewhere(farm._lock))
            return check(caller)

        monkeypatch.setattr(farm.owner, "check", watched)
        farm.set_pool(OWNER, 0, 50)
        with pytest.raises(UnauthorizedAccess):
            farm.add_pool("mallory", 1, AssetBook("LP9"))
        assert seen == [True, True]

    def test_concurrent_full_withdrawals_pay_out_once(self, farm, clock, lp):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        barrier = threading.Barrier(4)
        outcomes = []

        def withdraw_all():
            barrier.wait()
            try:
                farm.withdraw("alice", 0, 100)
                outcomes.append("ok")
            except InsufficientBalance:
                outcomes.append("rejected")

        threads = [threading.Thread(target=withdraw_all) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "rejected", "rejected", "rejected"]
        assert farm.user_info(0, "alice").amount == 0
        assert farm.pool_info(0).total_staked == 0
        assert lp.balance_of("alice") == 1_000


class TestRollbackScope:
    def test_rejected_call_leaves_other_positions_in_place(self, farm, clock, lp):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        farm.deposit("bob", 0, 100)
        bob = farm.state.positions[(0, "bob")]
        lp.mint("dave", 50)
        with pytest.raises(AssetError):
            farm.deposit("dave", 0, 10)
        assert farm.state.positions[(0, "bob")] is bob
        assert (0, "dave") not in farm.state.positions

    def test_rollback_restores_a_touched_position(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        saved = farm.state.begin()
        farm.positions.get(0, "alice").amount = 5
        farm.positions.get_or_create(0, "erin")
        farm.state.rollback(saved)
        assert farm.user_info(0, "alice").amount == 100
        assert (0, "erin") not in farm.state.positions

    def test_rollback_point_skips_positions(self, farm, clock):
        clock.advance_to(110)
        farm.deposit("alice", 0, 100)
        saved = farm.state.begin()
        assert saved.positions == {}
        assert saved.pools == farm.state.pools
        assert saved.pools[0] is not farm.state.pools[0]
        farm.state.commit()
