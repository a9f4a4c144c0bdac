"""
Reward engine: the ledger's public entry points.

Every mutating call follows the same shape:

  1. validate (amounts, pool id, capability) with no side effects
  2. lazily bring the pool's accumulators up to the current block
  3. read / write the caller's position
  4. move stake and pay rewards through the asset collaborators

All four steps hold one ledger-wide re-entrant lock, so nothing another
thread does can invalidate a check before the call acts on it.  Steps 2-4
run inside ``_atomic()``: a rollback point on ``LedgerState`` (pools copied,
positions saved as the call touches them) and a checkpoint of every asset
book.  Any exception restores all of them, so a rejected call never leaves
partial state.

Position lifecycle per (pool, depositor)::

    uninitialized ──deposit──▶ active ──withdraw all / emergency──▶ empty
                                  ▲                                   │
                                  └──────────────deposit──────────────┘
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from farmflow_core.assets import (
    BlockClock,
    Checkpointable,
    RewardAsset,
    StakeAsset,
)
from farmflow_core.auth import AuthorizedCaller
from farmflow_core.errors import (
    FarmError,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvalidRewardData,
    UnauthorizedAccess,
)
from farmflow_core.invariants import InvariantChecker
from farmflow_core.pool import PoolRegistry
from farmflow_core.position import PositionStore
from farmflow_core.precision import require_int
from farmflow_core.state import GlobalConfig, LedgerState, PoolInfo, UserInfo

logger = logging.getLogger("farmflow_engine")

MAX_EVENTS = 10_000


@dataclass
class Receipt:
    """Outcome of one accepted ledger call."""
    action: str
    account: str
    block: int
    pool_id: int | None = None
    amount: int = 0
    rewards: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "account": self.account,
            "block": self.block,
            "pool_id": self.pool_id,
            "amount": self.amount,
            "rewards": dict(self.rewards),
        }


class RewardEngine:
    """
    Multi-pool, multi-reward staking ledger.

    ``owner`` gates ``add_pool`` / ``set_pool``; the current dev address
    gates ``dev``.  All other entry points act on the caller's own
    position.
    """

    def __init__(
        self,
        owner: str,
        start_block: int,
        dev_address: str,
        reward_tokens: Sequence[RewardAsset],
        reward_per_block: Sequence[int],
        bonus_end_block: int,
        clock: BlockClock,
        *,
        bonus_multiplier: int = 10,
        dev_cut_divisor: int = 10,
        custody_address: str = "farm-custody",
        check_invariants: bool = False,
    ) -> None:
        asset_ids = tuple(t.asset_id for t in reward_tokens)
        config = GlobalConfig(
            start_block=start_block,
            bonus_end_block=bonus_end_block,
            reward_assets=asset_ids,
            reward_per_block=tuple(reward_per_block),
            dev_address=dev_address,
            bonus_multiplier=bonus_multiplier,
            dev_cut_divisor=dev_cut_divisor,
            custody_address=custody_address,
        )
        if not owner:
            raise InvalidAddress("owner must not be empty")
        if not dev_address:
            raise InvalidAddress("dev_address must not be empty")

        self.state = LedgerState(config=config)
        self.clock = clock
        self.reward_tokens: dict[str, RewardAsset] = dict(zip(asset_ids, reward_tokens))
        self.stake_tokens: dict[str, StakeAsset] = {}
        self.registry = PoolRegistry(self.state, clock, self.reward_tokens)
        self.positions = PositionStore(self.state)
        self.owner = AuthorizedCaller(owner, role="owner")
        self.check_invariants = check_invariants
        self.events: deque[Receipt] = deque(maxlen=MAX_EVENTS)
        self._lock = threading.RLock()

        logger.info(
            f"Reward engine created: assets={list(asset_ids)} "
            f"rates={list(config.reward_per_block)} start={start_block} "
            f"bonus_end={bonus_end_block} x{bonus_multiplier}"
        )

    # ── properties ──────────────────────────────────────────────────

    @property
    def config(self) -> GlobalConfig:
        return self.state.config

    @property
    def total_alloc_point(self) -> int:
        return self.state.total_alloc_point

    @property
    def custody(self) -> str:
        return self.state.config.custody_address

    def load_state(self, state: LedgerState) -> None:
        """Replace ledger state wholesale (used by storage restore)."""
        if state.config.reward_assets != self.state.config.reward_assets:
            raise InvalidRewardData(
                "stored reward assets do not match the configured ones"
            )
        with self._lock:
            self.state.restore(state)

    # ── transaction boundary ────────────────────────────────────────

    def _books(self) -> list[Checkpointable]:
        tokens = list(self.reward_tokens.values()) + list(self.stake_tokens.values())
        seen: set[int] = set()
        books = []
        for token in tokens:
            if id(token) in seen or not isinstance(token, Checkpointable):
                continue
            seen.add(id(token))
            books.append(token)
        return books

    @contextmanager
    def _atomic(self, action: str, account: str) -> Iterator[None]:
        with self._lock:
            saved = self.state.begin()
            books = [(book, book.checkpoint()) for book in self._books()]
            events_len = len(self.events)
            try:
                yield
                if self.check_invariants:
                    InvariantChecker(saved).enforce(self)
            except Exception as exc:
                self.state.rollback(saved)
                for book, checkpoint in books:
                    book.rollback(checkpoint)
                while len(self.events) > events_len:
                    self.events.pop()
                if isinstance(exc, FarmError):
                    logger.warning(f"{action} by {account} rejected: {exc.code}: {exc.message}")
                else:
                    logger.exception(f"{action} by {account} failed")
                raise
            self.state.commit()

    def _record(self, receipt: Receipt) -> Receipt:
        self.events.append(receipt)
        logger.info(
            f"{receipt.action} account={receipt.account} pool={receipt.pool_id} "
            f"amount={receipt.amount} rewards={receipt.rewards} block={receipt.block}"
        )
        return receipt

    def _require_owner(self, caller: str, action: str) -> None:
        if not self.owner.check(caller).ok:
            logger.warning(f"{action} by {caller} rejected: not the owner")
            raise UnauthorizedAccess(f"{action} requires the owner")

    @staticmethod
    def _require_amount(amount: int) -> int:
        require_int(amount)
        if amount < 0:
            raise InvalidAmount("amount must be non-negative")
        return amount

    def _stake_token(self, pool: PoolInfo) -> StakeAsset:
        return self.stake_tokens[pool.stake_asset]

    def reward_reserve(self, asset_id: str) -> int:
        """Custody balance of a reward asset not backing any pool's stake."""
        staked = sum(
            p.total_staked for p in self.state.pools if p.stake_asset == asset_id
        )
        return self.reward_tokens[asset_id].balance_of(self.custody) - staked

    def _pay_out(self, account: str, amounts: Sequence[int]) -> dict[str, int]:
        paid: dict[str, int] = {}
        for asset_id, amount in zip(self.config.reward_assets, amounts):
            if amount <= 0:
                continue
            # Per-position floor rounding can leave custody a unit short.
            reserve = self.reward_reserve(asset_id)
            if amount > reserve:
                logger.warning(
                    f"{asset_id} payout to {account} capped at reserve {reserve} (owed {amount})"
                )
                amount = max(reserve, 0)
            if amount:
                self.reward_tokens[asset_id].transfer(self.custody, account, amount)
                paid[asset_id] = amount
        return paid

    # ── owner entry points ──────────────────────────────────────────
    # Checks run under the ledger lock too, so no other call can change
    # what they read before the mutation starts.

    def add_pool(
        self,
        caller: str,
        alloc_point: int,
        stake_token: StakeAsset,
        with_update: bool = False,
    ) -> int:
        with self._lock:
            self._require_owner(caller, "add_pool")
            known = self.stake_tokens.get(stake_token.asset_id)
            if known is not None and known is not stake_token:
                raise InvalidAddress(
                    f"a different asset is already registered as {stake_token.asset_id}"
                )
            with self._atomic("add_pool", caller):
                pool_id = self.registry.add_pool(alloc_point, stake_token.asset_id, with_update)
                self.stake_tokens[stake_token.asset_id] = stake_token
                self._record(Receipt(
                    "add_pool", caller, self.clock.current_block(), pool_id, alloc_point,
                ))
        return pool_id

    def set_pool(
        self, caller: str, pool_id: int, alloc_point: int, with_update: bool = False,
    ) -> None:
        with self._lock:
            self._require_owner(caller, "set_pool")
            self.registry.get_pool(pool_id)
            with self._atomic("set_pool", caller):
                self.registry.set_pool(pool_id, alloc_point, with_update)
                self._record(Receipt(
                    "set_pool", caller, self.clock.current_block(), pool_id, alloc_point,
                ))

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        if not new_owner:
            raise InvalidAddress("new owner must not be empty")
        with self._lock:
            self._require_owner(caller, "transfer_ownership")
            with self._atomic("transfer_ownership", caller):
                self.owner.reassign(new_owner)
                self._record(Receipt("transfer_ownership", caller, self.clock.current_block()))

    def dev(self, caller: str, new_address: str) -> None:
        """Hand the developer cut to *new_address*; only the current dev may call."""
        with self._lock:
            if not AuthorizedCaller(self.config.dev_address, role="dev").check(caller).ok:
                logger.warning(f"dev by {caller} rejected: not the dev address")
                raise UnauthorizedAccess("dev requires the current dev address")
            if not new_address:
                raise InvalidAddress("dev address must not be empty")
            with self._atomic("dev", caller):
                self.state.config.dev_address = new_address
                self._record(Receipt("dev", caller, self.clock.current_block()))

    # ── open entry points ───────────────────────────────────────────

    def update_pool(self, pool_id: int) -> PoolInfo:
        with self._lock:
            self.registry.get_pool(pool_id)
            with self._atomic("update_pool", ""):
                return self.registry.update_pool(pool_id)

    def mass_update_pools(self) -> None:
        with self._atomic("mass_update_pools", ""):
            self.registry.mass_update_pools()

    def deposit(self, caller: str, pool_id: int, amount: int) -> Receipt:
        """Stake *amount* (0 just harvests) after paying out what is pending."""
        self._require_amount(amount)
        with self._lock:
            self.registry.get_pool(pool_id)
            with self._atomic("deposit", caller):
                pool = self.registry.update_pool(pool_id)
                user = self.positions.get_or_create(pool_id, caller)
                pending = self.positions.pending_rewards(user, pool.acc_reward_per_share)
                if amount > 0:
                    self._stake_token(pool).transfer_from(
                        self.custody, caller, self.custody, amount,
                    )
                    user.amount += amount
                    pool.total_staked += amount
                paid = self._pay_out(caller, pending)
                self.positions.settle(user, pool.acc_reward_per_share)
                return self._record(Receipt(
                    "deposit", caller, self.clock.current_block(), pool_id, amount, paid,
                ))

    def withdraw(self, caller: str, pool_id: int, amount: int) -> Receipt:
        self._require_amount(amount)
        with self._lock:
            self.registry.get_pool(pool_id)
            held = self.positions.get_or_empty(pool_id, caller).amount
            if amount > held:
                logger.warning(f"withdraw by {caller} rejected: {amount} > staked {held}")
                raise InsufficientBalance(f"withdraw {amount} exceeds staked {held}")
            with self._atomic("withdraw", caller):
                pool = self.registry.update_pool(pool_id)
                user = self.positions.get(pool_id, caller)
                paid: dict[str, int] = {}
                if user is not None:
                    pending = self.positions.pending_rewards(user, pool.acc_reward_per_share)
                    paid = self._pay_out(caller, pending)
                    if amount > 0:
                        user.amount -= amount
                        pool.total_staked -= amount
                        self._stake_token(pool).transfer(self.custody, caller, amount)
                    self.positions.settle(user, pool.acc_reward_per_share)
                return self._record(Receipt(
                    "withdraw", caller, self.clock.current_block(), pool_id, amount, paid,
                ))

    def claims(self, caller: str, pool_id: int) -> Receipt:
        """Harvest every reward asset from one pool."""
        with self._lock:
            self.registry.get_pool(pool_id)
            with self._atomic("claims", caller):
                pool = self.registry.update_pool(pool_id)
                user = self.positions.get(pool_id, caller)
                paid: dict[str, int] = {}
                if user is not None:
                    pending = self.positions.pending_rewards(user, pool.acc_reward_per_share)
                    paid = self._pay_out(caller, pending)
                    self.positions.settle(user, pool.acc_reward_per_share)
                return self._record(Receipt(
                    "claim", caller, self.clock.current_block(), pool_id, 0, paid,
                ))

    def claim(self, caller: str, pool_id: int, reward_asset: str) -> Receipt:
        """Harvest a single reward asset.

        An asset this ledger does not emit is accepted as a no-op.
        """
        with self._lock:
            self.registry.get_pool(pool_id)
            index = self.config.reward_index(reward_asset)
            if index is None:
                logger.debug(f"claim of unknown asset {reward_asset!r} by {caller} ignored")
                return Receipt("claim", caller, self.clock.current_block(), pool_id)

            with self._atomic("claim", caller):
                pool = self.registry.update_pool(pool_id)
                user = self.positions.get(pool_id, caller)
                paid: dict[str, int] = {}
                if user is not None:
                    pending = self.positions.pending_rewards(user, pool.acc_reward_per_share)
                    amounts = [0] * self.config.reward_count
                    amounts[index] = pending[index]
                    paid = self._pay_out(caller, amounts)
                    self.positions.settle_one(user, pool.acc_reward_per_share, index)
                return self._record(Receipt(
                    "claim", caller, self.clock.current_block(), pool_id, 0, paid,
                ))

    def emergency_withdraw(self, caller: str, pool_id: int) -> Receipt:
        """Return the whole stake and forfeit every pending reward.

        Skips accrual entirely so it still works when minting is broken.
        """
        with self._lock:
            pool = self.registry.get_pool(pool_id)
            with self._atomic("emergency_withdraw", caller):
                user = self.positions.get(pool_id, caller)
                amount = self.positions.reset(user) if user is not None else 0
                if amount:
                    pool.total_staked -= amount
                    self._stake_token(pool).transfer(self.custody, caller, amount)
                return self._record(Receipt(
                    "emergency_withdraw", caller, self.clock.current_block(), pool_id, amount,
                ))

    # ── queries ─────────────────────────────────────────────────────

    def pool_length(self) -> int:
        return self.registry.pool_length()

    def pool_info(self, pool_id: int) -> PoolInfo:
        return self.registry.get_pool(pool_id)

    def user_info(self, pool_id: int, depositor: str) -> UserInfo:
        self.registry.get_pool(pool_id)
        return self.positions.get_or_empty(pool_id, depositor)

    def pending_rewards(self, pool_id: int, depositor: str) -> list[int]:
        """Rewards *depositor* would receive by claiming at the current block."""
        with self._lock:
            acc = self.registry.projected_acc(pool_id)
            user = self.positions.get_or_empty(pool_id, depositor)
            return self.positions.pending_rewards(user, acc)

    def pending_by_asset(self, pool_id: int, depositor: str) -> dict[str, int]:
        return dict(zip(self.config.reward_assets, self.pending_rewards(pool_id, depositor)))

    def status(self) -> dict:
        return {
            "block": self.clock.current_block(),
            "owner": self.owner.identity,
            "pool_count": self.pool_length(),
            "total_alloc_point": self.total_alloc_point,
            "positions": len(self.state.positions),
            "config": self.config.to_dict(),
        }
