"""
Collaborator contracts for the reward engine, plus in-memory versions.

The engine never owns token balances or the block height.  It talks to:

  - a **stake asset**  ERC-20 shaped: ``transfer_from`` / ``transfer``
  - a **reward asset** the same, plus ``mint``
  - a **block clock**  ``current_block()``, monotonic non-decreasing

``AssetBook`` is an in-memory ERC-20 used by the service runner and the
test suite.  It supports ``checkpoint()`` / ``rollback()`` so the engine
can undo mints and transfers when a call is rejected part-way through.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol, runtime_checkable

from farmflow_core.errors import AssetError
from farmflow_core.precision import require_int

logger = logging.getLogger("farmflow_assets")


# ── protocols ───────────────────────────────────────────────────────────

@runtime_checkable
class StakeAsset(Protocol):
    asset_id: str

    def balance_of(self, address: str) -> int: ...

    def transfer(self, sender: str, recipient: str, amount: int) -> None: ...

    def transfer_from(
        self, spender: str, sender: str, recipient: str, amount: int,
    ) -> None: ...


@runtime_checkable
class RewardAsset(StakeAsset, Protocol):
    def mint(self, to: str, amount: int) -> None: ...


@runtime_checkable
class Checkpointable(Protocol):
    def checkpoint(self) -> Any: ...

    def rollback(self, saved: Any) -> None: ...


@runtime_checkable
class BlockClock(Protocol):
    def current_block(self) -> int: ...


# ── AssetBook ───────────────────────────────────────────────────────────

class AssetBook:
    """Integer-balance token with allowances and unrestricted minting."""

    def __init__(self, asset_id: str) -> None:
        self.asset_id = asset_id
        self.balances: dict[str, int] = {}
        self.allowances: dict[tuple[str, str], int] = {}
        self.total_supply: int = 0

    def __repr__(self) -> str:
        return f"AssetBook({self.asset_id!r}, supply={self.total_supply})"

    def balance_of(self, address: str) -> int:
        return self.balances.get(address, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner, spender), 0)

    def approve(self, owner: str, spender: str, amount: int) -> None:
        require_int(amount)
        if amount < 0:
            raise AssetError("InvalidAmount", "allowance must be non-negative")
        self.allowances[(owner, spender)] = amount

    def mint(self, to: str, amount: int) -> None:
        require_int(amount)
        if amount < 0:
            raise AssetError("InvalidAmount", "cannot mint a negative amount")
        self.balances[to] = self.balance_of(to) + amount
        self.total_supply += amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        require_int(amount)
        if amount < 0:
            raise AssetError("InvalidAmount", "cannot transfer a negative amount")
        have = self.balance_of(sender)
        if have < amount:
            raise AssetError(
                "InsufficientFunds",
                f"{sender} holds {have} {self.asset_id}, needs {amount}",
            )
        self.balances[sender] = have - amount
        self.balances[recipient] = self.balance_of(recipient) + amount

    def transfer_from(
        self, spender: str, sender: str, recipient: str, amount: int,
    ) -> None:
        require_int(amount)
        allowed = self.allowance(sender, spender)
        if allowed < amount:
            raise AssetError(
                "InsufficientAllowance",
                f"{spender} may move {allowed} {self.asset_id} for {sender}, needs {amount}",
            )
        self.transfer(sender, recipient, amount)
        self.allowances[(sender, spender)] = allowed - amount

    # ── rollback support ────────────────────────────────────────────

    def checkpoint(self) -> tuple[dict, dict, int]:
        return dict(self.balances), dict(self.allowances), self.total_supply

    def rollback(self, saved: tuple[dict, dict, int]) -> None:
        self.balances, self.allowances, self.total_supply = (
            dict(saved[0]), dict(saved[1]), saved[2],
        )

    def to_dict(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "total_supply": self.total_supply,
            "holders": len([b for b in self.balances.values() if b]),
        }


# ── clocks ──────────────────────────────────────────────────────────────

class ManualBlockClock:
    """Height advanced explicitly; used by tests and the console."""

    def __init__(self, height: int = 0) -> None:
        self._height = height

    def current_block(self) -> int:
        return self._height

    def advance(self, blocks: int = 1) -> int:
        if blocks < 0:
            raise ValueError("block height cannot move backwards")
        self._height += blocks
        return self._height

    def advance_to(self, height: int) -> int:
        if height < self._height:
            raise ValueError(
                f"cannot rewind clock from {self._height} to {height}"
            )
        self._height = height
        return self._height


class WallClockBlocks:
    """Height derived from elapsed wall time at a fixed block interval.

    Reading the height does no work; nothing ticks in the background.
    """

    def __init__(
        self,
        block_seconds: float = 12.0,
        genesis_time: float | None = None,
        genesis_height: int = 0,
    ) -> None:
        if block_seconds <= 0:
            raise ValueError("block_seconds must be positive")
        self.block_seconds = block_seconds
        self.genesis_time = genesis_time if genesis_time else time.time()
        self.genesis_height = genesis_height
        self._last = genesis_height

    def current_block(self) -> int:
        elapsed = max(0.0, time.time() - self.genesis_time)
        height = self.genesis_height + int(elapsed // self.block_seconds)
        # Never report a lower height, even if the system clock steps back.
        if height < self._last:
            logger.warning(f"System clock moved backwards; holding height {self._last}")
            return self._last
        self._last = height
        return height
