#!/usr/bin/env python3
"""
FarmFlow Node Runner: starts a staking ledger service with
  - the reward engine wired to in-memory asset books
  - optional SQLite persistence (restore on start, snapshot on change)
  - the REST API
  - an interactive CLI for depositing, harvesting and inspecting pools

Usage:
    python run_farm.py --config farmflow.toml --port 8080 \\
                       --fund LP-USDC-USDT alice 1000

Environment variables (alternative to config keys):
    FARMFLOW_OWNER, FARMFLOW_DEV_ADDRESS, FARMFLOW_API_PORT, FARMFLOW_DB_PATH, ...
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from farmflow_core.assets import AssetBook, BlockClock, WallClockBlocks  # noqa: E402
from farmflow_core.config import FarmFlowConfig, load_config  # noqa: E402
from farmflow_core.engine import RewardEngine  # noqa: E402
from farmflow_core.errors import FarmError  # noqa: E402
from farmflow_core.logging_config import setup_logging  # noqa: E402
from farmflow_core.storage import FarmStore  # noqa: E402

logger = logging.getLogger("farm")


# ===================================================================
#  FarmFlow Node
# ===================================================================

class FarmNode:
    """
    Combines the reward engine, asset books, persistence and API
    into a single runnable service.
    """

    def __init__(self, config: FarmFlowConfig | None = None, clock: BlockClock | None = None):
        self.config = config or FarmFlowConfig()
        farm = self.config.farm
        chain = self.config.chain
        self.clock = clock or WallClockBlocks(
            block_seconds=chain.block_seconds,
            genesis_time=chain.genesis_time or None,
            genesis_height=chain.genesis_height,
        )
        self.assets: dict[str, AssetBook] = {
            asset_id: AssetBook(asset_id) for asset_id in farm.reward_assets
        }
        self.engine = RewardEngine(
            owner=farm.owner,
            start_block=farm.start_block,
            dev_address=farm.dev_address,
            reward_tokens=[self.assets[a] for a in farm.reward_assets],
            reward_per_block=farm.reward_per_block,
            bonus_end_block=farm.bonus_end_block,
            clock=self.clock,
            bonus_multiplier=farm.bonus_multiplier,
            dev_cut_divisor=farm.dev_cut_divisor,
            custody_address=farm.custody_address,
            check_invariants=farm.check_invariants,
        )
        self.store: FarmStore | None = None
        self._api = None

    # ---- lifecycle ----

    def open(self) -> None:
        """Restore persisted state, or seed the configured pools on first run."""
        if self.config.storage.enabled:
            self.store = FarmStore(self.config.storage.path)
            self._pin_clock_genesis()
            restored = self.store.restore_state()
            if restored is not None:
                state, owner = restored
                self._check_clock_not_behind()
                logger.info("Restoring ledger state from database...")
                for book in self.assets.values():
                    self.store.load_asset_book(book)
                for pool in state.pools:
                    book = self.get_or_create_asset(pool.stake_asset)
                    self.store.load_asset_book(book)
                    self.engine.stake_tokens[pool.stake_asset] = book
                self.engine.load_state(state)
                self.engine.owner.reassign(owner)
                logger.info(
                    f"Restored: {len(state.pools)} pools, "
                    f"{len(state.positions)} positions, owner={owner}"
                )
                return

        owner = self.engine.owner.identity
        for seed in self.config.farm.pools:
            book = self.get_or_create_asset(seed.stake_asset)
            pool_id = self.engine.add_pool(owner, seed.alloc_point, book)
            logger.info(f"Seeded pool {pool_id}: {seed.stake_asset} x{seed.alloc_point}")
        self.persist()

    def _pin_clock_genesis(self) -> None:
        """Keep wall-clock heights continuous across restarts.

        The first run records its genesis time; later runs reuse it unless
        ``[chain] genesis_time`` is set explicitly.
        """
        if not isinstance(self.clock, WallClockBlocks):
            return
        stored = self.store.get_meta("clock_genesis_time")
        if stored is None:
            self.store.set_meta("clock_genesis_time", repr(self.clock.genesis_time))
        elif not self.config.chain.genesis_time:
            self.clock.genesis_time = float(stored)
            logger.info(f"Block clock genesis restored: {self.clock.genesis_time}")

    def _check_clock_not_behind(self) -> None:
        saved = self.store.get_meta("block_height")
        now = self.clock.current_block()
        if saved is not None and now < int(saved):
            raise RuntimeError(
                f"Block clock reads {now} but the database was saved at height "
                f"{saved}.  Check the [chain] genesis settings."
            )

    async def start(self, with_api: bool = True) -> None:
        """Open state and start the API."""
        self.open()
        if with_api and self.config.api.enabled:
            from farmflow_core.api import APIServer
            if not self.config.api.account_keys:
                logger.warning(
                    "No [api.account_keys] configured: every transaction "
                    "endpoint will refuse its caller"
                )
            self._api = APIServer(
                self,
                host=self.config.api.host,
                port=self.config.api.port,
                api_config=self.config.api,
            )
            await self._api.start()
        logger.info(
            f"Farm node started | block={self.clock.current_block()} "
            f"| pools={self.engine.pool_length()}"
        )

    async def stop(self) -> None:
        if self._api is not None:
            await self._api.stop()
            self._api = None
        if self.store is not None:
            logger.info("Saving ledger state to database...")
            self.persist()
            self.store.close()
            self.store = None

    # ---- helpers ----

    def get_or_create_asset(self, asset_id: str) -> AssetBook:
        book = self.assets.get(asset_id)
        if book is None:
            book = AssetBook(asset_id)
            self.assets[asset_id] = book
        return book

    def persist(self) -> None:
        """Snapshot ledger state and every asset book atomically (no-op without storage)."""
        if self.store is None:
            return
        with self.engine._lock:
            self.store.snapshot_state(
                self.engine.state,
                owner=self.engine.owner.identity,
                books=list(self.assets.values()),
                block_height=self.clock.current_block(),
            )

    def fund(self, asset_id: str, address: str, amount: int) -> None:
        """Mint test balance to an address (local helper)."""
        book = self.get_or_create_asset(asset_id)
        with self.engine._lock:
            book.mint(address, amount)
        logger.info(f"Funded {address} with {amount} {asset_id}")

    def status(self) -> dict:
        return {
            **self.engine.status(),
            "assets": sorted(self.assets),
            "api": self._api is not None,
            "storage": self.store.db_path if self.store is not None else None,
        }


# ===================================================================
#  Interactive CLI
# ===================================================================

HELP = """
╔══════════════════════════════════════════════════════════════╗
║  FarmFlow Node CLI                                            ║
╠══════════════════════════════════════════════════════════════╣
║  status                        - Show ledger status           ║
║  pools                         - List pools                   ║
║  pending <pool> <addr>         - Claimable rewards            ║
║  deposit <addr> <pool> <amt>   - Stake (0 = harvest)          ║
║  withdraw <addr> <pool> <amt>  - Unstake and harvest          ║
║  claims <addr> <pool>          - Harvest every reward asset   ║
║  claim <addr> <pool> <asset>   - Harvest one reward asset     ║
║  emergency <addr> <pool>       - Withdraw, forfeit rewards    ║
║  approve <addr> <asset> <amt>  - Allow the farm to pull stake ║
║  fund <asset> <addr> <amt>     - Mint test balance            ║
║  block                         - Show current block           ║
║  save                          - Persist state now            ║
║  help                          - Show this help               ║
║  quit                          - Shutdown node                ║
╚══════════════════════════════════════════════════════════════╝
"""

# command -> (argument count, usage)
USAGE = {
    "pending": (2, "pending <pool> <addr>"),
    "deposit": (3, "deposit <addr> <pool> <amount>"),
    "withdraw": (3, "withdraw <addr> <pool> <amount>"),
    "claims": (2, "claims <addr> <pool>"),
    "claim": (3, "claim <addr> <pool> <asset>"),
    "emergency": (2, "emergency <addr> <pool>"),
    "approve": (3, "approve <addr> <asset> <amount>"),
    "fund": (3, "fund <asset> <addr> <amount>"),
}


def run_command(node: FarmNode, parts: list[str]) -> str | None:
    """Execute one console command; return text to print."""
    cmd, args = parts[0].lower(), parts[1:]
    engine = node.engine

    if cmd in USAGE and len(args) < USAGE[cmd][0]:
        return f"  Usage: {USAGE[cmd][1]}"

    if cmd == "help":
        return HELP
    if cmd == "status":
        return json.dumps(node.status(), indent=2, default=str)
    if cmd == "pools":
        lines = [
            f"  #{p.pool_id} {p.stake_asset} alloc={p.alloc_point} "
            f"staked={p.total_staked} last={p.last_reward_block}"
            for p in engine.state.pools
        ]
        return "\n".join(lines) or "  No pools"
    if cmd == "block":
        return f"  Block {engine.clock.current_block()}"
    if cmd == "save":
        node.persist()
        return "  Saved" if node.store is not None else "  Storage disabled"
    if cmd == "pending":
        pending = engine.pending_by_asset(int(args[0]), args[1])
        return "  " + ", ".join(f"{a}={v}" for a, v in pending.items())

    if cmd == "deposit":
        receipt = engine.deposit(args[0], int(args[1]), int(args[2]))
    elif cmd == "withdraw":
        receipt = engine.withdraw(args[0], int(args[1]), int(args[2]))
    elif cmd == "claims":
        receipt = engine.claims(args[0], int(args[1]))
    elif cmd == "claim":
        receipt = engine.claim(args[0], int(args[1]), args[2])
    elif cmd == "emergency":
        receipt = engine.emergency_withdraw(args[0], int(args[1]))
    elif cmd == "approve":
        node.get_or_create_asset(args[1]).approve(args[0], engine.custody, int(args[2]))
        node.persist()
        return f"  {args[0]} approved {args[2]} {args[1]}"
    elif cmd == "fund":
        node.fund(args[0], args[1], int(args[2]))
        node.persist()
        return f"  Funded {args[1]} with {args[2]} {args[0]}"
    else:
        return f"  Unknown command: {cmd}. Type 'help'."

    node.persist()
    return f"  {receipt.action}: amount={receipt.amount} rewards={receipt.rewards}"


async def interactive_cli(node: FarmNode):
    """Simple async CLI for interacting with the running node."""
    loop = asyncio.get_event_loop()
    print(HELP)

    while True:
        try:
            line = await loop.run_in_executor(
                None, lambda: input(f"\n[farm #{node.clock.current_block()}] > ")
            )
            parts = line.strip().split()
            if not parts:
                continue
            if parts[0].lower() in ("quit", "exit", "q"):
                print("Shutting down...")
                await node.stop()
                break
            out = run_command(node, parts)
            if out:
                print(out)

        except (EOFError, KeyboardInterrupt):
            print("\nShutting down...")
            await node.stop()
            break
        except FarmError as e:
            print(f"  Rejected: {e.code}: {e.message}")
        except ValueError as e:
            print(f"  Error: {e}")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="FarmFlow staking ledger node")
    p.add_argument("--config", default=None, help="Path to farmflow.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--no-api", action="store_true", help="Do not start the REST API")
    p.add_argument("--no-cli", action="store_true", help="Run without interactive CLI")
    p.add_argument("--fund", nargs=3, action="append", default=[],
                   metavar=("ASSET", "ADDRESS", "AMOUNT"),
                   help="Mint test balance on startup (repeatable)")
    return p.parse_args(argv)


async def main():
    args = parse_args()

    # Load config (TOML + env overrides)
    cfg = load_config(args.config)
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    # CLI flags override config
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port

    node = FarmNode(cfg)
    await node.start(with_api=not args.no_api)

    for asset_id, address, amount in args.fund:
        node.fund(asset_id, address, int(amount))
    if args.fund:
        node.persist()

    if args.no_cli:
        # Run forever without CLI
        try:
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, asyncio.CancelledError):
            await node.stop()
    else:
        await interactive_cli(node)


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
