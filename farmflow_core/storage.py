"""
SQLite-based persistence for FarmFlow ledger state.

Stores the emission config, pool table, positions and the in-memory asset
books so a node can pick up where it stopped.  Accumulators and amounts
are arbitrary-precision Python ints, so they are written as TEXT.

Usage:
    store = FarmStore("data/farmflow.db")
    store.snapshot_state(engine.state, owner=engine.owner.identity, books=books)
    restored = store.restore_state()      # (LedgerState, owner) or None
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from farmflow_core.assets import AssetBook
from farmflow_core.state import GlobalConfig, LedgerState, PoolInfo, UserInfo

logger = logging.getLogger("farmflow_storage")


class FarmStore:
    """Thin SQLite wrapper for persisting ledger state."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/farmflow.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; multi-statement writes go through _tx().
        self._conn = sqlite3.connect(db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        c = self._conn
        c.execute("BEGIN IMMEDIATE")
        try:
            yield c
        except Exception:
            c.execute("ROLLBACK")
            raise
        c.execute("COMMIT")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._tx() as c:
            c.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS pools (
                    pool_id           INTEGER PRIMARY KEY,
                    stake_asset       TEXT NOT NULL,
                    alloc_point       TEXT NOT NULL,
                    last_reward_block INTEGER NOT NULL,
                    acc_json          TEXT NOT NULL,
                    total_staked      TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    pool_id   INTEGER NOT NULL,
                    depositor TEXT NOT NULL,
                    amount    TEXT NOT NULL,
                    debt_json TEXT NOT NULL,
                    PRIMARY KEY (pool_id, depositor)
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS asset_balances (
                    asset_id TEXT NOT NULL,
                    address  TEXT NOT NULL,
                    balance  TEXT NOT NULL,
                    PRIMARY KEY (asset_id, address)
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS asset_allowances (
                    asset_id TEXT NOT NULL,
                    owner    TEXT NOT NULL,
                    spender  TEXT NOT NULL,
                    amount   TEXT NOT NULL,
                    PRIMARY KEY (asset_id, owner, spender)
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS asset_supply (
                    asset_id     TEXT PRIMARY KEY,
                    total_supply TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    id      INTEGER PRIMARY KEY CHECK (id = 1),
                    version INTEGER NOT NULL
                )
            """)

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade FarmFlow."
            )

    # ── ledger state ─────────────────────────────────────────────

    def snapshot_state(
        self,
        state: LedgerState,
        owner: str,
        books: Iterable[AssetBook] = (),
        block_height: int | None = None,
    ) -> None:
        """Persist ledger state and *books* in one transaction.

        Positions and pool stake totals are only meaningful together with
        the custody balances backing them, so both commit or neither does.
        """
        meta = [
            ("config", json.dumps(state.config.to_dict())),
            ("owner", owner),
            ("total_alloc_point", str(state.total_alloc_point)),
        ]
        if block_height is not None:
            meta.append(("block_height", str(block_height)))
        with self._tx() as c:
            c.executemany(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", meta,
            )
            c.executemany(
                """INSERT OR REPLACE INTO pools
                   (pool_id, stake_asset, alloc_point, last_reward_block,
                    acc_json, total_staked)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (p.pool_id, p.stake_asset, str(p.alloc_point),
                     p.last_reward_block,
                     json.dumps([str(a) for a in p.acc_reward_per_share]),
                     str(p.total_staked))
                    for p in state.pools
                ],
            )
            c.executemany(
                """INSERT OR REPLACE INTO positions
                   (pool_id, depositor, amount, debt_json)
                   VALUES (?, ?, ?, ?)""",
                [
                    (pid, who, str(info.amount),
                     json.dumps([str(d) for d in info.reward_debt]))
                    for (pid, who), info in state.positions.items()
                ],
            )
            for book in books:
                self._write_asset_book(c, book)
        logger.debug(
            f"Snapshot saved: {len(state.pools)} pools, {len(state.positions)} positions"
        )

    def restore_state(self) -> tuple[LedgerState, str] | None:
        """Rebuild ``(LedgerState, owner)``; ``None`` for an empty database."""
        meta = {
            r["key"]: r["value"]
            for r in self._conn.execute("SELECT key, value FROM meta").fetchall()
        }
        if "config" not in meta:
            return None

        raw = json.loads(meta["config"])
        config = GlobalConfig(
            start_block=raw["start_block"],
            bonus_end_block=raw["bonus_end_block"],
            reward_assets=tuple(raw["reward_assets"]),
            reward_per_block=tuple(raw["reward_per_block"]),
            dev_address=raw["dev_address"],
            bonus_multiplier=raw["bonus_multiplier"],
            dev_cut_divisor=raw["dev_cut_divisor"],
            custody_address=raw["custody_address"],
        )
        state = LedgerState(config=config, total_alloc_point=int(meta["total_alloc_point"]))

        for row in self._conn.execute("SELECT * FROM pools ORDER BY pool_id").fetchall():
            state.pools.append(PoolInfo(
                pool_id=row["pool_id"],
                stake_asset=row["stake_asset"],
                alloc_point=int(row["alloc_point"]),
                last_reward_block=row["last_reward_block"],
                acc_reward_per_share=[int(a) for a in json.loads(row["acc_json"])],
                total_staked=int(row["total_staked"]),
            ))
        for row in self._conn.execute("SELECT * FROM positions").fetchall():
            state.positions[(row["pool_id"], row["depositor"])] = UserInfo(
                amount=int(row["amount"]),
                reward_debt=[int(d) for d in json.loads(row["debt_json"])],
            )
        logger.info(
            f"Restored {len(state.pools)} pools and {len(state.positions)} positions"
        )
        return state, meta["owner"]

    # ── node metadata ────────────────────────────────────────────

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row is not None else None

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value),
        )

    # ── asset books ──────────────────────────────────────────────

    @staticmethod
    def _write_asset_book(c: sqlite3.Connection, book: AssetBook) -> None:
        c.execute("DELETE FROM asset_balances WHERE asset_id = ?", (book.asset_id,))
        c.execute("DELETE FROM asset_allowances WHERE asset_id = ?", (book.asset_id,))
        c.executemany(
            "INSERT INTO asset_balances (asset_id, address, balance) VALUES (?, ?, ?)",
            [(book.asset_id, addr, str(bal)) for addr, bal in book.balances.items()],
        )
        c.executemany(
            """INSERT INTO asset_allowances (asset_id, owner, spender, amount)
               VALUES (?, ?, ?, ?)""",
            [
                (book.asset_id, owner, spender, str(amount))
                for (owner, spender), amount in book.allowances.items()
            ],
        )
        c.execute(
            "INSERT OR REPLACE INTO asset_supply (asset_id, total_supply) VALUES (?, ?)",
            (book.asset_id, str(book.total_supply)),
        )

    def load_asset_book(self, book: AssetBook) -> bool:
        """Fill *book* from the database; return False if nothing was stored."""
        row = self._conn.execute(
            "SELECT total_supply FROM asset_supply WHERE asset_id = ?", (book.asset_id,)
        ).fetchone()
        if row is None:
            return False
        book.total_supply = int(row["total_supply"])
        book.balances = {
            r["address"]: int(r["balance"])
            for r in self._conn.execute(
                "SELECT address, balance FROM asset_balances WHERE asset_id = ?",
                (book.asset_id,),
            ).fetchall()
        }
        book.allowances = {
            (r["owner"], r["spender"]): int(r["amount"])
            for r in self._conn.execute(
                "SELECT owner, spender, amount FROM asset_allowances WHERE asset_id = ?",
                (book.asset_id,),
            ).fetchall()
        }
        return True

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
