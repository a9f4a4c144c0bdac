"""
TOML-based configuration for FarmFlow nodes.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from farmflow_core.config import load_config
    cfg = load_config("farmflow.toml")

Example file::

    [farm]
    owner = "owner"
    dev_address = "dev"
    start_block = 100
    bonus_end_block = 1100
    reward_assets = ["TKA", "TKB"]
    reward_per_block = [100, 150]

    [[farm.pools]]
    stake_asset = "LP-USDC-USDT"
    alloc_point = 100

    [api.account_keys]
    owner = "change-me"
    alice = "alice-secret"
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class PoolSeed:
    """A pool created by the owner when the node first starts."""
    stake_asset: str
    alloc_point: int = 100


@dataclass
class FarmConfig:
    """Emission schedule and privileged addresses."""
    owner: str = "owner"
    dev_address: str = "dev"
    custody_address: str = "farm-custody"
    start_block: int = 0
    bonus_end_block: int = 0
    bonus_multiplier: int = 10
    dev_cut_divisor: int = 10
    reward_assets: list[str] = field(default_factory=lambda: ["FARM"])
    reward_per_block: list[int] = field(default_factory=lambda: [100])
    check_invariants: bool = False
    pools: list[PoolSeed] = field(default_factory=list)


@dataclass
class ChainConfig:
    """Block height source for the running node."""
    block_seconds: float = 12.0
    genesis_time: float = 0.0   # 0 = node start time
    genesis_height: int = 0


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                  # require this key on POST endpoints (empty = no auth)
    # account -> secret proving that account on transaction endpoints
    account_keys: dict[str, str] = field(default_factory=dict)
    rate_limit_rpm: int = 120          # per-IP requests per minute (0 = unlimited)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/farmflow.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class FarmFlowConfig:
    """Top-level configuration container."""
    farm: FarmConfig = field(default_factory=FarmConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _pool_seeds(raw: list[dict[str, Any]]) -> list[PoolSeed]:
    seeds = []
    for entry in raw:
        if "stake_asset" not in entry:
            raise ValueError("every [[farm.pools]] entry needs a stake_asset")
        seeds.append(PoolSeed(
            stake_asset=str(entry["stake_asset"]),
            alloc_point=int(entry.get("alloc_point", 100)),
        ))
    return seeds


def _parse_account_keys(raw: str) -> dict[str, str]:
    keys = {}
    for pair in raw.split(","):
        account, sep, key = pair.strip().partition("=")
        if not sep or not account or not key:
            raise ValueError(f"FARMFLOW_ACCOUNT_KEYS entry {pair!r} is not account=key")
        keys[account] = key
    return keys


def load_config(path: str | None = None) -> FarmFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        FARMFLOW_OWNER            -> farm.owner
        FARMFLOW_DEV_ADDRESS      -> farm.dev_address
        FARMFLOW_START_BLOCK      -> farm.start_block
        FARMFLOW_BONUS_END_BLOCK  -> farm.bonus_end_block
        FARMFLOW_API_PORT         -> api.port
        FARMFLOW_API_KEY          -> api.api_key
        FARMFLOW_ACCOUNT_KEYS     -> api.account_keys  ("alice=k1,bob=k2")
        FARMFLOW_LOG_LEVEL        -> logging.level
        FARMFLOW_LOG_FMT          -> logging.format
        FARMFLOW_DB_PATH          -> storage.path   (also enables storage)
    """
    cfg = FarmFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            farm_raw = dict(data.get("farm", {}))
            pools_raw = farm_raw.pop("pools", [])
            _merge(cfg.farm, farm_raw)
            cfg.farm.pools = _pool_seeds(pools_raw)
            for section_name, section_dc in [
                ("chain", cfg.chain),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("FARMFLOW_OWNER"):
        cfg.farm.owner = v
    if v := os.environ.get("FARMFLOW_DEV_ADDRESS"):
        cfg.farm.dev_address = v
    if v := os.environ.get("FARMFLOW_START_BLOCK"):
        cfg.farm.start_block = int(v)
    if v := os.environ.get("FARMFLOW_BONUS_END_BLOCK"):
        cfg.farm.bonus_end_block = int(v)
    if v := os.environ.get("FARMFLOW_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("FARMFLOW_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("FARMFLOW_ACCOUNT_KEYS"):
        cfg.api.account_keys = _parse_account_keys(v)
    if v := os.environ.get("FARMFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("FARMFLOW_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("FARMFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True

    return cfg
