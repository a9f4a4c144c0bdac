"""
FarmFlow - a multi-pool, multi-reward staking ledger.

Key features:
- Lazy per-pool accrual with fixed-point reward-per-share accumulators
- Several reward assets emitted side by side, each with its own rate
- Bonus window with a block multiplier
- Developer cut minted alongside every emission
- Emergency withdraw that forfeits rewards
- All-or-nothing calls with optional invariant checking
"""

__version__ = "0.1.0"
__all__ = [
    "assets",
    "auth",
    "config",
    "engine",
    "errors",
    "invariants",
    "multiplier",
    "pool",
    "position",
    "precision",
    "state",
    "storage",
    "api",
]
