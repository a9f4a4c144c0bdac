"""
Shared pytest fixtures for the FarmFlow test suite.
"""

import os
import sys

import pytest

# Make run_farm and farmflow_core importable without pip install.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from farmflow_core.assets import AssetBook, ManualBlockClock  # noqa: E402
from farmflow_core.engine import RewardEngine  # noqa: E402

OWNER = "owner"
DEV = "dev"
START_BLOCK = 100
BONUS_END = 1000


def fund(engine, book, who, amount):
    """Mint *amount* to *who* and let the ledger custody pull all of it."""
    book.mint(who, amount)
    book.approve(who, engine.custody, book.allowance(who, engine.custody) + amount)


@pytest.fixture
def clock():
    return ManualBlockClock(0)


@pytest.fixture
def tka():
    return AssetBook("TKA")


@pytest.fixture
def tkb():
    return AssetBook("TKB")


@pytest.fixture
def lp():
    return AssetBook("LP")


@pytest.fixture
def engine(clock, tka, tkb):
    """Two reward assets at 100 / 150 per block, bonus x10 until block 1000."""
    return RewardEngine(
        owner=OWNER,
        start_block=START_BLOCK,
        dev_address=DEV,
        reward_tokens=[tka, tkb],
        reward_per_block=[100, 150],
        bonus_end_block=BONUS_END,
        clock=clock,
        check_invariants=True,
    )


@pytest.fixture
def farm(engine, lp):
    """Engine with one LP pool (alloc 100) and three funded stakers."""
    engine.add_pool(OWNER, 100, lp)
    for who in ("alice", "bob", "carol"):
        fund(engine, lp, who, 1_000)
    return engine


@pytest.fixture
def funder(engine):
    """``funder(book, who, amount)``: mint and approve against *engine*."""
    def _fund(book, who, amount):
        fund(engine, book, who, amount)
    return _fund
