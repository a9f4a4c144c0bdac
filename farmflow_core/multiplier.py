"""
Bonus-window block multiplier.

Emission between two heights is measured in *block equivalents*: blocks
inside the bonus window count ``bonus_multiplier`` times, blocks after it
count once.  The window boundary itself is never counted twice and never
skipped:

    to <= bonus_end          →  (to - from) × k
    from >= bonus_end        →  (to - from)
    from < bonus_end < to    →  (bonus_end - from) × k + (to - bonus_end)
"""

from __future__ import annotations


def get_multiplier(
    from_block: int,
    to_block: int,
    bonus_end_block: int,
    bonus_multiplier: int,
) -> int:
    """Block equivalents emitted over ``[from_block, to_block)``."""
    if from_block > to_block:
        raise ValueError(
            f"from_block {from_block} is after to_block {to_block}"
        )
    if to_block <= bonus_end_block:
        return (to_block - from_block) * bonus_multiplier
    if from_block >= bonus_end_block:
        return to_block - from_block
    return (
        (bonus_end_block - from_block) * bonus_multiplier
        + (to_block - bonus_end_block)
    )
