"""Token accounting: the single measure of memory mass."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memrefine.db.sqlite import SQLiteManager

CHARS_PER_TOKEN = 4


def estimate(content: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Estimate tokens as ceil(len(content) / chars_per_token).

    Pure and monotonic in length; cheap enough to run after every mutation.
    """
    length = len(content or "")
    return -(-length // max(1, int(chars_per_token)))


def total_mass(db: "SQLiteManager", owner_id: str) -> int:
    """Sum of token estimates over the owner's non-discarded core records.

    Reads through the manager's shared connection, so writes made earlier in
    the same transaction are visible.
    """
    return db.sum_token_estimates(owner_id, memory_type="core")


def retained_ratio(pre_mass: int, current_mass: int) -> float:
    if pre_mass <= 0:
        return 1.0
    return current_mass / pre_mass


def breaches_threshold(pre_mass: int, current_mass: int, threshold: float) -> bool:
    """True when the retained fraction of mass fell below ``threshold``."""
    return pre_mass > 0 and current_mass / pre_mass < threshold
