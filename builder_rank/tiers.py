"""
Tier resolution. Maps a composite score onto the tier table and reports
progress toward the next tier.

The table is passed in, never looked up globally. Resolution is a binary
search over the table's min_score column, so equal minimums resolve to
the highest level that shares them.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from builder_rank.config import DEFAULT_TIERS, TierDefinition, TierTable
from builder_rank.scoring import round_half_up


@dataclass(frozen=True)
class TierProgress:
    current_tier: int
    progress: int               # 0-100
    next_tier: Optional[int]    # None at max tier


def tier_from_score(score, tiers: TierTable = DEFAULT_TIERS) -> int:
    return tiers.level_for(score)


def tier_info(tier: int, tiers: TierTable = DEFAULT_TIERS) -> TierDefinition:
    return tiers[tier]


def tier_progress(score, tiers: TierTable = DEFAULT_TIERS) -> TierProgress:
    """
    Percentage of the way from the current tier's minimum to the next's.

    Max tier is always 100. A zero-width range counts as 100. A score
    still below the next minimum never reports 100, even when rounding
    would get there on a wide range (1499/1500 -> 99, not 100).
    """
    current = tier_from_score(score, tiers)
    if current == tiers.max_level:
        return TierProgress(current_tier=current, progress=100,
                            next_tier=None)

    nxt = current + 1
    current_min = tiers[current].min_score
    next_min = tiers[nxt].min_score
    span = next_min - current_min
    if span <= 0:
        return TierProgress(current_tier=current, progress=100,
                            next_tier=nxt)

    progress = round_half_up(Decimal(str(score - current_min)) * 100 / span)
    progress = min(100, max(0, progress))
    if progress == 100 and score < next_min:
        progress = 99
    return TierProgress(current_tier=current, progress=progress,
                        next_tier=nxt)
