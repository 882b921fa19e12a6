"""
Capability gates. Pure predicates over a tier level.
"""

from builder_rank.config import DEFAULT_TIERS, TierTable


# (min promotion points, vote multiplier), highest first
PROMOTION_MULTIPLIERS = ((151, 5), (51, 3), (11, 2))


def can_vote(tier: int) -> bool:
    """Cadet (T1) and up."""
    return tier >= 1


def can_access_board(tier: int, board_min_tier: int) -> bool:
    return tier >= board_min_tier


def can_submit_launch() -> bool:
    # Every tier may submit launches, Ground Control included.
    return True


def vote_weight(tier: int, tiers: TierTable = DEFAULT_TIERS) -> int:
    return tiers[tier].vote_weight


def promotion_vote_multiplier(promotion_points: int) -> int:
    """Extra vote multiplier earned by giving feedback to other builders."""
    for threshold, multiplier in PROMOTION_MULTIPLIERS:
        if promotion_points >= threshold:
            return multiplier
    return 1
