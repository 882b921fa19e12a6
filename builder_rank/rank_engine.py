"""
Rank engine. Recalculates builder ranks and keeps the rank book.

RankRecalculator is pure: counters in, BuilderRank out. Same inputs give
the same tier_score and tier on every call; only updated_at moves.

RankBook is the in-memory builderRanks collection: one rank per
username, created once at tier 0, afterwards only replaced whole. It
never patches single fields, so scores computed together stay together.

Concurrency: recompute_and_store is a read-modify-write (it reads the
carried stats from the stored rank). Two unserialized calls for the same
username can lose an update. Callers hold a lock around it: the API uses
app.state.lock, the CLI an exclusive file lock.
"""

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Optional

from builder_rank.config import ScoringConfig, TierTable
from builder_rank.models import (
    BuilderRank, CarriedStats,
    CommunityActivity, ShippingActivity, TrustActivity,
)
from builder_rank.scoring import (
    community_karma, shipping_points, tier_score, trust_score,
)
from builder_rank.tiers import tier_from_score


logger = logging.getLogger(__name__)


class RankNotFound(Exception):
    pass


def create_initial_rank(username: str,
                        now: Optional[datetime] = None) -> BuilderRank:
    """Tier 0, all zeros. What every builder starts with."""
    rank = BuilderRank(username=username)
    if now is not None:
        rank.updated_at = now.isoformat()
    return rank


class RankRecalculator:

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    def recompute(self, username: str,
                  shipping: ShippingActivity,
                  community: CommunityActivity,
                  trust: TrustActivity,
                  carried: CarriedStats,
                  now: Optional[datetime] = None) -> BuilderRank:
        """Full rank snapshot from raw counters. No I/O."""
        sp = shipping_points(shipping, self.config.shipping)
        ck = community_karma(community, self.config.karma)
        ts = trust_score(trust)
        score = tier_score(sp, ck, ts)
        stamp = now or datetime.now(timezone.utc)
        return BuilderRank(
            username=username,
            tier=tier_from_score(score, self.config.tiers),
            shipping_points=sp,
            community_karma=ck,
            trust_score=ts,
            tier_score=score,
            poten_count=carried.poten_count,
            weekly_wins=carried.weekly_wins,
            monthly_wins=carried.monthly_wins,
            promotion_points=carried.promotion_points,
            updated_at=stamp.isoformat(),
        )


class RankBook:

    def __init__(self):
        self.ranks: dict[str, BuilderRank] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, username: str) -> BuilderRank:
        """Create the tier-0 rank. Returns the existing one if present."""
        existing = self.ranks.get(username)
        if existing is not None:
            return existing
        rank = create_initial_rank(username)
        self.ranks[username] = rank
        logger.info("builder rank created for %s", username)
        return rank

    def replace(self, rank: BuilderRank) -> BuilderRank:
        """Store `rank` as the whole document for its username."""
        previous = self.ranks.get(rank.username)
        self.ranks[rank.username] = rank
        if previous is not None and previous.tier != rank.tier:
            logger.info("builder %s moved tier %d -> %d", rank.username,
                        previous.tier, rank.tier)
        return rank

    def recompute_and_store(self, recalculator: RankRecalculator,
                            username: str,
                            shipping: ShippingActivity,
                            community: CommunityActivity,
                            trust: TrustActivity,
                            carried: Optional[CarriedStats] = None,
                            now: Optional[datetime] = None) -> BuilderRank:
        """
        Read carried stats, recompute, write back the full snapshot.
        A missing rank is created first. Must run under the caller's lock.
        """
        current = self.initialize(username)
        if carried is None:
            carried = current.carried
        rank = recalculator.recompute(username, shipping, community,
                                      trust, carried, now=now)
        logger.info("builder rank recomputed for %s: score=%d tier=%d",
                    username, rank.tier_score, rank.tier)
        return self.replace(rank)

    def add_promotion_points(self, username: str, points: int,
                             now: Optional[datetime] = None) -> BuilderRank:
        """Credit feedback points. Scores and tier are left untouched."""
        current = self.get(username)
        stamp = now or datetime.now(timezone.utc)
        rank = dataclasses.replace(
            current, promotion_points=current.promotion_points + points,
            updated_at=stamp.isoformat())
        logger.info("builder %s promotion points %d -> %d", username,
                    current.promotion_points, rank.promotion_points)
        return self.replace(rank)

    def retier(self, tiers: TierTable) -> int:
        """
        Re-resolve every stored tier against `tiers`. Run after the tier
        table is retuned; stored levels may no longer exist. Returns the
        number of ranks that moved.
        """
        moved = 0
        for rank in list(self.ranks.values()):
            level = tiers.level_for(rank.tier_score)
            if level != rank.tier:
                self.replace(dataclasses.replace(rank, tier=level))
                moved += 1
        return moved

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, username: str) -> BuilderRank:
        rank = self.ranks.get(username)
        if rank is None:
            raise RankNotFound(f"builder rank for {username} not found")
        return rank

    def top(self, limit: int = 50) -> list[BuilderRank]:
        """Leaderboard: highest tier_score first, ties by username."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        ordered = sorted(self.ranks.values(),
                         key=lambda r: (-r.tier_score, r.username))
        return ordered[:limit]

    def by_tier(self, tier: int) -> list[BuilderRank]:
        return sorted((r for r in self.ranks.values() if r.tier == tier),
                      key=lambda r: r.username)

    def tier_distribution(self, tiers: TierTable) -> dict[int, int]:
        """Builders per tier level. Every level present, zeros included."""
        distribution = {t.level: 0 for t in tiers}
        for rank in self.ranks.values():
            distribution[rank.tier] = distribution.get(rank.tier, 0) + 1
        return distribution
