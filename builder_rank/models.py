"""
Data models for the Builder Rank engine.

Three groups:
- Inputs: raw activity counters per user (shipping, community, trust)
- Outputs: the BuilderRank snapshot, one per username
- Rewards: physical rewards issued for weekly/monthly achievements

Counters are plain non-negative ints. The engine does not validate them;
the HTTP layer rejects negatives before they get here.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


# ---------------------------------------------------------------------------
# Sequential IDs
# ---------------------------------------------------------------------------

_counters: dict[str, int] = defaultdict(int)


def next_id(kind: str) -> int:
    """Sequential ID. Kinds: reward."""
    _counters[kind] += 1
    return _counters[kind]


def reset_counters() -> None:
    """Reset all counters. For testing."""
    _counters.clear()


def set_counter(kind: str, value: int) -> None:
    """Set a counter. For loading persisted state."""
    _counters[kind] = value


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Activity counters (engine inputs)
# ---------------------------------------------------------------------------

@dataclass
class ShippingActivity:
    """Product-building activity. Feeds Shipping Points."""
    projects_registered: int = 0
    launches_submitted: int = 0
    poten_count: int = 0            # milestones earned
    weekly_firsts: int = 0
    monthly_firsts: int = 0


@dataclass
class CommunityActivity:
    """Community participation. Feeds Community Karma."""
    reviews_written: int = 0
    helpful_marks: int = 0
    votes_cast: int = 0
    recommended_builder_potens: int = 0


@dataclass
class RepoSignal:
    name: str
    stars: int = 0


@dataclass
class PackageSignal:
    name: str
    downloads: int = 0


@dataclass
class TrustActivity:
    """
    External-platform signals. Feeds Trust Score.

    repos and packages are summed across entries; only the totals matter.
    """
    repos: list[RepoSignal] = field(default_factory=list)
    release_count: int = 0
    packages: list[PackageSignal] = field(default_factory=list)
    verified_deployments: int = 0


@dataclass
class CarriedStats:
    """Counters stored on the rank but never recomputed by the engine."""
    poten_count: int = 0
    weekly_wins: int = 0
    monthly_wins: int = 0
    promotion_points: int = 0    # earned by giving feedback to others


# ---------------------------------------------------------------------------
# Rank snapshot (engine output)
# ---------------------------------------------------------------------------

@dataclass
class BuilderRank:
    """
    One per username. Created at tier 0, then only ever replaced whole.

    Invariant: tier_score == round_half_up(1.5*sp + 1.0*ck + 0.5*ts)
    Invariant: tier is the highest level whose min_score <= tier_score
    """
    username: str
    tier: int = 0
    shipping_points: int | Decimal = 0
    community_karma: int | Decimal = 0
    trust_score: int = 0
    tier_score: int = 0
    poten_count: int = 0
    weekly_wins: int = 0
    monthly_wins: int = 0
    promotion_points: int = 0
    updated_at: str = field(default_factory=_now)

    @property
    def carried(self) -> CarriedStats:
        return CarriedStats(
            poten_count=self.poten_count,
            weekly_wins=self.weekly_wins,
            monthly_wins=self.monthly_wins,
            promotion_points=self.promotion_points,
        )


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------

@dataclass
class Reward:
    """
    A physical reward owed to a builder.

    status values:
      "eligible"  : issued, waiting for the builder to claim
      "claimed"   : shipping address supplied
      "shipped"   : handed to the carrier
      "delivered" : done

    (username, reason, week_number) is unique across the ledger.
    """
    id: int
    username: str
    reward_type: str      # "sticker_pack", "goodie_kit", ...
    reason: str           # "weekly_poten_1st", "monthly_1st", ...
    week_number: Optional[str] = None
    status: str = "eligible"
    shipping_address: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: str = field(default_factory=_now)
    claimed_at: Optional[str] = None
    shipped_at: Optional[str] = None

    @staticmethod
    def new(username: str, reward_type: str, reason: str,
            week_number: Optional[str] = None) -> "Reward":
        return Reward(
            id=next_id("reward"),
            username=username,
            reward_type=reward_type,
            reason=reason,
            week_number=week_number,
        )

    @property
    def key(self) -> tuple[str, str, Optional[str]]:
        return (self.username, self.reason, self.week_number)
