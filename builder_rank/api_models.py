"""
Pydantic request/response models for the API.
Point totals are strings: configured point values may be fractional
Decimals, and strings avoid IEEE 754 issues.
Counters are validated non-negative here, at the boundary; the engine
itself trusts its inputs.
"""

from pydantic import BaseModel, Field

from builder_rank.models import (
    CarriedStats, CommunityActivity, PackageSignal, RepoSignal,
    ShippingActivity, TrustActivity,
)


# --- Auth ---

class RegisterRequest(BaseModel):
    username: str

class RegisterResponse(BaseModel):
    api_key: str
    username: str


# --- Counters ---

class ShippingCounters(BaseModel):
    projects_registered: int = Field(0, ge=0)
    launches_submitted: int = Field(0, ge=0)
    poten_count: int = Field(0, ge=0)
    weekly_firsts: int = Field(0, ge=0)
    monthly_firsts: int = Field(0, ge=0)

    def to_activity(self) -> ShippingActivity:
        return ShippingActivity(**self.model_dump())

class CommunityCounters(BaseModel):
    reviews_written: int = Field(0, ge=0)
    helpful_marks: int = Field(0, ge=0)
    votes_cast: int = Field(0, ge=0)
    recommended_builder_potens: int = Field(0, ge=0)

    def to_activity(self) -> CommunityActivity:
        return CommunityActivity(**self.model_dump())

class RepoEntry(BaseModel):
    name: str
    stars: int = Field(0, ge=0)

class PackageEntry(BaseModel):
    name: str
    downloads: int = Field(0, ge=0)

class TrustCounters(BaseModel):
    repos: list[RepoEntry] = []
    release_count: int = Field(0, ge=0)
    packages: list[PackageEntry] = []
    verified_deployments: int = Field(0, ge=0)

    def to_activity(self) -> TrustActivity:
        return TrustActivity(
            repos=[RepoSignal(r.name, r.stars) for r in self.repos],
            release_count=self.release_count,
            packages=[PackageSignal(p.name, p.downloads)
                      for p in self.packages],
            verified_deployments=self.verified_deployments,
        )

class CarriedCounters(BaseModel):
    poten_count: int = Field(0, ge=0)
    weekly_wins: int = Field(0, ge=0)
    monthly_wins: int = Field(0, ge=0)
    promotion_points: int = Field(0, ge=0)

    def to_stats(self) -> CarriedStats:
        return CarriedStats(**self.model_dump())

class RecomputeRequest(BaseModel):
    shipping: ShippingCounters = ShippingCounters()
    community: CommunityCounters = CommunityCounters()
    trust: TrustCounters = TrustCounters()
    carried: CarriedCounters | None = None    # None = keep stored stats


# --- Ranks ---

class RankResponse(BaseModel):
    username: str
    tier: int
    tier_name: str
    shipping_points: str
    community_karma: str
    trust_score: int
    tier_score: int
    poten_count: int
    weekly_wins: int
    monthly_wins: int
    promotion_points: int
    updated_at: str

class ProgressResponse(BaseModel):
    current_tier: int
    progress: int
    next_tier: int | None

class CapabilitiesResponse(BaseModel):
    can_vote: bool
    can_submit_launch: bool
    vote_weight: int
    vote_multiplier: int
    can_access_board: bool | None = None

class RankDetail(RankResponse):
    progress: ProgressResponse
    capabilities: CapabilitiesResponse

class PromotionRequest(BaseModel):
    points: int = Field(..., ge=1)

class TierCount(BaseModel):
    tier: int
    count: int

class DistributionResponse(BaseModel):
    distribution: list[TierCount]
    total: int

class TierResponse(BaseModel):
    level: int
    name: str
    min_score: int
    vote_weight: int


# --- Week ---

class CountdownResponse(BaseModel):
    hours: int
    minutes: int

class WeekResponse(BaseModel):
    week_number: str
    window_open: bool
    closes_in: CountdownResponse | None
    timezone: str


# --- Rewards ---

class RewardResponse(BaseModel):
    reward_id: int
    username: str
    reward_type: str
    reason: str
    week_number: str | None
    status: str
    shipping_address: str | None
    tracking_number: str | None
    created_at: str
    claimed_at: str | None
    shipped_at: str | None

class IssueRewardRequest(BaseModel):
    username: str
    reason: str
    week_number: str | None = None     # None = current ISO week

class IssueRewardResponse(BaseModel):
    status: str                        # "created" | "duplicate"
    reward: RewardResponse

class ClaimRewardRequest(BaseModel):
    shipping_address: str

class ShipRewardRequest(BaseModel):
    tracking_number: str | None = None

class RewardStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]


class HealthResponse(BaseModel):
    status: str
    builders: int
    rewards: int
    week_number: str
