"""
FastAPI application. HTTP API for builder ranks and rewards.

Public endpoints (no auth): health, tiers, week, leaderboard, rank detail.
Builder endpoints (API key): /me, key rotation, own rewards, claim, cancel.
Registration is open but a username can only be claimed once.
Admin endpoints (admin key): recompute a rank, credit promotion points,
issue/ship/deliver rewards.

Every mutation runs under app.state.lock and is saved before the lock is
released. That lock is what serializes rank read-modify-write.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Query
from fastapi.exceptions import RequestValidationError

from builder_rank.api_errors import (
    APIError, api_error_handler, translate_engine_error,
    validation_error_handler,
)
from builder_rank.api_models import (
    RegisterRequest, RegisterResponse,
    RecomputeRequest, RankResponse, RankDetail, PromotionRequest,
    ProgressResponse, CapabilitiesResponse,
    DistributionResponse, TierCount, TierResponse,
    WeekResponse, CountdownResponse,
    RewardResponse, IssueRewardRequest, IssueRewardResponse,
    ClaimRewardRequest, ShipRewardRequest, RewardStatsResponse,
    HealthResponse,
)
from builder_rank.auth import AuthStore
from builder_rank.capabilities import (
    can_access_board, can_submit_launch, can_vote,
    promotion_vote_multiplier, vote_weight,
)
from builder_rank.config import ScoringConfig, config_from_env
from builder_rank.middleware import AuthUser, AdminDep
from builder_rank.models import BuilderRank, Reward, reset_counters
from builder_rank.persistence import save_snapshot, load_snapshot
from builder_rank.rank_engine import RankBook, RankNotFound, RankRecalculator
from builder_rank.rewards import (
    InvalidRewardTransition, NotRewardOwner, RewardLedger, RewardNotFound,
)
from builder_rank.tiers import tier_progress
from builder_rank.week_clock import WeekClock


logger = logging.getLogger(__name__)

STATE_PATH = os.environ.get("BUILDER_RANK_STATE", "./builder_rank_state.json")

ENGINE_ERRORS = (ValueError, RankNotFound, RewardNotFound, NotRewardOwner,
                 InvalidRewardTransition)


def install_engine(app: FastAPI, config: ScoringConfig) -> None:
    """
    Attach config-derived engine objects to app.state. A loaded rank book
    is re-resolved against the (possibly retuned) tier table.
    """
    app.state.config = config
    app.state.recalc = RankRecalculator(config)
    app.state.clock = WeekClock(config.timezone)
    book = getattr(app.state, "book", None)
    if book is not None:
        moved = book.retier(config.tiers)
        if moved:
            logger.info("tier table changed: %d ranks re-resolved", moved)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = config_from_env()
    if os.path.exists(STATE_PATH):
        book, ledger, auth_store = load_snapshot(STATE_PATH)
    else:
        logger.info("no snapshot at %s, starting empty", STATE_PATH)
        reset_counters()
        book, ledger, auth_store = RankBook(), RewardLedger(), AuthStore()

    app.state.book = book
    app.state.ledger = ledger
    app.state.auth_store = auth_store
    app.state.lock = asyncio.Lock()
    install_engine(app, config)
    yield


app = FastAPI(title="Builder Rank API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)


def _save():
    """Save state to disk. Called after every mutation."""
    save_snapshot(app.state.book, app.state.ledger, STATE_PATH,
                  auth_store=app.state.auth_store)


# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------

def _rank_response(rank: BuilderRank) -> RankResponse:
    return RankResponse(
        username=rank.username,
        tier=rank.tier,
        tier_name=app.state.config.tiers[rank.tier].name,
        shipping_points=str(rank.shipping_points),
        community_karma=str(rank.community_karma),
        trust_score=rank.trust_score,
        tier_score=rank.tier_score,
        poten_count=rank.poten_count,
        weekly_wins=rank.weekly_wins,
        monthly_wins=rank.monthly_wins,
        promotion_points=rank.promotion_points,
        updated_at=rank.updated_at,
    )


def _rank_detail(rank: BuilderRank,
                 board_min_tier: int | None = None) -> RankDetail:
    tiers = app.state.config.tiers
    p = tier_progress(rank.tier_score, tiers)
    caps = CapabilitiesResponse(
        can_vote=can_vote(rank.tier),
        can_submit_launch=can_submit_launch(),
        vote_weight=vote_weight(rank.tier, tiers),
        vote_multiplier=promotion_vote_multiplier(rank.promotion_points),
        can_access_board=(can_access_board(rank.tier, board_min_tier)
                          if board_min_tier is not None else None),
    )
    return RankDetail(
        **_rank_response(rank).model_dump(),
        progress=ProgressResponse(current_tier=p.current_tier,
                                  progress=p.progress,
                                  next_tier=p.next_tier),
        capabilities=caps,
    )


def _reward_response(r: Reward) -> RewardResponse:
    return RewardResponse(
        reward_id=r.id,
        username=r.username,
        reward_type=r.reward_type,
        reason=r.reason,
        week_number=r.week_number,
        status=r.status,
        shipping_address=r.shipping_address,
        tracking_number=r.tracking_number,
        created_at=r.created_at,
        claimed_at=r.claimed_at,
        shipped_at=r.shipped_at,
    )


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        builders=len(app.state.book.ranks),
        rewards=len(app.state.ledger.rewards),
        week_number=app.state.clock.current_iso_week(),
    )


@app.get("/v1/tiers")
async def list_tiers() -> list[TierResponse]:
    return [
        TierResponse(level=t.level, name=t.name, min_score=t.min_score,
                     vote_weight=t.vote_weight)
        for t in app.state.config.tiers
    ]


@app.get("/v1/week")
async def week(at: datetime | None = None) -> WeekResponse:
    """Competition week state. `at` overrides the current time."""
    clock = app.state.clock
    now = clock.localize(at)
    countdown = clock.time_until_window_closes(now)
    return WeekResponse(
        week_number=clock.current_iso_week(now),
        window_open=clock.is_competition_window_open(now),
        closes_in=(CountdownResponse(hours=countdown.hours,
                                     minutes=countdown.minutes)
                   if countdown else None),
        timezone=str(clock.tz),
    )


@app.get("/v1/ranks")
async def top_builders(limit: int = Query(50, ge=1)) -> list[RankResponse]:
    """Leaderboard ordered by tier score."""
    return [_rank_response(r) for r in app.state.book.top(limit)]


@app.get("/v1/ranks/distribution")
async def tier_distribution() -> DistributionResponse:
    dist = app.state.book.tier_distribution(app.state.config.tiers)
    return DistributionResponse(
        distribution=[TierCount(tier=t, count=c) for t, c in dist.items()],
        total=sum(dist.values()),
    )


@app.get("/v1/ranks/tier/{tier}")
async def builders_in_tier(tier: int) -> list[RankResponse]:
    try:
        app.state.config.tiers[tier]
    except ValueError as e:
        raise translate_engine_error(e)
    return [_rank_response(r) for r in app.state.book.by_tier(tier)]


@app.get("/v1/ranks/{username}")
async def get_rank(username: str,
                   board_min_tier: int | None = None) -> RankDetail:
    """Rank with tier progress and capability gates."""
    try:
        rank = app.state.book.get(username)
    except RankNotFound as e:
        raise translate_engine_error(e)
    return _rank_detail(rank, board_min_tier)


# ---------------------------------------------------------------------------
# Builder endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/auth/register")
async def register(req: RegisterRequest) -> RegisterResponse:
    """Claim a username and get an API key. Creates the tier-0 rank."""
    username = req.username.strip()
    if not username or len(username) > 40:
        raise APIError(400, "invalid_username",
                       "Username must be 1-40 characters")

    async with app.state.lock:
        try:
            user, raw_key = app.state.auth_store.register(username)
        except ValueError as e:
            if str(e) == "username_taken":
                raise APIError(409, "username_taken",
                               f"Username '{username}' is already taken")
            raise
        app.state.book.initialize(username)
        _save()

    return RegisterResponse(api_key=raw_key, username=user.username)


@app.post("/v1/auth/rotate")
async def rotate_key(user: AuthUser) -> RegisterResponse:
    """Replace the caller's API key. The presented key stops working."""
    async with app.state.lock:
        raw_key = app.state.auth_store.rotate_key(user)
        _save()
    return RegisterResponse(api_key=raw_key, username=user.username)


@app.get("/v1/me")
async def get_me(user: AuthUser,
                 board_min_tier: int | None = None) -> RankDetail:
    try:
        rank = app.state.book.get(user.username)
    except RankNotFound as e:
        raise translate_engine_error(e)
    return _rank_detail(rank, board_min_tier)


@app.get("/v1/me/rewards")
async def my_rewards(user: AuthUser,
                     eligible_only: bool = False) -> list[RewardResponse]:
    ledger = app.state.ledger
    rewards = (ledger.eligible_for(user.username) if eligible_only
               else ledger.for_user(user.username))
    return [_reward_response(r) for r in rewards]


@app.get("/v1/me/rewards/stats")
async def my_reward_stats(user: AuthUser) -> RewardStatsResponse:
    return RewardStatsResponse(**app.state.ledger.user_stats(user.username))


@app.post("/v1/rewards/{reward_id}/claim")
async def claim_reward(reward_id: int, req: ClaimRewardRequest,
                       user: AuthUser) -> RewardResponse:
    async with app.state.lock:
        try:
            reward = app.state.ledger.claim(reward_id, user.username,
                                            req.shipping_address)
            _save()
        except ENGINE_ERRORS as e:
            raise translate_engine_error(e)
    return _reward_response(reward)


@app.delete("/v1/rewards/{reward_id}")
async def cancel_reward(reward_id: int, user: AuthUser) -> dict:
    async with app.state.lock:
        try:
            app.state.ledger.cancel(reward_id, user.username)
            _save()
        except ENGINE_ERRORS as e:
            raise translate_engine_error(e)
    return {"reward_id": reward_id, "status": "cancelled"}


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/ranks/{username}/recompute")
async def admin_recompute(username: str, req: RecomputeRequest,
                          _: AdminDep) -> RankDetail:
    """Recompute from fresh counters and replace the stored rank whole."""
    carried = req.carried.to_stats() if req.carried else None
    async with app.state.lock:
        rank = app.state.book.recompute_and_store(
            app.state.recalc, username,
            req.shipping.to_activity(),
            req.community.to_activity(),
            req.trust.to_activity(),
            carried=carried,
        )
        _save()
    return _rank_detail(rank)


@app.post("/v1/admin/ranks/{username}/promotion")
async def admin_add_promotion(username: str, req: PromotionRequest,
                              _: AdminDep) -> RankDetail:
    """Credit promotion points earned by reviewing other builders."""
    async with app.state.lock:
        try:
            rank = app.state.book.add_promotion_points(username, req.points)
        except RankNotFound as e:
            raise translate_engine_error(e)
        _save()
    return _rank_detail(rank)


@app.post("/v1/admin/rewards")
async def admin_issue_reward(req: IssueRewardRequest,
                             _: AdminDep) -> IssueRewardResponse:
    """Issue a reward. A repeat for the same week returns "duplicate"."""
    week_number = req.week_number or app.state.clock.current_iso_week()
    async with app.state.lock:
        try:
            result = app.state.ledger.issue(req.username, req.reason,
                                            week_number)
        except ValueError as e:
            raise translate_engine_error(e)
        if result.created:
            _save()
    return IssueRewardResponse(status=result.status,
                               reward=_reward_response(result.reward))


@app.get("/v1/admin/rewards")
async def admin_rewards_by_status(status: str,
                                  _: AdminDep) -> list[RewardResponse]:
    try:
        rewards = app.state.ledger.by_status(status)
    except ValueError as e:
        raise translate_engine_error(e)
    return [_reward_response(r) for r in rewards]


@app.post("/v1/admin/rewards/{reward_id}/ship")
async def admin_ship_reward(reward_id: int, req: ShipRewardRequest,
                            _: AdminDep) -> RewardResponse:
    async with app.state.lock:
        try:
            reward = app.state.ledger.mark_shipped(reward_id,
                                                   req.tracking_number)
            _save()
        except ENGINE_ERRORS as e:
            raise translate_engine_error(e)
    return _reward_response(reward)


@app.post("/v1/admin/rewards/{reward_id}/deliver")
async def admin_deliver_reward(reward_id: int,
                               _: AdminDep) -> RewardResponse:
    async with app.state.lock:
        try:
            reward = app.state.ledger.mark_delivered(reward_id)
            _save()
        except ENGINE_ERRORS as e:
            raise translate_engine_error(e)
    return _reward_response(reward)
