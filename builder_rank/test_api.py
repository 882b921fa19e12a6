"""
API tests. Uses httpx AsyncClient with FastAPI's ASGI transport.

Covers:
- Registration creates a tier-0 rank; a taken username is refused and
  only the key holder can rotate the key
- Public rank, leaderboard, distribution, tier and week data
- Admin recompute (full replace, carried stats, boundary validation)
- Auth boundaries (no key, wrong key, admin key on builder endpoints)
- Reward issuance with duplicate outcome and the shipping lifecycle
"""

import asyncio
import os

import pytest
from httpx import ASGITransport, AsyncClient

# Set admin key and state path before importing app
os.environ["BUILDER_RANK_ADMIN_KEY"] = "test-admin-key"
os.environ["BUILDER_RANK_STATE"] = "/tmp/builder_rank_test_state.json"

from builder_rank.api import app, install_engine
from builder_rank.auth import AuthStore
from builder_rank.config import ScoringConfig, TierDefinition, TierTable
from builder_rank.models import reset_counters
from builder_rank.rank_engine import RankBook
from builder_rank.rewards import RewardLedger


ADMIN_HEADERS = {"Authorization": "Bearer test-admin-key"}

REFERENCE_COUNTERS = {
    "shipping": {"projects_registered": 1, "launches_submitted": 2,
                 "poten_count": 1},
    "community": {"reviews_written": 3, "helpful_marks": 2, "votes_cast": 4},
    "trust": {
        "repos": [{"name": "alpha", "stars": 1200},
                  {"name": "beta", "stars": 300}],
        "release_count": 12,
        "packages": [{"name": "pkg", "downloads": 250000}],
        "verified_deployments": 1,
    },
}


@pytest.fixture
async def client():
    """Fresh app state for each test."""
    reset_counters()
    install_engine(app, ScoringConfig())
    app.state.book = RankBook()
    app.state.ledger = RewardLedger()
    app.state.auth_store = AuthStore()
    app.state.lock = asyncio.Lock()

    try:
        os.remove("/tmp/builder_rank_test_state.json")
    except FileNotFoundError:
        pass

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _register(client: AsyncClient, username="alice") -> str:
    resp = await client.post("/v1/auth/register", json={"username": username})
    assert resp.status_code == 200
    return resp.json()["api_key"]


def _user_headers(api_key: str) -> dict:
    return {"Authorization": f"Bearer {api_key}"}


async def _recompute(client: AsyncClient, username: str, body: dict):
    return await client.post(f"/v1/admin/ranks/{username}/recompute",
                             json=body, headers=ADMIN_HEADERS)


# ---------------------------------------------------------------------------
# Health + static data
# ---------------------------------------------------------------------------

class TestPublic:
    async def test_health(self, client):
        resp = await client.get("/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["builders"] == 0
        assert data["rewards"] == 0
        assert "-W" in data["week_number"]

    async def test_tiers(self, client):
        resp = await client.get("/v1/tiers")
        tiers = resp.json()
        assert len(tiers) == 8
        assert tiers[3] == {"level": 3, "name": "Astronaut",
                            "min_score": 150, "vote_weight": 2}

    async def test_week_at_year_boundary(self, client):
        resp = await client.get("/v1/week",
                                params={"at": "2024-12-31T10:00:00"})
        data = resp.json()
        assert data["week_number"] == "2025-W01"
        assert data["window_open"] is True
        assert data["closes_in"] == {"hours": 85, "minutes": 59}
        assert data["timezone"] == "UTC"

    async def test_week_weekend(self, client):
        resp = await client.get("/v1/week",
                                params={"at": "2024-01-06T10:00:00+00:00"})
        data = resp.json()
        assert data["window_open"] is False
        assert data["closes_in"] is None


# ---------------------------------------------------------------------------
# Registration + auth
# ---------------------------------------------------------------------------

class TestAuth:
    async def test_register_creates_tier_zero_rank(self, client):
        key = await _register(client, "alice")
        resp = await client.get("/v1/me", headers=_user_headers(key))
        assert resp.status_code == 200
        data = resp.json()
        assert data["username"] == "alice"
        assert data["tier"] == 0
        assert data["tier_name"] == "Ground Control"
        assert data["capabilities"]["can_vote"] is False
        assert data["capabilities"]["can_submit_launch"] is True

    async def test_taken_username_rejected(self, client):
        key = await _register(client, "alice")
        await _issue(client, "alice", "monthly_1st")

        resp = await client.post("/v1/auth/register",
                                 json={"username": "alice"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "username_taken"
        assert "api_key" not in resp.json()

        # Original owner keeps access
        resp = await client.get("/v1/me/rewards", headers=_user_headers(key))
        assert resp.status_code == 200
        assert len(resp.json()) == 1

    async def test_taken_username_after_strip(self, client):
        await _register(client, "alice")
        resp = await client.post("/v1/auth/register",
                                 json={"username": "  alice "})
        assert resp.status_code == 409

    async def test_rotate_key(self, client):
        key1 = await _register(client, "alice")
        resp = await client.post("/v1/auth/rotate",
                                 headers=_user_headers(key1))
        assert resp.status_code == 200
        assert resp.json()["username"] == "alice"
        key2 = resp.json()["api_key"]
        assert key2 != key1

        resp = await client.get("/v1/me", headers=_user_headers(key1))
        assert resp.status_code == 401
        resp = await client.get("/v1/me", headers=_user_headers(key2))
        assert resp.status_code == 200

    async def test_rotate_requires_key(self, client):
        resp = await client.post("/v1/auth/rotate")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_required"

    async def test_invalid_username(self, client):
        resp = await client.post("/v1/auth/register",
                                 json={"username": "   "})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_username"

    async def test_no_key(self, client):
        resp = await client.get("/v1/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_required"

    async def test_admin_key_on_builder_endpoint(self, client):
        resp = await client.get("/v1/me", headers=ADMIN_HEADERS)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_api_key"

    async def test_builder_key_on_admin_endpoint(self, client):
        key = await _register(client)
        resp = await client.post("/v1/admin/ranks/alice/recompute", json={},
                                 headers=_user_headers(key))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "admin_required"


# ---------------------------------------------------------------------------
# Ranks
# ---------------------------------------------------------------------------

class TestRanks:
    async def test_recompute_reference_counters(self, client):
        await _register(client, "alice")
        resp = await _recompute(client, "alice", REFERENCE_COUNTERS)
        assert resp.status_code == 200
        data = resp.json()
        assert data["shipping_points"] == "150"
        assert data["community_karma"] == "20"
        assert data["trust_score"] == 140
        assert data["tier_score"] == 315
        assert data["tier"] == 3
        assert data["progress"] == {"current_tier": 3, "progress": 66,
                                    "next_tier": 4}
        assert data["capabilities"]["vote_weight"] == 2

    async def test_recompute_is_idempotent(self, client):
        first = (await _recompute(client, "alice", REFERENCE_COUNTERS)).json()
        second = (await _recompute(client, "alice", REFERENCE_COUNTERS)).json()
        assert first["tier_score"] == second["tier_score"]
        assert first["tier"] == second["tier"]

    async def test_carried_stats_kept_when_omitted(self, client):
        body = dict(REFERENCE_COUNTERS,
                    carried={"poten_count": 2, "weekly_wins": 1,
                             "monthly_wins": 0})
        await _recompute(client, "alice", body)
        resp = await _recompute(client, "alice", REFERENCE_COUNTERS)
        data = resp.json()
        assert data["poten_count"] == 2
        assert data["weekly_wins"] == 1

    async def test_negative_counter_rejected(self, client):
        body = {"shipping": {"launches_submitted": -1}}
        resp = await _recompute(client, "alice", body)
        assert resp.status_code == 422
        err = resp.json()["error"]
        assert err["code"] == "invalid_request"
        assert "body.shipping.launches_submitted" in err["details"]["fields"]

    async def test_rank_detail_with_board(self, client):
        await _recompute(client, "alice", REFERENCE_COUNTERS)
        resp = await client.get("/v1/ranks/alice",
                                params={"board_min_tier": 4})
        caps = resp.json()["capabilities"]
        assert caps["can_access_board"] is False
        resp = await client.get("/v1/ranks/alice",
                                params={"board_min_tier": 3})
        assert resp.json()["capabilities"]["can_access_board"] is True

    async def test_rank_not_found(self, client):
        resp = await client.get("/v1/ranks/ghost")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "rank_not_found"

    async def test_leaderboard_and_distribution(self, client):
        await _register(client, "zero")
        await _recompute(client, "alice", REFERENCE_COUNTERS)
        await _recompute(client, "bob", {"community": {"votes_cast": 40}})

        resp = await client.get("/v1/ranks")
        assert [r["username"] for r in resp.json()] == ["alice", "bob", "zero"]

        resp = await client.get("/v1/ranks", params={"limit": 1})
        assert len(resp.json()) == 1

        resp = await client.get("/v1/ranks/distribution")
        data = resp.json()
        assert data["total"] == 3
        counts = {d["tier"]: d["count"] for d in data["distribution"]}
        assert counts == {0: 1, 1: 1, 2: 0, 3: 1, 4: 0, 5: 0, 6: 0, 7: 0}

        resp = await client.get("/v1/ranks/tier/1")
        assert [r["username"] for r in resp.json()] == ["bob"]

    async def test_unknown_tier(self, client):
        resp = await client.get("/v1/ranks/tier/9")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_tier"

    async def test_state_saved(self, client):
        await _recompute(client, "alice", REFERENCE_COUNTERS)
        assert os.path.exists("/tmp/builder_rank_test_state.json")

    @pytest.mark.parametrize("limit", [-1, 0])
    async def test_leaderboard_limit_must_be_positive(self, client, limit):
        for name in ("a", "b", "c"):
            await _register(client, name)
        resp = await client.get("/v1/ranks", params={"limit": limit})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_request"

    async def test_retuned_tier_table(self, client):
        await _recompute(client, "alice", REFERENCE_COUNTERS)   # score 315
        await _register(client, "zero")

        short = TierTable([TierDefinition(0, "Ground", 0, 0),
                           TierDefinition(1, "Flight", 100, 2)])
        install_engine(app, ScoringConfig(tiers=short))

        resp = await client.get("/v1/ranks")
        assert resp.status_code == 200
        by_name = {r["username"]: r for r in resp.json()}
        assert by_name["alice"]["tier"] == 1
        assert by_name["alice"]["tier_name"] == "Flight"
        assert by_name["zero"]["tier"] == 0

        resp = await client.get("/v1/ranks/alice")
        assert resp.status_code == 200
        data = resp.json()
        assert data["progress"] == {"current_tier": 1, "progress": 100,
                                    "next_tier": None}
        assert data["capabilities"]["vote_weight"] == 2

        resp = await client.get("/v1/ranks/distribution")
        counts = {d["tier"]: d["count"] for d in resp.json()["distribution"]}
        assert counts == {0: 1, 1: 1}

    async def test_promotion_points(self, client):
        await _register(client, "alice")
        resp = await client.post("/v1/admin/ranks/alice/promotion",
                                 json={"points": 60}, headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        data = resp.json()
        assert data["promotion_points"] == 60
        assert data["capabilities"]["vote_multiplier"] == 3
        assert data["tier_score"] == 0

        # Recompute without carried stats keeps the points
        resp = await _recompute(client, "alice", REFERENCE_COUNTERS)
        assert resp.json()["promotion_points"] == 60
        assert resp.json()["capabilities"]["vote_multiplier"] == 3

    async def test_promotion_unknown_builder(self, client):
        resp = await client.post("/v1/admin/ranks/ghost/promotion",
                                 json={"points": 5}, headers=ADMIN_HEADERS)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "rank_not_found"

    async def test_promotion_points_must_be_positive(self, client):
        await _register(client, "alice")
        resp = await client.post("/v1/admin/ranks/alice/promotion",
                                 json={"points": 0}, headers=ADMIN_HEADERS)
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------

async def _issue(client, username="alice", reason="weekly_poten_1st",
                 week="2026-W04"):
    return await client.post("/v1/admin/rewards", json={
        "username": username, "reason": reason, "week_number": week,
    }, headers=ADMIN_HEADERS)


class TestRewards:
    async def test_issue_then_duplicate(self, client):
        first = await _issue(client)
        assert first.status_code == 200
        assert first.json()["status"] == "created"
        assert first.json()["reward"]["reward_type"] == "sticker_pack"

        second = await _issue(client)
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert second.json()["reward"]["reward_id"] == \
            first.json()["reward"]["reward_id"]

    async def test_issue_defaults_to_current_week(self, client):
        resp = await client.post("/v1/admin/rewards", json={
            "username": "alice", "reason": "monthly_1st",
        }, headers=ADMIN_HEADERS)
        week = (await client.get("/v1/week")).json()["week_number"]
        assert resp.json()["reward"]["week_number"] == week

    async def test_unknown_reason(self, client):
        resp = await _issue(client, reason="participation")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_reason"

    async def test_claim_ship_deliver(self, client):
        key = await _register(client, "alice")
        reward_id = (await _issue(client)).json()["reward"]["reward_id"]

        resp = await client.post(f"/v1/rewards/{reward_id}/claim",
                                 json={"shipping_address": "1 Main St"},
                                 headers=_user_headers(key))
        assert resp.status_code == 200
        assert resp.json()["status"] == "claimed"

        resp = await client.get("/v1/admin/rewards",
                                params={"status": "claimed"},
                                headers=ADMIN_HEADERS)
        assert [r["reward_id"] for r in resp.json()] == [reward_id]

        resp = await client.post(f"/v1/admin/rewards/{reward_id}/ship",
                                 json={"tracking_number": "TRK1"},
                                 headers=ADMIN_HEADERS)
        assert resp.json()["status"] == "shipped"
        assert resp.json()["tracking_number"] == "TRK1"

        resp = await client.post(f"/v1/admin/rewards/{reward_id}/deliver",
                                 headers=ADMIN_HEADERS)
        assert resp.json()["status"] == "delivered"

        resp = await client.get("/v1/me/rewards/stats",
                                headers=_user_headers(key))
        assert resp.json()["by_status"]["delivered"] == 1

    async def test_claim_someone_elses_reward(self, client):
        await _register(client, "alice")
        mallory = await _register(client, "mallory")
        reward_id = (await _issue(client)).json()["reward"]["reward_id"]
        resp = await client.post(f"/v1/rewards/{reward_id}/claim",
                                 json={"shipping_address": "x"},
                                 headers=_user_headers(mallory))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "not_reward_owner"

    async def test_ship_before_claim(self, client):
        reward_id = (await _issue(client)).json()["reward"]["reward_id"]
        resp = await client.post(f"/v1/admin/rewards/{reward_id}/ship",
                                 json={}, headers=ADMIN_HEADERS)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_reward_transition"

    async def test_blank_address(self, client):
        key = await _register(client, "alice")
        reward_id = (await _issue(client)).json()["reward"]["reward_id"]
        resp = await client.post(f"/v1/rewards/{reward_id}/claim",
                                 json={"shipping_address": "  "},
                                 headers=_user_headers(key))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_address"

    async def test_cancel_and_reissue(self, client):
        key = await _register(client, "alice")
        reward_id = (await _issue(client)).json()["reward"]["reward_id"]
        resp = await client.delete(f"/v1/rewards/{reward_id}",
                                   headers=_user_headers(key))
        assert resp.status_code == 200

        resp = await client.get("/v1/me/rewards", headers=_user_headers(key))
        assert resp.json() == []

        assert (await _issue(client)).json()["status"] == "created"

    async def test_missing_reward(self, client):
        key = await _register(client, "alice")
        resp = await client.post("/v1/rewards/999/claim",
                                 json={"shipping_address": "x"},
                                 headers=_user_headers(key))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "reward_not_found"

    async def test_eligible_only_filter(self, client):
        key = await _register(client, "alice")
        r1 = (await _issue(client)).json()["reward"]["reward_id"]
        await _issue(client, reason="monthly_1st")
        await client.post(f"/v1/rewards/{r1}/claim",
                          json={"shipping_address": "addr"},
                          headers=_user_headers(key))
        resp = await client.get("/v1/me/rewards",
                                params={"eligible_only": True},
                                headers=_user_headers(key))
        assert [r["reason"] for r in resp.json()] == ["monthly_1st"]
