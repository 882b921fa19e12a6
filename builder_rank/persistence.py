"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot contains:
  - ranks: every BuilderRank, one per username
  - rewards: every Reward row (the uniqueness index is rebuilt on load)
  - auth: users and API key hashes
  - ID counters (so reward IDs resume correctly after restart)

Ranks are stored whole, mirroring the full-replace rule in the engine.

Atomic write: write to .tmp, then os.replace. A crash mid-write
leaves the previous snapshot intact.
"""

import dataclasses
import json
import logging
import os
from decimal import Decimal
from typing import Optional

from builder_rank.auth import AuthStore, User
from builder_rank.models import (
    BuilderRank, Reward, _counters, reset_counters, set_counter,
)
from builder_rank.rank_engine import RankBook
from builder_rank.rewards import RewardLedger


logger = logging.getLogger(__name__)

CURRENT_VERSION = 1


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses and Decimals to JSON-safe types."""
    if isinstance(obj, Decimal):
        return str(obj)
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, list):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


def _points(value):
    """Point totals are ints, or Decimal strings with fractional config."""
    if isinstance(value, str):
        return Decimal(value)
    return value


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _load_rank(d: dict) -> BuilderRank:
    return BuilderRank(
        username=d["username"],
        tier=d["tier"],
        shipping_points=_points(d["shipping_points"]),
        community_karma=_points(d["community_karma"]),
        trust_score=d["trust_score"],
        tier_score=d["tier_score"],
        poten_count=d["poten_count"],
        weekly_wins=d["weekly_wins"],
        monthly_wins=d["monthly_wins"],
        promotion_points=d.get("promotion_points", 0),
        updated_at=d["updated_at"],
    )


def _load_reward(d: dict) -> Reward:
    return Reward(
        id=d["id"],
        username=d["username"],
        reward_type=d["reward_type"],
        reason=d["reason"],
        week_number=d.get("week_number"),
        status=d["status"],
        shipping_address=d.get("shipping_address"),
        tracking_number=d.get("tracking_number"),
        created_at=d["created_at"],
        claimed_at=d.get("claimed_at"),
        shipped_at=d.get("shipped_at"),
    )


def _load_user(d: dict) -> User:
    return User(
        username=d["username"],
        api_key_hash=d["api_key_hash"],
        created_at=d["created_at"],
        last_seen_at=d["last_seen_at"],
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(book: RankBook, ledger: RewardLedger, path: str,
                  auth_store: Optional[AuthStore] = None) -> None:
    """
    Save ranks + rewards + auth state to a JSON file.
    Atomic: writes to .tmp then renames.
    """
    state = {
        "version": CURRENT_VERSION,
        "counters": dict(_counters),
        "ranks": [_serialize(r) for r in book.ranks.values()],
        "rewards": [_serialize(r) for r in ledger.rewards.values()],
        "auth": {
            "users": [_serialize(u) for u in auth_store.users.values()]
            if auth_store else [],
        },
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)
    logger.debug("snapshot saved to %s (%d ranks, %d rewards)", path,
                 len(book.ranks), len(ledger.rewards))


def load_snapshot(path: str) -> tuple[RankBook, RewardLedger, AuthStore]:
    """
    Load ranks + rewards + auth from a JSON snapshot.
    Returns (rank_book, reward_ledger, auth_store) ready to use.
    """
    with open(path) as f:
        state = json.load(f)

    version = state.get("version")
    if version != CURRENT_VERSION:
        raise ValueError(
            f"unsupported snapshot version {version} "
            f"(expected {CURRENT_VERSION})")

    # Restore ID counters
    reset_counters()
    for kind, value in state["counters"].items():
        set_counter(kind, value)

    book = RankBook()
    for rdata in state["ranks"]:
        rank = _load_rank(rdata)
        book.ranks[rank.username] = rank

    ledger = RewardLedger()
    for rdata in state["rewards"]:
        ledger.add(_load_reward(rdata))

    auth_store = AuthStore()
    for udata in state.get("auth", {}).get("users", []):
        auth_store.add(_load_user(udata))

    logger.info("snapshot loaded from %s (%d ranks, %d rewards)", path,
                len(book.ranks), len(ledger.rewards))
    return book, ledger, auth_store
