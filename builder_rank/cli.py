#!/usr/bin/env python3
"""
Builder Rank CLI. Every invocation: lock → load → execute → save → unlock.

Usage:
    python3 -m builder_rank.cli init USERNAME
    python3 -m builder_rank.cli recompute USERNAME COUNTERS_JSON
    python3 -m builder_rank.cli rank USERNAME
    python3 -m builder_rank.cli promote USERNAME POINTS
    python3 -m builder_rank.cli top [--limit N]
    python3 -m builder_rank.cli distribution
    python3 -m builder_rank.cli progress SCORE
    python3 -m builder_rank.cli week [--at ISO_DATETIME]
    python3 -m builder_rank.cli issue-reward USERNAME REASON [--week 2026-W04]
    python3 -m builder_rank.cli ship REWARD_ID [--tracking NUMBER]
    python3 -m builder_rank.cli deliver REWARD_ID
    python3 -m builder_rank.cli rewards USERNAME

COUNTERS_JSON is a file shaped like the admin recompute request body:
    {"shipping": {...}, "community": {...}, "trust": {...}, "carried": {...}}

Output: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "..."}
State: BUILDER_RANK_STATE env var, default ./builder_rank_state.json
Config: BUILDER_RANK_CONFIG / BUILDER_RANK_TZ, or --config
"""

import argparse
import fcntl
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime

from builder_rank.api_models import RecomputeRequest
from builder_rank.auth import AuthStore
from builder_rank.capabilities import (
    can_vote, promotion_vote_multiplier, vote_weight,
)
from builder_rank.config import config_from_env, load_config
from builder_rank.models import reset_counters
from builder_rank.persistence import save_snapshot, load_snapshot
from builder_rank.rank_engine import RankBook, RankRecalculator
from builder_rank.rewards import RewardLedger
from builder_rank.tiers import tier_progress
from builder_rank.week_clock import WeekClock


STATE_PATH = os.environ.get("BUILDER_RANK_STATE", "./builder_rank_state.json")


@contextmanager
def file_lock(path):
    """Exclusive file lock. Serializes read-modify-write across invocations."""
    lock_path = path + ".lock"
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(f, fcntl.LOCK_UN)
        f.close()


def load_or_create(path):
    if os.path.exists(path):
        return load_snapshot(path)
    reset_counters()
    return RankBook(), RewardLedger(), AuthStore()


def positive_int(value):
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {n}")
    return n


def reply(data):
    print(json.dumps(data))


def _rank(rank) -> dict:
    return {"username": rank.username, "tier": rank.tier,
            "tier_score": rank.tier_score,
            "shipping_points": str(rank.shipping_points),
            "community_karma": str(rank.community_karma),
            "trust_score": rank.trust_score,
            "poten_count": rank.poten_count,
            "weekly_wins": rank.weekly_wins,
            "monthly_wins": rank.monthly_wins,
            "promotion_points": rank.promotion_points,
            "updated_at": rank.updated_at}


def _reward(r) -> dict:
    return {"reward_id": r.id, "username": r.username,
            "reward_type": r.reward_type, "reason": r.reason,
            "week_number": r.week_number, "status": r.status}


def cmd_init(ctx, args):
    rank = ctx.book.initialize(args.username)
    return {"ok": True, "rank": _rank(rank)}


def cmd_recompute(ctx, args):
    with open(args.counters) as f:
        req = RecomputeRequest.model_validate(json.load(f))
    rank = ctx.book.recompute_and_store(
        RankRecalculator(ctx.config), args.username,
        req.shipping.to_activity(),
        req.community.to_activity(),
        req.trust.to_activity(),
        carried=req.carried.to_stats() if req.carried else None,
    )
    return {"ok": True, "rank": _rank(rank)}


def cmd_rank(ctx, args):
    rank = ctx.book.get(args.username)
    p = tier_progress(rank.tier_score, ctx.config.tiers)
    return {"ok": True, "rank": _rank(rank),
            "progress": p.progress, "next_tier": p.next_tier,
            "can_vote": can_vote(rank.tier),
            "vote_weight": vote_weight(rank.tier, ctx.config.tiers),
            "vote_multiplier": promotion_vote_multiplier(
                rank.promotion_points)}


def cmd_promote(ctx, args):
    rank = ctx.book.add_promotion_points(args.username, args.points)
    return {"ok": True, "rank": _rank(rank),
            "vote_multiplier": promotion_vote_multiplier(
                rank.promotion_points)}


def cmd_top(ctx, args):
    return {"ok": True,
            "ranks": [_rank(r) for r in ctx.book.top(args.limit)]}


def cmd_distribution(ctx, args):
    dist = ctx.book.tier_distribution(ctx.config.tiers)
    return {"ok": True, "distribution": {str(t): c for t, c in dist.items()},
            "total": sum(dist.values())}


def cmd_progress(ctx, args):
    p = tier_progress(args.score, ctx.config.tiers)
    return {"ok": True, "current_tier": p.current_tier,
            "progress": p.progress, "next_tier": p.next_tier}


def cmd_week(ctx, args):
    clock = WeekClock(ctx.config.timezone)
    now = clock.localize(datetime.fromisoformat(args.at) if args.at else None)
    countdown = clock.time_until_window_closes(now)
    return {"ok": True, "week_number": clock.current_iso_week(now),
            "window_open": clock.is_competition_window_open(now),
            "closes_in": ({"hours": countdown.hours,
                           "minutes": countdown.minutes}
                          if countdown else None),
            "timezone": str(clock.tz)}


def cmd_issue_reward(ctx, args):
    week = args.week or WeekClock(ctx.config.timezone).current_iso_week()
    result = ctx.ledger.issue(args.username, args.reason, week)
    return {"ok": True, "status": result.status,
            "reward": _reward(result.reward)}


def cmd_ship(ctx, args):
    reward = ctx.ledger.mark_shipped(args.reward_id, args.tracking)
    return {"ok": True, "reward": _reward(reward)}


def cmd_deliver(ctx, args):
    reward = ctx.ledger.mark_delivered(args.reward_id)
    return {"ok": True, "reward": _reward(reward)}


def cmd_rewards(ctx, args):
    return {"ok": True,
            "rewards": [_reward(r) for r in ctx.ledger.for_user(args.username)]}


class Context:
    def __init__(self, config, book, ledger, auth_store):
        self.config = config
        self.book = book
        self.ledger = ledger
        self.auth_store = auth_store


# Commands that mutate state (need save after)
MUTATING = {"init", "recompute", "promote", "issue-reward", "ship", "deliver"}

# Commands that never touch the state file
STATELESS = {"progress", "week"}


def main():
    parser = argparse.ArgumentParser(description="Builder Rank CLI")
    parser.add_argument("--state", default=STATE_PATH,
                        help="Path to state file")
    parser.add_argument("--config", default=None,
                        help="Path to scoring config JSON")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("init")
    p.add_argument("username")

    p = sub.add_parser("recompute")
    p.add_argument("username")
    p.add_argument("counters", help="Path to counters JSON")

    p = sub.add_parser("rank")
    p.add_argument("username")

    p = sub.add_parser("promote")
    p.add_argument("username")
    p.add_argument("points", type=positive_int)

    p = sub.add_parser("top")
    p.add_argument("--limit", type=positive_int, default=50)

    sub.add_parser("distribution")

    p = sub.add_parser("progress")
    p.add_argument("score", type=int)

    p = sub.add_parser("week")
    p.add_argument("--at", default=None,
                   help="ISO datetime to evaluate instead of now")

    p = sub.add_parser("issue-reward")
    p.add_argument("username")
    p.add_argument("reason")
    p.add_argument("--week", default=None,
                   help="ISO week, e.g. 2026-W04 (default: current)")

    p = sub.add_parser("ship")
    p.add_argument("reward_id", type=int)
    p.add_argument("--tracking", default=None)

    p = sub.add_parser("deliver")
    p.add_argument("reward_id", type=int)

    p = sub.add_parser("rewards")
    p.add_argument("username")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    # stdout carries the JSON reply; logs go to stderr.
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)

    commands = {
        "init": cmd_init,
        "recompute": cmd_recompute,
        "rank": cmd_rank,
        "promote": cmd_promote,
        "top": cmd_top,
        "distribution": cmd_distribution,
        "progress": cmd_progress,
        "week": cmd_week,
        "issue-reward": cmd_issue_reward,
        "ship": cmd_ship,
        "deliver": cmd_deliver,
        "rewards": cmd_rewards,
    }

    state_path = args.state

    try:
        config = load_config(args.config) if args.config else config_from_env()
        if args.command in STATELESS:
            ctx = Context(config, None, None, None)
            reply(commands[args.command](ctx, args))
            return

        with file_lock(state_path):
            ctx = Context(config, *load_or_create(state_path))
            ctx.book.retier(config.tiers)
            result = commands[args.command](ctx, args)

            if args.command in MUTATING:
                save_snapshot(ctx.book, ctx.ledger, state_path,
                              auth_store=ctx.auth_store)

            reply(result)
    except Exception as e:
        reply({"ok": False, "error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
