"""
Scoring configuration. Tier table + per-unit point tables + clock zone.

Nothing in the engine reads these as globals: every calculator, the
recalculator and the week clock take the config they need as an
argument, so operators can retune scoring without touching the math.

Config file (JSON, every section optional):

    {
      "tiers": [{"level": 0, "name": "Ground Control",
                 "min_score": 0, "vote_weight": 0}, ...],
      "shipping_points": {"project_register": 10, ...},
      "karma_points": {"review_written": 2, ...},
      "timezone": "UTC"
    }
"""

import json
import os
from bisect import bisect_right
from dataclasses import dataclass, field, fields
from datetime import timezone, tzinfo
from decimal import Decimal
from typing import Iterable, Optional
from zoneinfo import ZoneInfo


CONFIG_ENV = "BUILDER_RANK_CONFIG"
TZ_ENV = "BUILDER_RANK_TZ"


# ---------------------------------------------------------------------------
# Tier table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TierDefinition:
    level: int
    name: str
    min_score: int
    vote_weight: int


class TierTable:
    """
    Immutable tier table, sorted ascending by min_score.

    Levels must run 0..n-1 with no gaps, level 0 must start at 0 (the
    catch-all floor), and min_score must never decrease with level.
    """

    def __init__(self, tiers: Iterable[TierDefinition]):
        self._tiers: tuple[TierDefinition, ...] = tuple(tiers)
        if not self._tiers:
            raise ValueError("tier table is empty")
        for i, t in enumerate(self._tiers):
            if t.level != i:
                raise ValueError(
                    f"tier table: expected level {i}, got {t.level}")
        if self._tiers[0].min_score != 0:
            raise ValueError(
                f"tier table: level 0 must start at 0, "
                f"got {self._tiers[0].min_score}")
        for lower, upper in zip(self._tiers, self._tiers[1:]):
            if upper.min_score < lower.min_score:
                raise ValueError(
                    f"tier table: level {upper.level} min_score "
                    f"{upper.min_score} below level {lower.level}")
        self._mins = [t.min_score for t in self._tiers]

    def __len__(self) -> int:
        return len(self._tiers)

    def __iter__(self):
        return iter(self._tiers)

    def __getitem__(self, level: int) -> TierDefinition:
        if not 0 <= level < len(self._tiers):
            raise ValueError(f"unknown tier {level}")
        return self._tiers[level]

    @property
    def max_level(self) -> int:
        return len(self._tiers) - 1

    def level_for(self, score) -> int:
        """Highest level whose min_score <= score. Level 0 below that."""
        return max(bisect_right(self._mins, score) - 1, 0)


DEFAULT_TIERS = TierTable([
    TierDefinition(0, "Ground Control", 0, 0),
    TierDefinition(1, "Cadet", 10, 1),
    TierDefinition(2, "Pilot", 50, 1),
    TierDefinition(3, "Astronaut", 150, 2),
    TierDefinition(4, "Commander", 400, 3),
    TierDefinition(5, "Captain", 800, 5),
    TierDefinition(6, "Admiral", 1500, 5),
    TierDefinition(7, "Cosmos", 3000, 5),
])


# ---------------------------------------------------------------------------
# Point tables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ShippingPointValues:
    project_register: Decimal = Decimal("10")
    launch_submit: Decimal = Decimal("20")
    poten_achieved: Decimal = Decimal("100")
    weekly_first: Decimal = Decimal("200")
    monthly_first: Decimal = Decimal("500")


@dataclass(frozen=True)
class KarmaPointValues:
    review_written: Decimal = Decimal("2")
    helpful_mark: Decimal = Decimal("5")
    vote_cast: Decimal = Decimal("1")
    recommended_builder_poten: Decimal = Decimal("10")


@dataclass(frozen=True)
class ScoringConfig:
    tiers: TierTable = DEFAULT_TIERS
    shipping: ShippingPointValues = field(default_factory=ShippingPointValues)
    karma: KarmaPointValues = field(default_factory=KarmaPointValues)
    timezone: tzinfo = timezone.utc


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _load_points(cls, data: dict):
    """Build a point table, rejecting keys the table doesn't have."""
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(
            f"{cls.__name__}: unknown keys {sorted(unknown)}")
    return cls(**{k: Decimal(str(v)) for k, v in data.items()})


def _load_tiers(data: list[dict]) -> TierTable:
    return TierTable(
        TierDefinition(
            level=int(d["level"]),
            name=d["name"],
            min_score=int(d["min_score"]),
            vote_weight=int(d["vote_weight"]),
        )
        for d in data
    )


def resolve_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def config_from_dict(data: dict) -> ScoringConfig:
    return ScoringConfig(
        tiers=_load_tiers(data["tiers"]) if "tiers" in data else DEFAULT_TIERS,
        shipping=_load_points(ShippingPointValues,
                              data.get("shipping_points", {})),
        karma=_load_points(KarmaPointValues, data.get("karma_points", {})),
        timezone=resolve_timezone(data.get("timezone")),
    )


def load_config(path: str) -> ScoringConfig:
    with open(path) as f:
        return config_from_dict(json.load(f))


def config_from_env() -> ScoringConfig:
    """
    BUILDER_RANK_CONFIG: path to a JSON config file (optional)
    BUILDER_RANK_TZ: IANA zone for the week clock; overrides the file
    """
    path = os.environ.get(CONFIG_ENV)
    data = {}
    if path:
        with open(path) as f:
            data = json.load(f)
    tz_name = os.environ.get(TZ_ENV)
    if tz_name:
        data["timezone"] = tz_name
    return config_from_dict(data)
