"""
Score calculation. Pure math, no state.

Three sub-scores feed one composite:
    SP (Shipping Points)  : linear in shipping counters
    CK (Community Karma)  : linear in community counters
    TS (Trust Score)      : step function over external signals

    tier_score = round_half_up(1.5 * SP + 1.0 * CK + 0.5 * TS)

Weighted sums are computed in Decimal so configured point values like
"2.5" don't drift. Rounding is half-up: 0.5 -> 1, 2.5 -> 3.
"""

from decimal import Decimal, ROUND_HALF_UP

from builder_rank.config import KarmaPointValues, ShippingPointValues
from builder_rank.models import (
    CommunityActivity, ShippingActivity, TrustActivity,
)


ZERO = Decimal("0")

SHIPPING_WEIGHT = Decimal("1.5")
KARMA_WEIGHT = Decimal("1.0")
TRUST_WEIGHT = Decimal("0.5")

# (threshold, bonus), highest first. First threshold met wins.
RELEASE_BONUS = ((10, 20), (5, 10), (1, 5))
STAR_BONUS = ((1000, 30), (100, 10), (10, 5))
DOWNLOAD_BONUS = (
    (1_000_000, 50), (100_000, 40), (10_000, 30), (1_000, 15), (100, 5),
)
DEPLOYMENT_BONUS = 50


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def round_half_up(value) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"),
                                            rounding=ROUND_HALF_UP))


def _step(total, table: tuple[tuple[int, int], ...]) -> int:
    for threshold, bonus in table:
        if total >= threshold:
            return bonus
    return 0


def _points(value: Decimal) -> int | Decimal:
    """Integral results come back as int; fractional ones stay Decimal."""
    if value == value.to_integral_value():
        return int(value)
    return value


# ---------------------------------------------------------------------------
# Sub-scores
# ---------------------------------------------------------------------------

def shipping_points(activity: ShippingActivity,
                    points: ShippingPointValues) -> int | Decimal:
    total = (
        activity.projects_registered * points.project_register
        + activity.launches_submitted * points.launch_submit
        + activity.poten_count * points.poten_achieved
        + activity.weekly_firsts * points.weekly_first
        + activity.monthly_firsts * points.monthly_first
    )
    return _points(Decimal(total))


def community_karma(activity: CommunityActivity,
                    points: KarmaPointValues) -> int | Decimal:
    total = (
        activity.reviews_written * points.review_written
        + activity.helpful_marks * points.helpful_mark
        + activity.votes_cast * points.vote_cast
        + activity.recommended_builder_potens
        * points.recommended_builder_poten
    )
    return _points(Decimal(total))


def trust_score(activity: TrustActivity) -> int:
    """
    Trust Score: four additive categories. Within a category only the
    highest threshold met counts; deployments are unbounded.
    """
    total_stars = sum(repo.stars for repo in activity.repos)
    total_downloads = sum(pkg.downloads for pkg in activity.packages)
    return (
        _step(activity.release_count, RELEASE_BONUS)
        + _step(total_stars, STAR_BONUS)
        + _step(total_downloads, DOWNLOAD_BONUS)
        + activity.verified_deployments * DEPLOYMENT_BONUS
    )


def tier_score(shipping, karma, trust) -> int:
    """Composite score: (SP x 1.5) + (CK x 1.0) + (TS x 0.5), rounded."""
    raw = (
        Decimal(str(shipping)) * SHIPPING_WEIGHT
        + Decimal(str(karma)) * KARMA_WEIGHT
        + Decimal(str(trust)) * TRUST_WEIGHT
    )
    return round_half_up(raw)
