"""
Reward ledger. Issues physical rewards and walks them through shipping.

Status chain:  eligible -> claimed -> shipped -> delivered
An eligible reward can also be cancelled by its owner (deleted).

Issuance is unique on (username, reason, week_number). The ledger keeps
an index on that triple and checks it in the same step as the insert,
so a second issue for the same achievement comes back as a "duplicate"
result instead of a second row. Duplicates are not errors.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from builder_rank.models import Reward, _now


logger = logging.getLogger(__name__)


REWARD_TYPES: dict[str, str] = {
    "sticker_pack": "5 exclusive DevPersona stickers",
    "goodie_kit": "Hoodie or T-shirt + sticker pack",
    "acrylic_trophy": "Custom acrylic trophy with your achievement",
    "metal_trophy": "Premium metal trophy + ambassador status",
}

REASON_REWARDS: dict[str, str] = {
    "weekly_poten_1st": "sticker_pack",
    "monthly_1st": "goodie_kit",
    "quarterly_1st": "acrylic_trophy",
    "yearly_top3": "metal_trophy",
}

STATUSES = ("eligible", "claimed", "shipped", "delivered")


class RewardNotFound(Exception):
    pass


class NotRewardOwner(Exception):
    pass


class InvalidRewardTransition(Exception):
    pass


@dataclass
class IssueResult:
    """status is "created" or "duplicate". reward is the stored row."""
    status: str
    reward: Reward

    @property
    def created(self) -> bool:
        return self.status == "created"


class RewardLedger:

    def __init__(self):
        self.rewards: dict[int, Reward] = {}
        self._by_key: dict[tuple, int] = {}

    def add(self, reward: Reward) -> None:
        """Insert an existing row (snapshot loading). Enforces uniqueness."""
        if reward.key in self._by_key:
            raise ValueError(f"duplicate reward key {reward.key}")
        self.rewards[reward.id] = reward
        self._by_key[reward.key] = reward.id

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(self, username: str, reason: str,
              week_number: Optional[str] = None) -> IssueResult:
        reward_type = REASON_REWARDS.get(reason)
        if reward_type is None:
            raise ValueError(f"unknown reward reason: {reason}")

        key = (username, reason, week_number)
        existing_id = self._by_key.get(key)
        if existing_id is not None:
            logger.debug("reward %s for %s in %s already issued",
                         reason, username, week_number)
            return IssueResult(status="duplicate",
                               reward=self.rewards[existing_id])

        reward = Reward.new(username, reward_type, reason, week_number)
        self.add(reward)
        logger.info("reward %d issued: %s to %s (%s)", reward.id,
                    reward_type, username, week_number)
        return IssueResult(status="created", reward=reward)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def claim(self, reward_id: int, username: str,
              shipping_address: str) -> Reward:
        """Owner supplies a shipping address. eligible -> claimed."""
        reward = self._owned(reward_id, username)
        if reward.status != "eligible":
            raise InvalidRewardTransition(
                f"reward {reward_id} is already {reward.status}")
        address = shipping_address.strip()
        if not address:
            raise ValueError("shipping address is required")
        reward.status = "claimed"
        reward.shipping_address = address
        reward.claimed_at = _now()
        logger.info("reward %d claimed by %s", reward_id, username)
        return reward

    def mark_shipped(self, reward_id: int,
                     tracking_number: Optional[str] = None) -> Reward:
        reward = self.get(reward_id)
        if reward.status != "claimed":
            raise InvalidRewardTransition(
                f"reward {reward_id} must be claimed before shipping")
        reward.status = "shipped"
        reward.tracking_number = tracking_number
        reward.shipped_at = _now()
        logger.info("reward %d shipped", reward_id)
        return reward

    def mark_delivered(self, reward_id: int) -> Reward:
        reward = self.get(reward_id)
        if reward.status != "shipped":
            raise InvalidRewardTransition(
                f"reward {reward_id} must be shipped before delivery")
        reward.status = "delivered"
        logger.info("reward %d delivered", reward_id)
        return reward

    def cancel(self, reward_id: int, username: str) -> Reward:
        """Owner drops an unclaimed reward. Frees the uniqueness key."""
        reward = self._owned(reward_id, username)
        if reward.status != "eligible":
            raise InvalidRewardTransition(
                f"reward {reward_id} is {reward.status}; "
                f"only eligible rewards can be cancelled")
        del self.rewards[reward_id]
        self._by_key.pop(reward.key, None)
        logger.info("reward %d cancelled by %s", reward_id, username)
        return reward

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, reward_id: int) -> Reward:
        reward = self.rewards.get(reward_id)
        if reward is None:
            raise RewardNotFound(f"reward {reward_id} not found")
        return reward

    def for_user(self, username: str) -> list[Reward]:
        return [r for r in self.rewards.values() if r.username == username]

    def eligible_for(self, username: str) -> list[Reward]:
        return [r for r in self.for_user(username) if r.status == "eligible"]

    def by_status(self, status: str) -> list[Reward]:
        if status not in STATUSES:
            raise ValueError(f"unknown reward status: {status}")
        return [r for r in self.rewards.values() if r.status == status]

    def user_stats(self, username: str) -> dict:
        rewards = self.for_user(username)
        by_status = {s: 0 for s in STATUSES}
        by_type = {t: 0 for t in REWARD_TYPES}
        for r in rewards:
            by_status[r.status] += 1
            by_type[r.reward_type] += 1
        return {"total": len(rewards), "by_status": by_status,
                "by_type": by_type}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _owned(self, reward_id: int, username: str) -> Reward:
        reward = self.get(reward_id)
        if reward.username != username:
            raise NotRewardOwner(
                f"reward {reward_id} does not belong to {username}")
        return reward
