"""Redemption engine: validates a request and exchanges points for a reward.

Failures are returned as RedemptionError values, never raised. Validation is
read-only; effects happen only after every check passes, under the reward
lock and then the trainee lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from loguru import logger

from trainee_rank.rewards import Reward, RewardCatalog, RedemptionRecord, RewardStatus
from trainee_rank.trainees import TraineeRegistry
from trainee_rank.transitions import LevelTransition


class RedemptionError(str, Enum):
    NOT_FOUND = "not_found"
    REWARD_INACTIVE = "reward_inactive"
    REWARD_EXPIRED = "reward_expired"
    OUT_OF_STOCK = "out_of_stock"
    NOT_ELIGIBLE = "not_eligible"
    INSUFFICIENT_POINTS = "insufficient_points"
    ALREADY_REDEEMED = "already_redeemed"

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self]


ERROR_MESSAGES: dict[RedemptionError, str] = {
    RedemptionError.NOT_FOUND: "Gift or trainee not found",
    RedemptionError.REWARD_INACTIVE: "This gift is no longer active",
    RedemptionError.REWARD_EXPIRED: "This gift has expired",
    RedemptionError.OUT_OF_STOCK: "This gift is out of stock",
    RedemptionError.NOT_ELIGIBLE: "This gift is not available for this trainee",
    RedemptionError.INSUFFICIENT_POINTS: "Not enough points to redeem this gift",
    RedemptionError.ALREADY_REDEEMED: "Redemption limit reached for this gift",
}


@dataclass(frozen=True)
class RedemptionResult:
    record: RedemptionRecord | None = None
    error: RedemptionError | None = None
    transition: LevelTransition | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def message(self) -> str:
        if self.error is not None:
            return self.error.message
        return "Gift redeemed successfully"


def check_eligibility(
    reward: Reward,
    trainee_id: str,
    points: int,
    redemption_count: int,
    now: datetime,
) -> RedemptionError | None:
    """Run the redemption checks in order and return the first failure.

    1. status active          -> REWARD_INACTIVE
    2. not expired            -> REWARD_EXPIRED
    3. stock left             -> OUT_OF_STOCK
    4. targeted list allows   -> NOT_ELIGIBLE
    5. enough points          -> INSUFFICIENT_POINTS
    6. per-person limit       -> ALREADY_REDEEMED

    The per-person check counts prior redemptions for the pair and rejects
    once the count reaches limit_per_person.
    """
    if reward.status != RewardStatus.ACTIVE:
        return RedemptionError.REWARD_INACTIVE
    if reward.is_expired(now):
        return RedemptionError.REWARD_EXPIRED
    if reward.is_out_of_stock:
        return RedemptionError.OUT_OF_STOCK
    if not reward.is_open_to(trainee_id):
        return RedemptionError.NOT_ELIGIBLE
    if points < reward.points_required:
        return RedemptionError.INSUFFICIENT_POINTS
    if redemption_count >= reward.limit_per_person:
        return RedemptionError.ALREADY_REDEEMED
    return None


class RedemptionEngine:
    def __init__(
        self,
        catalog: RewardCatalog,
        registry: TraineeRegistry,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.catalog = catalog
        self.registry = registry
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    def eligibility(self, reward_id: str, trainee_id: str, now: datetime | None = None) -> RedemptionError | None:
        """Return what redeem() would reject with right now, without side effects."""
        now = now or self._clock()
        reward = self.catalog.get(reward_id)
        trainee = self.registry.get(trainee_id)
        if reward is None or trainee is None:
            return RedemptionError.NOT_FOUND
        return check_eligibility(
            reward, trainee.id, trainee.points,
            self.catalog.count_redemptions(reward.id, trainee.id), now,
        )

    def redeem(self, reward_id: str, trainee_id: str, now: datetime | None = None) -> RedemptionResult:
        """Exchange a trainee's points for one unit of a reward."""
        now = now or self._clock()
        reward = self.catalog.get(reward_id)
        trainee = self.registry.get(trainee_id)
        if reward is None or trainee is None:
            logger.warning("Redemption rejected", reward_id=reward_id, trainee_id=trainee_id,
                           error=RedemptionError.NOT_FOUND.value)
            return RedemptionResult(error=RedemptionError.NOT_FOUND)

        with self.catalog.lock_for(reward.id), self.registry.lock_for(trainee.id):
            # Either side may have been deleted while we waited for the locks
            if self.catalog.get(reward.id) is not reward or self.registry.get(trainee.id) is not trainee:
                return RedemptionResult(error=RedemptionError.NOT_FOUND)

            error = check_eligibility(
                reward, trainee.id, trainee.points,
                self.catalog.count_redemptions(reward.id, trainee.id), now,
            )
            if error is not None:
                logger.warning("Redemption rejected", reward_id=reward.id, trainee_id=trainee.id,
                               error=error.value)
                return RedemptionResult(error=error)

            record = self.catalog.record_redemption(reward, trainee.id, now)
            transition = self.registry.update_points(
                trainee.id, delta=-record.points_deducted, reason=f"redeemed {reward.title}"
            )

        logger.info(
            "Reward redeemed", reward_id=reward.id, trainee_id=trainee.id,
            points_deducted=record.points_deducted, remaining=reward.remaining,
        )
        return RedemptionResult(record=record, transition=transition)

    def available_rewards_for(self, trainee_id: str, now: datetime | None = None) -> list[Reward]:
        """Rewards the trainee could redeem right now. Unknown trainee -> []."""
        now = now or self._clock()
        trainee = self.registry.get(trainee_id)
        if trainee is None:
            return []
        available = [
            reward for reward in self.catalog.all()
            if check_eligibility(
                reward, trainee.id, trainee.points,
                self.catalog.count_redemptions(reward.id, trainee.id), now,
            ) is None
        ]
        logger.debug("Listed available rewards", trainee_id=trainee_id, count=len(available))
        return available
