"""Rewards catalog and the append-only redemption ledger."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Callable

from loguru import logger

# Admin form limits
POINTS_REQUIRED_RANGE = (1, 10_000)
QUANTITY_RANGE = (1, 1_000)
LIMIT_PER_PERSON_RANGE = (1, 10)

DEFAULT_POINTS_REQUIRED = 50
DEFAULT_QUANTITY = 10
DEFAULT_CATEGORY = "General"

CATEGORIES: list[str] = [
    "General",
    "Electronics",
    "Books & Education",
    "Food & Beverages",
    "Fashion & Accessories",
    "Sports & Fitness",
    "Entertainment",
    "Travel",
    "Software & Apps",
    "Courses & Training",
]


class RewardStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class RewardType(str, Enum):
    GIFT = "gift"
    COUPON = "coupon"
    VOUCHER = "voucher"
    EXPERIENCE = "experience"
    DIGITAL = "digital"


class Availability(str, Enum):
    """Computed state of a reward at a given moment. Never stored."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    OUT_OF_STOCK = "out_of_stock"


class RewardNotFoundError(KeyError):
    """Raised when a reward id does not resolve."""


class RewardValidationError(ValueError):
    """Raised when reward fields are invalid. `errors` maps field -> message."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = errors
        super().__init__("; ".join(f"{name}: {msg}" for name, msg in errors.items()))


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def coerce_datetime(value: datetime | date | str | None) -> datetime | None:
    """Normalize an expiry value to an aware UTC datetime.

    Plain dates (or 'YYYY-MM-DD' strings) mean midnight UTC of that day.
    Naive datetimes are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Reward:
    id: str
    title: str
    description: str
    points_required: int
    available_quantity: int
    total_redeemed: int = 0
    limit_per_person: int = 1
    expiry_date: datetime | None = None
    status: RewardStatus = RewardStatus.ACTIVE
    targeted_trainees: tuple[str, ...] = ()
    type: RewardType = RewardType.GIFT
    category: str = DEFAULT_CATEGORY
    terms: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def remaining(self) -> int:
        return max(0, self.available_quantity - self.total_redeemed)

    @property
    def is_out_of_stock(self) -> bool:
        return self.total_redeemed >= self.available_quantity

    def is_expired(self, now: datetime) -> bool:
        """Expired once the current time reaches the expiry date."""
        return self.expiry_date is not None and self.expiry_date <= now

    def is_open_to(self, trainee_id: str) -> bool:
        return not self.targeted_trainees or trainee_id in self.targeted_trainees

    def availability(self, now: datetime) -> Availability:
        if self.status != RewardStatus.ACTIVE:
            return Availability.INACTIVE
        if self.is_expired(now):
            return Availability.EXPIRED
        if self.is_out_of_stock:
            return Availability.OUT_OF_STOCK
        return Availability.ACTIVE


@dataclass(frozen=True)
class RedemptionRecord:
    id: str
    reward_id: str
    trainee_id: str
    points_deducted: int  # price snapshot at redemption time
    redeemed_at: datetime
    status: str = "completed"


@dataclass
class CatalogStats:
    total: int = 0
    active: int = 0
    total_redemptions: int = 0
    total_points_redeemed: int = 0
    by_availability: dict[str, int] = field(default_factory=dict)


def _check_range(errors: dict[str, str], name: str, value: object, bounds: tuple[int, int], label: str) -> None:
    low, high = bounds
    if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
        errors[name] = f"{label} must be between {low:,} and {high:,}"


def validate_reward(reward: Reward, now: datetime, *, check_expiry: bool = True) -> None:
    """Raise RewardValidationError listing every invalid field."""
    errors: dict[str, str] = {}
    if not reward.title.strip():
        errors["title"] = "Gift title is required"
    if not reward.description.strip():
        errors["description"] = "Description is required"
    _check_range(errors, "points_required", reward.points_required, POINTS_REQUIRED_RANGE, "Points")
    _check_range(errors, "available_quantity", reward.available_quantity, QUANTITY_RANGE, "Quantity")
    _check_range(errors, "limit_per_person", reward.limit_per_person, LIMIT_PER_PERSON_RANGE, "Limit per person")
    if check_expiry and reward.expiry_date is not None and reward.expiry_date <= now:
        errors["expiry_date"] = "Expiry date must be in the future"
    if isinstance(reward.available_quantity, int) and reward.available_quantity < reward.total_redeemed:
        errors["available_quantity"] = (
            f"Quantity cannot be lower than the {reward.total_redeemed} already redeemed"
        )
    if errors:
        raise RewardValidationError(errors)


_PATCHABLE_FIELDS = {
    "title", "description", "points_required", "available_quantity", "limit_per_person",
    "expiry_date", "status", "targeted_trainees", "type", "category", "terms",
}


def _normalize_field(name: str, value: object) -> object:
    if name == "expiry_date":
        return coerce_datetime(value)  # type: ignore[arg-type]
    if name == "status":
        return RewardStatus(value)
    if name == "type":
        return RewardType(value)
    if name == "targeted_trainees":
        if isinstance(value, str):
            return (value,)
        return tuple(str(t) for t in (value or ()))  # type: ignore[union-attr]
    return value


class RewardCatalog:
    """Mutable reward definitions plus the redemption ledger.

    Mutations to a reward's stock go through lock_for(reward_id); rewards are
    independent of each other.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._rewards: dict[str, Reward] = {}
        self._ledger: list[RedemptionRecord] = []
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._ledger_lock = threading.Lock()

    def lock_for(self, reward_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(reward_id, threading.RLock())

    # ── Queries ───────────────────────────────────────────────────────────────

    def get(self, reward_id: str) -> Reward | None:
        return self._rewards.get(reward_id)

    def require(self, reward_id: str) -> Reward:
        reward = self._rewards.get(reward_id)
        if reward is None:
            raise RewardNotFoundError(reward_id)
        return reward

    def all(self) -> list[Reward]:
        return list(self._rewards.values())

    def redemptions(self) -> list[RedemptionRecord]:
        return list(self._ledger)

    def redemptions_for_reward(self, reward_id: str) -> list[RedemptionRecord]:
        return [r for r in self._ledger if r.reward_id == reward_id]

    def redemptions_for_trainee(self, trainee_id: str) -> list[RedemptionRecord]:
        return [r for r in self._ledger if r.trainee_id == trainee_id]

    def count_redemptions(self, reward_id: str, trainee_id: str) -> int:
        return sum(
            1 for r in self._ledger
            if r.reward_id == reward_id and r.trainee_id == trainee_id and r.status == "completed"
        )

    def stats(self, now: datetime | None = None) -> CatalogStats:
        """Dashboard numbers: totals, live-available rewards, points spent."""
        now = now or self._clock()
        stats = CatalogStats(total=len(self._rewards))
        for reward in self._rewards.values():
            state = reward.availability(now).value
            stats.by_availability[state] = stats.by_availability.get(state, 0) + 1
        stats.active = stats.by_availability.get(Availability.ACTIVE.value, 0)
        stats.total_redemptions = len(self._ledger)
        stats.total_points_redeemed = sum(r.points_deducted for r in self._ledger)
        logger.debug("Computed catalog stats", total=stats.total, active=stats.active)
        return stats

    # ── Administration ────────────────────────────────────────────────────────

    def create_reward(
        self,
        title: str,
        description: str,
        points_required: int = DEFAULT_POINTS_REQUIRED,
        available_quantity: int = DEFAULT_QUANTITY,
        limit_per_person: int = 1,
        expiry_date: datetime | date | str | None = None,
        type: RewardType | str = RewardType.GIFT,
        category: str = DEFAULT_CATEGORY,
        terms: str = "",
        targeted_trainees: list[str] | tuple[str, ...] = (),
    ) -> Reward:
        """Create an active reward with nothing redeemed yet."""
        now = self._clock()
        try:
            reward_type = RewardType(type)
            expiry = coerce_datetime(expiry_date)
        except ValueError as exc:
            raise RewardValidationError({"value": str(exc)}) from exc
        reward = Reward(
            id=uuid.uuid4().hex,
            title=title,
            description=description,
            points_required=points_required,
            available_quantity=available_quantity,
            limit_per_person=limit_per_person,
            expiry_date=expiry,
            type=reward_type,
            category=category or DEFAULT_CATEGORY,
            terms=terms,
            targeted_trainees=_normalize_field("targeted_trainees", targeted_trainees),
            created_at=now,
            updated_at=now,
        )
        validate_reward(reward, now)
        self._rewards[reward.id] = reward
        logger.info(
            "Created reward", reward_id=reward.id, title=reward.title,
            points_required=reward.points_required, quantity=reward.available_quantity,
        )
        return reward

    def update_reward(self, reward_id: str, **patch: object) -> Reward:
        """Merge patch into a reward after validating the merged result."""
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise RewardValidationError({name: "Field cannot be updated" for name in sorted(unknown)})

        with self.lock_for(reward_id):
            reward = self.require(reward_id)
            now = self._clock()
            try:
                changes = {name: _normalize_field(name, value) for name, value in patch.items()}
            except ValueError as exc:
                raise RewardValidationError({"value": str(exc)}) from exc

            candidate = Reward(**{**reward.__dict__, **changes})
            validate_reward(candidate, now, check_expiry="expiry_date" in changes)
            for name, value in changes.items():
                setattr(reward, name, value)
            reward.updated_at = now
        logger.info("Updated reward", reward_id=reward_id, fields=sorted(patch))
        return reward

    def retire_reward(self, reward_id: str) -> Reward:
        """Soft-retire: the reward stays in the catalog with status inactive."""
        with self.lock_for(reward_id):
            reward = self.require(reward_id)
            reward.status = RewardStatus.INACTIVE
            reward.updated_at = self._clock()
        logger.info("Retired reward", reward_id=reward_id)
        return reward

    def delete_reward(self, reward_id: str) -> int:
        """Hard-delete a reward and its redemption history. Returns records removed."""
        with self.lock_for(reward_id):
            self.require(reward_id)
            del self._rewards[reward_id]
            with self._ledger_lock:
                before = len(self._ledger)
                self._ledger = [r for r in self._ledger if r.reward_id != reward_id]
                removed = before - len(self._ledger)
        logger.info("Deleted reward", reward_id=reward_id, redemptions_removed=removed)
        return removed

    def drop_trainee_redemptions(self, trainee_id: str) -> int:
        """Cascade for trainee deletion. Stock counters are left untouched."""
        with self._ledger_lock:
            before = len(self._ledger)
            self._ledger = [r for r in self._ledger if r.trainee_id != trainee_id]
            return before - len(self._ledger)

    # ── Ledger writes ─────────────────────────────────────────────────────────

    def record_redemption(self, reward: Reward, trainee_id: str, now: datetime) -> RedemptionRecord:
        """Append a ledger entry and take one unit of stock.

        Callers must hold lock_for(reward.id) and have validated the request.
        """
        record = RedemptionRecord(
            id=uuid.uuid4().hex,
            reward_id=reward.id,
            trainee_id=trainee_id,
            points_deducted=reward.points_required,
            redeemed_at=now,
        )
        with self._ledger_lock:
            self._ledger.append(record)
        reward.total_redeemed += 1
        return record

    def restore(self, reward: Reward) -> None:
        """Insert a previously persisted reward as-is."""
        self._rewards[reward.id] = reward

    def restore_redemption(self, record: RedemptionRecord) -> None:
        with self._ledger_lock:
            self._ledger.append(record)
