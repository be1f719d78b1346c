"""Trainee records and the single point-update entry point.

Every change to a trainee's balance goes through TraineeRegistry.update_points,
which clamps at zero and runs level-transition detection.
"""

from __future__ import annotations

import secrets
import string
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from loguru import logger

from trainee_rank.levels import DEFAULT_CATALOG, LevelCatalog
from trainee_rank.transitions import LevelTransition, LevelUpEvent, detect_transition

# Point awards used by the collaborator operations
CHECK_IN_POINTS = 10
FLAG_PENALTY = 5
SESSION_POINTS = 20
COURSE_POINTS = 5
GROUP_COURSE_POINTS = 10

_BASE36 = string.digits + string.ascii_uppercase

LevelUpListener = Callable[["Trainee", LevelUpEvent], None]


class TraineeNotFoundError(KeyError):
    """Raised when a trainee id or serial number does not resolve."""


class LevelAdjustmentError(ValueError):
    """Raised when a manual level adjustment request is invalid."""


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _base36(n: int) -> str:
    if n <= 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_serial_number(now: datetime | None = None) -> str:
    """Return a QR-friendly serial like TR-LQ2K8Z1A-9F3KD02XQ1."""
    moment = now or _utcnow()
    stamp = _base36(int(moment.timestamp() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(10))
    return f"TR-{stamp}-{suffix}"


@dataclass(frozen=True)
class Flag:
    id: str
    reason: str
    timestamp: datetime
    points_deducted: int


@dataclass(frozen=True)
class CheckIn:
    id: str
    trainee_id: str
    serial_number: str
    timestamp: datetime
    points: int


class Trainee:
    """A registered trainee. The balance is read-only outside the registry."""

    def __init__(
        self,
        id: str,
        name: str,
        serial_number: str,
        registered_at: datetime,
        points: int = 0,
        status: str = "active",
        flags: list[Flag] | None = None,
        last_check_in: datetime | None = None,
        details: dict | None = None,
    ) -> None:
        self.id = id
        self.name = name
        self.serial_number = serial_number
        self.registered_at = registered_at
        self.status = status
        self.flags: list[Flag] = list(flags or [])
        self.last_check_in = last_check_in
        self.details: dict = dict(details or {})
        self._points = max(0, int(points))

    @property
    def points(self) -> int:
        return self._points

    def __repr__(self) -> str:
        return f"Trainee(id={self.id!r}, name={self.name!r}, points={self._points})"


class TraineeRegistry:
    """Owner of trainee state and the only writer of trainee points."""

    def __init__(
        self,
        catalog: LevelCatalog = DEFAULT_CATALOG,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.catalog = catalog
        self._clock = clock or _utcnow
        self._trainees: dict[str, Trainee] = {}
        self._check_ins: list[CheckIn] = []
        self._listeners: list[LevelUpListener] = []
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._check_ins_lock = threading.Lock()

    # ── Lookup ────────────────────────────────────────────────────────────────

    def get(self, trainee_id: str) -> Trainee | None:
        return self._trainees.get(trainee_id)

    def get_by_serial(self, serial_number: str) -> Trainee | None:
        return next(
            (t for t in list(self._trainees.values()) if t.serial_number == serial_number),
            None,
        )

    def all(self) -> list[Trainee]:
        return list(self._trainees.values())

    def check_ins(self, trainee_id: str | None = None) -> list[CheckIn]:
        if trainee_id is None:
            return list(self._check_ins)
        return [c for c in self._check_ins if c.trainee_id == trainee_id]

    def points_by_trainee(self) -> dict[str, int]:
        return {t.id: t.points for t in list(self._trainees.values())}

    def _require(self, trainee_id: str) -> Trainee:
        trainee = self._trainees.get(trainee_id)
        if trainee is None:
            raise TraineeNotFoundError(trainee_id)
        return trainee

    def lock_for(self, trainee_id: str) -> threading.RLock:
        """Per-trainee re-entrant lock guarding balance changes."""
        with self._locks_guard:
            return self._locks.setdefault(trainee_id, threading.RLock())

    def add_level_up_listener(self, listener: LevelUpListener) -> None:
        self._listeners.append(listener)

    # ── Registration ──────────────────────────────────────────────────────────

    def register(self, name: str, points: int = 0, **details: object) -> Trainee:
        """Register a trainee. Initial points (e.g. photo bonus) are clamped at 0."""
        now = self._clock()
        trainee = Trainee(
            id=uuid.uuid4().hex,
            name=name,
            serial_number=generate_serial_number(now),
            registered_at=now,
            points=points,
            details=details,
        )
        self._trainees[trainee.id] = trainee
        logger.info(
            "Registered trainee", trainee_id=trainee.id, serial=trainee.serial_number,
            points=trainee.points,
        )
        return trainee

    def restore(self, trainee: Trainee) -> None:
        """Insert a previously persisted trainee without emitting events."""
        self._trainees[trainee.id] = trainee

    def restore_check_in(self, check_in: CheckIn) -> None:
        with self._check_ins_lock:
            self._check_ins.append(check_in)

    def remove(self, trainee_id: str) -> Trainee:
        """Delete a trainee and their check-ins."""
        with self.lock_for(trainee_id):
            trainee = self._require(trainee_id)
            del self._trainees[trainee_id]
            with self._check_ins_lock:
                self._check_ins = [c for c in self._check_ins if c.trainee_id != trainee_id]
        logger.info("Removed trainee", trainee_id=trainee_id)
        return trainee

    # ── Point updates ─────────────────────────────────────────────────────────

    def update_points(
        self,
        trainee_id: str,
        *,
        delta: int | None = None,
        new_points: int | None = None,
        reason: str = "",
    ) -> LevelTransition:
        """Apply a point change and return the level transition it caused.

        Exactly one of delta / new_points must be given. The resulting balance
        is clamped at 0. Level-up listeners are called for upward crossings.
        """
        if (delta is None) == (new_points is None):
            raise ValueError("Pass exactly one of delta or new_points")

        with self.lock_for(trainee_id):
            trainee = self._require(trainee_id)
            old_points = trainee.points
            target = old_points + delta if delta is not None else new_points
            if target < 0:
                logger.warning(
                    "Clamped negative balance", trainee_id=trainee_id,
                    requested=target, reason=reason,
                )
                target = 0
            trainee._points = target
            transition = detect_transition(old_points, target, self.catalog)

            logger.info(
                "Updated trainee points", trainee_id=trainee_id, old_points=old_points,
                new_points=target, reason=reason,
            )
            event = transition.event()
            if event is not None:
                logger.info(
                    "Trainee leveled up", trainee_id=trainee_id,
                    old_level=event.old_level.id, new_level=event.new_level.id,
                )
                for listener in self._listeners:
                    try:
                        listener(trainee, event)
                    except Exception:
                        logger.exception("Level-up listener failed", trainee_id=trainee_id)
        return transition

    # ── Collaborator operations ───────────────────────────────────────────────

    def check_in(self, serial_number: str) -> tuple[CheckIn, LevelTransition]:
        """Record a QR check-in and award CHECK_IN_POINTS."""
        trainee = self.get_by_serial(serial_number)
        if trainee is None:
            raise TraineeNotFoundError(serial_number)
        with self.lock_for(trainee.id):
            # Removed while we waited for the lock
            self._require(trainee.id)
            now = self._clock()
            check_in = CheckIn(
                id=uuid.uuid4().hex,
                trainee_id=trainee.id,
                serial_number=serial_number,
                timestamp=now,
                points=CHECK_IN_POINTS,
            )
            with self._check_ins_lock:
                self._check_ins.append(check_in)
            trainee.last_check_in = now
            transition = self.update_points(trainee.id, delta=CHECK_IN_POINTS, reason="check-in")
        return check_in, transition

    def flag(self, trainee_id: str, reason: str) -> tuple[Flag, LevelTransition]:
        """Flag a trainee and deduct FLAG_PENALTY points."""
        with self.lock_for(trainee_id):
            trainee = self._require(trainee_id)
            flag = Flag(
                id=uuid.uuid4().hex,
                reason=reason,
                timestamp=self._clock(),
                points_deducted=FLAG_PENALTY,
            )
            trainee.flags.append(flag)
            transition = self.update_points(trainee_id, delta=-FLAG_PENALTY, reason=f"flag: {reason}")
        return flag, transition

    def complete_session(self, trainee_id: str, points: int | None = None) -> LevelTransition:
        award = SESSION_POINTS if points is None else points
        return self.update_points(trainee_id, delta=award, reason="session completed")

    def complete_course(self, trainee_id: str, points: int | None = None) -> LevelTransition:
        award = COURSE_POINTS if points is None else points
        return self.update_points(trainee_id, delta=award, reason="course completed")

    def complete_group_course(self, trainee_id: str, points: int | None = None) -> LevelTransition:
        award = GROUP_COURSE_POINTS if points is None else points
        return self.update_points(trainee_id, delta=award, reason="group course completed")

    def set_level(self, trainee_id: str, level_id: str, reason: str) -> LevelTransition:
        """Admin adjustment: move the balance to the target level's minimum."""
        trainee = self._require(trainee_id)
        level = self.catalog.get(level_id)
        if level is None:
            raise LevelAdjustmentError(f"Unknown level: {level_id}")
        if not reason.strip():
            raise LevelAdjustmentError("A reason is required for a level adjustment")
        if self.catalog.level_for(trainee.points).id == level.id:
            raise LevelAdjustmentError(f"Trainee is already at level {level.name}")
        return self.update_points(
            trainee_id, new_points=level.min_points, reason=f"level adjustment: {reason}"
        )
