"""Trainee achievements derived from the current point balance."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from trainee_rank.levels import DEFAULT_CATALOG, Level, LevelCatalog

POINT_MILESTONES: list[int] = [50, 100, 250, 500, 750, 1000, 1500, 2000, 3000, 5000]


class AchievementKind(str, Enum):
    LEVEL = "level"
    MILESTONE = "milestone"


@dataclass(frozen=True)
class TraineeAchievement:
    id: str
    kind: AchievementKind
    title: str
    description: str
    emoji: str
    level: Level | None = None


def trainee_achievements(points: int, catalog: LevelCatalog = DEFAULT_CATALOG) -> list[TraineeAchievement]:
    """Return every level reached and every point milestone passed, lowest first."""
    results: list[TraineeAchievement] = []
    for level in catalog:
        if points >= level.min_points:
            results.append(
                TraineeAchievement(
                    id=f"level-{level.id}",
                    kind=AchievementKind.LEVEL,
                    title=f"{level.name} Level Achieved",
                    description=level.description,
                    emoji=level.emoji,
                    level=level,
                )
            )
    for milestone in POINT_MILESTONES:
        if points >= milestone:
            results.append(
                TraineeAchievement(
                    id=f"points-{milestone}",
                    kind=AchievementKind.MILESTONE,
                    title=f"{milestone} Points Milestone",
                    description=f"Earned {milestone} total points",
                    emoji="⭐",
                )
            )
    return results


def next_milestone(points: int) -> int | None:
    """Closest point milestone not yet reached, or None past the last one."""
    return next((m for m in POINT_MILESTONES if points < m), None)


def get_newly_earned(
    previous: list[TraineeAchievement], current: list[TraineeAchievement]
) -> list[TraineeAchievement]:
    """Achievements present in current but not in previous."""
    prev_ids = {a.id for a in previous}
    return [a for a in current if a.id not in prev_ids]
