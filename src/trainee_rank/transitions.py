"""Level-transition detection between two point balances."""

from __future__ import annotations

from dataclasses import dataclass

from trainee_rank.levels import DEFAULT_CATALOG, Level, LevelCatalog


@dataclass(frozen=True)
class LevelUpEvent:
    """One-time notification payload for an upward level crossing."""

    old_level: Level
    new_level: Level
    points_gained: int


@dataclass(frozen=True)
class LevelTransition:
    leveled_up: bool
    old_level: Level
    new_level: Level
    points_gained: int  # negative for deductions

    @property
    def level_changed(self) -> bool:
        return self.old_level.id != self.new_level.id

    def event(self) -> LevelUpEvent | None:
        """Return the level-up event, or None when nothing should be celebrated."""
        if not self.leveled_up:
            return None
        return LevelUpEvent(
            old_level=self.old_level,
            new_level=self.new_level,
            points_gained=self.points_gained,
        )


def detect_transition(
    old_points: int, new_points: int, catalog: LevelCatalog = DEFAULT_CATALOG
) -> LevelTransition:
    """Compare two balances and report whether a level-up happened.

    Only increases that change the level count as a level-up. Downward
    crossings still report the real new level, with leveled_up=False.
    """
    old_level = catalog.level_for(old_points)
    new_level = catalog.level_for(new_points)
    leveled_up = old_level.id != new_level.id and new_points > old_points
    return LevelTransition(
        leveled_up=leveled_up,
        old_level=old_level,
        new_level=new_level,
        points_gained=new_points - old_points,
    )
