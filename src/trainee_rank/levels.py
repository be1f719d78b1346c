"""Level catalog and point-to-level resolution. Pure functions, no side effects."""

from __future__ import annotations

from dataclasses import dataclass, field


class CatalogError(ValueError):
    """Raised when a level table breaks the contiguity rules."""


@dataclass(frozen=True)
class Level:
    id: str
    name: str
    min_points: int
    max_points: int | None  # None = unbounded (top level only)
    rank: int
    perks: tuple[str, ...] = ()
    emoji: str = ""
    color: str = "white"
    description: str = ""

    def contains(self, points: int) -> bool:
        if points < self.min_points:
            return False
        return self.max_points is None or points <= self.max_points


@dataclass(frozen=True)
class LevelProgress:
    """Progress through the current level toward the next one."""

    progress_percent: int  # 0..100
    points_to_next: int


@dataclass
class LevelStats:
    level: Level
    count: int = 0
    trainee_ids: list[str] = field(default_factory=list)


class LevelCatalog:
    """Immutable, ordered table of levels.

    Ranges are contiguous and strictly increasing; the first level starts at 0
    and the last one is unbounded, so every non-negative point value maps to
    exactly one level.
    """

    def __init__(self, levels: list[Level] | tuple[Level, ...]) -> None:
        self._levels: tuple[Level, ...] = tuple(levels)
        self._validate()

    @classmethod
    def from_dicts(cls, rows: list[dict]) -> LevelCatalog:
        """Build a catalog from plain dicts. Rank is assigned by position."""
        levels = []
        for rank, row in enumerate(rows):
            try:
                levels.append(
                    Level(
                        id=str(row["id"]),
                        name=str(row.get("name", row["id"])),
                        min_points=int(row["min_points"]),
                        max_points=None if row.get("max_points") is None else int(row["max_points"]),
                        rank=rank,
                        perks=tuple(row.get("perks", ())),
                        emoji=row.get("emoji", ""),
                        color=row.get("color", "white"),
                        description=row.get("description", ""),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise CatalogError(f"Invalid level definition at position {rank}: {exc}") from exc
        return cls(levels)

    def _validate(self) -> None:
        if not self._levels:
            raise CatalogError("Level catalog must not be empty")
        if self._levels[0].min_points != 0:
            raise CatalogError("First level must start at 0 points")
        seen_ids: set[str] = set()
        for position, level in enumerate(self._levels):
            if level.rank != position:
                raise CatalogError(f"Level {level.id!r} has rank {level.rank}, expected {position}")
            if level.id in seen_ids:
                raise CatalogError(f"Duplicate level id {level.id!r}")
            seen_ids.add(level.id)
            is_last = position == len(self._levels) - 1
            if is_last:
                if level.max_points is not None:
                    raise CatalogError("Top level must be unbounded (max_points=None)")
                continue
            if level.max_points is None:
                raise CatalogError(f"Only the top level may be unbounded, not {level.id!r}")
            if level.max_points < level.min_points:
                raise CatalogError(f"Level {level.id!r} has an empty point range")
            following = self._levels[position + 1]
            if following.min_points != level.max_points + 1:
                raise CatalogError(
                    f"Levels {level.id!r} and {following.id!r} are not contiguous"
                )

    def __iter__(self):
        return iter(self._levels)

    def __len__(self) -> int:
        return len(self._levels)

    def __getitem__(self, index: int) -> Level:
        return self._levels[index]

    @property
    def levels(self) -> tuple[Level, ...]:
        return self._levels

    @property
    def top(self) -> Level:
        return self._levels[-1]

    def get(self, level_id: str) -> Level | None:
        return next((lv for lv in self._levels if lv.id == level_id), None)

    def level_for(self, points: int) -> Level:
        """Return the level whose range contains points. Negative input clamps to the first level."""
        if points <= 0:
            return self._levels[0]
        for level in self._levels:
            if level.contains(points):
                return level
        return self.top

    def next_level_for(self, points: int) -> Level | None:
        """Return the level one rank above the current one, or None at the top."""
        current = self.level_for(points)
        if current.rank + 1 < len(self._levels):
            return self._levels[current.rank + 1]
        return None

    def progress_for(self, points: int) -> LevelProgress:
        """Return progress through the current level's span.

        progress_percent = round(100 * (points - current.min) / (next.min - current.min)),
        rounded half-up and clamped to [0, 100]. At the top level: (100, 0).
        """
        points = max(0, points)
        current = self.level_for(points)
        nxt = self.next_level_for(points)
        if nxt is None:
            return LevelProgress(progress_percent=100, points_to_next=0)

        into_level = points - current.min_points
        span = nxt.min_points - current.min_points
        percent = (200 * into_level + span) // (2 * span)
        return LevelProgress(
            progress_percent=max(0, min(percent, 100)),
            points_to_next=max(0, nxt.min_points - points),
        )

    def level_statistics(self, points_by_trainee: dict[str, int]) -> dict[str, LevelStats]:
        """Count trainees per level. Every level is present, in catalog order."""
        stats = {level.id: LevelStats(level=level) for level in self._levels}
        for trainee_id, points in points_by_trainee.items():
            entry = stats[self.level_for(points).id]
            entry.count += 1
            entry.trainee_ids.append(trainee_id)
        return stats


def _level(rank: int, id: str, name: str, low: int, high: int | None, emoji: str,
           color: str, description: str, perks: list[str]) -> Level:
    return Level(
        id=id, name=name, min_points=low, max_points=high, rank=rank,
        perks=tuple(perks), emoji=emoji, color=color, description=description,
    )


DEFAULT_CATALOG = LevelCatalog([
    _level(0, "amateur", "Amateur", 0, 99, "\U0001f7e2", "green",
           "Just getting started on your learning journey", [
               "Access to basic training materials",
               "Welcome bonus points",
               "Basic profile customization",
           ]),
    _level(1, "beginner", "Beginner", 100, 249, "\U0001f7e6", "blue",
           "Building foundational skills and knowledge", [
               "Access to intermediate courses",
               "Digital certificate of completion",
               "Priority support access",
               "Basic mentorship program",
           ]),
    _level(2, "novice", "Novice", 250, 499, "\U0001f7e1", "yellow",
           "Developing practical skills and confidence", [
               "Access to specialized workshops",
               "Novice achievement badge",
               "Course completion certificates",
               "Extended library access",
               "Peer mentoring opportunities",
           ]),
    _level(3, "skilled", "Skilled", 500, 799, "\U0001f7e0", "orange",
           "Demonstrating competency and expertise", [
               "Access to advanced training modules",
               "Skilled practitioner certificate",
               "Guest speaker opportunities",
               "Access to premium resources",
               "Project collaboration privileges",
               "Small monetary rewards",
           ]),
    _level(4, "advanced", "Advanced", 800, 1199, "\U0001f535", "indigo",
           "Advanced practitioner with deep knowledge", [
               "Access to expert-level content",
               "Advanced practitioner certification",
               "Teaching assistant opportunities",
               "Special event invitations",
               "Advanced project access",
               "Quarterly bonus rewards",
               "Professional networking events",
           ]),
    _level(5, "expert", "Expert", 1200, 1799, "\U0001f7e3", "violet",
           "Expert level with exceptional knowledge and skills", [
               "Exclusive expert-only sessions",
               "Expert certification and digital badge",
               "Mentorship program participation",
               "Conference speaking opportunities",
               "Beta access to new features",
               "Significant monetary rewards",
               "Professional development budget",
               "Industry networking access",
           ]),
    _level(6, "elite", "Elite", 1800, 2499, "\U0001f3c5", "amber",
           "Elite performer with outstanding achievements", [
               "Elite status recognition",
               "Exclusive elite community access",
               "Premium certification with honors",
               "Guest lecturer opportunities",
               "Research project participation",
               "Substantial financial rewards",
               "Professional conference sponsorship",
               "Career advancement support",
               "VIP event access",
           ]),
    _level(7, "master", "Master", 2500, None, "\U0001f451", "red",
           "Master level - the pinnacle of achievement", [
               "Master status with special recognition",
               "Master certification with highest honors",
               "Program advisory board invitation",
               "Curriculum development participation",
               "Maximum financial rewards",
               "Industry partnership opportunities",
               "Lifetime achievement recognition",
               "Executive mentorship access",
               "Special master privileges",
               "Legacy program participation",
           ]),
])


def level_for(points: int, catalog: LevelCatalog = DEFAULT_CATALOG) -> Level:
    """Given a point balance, return the current level."""
    return catalog.level_for(points)


def next_level_for(points: int, catalog: LevelCatalog = DEFAULT_CATALOG) -> Level | None:
    """Return the next level, or None if already at the top."""
    return catalog.next_level_for(points)


def progress_for(points: int, catalog: LevelCatalog = DEFAULT_CATALOG) -> LevelProgress:
    """Return (progress_percent, points_to_next) toward the next level."""
    return catalog.progress_for(points)


def level_statistics(
    points_by_trainee: dict[str, int], catalog: LevelCatalog = DEFAULT_CATALOG
) -> dict[str, LevelStats]:
    """Group trainee ids by current level."""
    return catalog.level_statistics(points_by_trainee)
