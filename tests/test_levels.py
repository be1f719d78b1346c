"""Tests for the level catalog and point-to-level resolution."""

import pytest

from trainee_rank.levels import (
    DEFAULT_CATALOG,
    CatalogError,
    Level,
    LevelCatalog,
    level_for,
    level_statistics,
    next_level_for,
    progress_for,
)


def _catalog(*bounds):
    """Build a catalog from (id, min, max) triples."""
    return LevelCatalog([
        Level(id=lid, name=lid.title(), min_points=low, max_points=high, rank=i)
        for i, (lid, low, high) in enumerate(bounds)
    ])


class TestDefaultCatalog:
    def test_eight_levels(self):
        assert len(DEFAULT_CATALOG) == 8

    def test_ids_in_order(self):
        assert [lv.id for lv in DEFAULT_CATALOG] == [
            "amateur", "beginner", "novice", "skilled",
            "advanced", "expert", "elite", "master",
        ]

    def test_ranks_match_position(self):
        for i, lv in enumerate(DEFAULT_CATALOG):
            assert lv.rank == i

    def test_top_is_unbounded(self):
        assert DEFAULT_CATALOG.top.id == "master"
        assert DEFAULT_CATALOG.top.max_points is None

    def test_every_level_has_perks(self):
        for lv in DEFAULT_CATALOG:
            assert lv.perks

    def test_get(self):
        assert DEFAULT_CATALOG.get("novice").min_points == 250
        assert DEFAULT_CATALOG.get("nope") is None


class TestCatalogValidation:
    def test_empty(self):
        with pytest.raises(CatalogError):
            LevelCatalog([])

    def test_first_must_start_at_zero(self):
        with pytest.raises(CatalogError):
            _catalog(("a", 1, 99), ("b", 100, None))

    def test_gap(self):
        with pytest.raises(CatalogError, match="contiguous"):
            _catalog(("a", 0, 99), ("b", 101, None))

    def test_overlap(self):
        with pytest.raises(CatalogError):
            _catalog(("a", 0, 99), ("b", 99, None))

    def test_top_must_be_unbounded(self):
        with pytest.raises(CatalogError):
            _catalog(("a", 0, 99), ("b", 100, 200))

    def test_middle_cannot_be_unbounded(self):
        with pytest.raises(CatalogError):
            _catalog(("a", 0, None), ("b", 100, None))

    def test_duplicate_ids(self):
        with pytest.raises(CatalogError, match="Duplicate"):
            _catalog(("a", 0, 99), ("a", 100, None))

    def test_wrong_rank(self):
        with pytest.raises(CatalogError):
            LevelCatalog([
                Level(id="a", name="A", min_points=0, max_points=None, rank=3),
            ])

    def test_single_level(self):
        catalog = _catalog(("only", 0, None))
        assert catalog.level_for(10**9).id == "only"


class TestFromDicts:
    def test_builds_catalog(self):
        catalog = LevelCatalog.from_dicts([
            {"id": "rookie", "min_points": 0, "max_points": 49},
            {"id": "pro", "name": "Pro", "min_points": 50, "max_points": None, "perks": ["x"]},
        ])
        assert [lv.rank for lv in catalog] == [0, 1]
        assert catalog[0].name == "rookie"
        assert catalog[1].perks == ("x",)

    def test_missing_field(self):
        with pytest.raises(CatalogError, match="position 1"):
            LevelCatalog.from_dicts([
                {"id": "a", "min_points": 0, "max_points": 9},
                {"id": "b"},
            ])

    def test_bad_number(self):
        with pytest.raises(CatalogError):
            LevelCatalog.from_dicts([{"id": "a", "min_points": "zero", "max_points": None}])


class TestLevelFor:
    def test_zero(self):
        assert level_for(0).id == "amateur"

    def test_negative_clamps_to_first(self):
        assert level_for(-50).id == "amateur"

    @pytest.mark.parametrize(
        "points, expected",
        [
            (99, "amateur"), (100, "beginner"), (249, "beginner"), (250, "novice"),
            (499, "novice"), (500, "skilled"), (799, "skilled"), (800, "advanced"),
            (1199, "advanced"), (1200, "expert"), (1799, "expert"), (1800, "elite"),
            (2499, "elite"), (2500, "master"), (1_000_000, "master"),
        ],
    )
    def test_boundaries(self, points, expected):
        assert level_for(points).id == expected

    def test_total_and_unique(self):
        """Every balance maps to exactly one level containing it."""
        for points in range(0, 100_001, 7):
            matches = [lv for lv in DEFAULT_CATALOG if lv.contains(points)]
            assert len(matches) == 1
            assert level_for(points) == matches[0]

    def test_monotonic(self):
        previous = level_for(0).rank
        for points in range(1, 5000):
            rank = level_for(points).rank
            assert rank >= previous
            previous = rank


class TestNextLevelFor:
    def test_from_amateur(self):
        assert next_level_for(0).id == "beginner"

    def test_from_elite(self):
        assert next_level_for(2499).id == "master"

    def test_top_returns_none(self):
        assert next_level_for(2500) is None
        assert next_level_for(99_999) is None

    def test_next_rank_is_one_more(self):
        for points in range(0, 2500, 13):
            assert next_level_for(points).rank == level_for(points).rank + 1


class TestProgressFor:
    def test_start_of_level(self):
        progress = progress_for(0)
        assert progress.progress_percent == 0
        assert progress.points_to_next == 100

    def test_midway(self):
        # Beginner spans 100..249, next at 250: (175-100)/150 = 50%
        progress = progress_for(175)
        assert progress.progress_percent == 50
        assert progress.points_to_next == 75

    def test_rounds_half_up(self):
        # 1/8 of a 200-point span rounds 12.5 -> 13
        catalog = _catalog(("a", 0, 199), ("b", 200, None))
        assert catalog.progress_for(25).progress_percent == 13

    def test_last_point_of_level(self):
        progress = progress_for(99)
        assert progress.progress_percent == 99
        assert progress.points_to_next == 1

    def test_top_level(self):
        progress = progress_for(5000)
        assert progress.progress_percent == 100
        assert progress.points_to_next == 0

    def test_negative(self):
        assert progress_for(-10) == progress_for(0)

    def test_bounds(self):
        for points in range(0, 3000, 3):
            progress = progress_for(points)
            assert 0 <= progress.progress_percent <= 100
            assert progress.points_to_next >= 0

    def test_monotonic_within_level(self):
        level = DEFAULT_CATALOG.get("skilled")
        previous = -1
        for points in range(level.min_points, level.max_points + 1):
            percent = progress_for(points).progress_percent
            assert percent >= previous
            previous = percent


class TestLevelStatistics:
    def test_counts(self):
        stats = level_statistics({"a": 0, "b": 120, "c": 130, "d": 9000})
        assert stats["amateur"].count == 1
        assert stats["beginner"].count == 2
        assert sorted(stats["beginner"].trainee_ids) == ["b", "c"]
        assert stats["master"].count == 1

    def test_every_level_present(self):
        stats = level_statistics({})
        assert list(stats) == [lv.id for lv in DEFAULT_CATALOG]
        assert all(s.count == 0 for s in stats.values())

    def test_custom_catalog(self):
        catalog = _catalog(("low", 0, 9), ("high", 10, None))
        stats = level_statistics({"x": 10}, catalog)
        assert stats["high"].count == 1


class TestScenario:
    def test_climb_from_zero(self):
        points = 0
        assert level_for(points).id == "amateur"
        points += 10 * 10  # ten check-ins
        assert level_for(points).id == "beginner"
        assert progress_for(points).progress_percent == 0
        points += 20 * 8  # eight sessions
        assert level_for(points).id == "novice"
        assert next_level_for(points).id == "skilled"
        assert progress_for(points).points_to_next == 240
