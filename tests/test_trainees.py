"""Tests for trainee registration and point updates."""

import threading
from datetime import datetime, timezone

import pytest

from trainee_rank.trainees import (
    CHECK_IN_POINTS,
    FLAG_PENALTY,
    GROUP_COURSE_POINTS,
    SESSION_POINTS,
    LevelAdjustmentError,
    TraineeNotFoundError,
    TraineeRegistry,
    generate_serial_number,
)

NOW = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def registry():
    return TraineeRegistry(clock=lambda: NOW)


class TestSerialNumber:
    def test_format(self):
        serial = generate_serial_number(NOW)
        prefix, stamp, suffix = serial.split("-")
        assert prefix == "TR"
        assert stamp.isalnum() and stamp == stamp.upper()
        assert len(suffix) == 10

    def test_unique(self):
        assert len({generate_serial_number(NOW) for _ in range(200)}) == 200


class TestRegister:
    def test_defaults(self, registry):
        t = registry.register("Ana")
        assert t.points == 0
        assert t.status == "active"
        assert t.registered_at == NOW
        assert registry.get(t.id) is t
        assert registry.get_by_serial(t.serial_number) is t

    def test_initial_points(self, registry):
        assert registry.register("Ana", points=20).points == 20

    def test_negative_initial_points_clamped(self, registry):
        assert registry.register("Ana", points=-5).points == 0

    def test_details(self, registry):
        t = registry.register("Ana", email="ana@example.com")
        assert t.details == {"email": "ana@example.com"}

    def test_points_are_read_only(self, registry):
        t = registry.register("Ana")
        with pytest.raises(AttributeError):
            t.points = 500


class TestUpdatePoints:
    def test_delta(self, registry):
        t = registry.register("Ana", points=40)
        transition = registry.update_points(t.id, delta=70)
        assert t.points == 110
        assert transition.leveled_up is True
        assert transition.new_level.id == "beginner"

    def test_absolute(self, registry):
        t = registry.register("Ana", points=40)
        registry.update_points(t.id, new_points=300)
        assert t.points == 300

    def test_clamps_at_zero(self, registry):
        t = registry.register("Ana", points=3)
        transition = registry.update_points(t.id, delta=-10)
        assert t.points == 0
        assert transition.points_gained == -3

    def test_negative_absolute_clamped(self, registry):
        t = registry.register("Ana", points=30)
        registry.update_points(t.id, new_points=-1)
        assert t.points == 0

    def test_requires_exactly_one_argument(self, registry):
        t = registry.register("Ana")
        with pytest.raises(ValueError):
            registry.update_points(t.id)
        with pytest.raises(ValueError):
            registry.update_points(t.id, delta=1, new_points=1)

    def test_unknown_trainee(self, registry):
        with pytest.raises(TraineeNotFoundError):
            registry.update_points("missing", delta=1)


class TestLevelUpListeners:
    def test_called_once_per_level_up(self, registry):
        events = []
        registry.add_level_up_listener(lambda trainee, event: events.append((trainee.id, event)))
        t = registry.register("Ana", points=95)

        registry.update_points(t.id, delta=3)
        assert events == []
        registry.update_points(t.id, delta=10)
        assert len(events) == 1
        assert events[0][0] == t.id
        assert events[0][1].new_level.id == "beginner"

    def test_not_called_on_drop(self, registry):
        events = []
        registry.add_level_up_listener(lambda trainee, event: events.append(event))
        t = registry.register("Ana", points=105)
        registry.update_points(t.id, delta=-20)
        assert events == []


class TestCollaboratorOperations:
    def test_check_in(self, registry):
        t = registry.register("Ana")
        check_in, transition = registry.check_in(t.serial_number)
        assert check_in.trainee_id == t.id
        assert check_in.points == CHECK_IN_POINTS
        assert t.points == CHECK_IN_POINTS
        assert t.last_check_in == NOW
        assert registry.check_ins(t.id) == [check_in]
        assert transition.points_gained == CHECK_IN_POINTS

    def test_check_in_unknown_serial(self, registry):
        with pytest.raises(TraineeNotFoundError):
            registry.check_in("TR-NOPE")

    def test_flag(self, registry):
        t = registry.register("Ana", points=12)
        flag, _ = registry.flag(t.id, "late")
        assert flag.reason == "late"
        assert flag.points_deducted == FLAG_PENALTY
        assert t.flags == [flag]
        assert t.points == 12 - FLAG_PENALTY

    def test_flag_never_goes_negative(self, registry):
        t = registry.register("Ana", points=2)
        registry.flag(t.id, "absent")
        assert t.points == 0

    def test_complete_session(self, registry):
        t = registry.register("Ana")
        registry.complete_session(t.id)
        assert t.points == SESSION_POINTS

    def test_complete_group_course_custom_points(self, registry):
        t = registry.register("Ana")
        registry.complete_group_course(t.id)
        registry.complete_group_course(t.id, points=7)
        assert t.points == GROUP_COURSE_POINTS + 7


class TestSetLevel:
    def test_moves_to_level_minimum(self, registry):
        t = registry.register("Ana", points=30)
        transition = registry.set_level(t.id, "skilled", "excellent project")
        assert t.points == 500
        assert transition.leveled_up is True

    def test_downgrade(self, registry):
        t = registry.register("Ana", points=900)
        transition = registry.set_level(t.id, "beginner", "misconduct")
        assert t.points == 100
        assert transition.leveled_up is False

    def test_reason_required(self, registry):
        t = registry.register("Ana")
        with pytest.raises(LevelAdjustmentError, match="reason"):
            registry.set_level(t.id, "novice", "  ")

    def test_same_level_rejected(self, registry):
        t = registry.register("Ana", points=120)
        with pytest.raises(LevelAdjustmentError, match="already"):
            registry.set_level(t.id, "beginner", "no-op")

    def test_unknown_level(self, registry):
        t = registry.register("Ana")
        with pytest.raises(LevelAdjustmentError, match="Unknown"):
            registry.set_level(t.id, "wizard", "why not")


class TestRemove:
    def test_remove_drops_check_ins(self, registry):
        t = registry.register("Ana")
        other = registry.register("Ben")
        registry.check_in(t.serial_number)
        registry.check_in(other.serial_number)
        registry.remove(t.id)
        assert registry.get(t.id) is None
        assert [c.trainee_id for c in registry.check_ins()] == [other.id]

    def test_remove_unknown(self, registry):
        with pytest.raises(TraineeNotFoundError):
            registry.remove("missing")


class TestListenerFailures:
    def test_failing_listener_does_not_abort_update(self, registry):
        seen = []

        def broken(trainee, event):
            raise RuntimeError("notification service down")

        registry.add_level_up_listener(broken)
        registry.add_level_up_listener(lambda trainee, event: seen.append(event.new_level.id))
        t = registry.register("Ana", points=95)

        check_in, transition = registry.check_in(t.serial_number)

        assert transition.leveled_up is True
        assert t.points == 105
        assert registry.check_ins(t.id) == [check_in]
        assert seen == ["beginner"]


class TestConcurrentRemoval:
    def test_check_ins_never_outlive_their_trainee(self, registry):
        trainees = [registry.register(f"T{i}") for i in range(50)]
        keeper = registry.register("Keeper")
        barrier = threading.Barrier(3)

        def check_in_all():
            barrier.wait()
            for t in trainees:
                try:
                    registry.check_in(t.serial_number)
                except TraineeNotFoundError:
                    pass

        def check_in_keeper():
            barrier.wait()
            for _ in range(200):
                registry.check_in(keeper.serial_number)

        def remove_all():
            barrier.wait()
            for t in trainees:
                registry.remove(t.id)

        threads = [
            threading.Thread(target=check_in_all),
            threading.Thread(target=check_in_keeper),
            threading.Thread(target=remove_all),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert registry.all() == [keeper]
        assert {c.trainee_id for c in registry.check_ins()} == {keeper.id}
        assert len(registry.check_ins(keeper.id)) == 200
        assert keeper.points == 200 * CHECK_IN_POINTS
