"""Tests for the redemption engine."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from trainee_rank.redemption import (
    RedemptionEngine,
    RedemptionError,
    check_eligibility,
)
from trainee_rank.rewards import RewardCatalog
from trainee_rank.trainees import TraineeRegistry

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def registry():
    return TraineeRegistry(clock=lambda: NOW)


@pytest.fixture
def catalog():
    return RewardCatalog(clock=lambda: NOW)


@pytest.fixture
def engine(catalog, registry):
    return RedemptionEngine(catalog, registry, clock=lambda: NOW)


def _reward(catalog, **overrides):
    fields = {"title": "Mug", "description": "Program mug", "points_required": 50}
    fields.update(overrides)
    return catalog.create_reward(**fields)


class TestRedeem:
    def test_success(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=120)
        reward = _reward(catalog)

        result = engine.redeem(reward.id, trainee.id)

        assert result.ok
        assert result.error is None
        assert result.record.points_deducted == 50
        assert result.record.redeemed_at == NOW
        assert trainee.points == 70
        assert reward.total_redeemed == 1
        assert catalog.redemptions() == [result.record]

    def test_can_drop_a_level(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=120)
        reward = _reward(catalog, points_required=30)
        result = engine.redeem(reward.id, trainee.id)
        assert result.transition.new_level.id == "amateur"
        assert result.transition.leveled_up is False

    def test_exact_balance(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=50)
        assert engine.redeem(_reward(catalog).id, trainee.id).ok
        assert trainee.points == 0

    def test_unknown_reward(self, engine, registry):
        trainee = registry.register("Ana", points=100)
        assert engine.redeem("missing", trainee.id).error == RedemptionError.NOT_FOUND

    def test_unknown_trainee(self, engine, catalog):
        assert engine.redeem(_reward(catalog).id, "missing").error == RedemptionError.NOT_FOUND

    def test_inactive(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=100)
        reward = _reward(catalog)
        catalog.retire_reward(reward.id)
        assert engine.redeem(reward.id, trainee.id).error == RedemptionError.REWARD_INACTIVE

    def test_expired(self, catalog, registry):
        trainee = registry.register("Ana", points=100)
        reward = _reward(catalog, expiry_date="2025-06-02")
        later = RedemptionEngine(catalog, registry, clock=lambda: NOW + timedelta(days=2))
        assert later.redeem(reward.id, trainee.id).error == RedemptionError.REWARD_EXPIRED

    def test_out_of_stock(self, engine, catalog, registry):
        first = registry.register("Ana", points=100)
        second = registry.register("Ben", points=100)
        reward = _reward(catalog, available_quantity=1)
        assert engine.redeem(reward.id, first.id).ok
        assert engine.redeem(reward.id, second.id).error == RedemptionError.OUT_OF_STOCK

    def test_not_targeted(self, engine, catalog, registry):
        insider = registry.register("Ana", points=100)
        outsider = registry.register("Ben", points=100)
        reward = _reward(catalog, targeted_trainees=[insider.id])
        assert engine.redeem(reward.id, outsider.id).error == RedemptionError.NOT_ELIGIBLE
        assert engine.redeem(reward.id, insider.id).ok

    def test_insufficient_points(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=49)
        result = engine.redeem(_reward(catalog).id, trainee.id)
        assert result.error == RedemptionError.INSUFFICIENT_POINTS
        assert result.message == "Not enough points to redeem this gift"

    def test_already_redeemed(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=200)
        reward = _reward(catalog)
        assert engine.redeem(reward.id, trainee.id).ok
        assert engine.redeem(reward.id, trainee.id).error == RedemptionError.ALREADY_REDEEMED

    def test_limit_per_person_counts(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=500)
        reward = _reward(catalog, limit_per_person=3)
        results = [engine.redeem(reward.id, trainee.id) for _ in range(4)]
        assert [r.ok for r in results] == [True, True, True, False]
        assert results[-1].error == RedemptionError.ALREADY_REDEEMED
        assert trainee.points == 350

    def test_failure_has_no_effects(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=10)
        reward = _reward(catalog)
        engine.redeem(reward.id, trainee.id)
        assert trainee.points == 10
        assert reward.total_redeemed == 0
        assert catalog.redemptions() == []


class TestCheckOrder:
    def test_inactive_before_expired(self, catalog):
        reward = _reward(catalog, expiry_date="2025-06-02")
        catalog.retire_reward(reward.id)
        later = NOW + timedelta(days=3)
        assert check_eligibility(reward, "t", 0, 0, later) == RedemptionError.REWARD_INACTIVE

    def test_expired_before_out_of_stock(self, catalog):
        reward = _reward(catalog, available_quantity=1, expiry_date="2025-06-02")
        with catalog.lock_for(reward.id):
            catalog.record_redemption(reward, "x", NOW)
        later = NOW + timedelta(days=3)
        assert check_eligibility(reward, "t", 999, 0, later) == RedemptionError.REWARD_EXPIRED

    def test_out_of_stock_before_targeting(self, catalog):
        reward = _reward(catalog, available_quantity=1, targeted_trainees=["x"])
        with catalog.lock_for(reward.id):
            catalog.record_redemption(reward, "x", NOW)
        assert check_eligibility(reward, "t", 999, 0, NOW) == RedemptionError.OUT_OF_STOCK

    def test_targeting_before_points(self, catalog):
        reward = _reward(catalog, targeted_trainees=["x"])
        assert check_eligibility(reward, "t", 0, 0, NOW) == RedemptionError.NOT_ELIGIBLE

    def test_points_before_limit(self, catalog):
        reward = _reward(catalog)
        assert check_eligibility(reward, "t", 0, 5, NOW) == RedemptionError.INSUFFICIENT_POINTS


class TestPriceSnapshot:
    def test_later_price_change_does_not_touch_ledger(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=300)
        reward = _reward(catalog, points_required=40, limit_per_person=2)
        first = engine.redeem(reward.id, trainee.id)
        catalog.update_reward(reward.id, points_required=90)
        second = engine.redeem(reward.id, trainee.id)

        assert first.record.points_deducted == 40
        assert second.record.points_deducted == 90
        assert trainee.points == 300 - 40 - 90

    def test_points_conserved(self, engine, catalog, registry):
        trainees = [registry.register(f"T{i}", points=100 + i * 40) for i in range(5)]
        rewards = [_reward(catalog, title=f"R{i}", points_required=30 + i * 25) for i in range(3)]
        start = sum(t.points for t in trainees)
        for t in trainees:
            for r in rewards:
                engine.redeem(r.id, t.id)
        spent = sum(rec.points_deducted for rec in catalog.redemptions())
        assert sum(t.points for t in trainees) == start - spent


class TestConcurrency:
    def test_stock_never_oversold(self, catalog, registry):
        engine = RedemptionEngine(catalog, registry, clock=lambda: NOW)
        reward = _reward(catalog, available_quantity=5, points_required=10)
        trainees = [registry.register(f"T{i}", points=100) for i in range(40)]
        barrier = threading.Barrier(len(trainees))
        results = []
        results_lock = threading.Lock()

        def attempt(trainee_id):
            barrier.wait()
            result = engine.redeem(reward.id, trainee_id)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=attempt, args=(t.id,)) for t in trainees]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        successes = [r for r in results if r.ok]
        assert len(successes) == 5
        assert reward.total_redeemed == 5
        assert len(catalog.redemptions_for_reward(reward.id)) == 5
        assert all(r.error == RedemptionError.OUT_OF_STOCK for r in results if not r.ok)
        assert sum(t.points for t in trainees) == 40 * 100 - 5 * 10

    def test_same_trainee_racing_limit(self, catalog, registry):
        engine = RedemptionEngine(catalog, registry, clock=lambda: NOW)
        trainee = registry.register("Ana", points=1000)
        reward = _reward(catalog, points_required=10, limit_per_person=2)
        barrier = threading.Barrier(10)

        def attempt():
            barrier.wait()
            engine.redeem(reward.id, trainee.id)

        threads = [threading.Thread(target=attempt) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert catalog.count_redemptions(reward.id, trainee.id) == 2
        assert trainee.points == 980


class TestAvailableRewards:
    def test_lists_only_redeemable(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=100)
        cheap = _reward(catalog, title="Cheap", points_required=20)
        _reward(catalog, title="Pricey", points_required=500)
        retired = _reward(catalog, title="Old")
        catalog.retire_reward(retired.id)
        _reward(catalog, title="Private", targeted_trainees=["someone-else"])

        assert [r.id for r in engine.available_rewards_for(trainee.id)] == [cheap.id]

    def test_unknown_trainee(self, engine, catalog):
        _reward(catalog)
        assert engine.available_rewards_for("missing") == []

    def test_matches_redeem(self, engine, catalog, registry):
        """Every listed reward redeems, every unlisted one is rejected."""
        trainee = registry.register("Ana", points=200)
        _reward(catalog, title="A", points_required=20)
        _reward(catalog, title="B", points_required=300)
        _reward(catalog, title="C", points_required=60, targeted_trainees=[trainee.id])
        listed = {r.id for r in engine.available_rewards_for(trainee.id)}
        for reward in catalog.all():
            assert (engine.eligibility(reward.id, trainee.id) is None) == (reward.id in listed)

    def test_drops_after_limit(self, engine, catalog, registry):
        trainee = registry.register("Ana", points=200)
        reward = _reward(catalog)
        engine.redeem(reward.id, trainee.id)
        assert engine.available_rewards_for(trainee.id) == []
