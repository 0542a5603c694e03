"""
Unit tests for the EV optimizer (core/optimizer.py)

Tests:
- Square-count EV search, learned and theoretical
- Reserve and competition gates
- Square selection and sizing
"""

import random

import pytest

from ore_learner.core.competition import CompetitionTier
from ore_learner.core.config import OptimizerConfig
from ore_learner.core.constants import LAMPORTS_PER_SOL
from ore_learner.core.learning import DetectedStrategy, StrategyKind
from ore_learner.core.optimizer import CurrentRoundState, EVOptimizer
from ore_learner.core.square_signals import ConsensusHint

ONE_SOL = LAMPORTS_PER_SOL


def _round(deployed=None, round_id=10):
    return CurrentRoundState(round_id=round_id, deployed=tuple(deployed or [0] * 25))


@pytest.fixture
def optimizer(tracker):
    return EVOptimizer(tracker, OptimizerConfig(), rng=random.Random(3))


# =============================================================================
# SQUARE COUNT
# =============================================================================

def test_theoretical_model_prefers_full_coverage(optimizer):
    decision = optimizer.get_optimal_square_count()

    assert decision.count == 25
    assert decision.expected_value == pytest.approx(5 / 25 - 25 * 0.001)
    assert decision.exploring is False
    assert "theoretical" in decision.reasoning


def test_learned_count_wins(optimizer, tracker):
    stat = tracker.count_stats[5]
    stat.times_used, stat.times_won, stat.total_ore = 10, 8, 8.0

    decision = optimizer.get_optimal_square_count()

    assert decision.count == 5
    assert decision.expected_value == pytest.approx(0.795)
    assert decision.reasoning.startswith("LEARNED")


def test_tried_without_win_is_discounted(optimizer, tracker):
    tracker.count_stats[5].times_used, tracker.count_stats[5].times_won = 10, 1
    tracker.count_stats[25].times_used = 10

    decision = optimizer.get_optimal_square_count()

    # count 25 now uses p = 0.5, the 24-square theoretical estimate beats it
    assert decision.count == 24


def test_negative_ev_explores_least_used(tracker):
    optimizer = EVOptimizer(tracker, OptimizerConfig(cost_per_square_sol=1.0), rng=random.Random(1))
    for count, stat in tracker.count_stats.items():
        if count != 7:
            stat.times_used = 1000

    decision = optimizer.get_optimal_square_count()

    assert decision.exploring is True
    assert decision.count == 7
    assert decision.reasoning.startswith("EXPLORING")


def test_exploration_is_reproducible(tracker):
    config = OptimizerConfig(cost_per_square_sol=1.0)
    first = EVOptimizer(tracker, config, rng=random.Random(42)).get_optimal_square_count()
    second = EVOptimizer(tracker, config, rng=random.Random(42)).get_optimal_square_count()

    assert first.count == second.count
    assert 1 <= first.count <= 25


# =============================================================================
# GATES
# =============================================================================

def test_empty_round_stakes_every_square(optimizer):
    rec = optimizer.decide(ONE_SOL, _round())

    assert rec.should_stake is True
    assert rec.squares == tuple(range(25))
    assert rec.per_square_stake == (40_000_000 // 25,) * 25
    assert rec.total_stake <= 40_000_000
    assert rec.competition_tier is CompetitionTier.VERY_LOW


def test_reserve_gate(optimizer):
    reserve = optimizer.config.min_wallet_lamports

    rec = optimizer.decide(reserve - 1, _round())

    assert rec.should_stake is False
    assert rec.skip_reason.startswith("Wallet balance")


def test_very_high_competition_always_skips(optimizer):
    deployed = [0] * 25
    deployed[0] = 60 * ONE_SOL
    hint = ConsensusHint(squares=(1,), weights=(1.0,), confidence=0.85)

    rec = optimizer.decide(ONE_SOL, _round(deployed), consensus_hint=hint)

    assert rec.should_stake is False
    assert rec.competition_tier is CompetitionTier.VERY_HIGH


def test_high_competition_needs_confident_hint(optimizer):
    deployed = [0] * 25
    deployed[0] = 20 * ONE_SOL

    weak = ConsensusHint(squares=(1,), weights=(1.0,), confidence=0.6)
    strong = ConsensusHint(squares=(1,), weights=(1.0,), confidence=0.7)

    assert optimizer.decide(ONE_SOL, _round(deployed), consensus_hint=weak).should_stake is False
    rec = optimizer.decide(ONE_SOL, _round(deployed), consensus_hint=strong)
    assert rec.should_stake is True
    assert rec.squares[0] == 1


@pytest.mark.parametrize("balance,deployed", [
    (-1, [0] * 25),
    (ONE_SOL, [0] * 24),
    (ONE_SOL, [0] * 24 + [-5]),
    (1.5, [0] * 25),
])
def test_bad_inputs_skip(optimizer, balance, deployed):
    rec = optimizer.decide(balance, CurrentRoundState(round_id=1, deployed=tuple(deployed)))

    assert rec.should_stake is False
    assert rec.skip_reason


# =============================================================================
# SELECTION AND SIZING
# =============================================================================

def test_select_squares_consensus_then_empty(optimizer):
    deployed = [5] * 25
    deployed[10] = 0
    hint = ConsensusHint(squares=(20, 21), weights=(0.5, 0.5), confidence=0.5)

    chosen = optimizer.select_squares(4, deployed, hint)

    assert chosen[:3] == [20, 21, 10]
    assert len(set(chosen)) == 4


def test_low_confidence_hint_ignored(optimizer):
    hint = ConsensusHint(squares=(20,), weights=(1.0,), confidence=0.3)

    assert optimizer.select_squares(2, [0] * 25, hint) == [0, 1]


def test_strategy_hint_lowers_budget(optimizer):
    strategy = DetectedStrategy(
        kind=StrategyKind.LOW_SQUARE,
        name="Low Square Focus",
        description="",
        square_count=2,
        stake_size=10_000_000,
        target_competition_tier=CompetitionTier.LOW,
        confidence=0.9,
        sample_size=90,
        win_rate=0.1,
        avg_roi=0.5,
        avg_ore_per_round=0.2,
        consistency_flag=True,
    )

    rec = optimizer.decide(ONE_SOL, _round(), strategy_hint=strategy)

    assert rec.total_stake == 10_000_000
    assert "following Low Square Focus" in rec.rationale


def test_kelly_without_edge_skips(tracker):
    optimizer = EVOptimizer(tracker, OptimizerConfig(sizing_mode="kelly"), rng=random.Random(0))

    rec = optimizer.decide(ONE_SOL, _round())

    assert rec.should_stake is False
    assert rec.skip_reason == "No stake left after sizing"


def test_kelly_stakes_square_with_edge(tracker):
    optimizer = EVOptimizer(tracker, OptimizerConfig(sizing_mode="kelly"), rng=random.Random(0))
    tracker.squares[3].rounds_observed = 10
    tracker.squares[3].times_won = 5

    rec = optimizer.decide(ONE_SOL, _round())

    assert rec.squares == (3,)
    assert 0 < rec.total_stake < 40_000_000


def test_size_even_too_small_budget(optimizer):
    assert optimizer.size_even([1, 2, 3], 2) == ([], [])


def test_estimate_rounds_remaining(optimizer):
    assert optimizer.estimate_rounds_remaining(ONE_SOL) == 23
    assert optimizer.estimate_rounds_remaining(0) == 0


def test_recommendation_to_dict(optimizer):
    data = optimizer.decide(ONE_SOL, _round()).to_dict()

    assert data["competition_tier"] == "very_low"
    assert len(data["squares"]) == 25


def test_summary_shape(optimizer):
    assert set(optimizer.get_summary()) == {
        "optimal_square_count", "optimal_reasoning", "best_square_counts", "config",
    }
