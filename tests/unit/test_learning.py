"""
Unit tests for the learning engine (core/learning.py)

Tests:
- Win recording and duplicate-round protection
- Detector thresholds
- Analysis is a pure function of the win history
"""

import pytest

from ore_learner.core.config import LearningConfig
from ore_learner.core.constants import LAMPORTS_PER_SOL
from ore_learner.core.learning import DetectedStrategy, LearningEngine, StrategyKind
from ore_learner.core.outcome import RoundOutcomeResolver
from ore_learner.core.state_tracker import KnownDeploy


def _outcome(round_id, address, squares, amount=LAMPORTS_PER_SOL // 10, winning=None, jackpot=False):
    winning = squares[0] if winning is None else winning
    vector = [0] * 25
    for square in squares:
        vector[square] += amount
    deploy = KnownDeploy(address=address, amount=amount, squares=tuple(squares))
    return RoundOutcomeResolver().resolve(
        round_id, winning, vector, [deploy], is_jackpot=jackpot, slot=round_id * 150,
    )


@pytest.fixture
def engine(tracker):
    config = LearningConfig(min_samples_for_strategy=3, analysis_interval=1000)
    return LearningEngine(tracker, config)


# =============================================================================
# RECORDING
# =============================================================================

def test_record_outcome_credits_winner(engine, tracker):
    wins = engine.record_outcome(_outcome(1, "alice", [4, 5]))

    assert len(wins) == 1
    assert wins[0].num_squares == 2
    assert wins[0].is_full_win is True
    assert tracker.profiles["alice"].win_count == 1
    assert tracker.count_stats[2].times_won == 1
    assert engine.has_recorded(1)


def test_duplicate_round_ignored(engine, tracker):
    engine.record_outcome(_outcome(1, "alice", [4]))

    assert engine.record_outcome(_outcome(1, "alice", [4])) == []
    assert engine.total_wins_tracked == 1
    assert tracker.profiles["alice"].win_count == 1


def test_analysis_runs_on_interval(tracker):
    engine = LearningEngine(tracker, LearningConfig(min_samples_for_strategy=2, analysis_interval=2))

    engine.record_outcome(_outcome(1, "a", [1]))
    assert engine.analysis_passes == 0

    engine.record_outcome(_outcome(2, "b", [2]))
    assert engine.analysis_passes == 1
    assert engine.get_best_strategy() is not None


def test_load_history_does_not_credit(engine, tracker):
    loaded = engine.load_history([_outcome(1, "alice", [3]), _outcome(2, "bob", [3], jackpot=True)])

    assert loaded == 2
    assert engine.jackpot_wins_tracked == 1
    assert engine.has_recorded(2)
    assert "alice" not in tracker.profiles


# =============================================================================
# DETECTORS
# =============================================================================

def test_below_threshold_detects_nothing(engine):
    engine.record_outcome(_outcome(1, "a", [1]))
    engine.record_outcome(_outcome(2, "b", [2]))

    assert engine.analyze_and_detect_strategies() == []


def test_low_square_and_low_competition_detected(engine):
    for round_id in range(1, 5):
        engine.record_outcome(_outcome(round_id, f"w{round_id}", [round_id, round_id + 1]))

    kinds = {s.kind for s in engine.analyze_and_detect_strategies()}

    assert StrategyKind.LOW_SQUARE in kinds
    assert StrategyKind.LOW_COMPETITION in kinds
    assert StrategyKind.HIGH_COVERAGE not in kinds
    assert StrategyKind.JACKPOT_HUNTER not in kinds


def test_jackpot_hunter_needs_five(engine):
    for round_id in range(1, 5):
        engine.record_outcome(_outcome(round_id, "j", [0], jackpot=True))
    assert StrategyKind.JACKPOT_HUNTER not in {s.kind for s in engine.analyze_and_detect_strategies()}

    engine.record_outcome(_outcome(5, "j", [0], jackpot=True))
    hunter = [s for s in engine.analyze_and_detect_strategies() if s.kind is StrategyKind.JACKPOT_HUNTER]

    assert hunter[0].play_jackpot is True
    assert hunter[0].confidence == pytest.approx(5 / 20)


def test_analysis_is_repeatable(engine):
    for round_id in range(1, 8):
        engine.record_outcome(_outcome(round_id, f"w{round_id % 3}", list(range(round_id % 4 + 1))))

    first = engine.analyze_and_detect_strategies()
    second = engine.analyze_and_detect_strategies()

    assert first == second
    assert [s.score for s in first] == sorted((s.score for s in first), reverse=True)


def test_strategy_dict_round_trip(engine):
    for round_id in range(1, 5):
        engine.record_outcome(_outcome(round_id, "x", [7]))

    for strategy in engine.analyze_and_detect_strategies():
        assert DetectedStrategy.from_dict(strategy.to_dict()) == strategy


def test_summary_keys(engine):
    summary = engine.get_summary()

    assert set(summary) == {
        "total_wins_tracked", "full_wins", "jackpot_wins", "players_tracked",
        "strategies_detected", "best_strategy", "top_players",
    }
    assert summary["best_strategy"] is None
