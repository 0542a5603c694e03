"""
Unit tests for the round outcome resolver (core/outcome.py)
"""

import pytest

from ore_learner.core.constants import LAMPORTS_PER_SOL
from ore_learner.core.errors import StateInvariantViolation
from ore_learner.core.outcome import OutcomeClass, RoundOutcome, RoundOutcomeResolver
from ore_learner.core.state_tracker import KnownDeploy


def _vector(**stakes):
    vector = [0] * 25
    for key, amount in stakes.items():
        vector[int(key[1:])] = amount
    return vector


class TestResolve:
    """Share and payout arithmetic"""

    def test_single_participant_takes_square(self):
        deploy = KnownDeploy(address="alice", amount=10, squares=(3, 7))

        outcome = RoundOutcomeResolver().resolve(
            round_id=1,
            winning_square=7,
            per_square_deployed=_vector(s3=10, s7=10),
            known_deploys=[deploy],
        )

        assert outcome.total_deployed == 20
        assert outcome.competition_on_square == 10
        winner = outcome.resolved_winners[0]
        assert winner.share == 1.0
        assert winner.amount_won == 10
        assert winner.payout == 20
        assert winner.squares == (3, 7)

    def test_two_winners_split_pro_rata(self):
        deploys = [
            KnownDeploy(address="alice", amount=30, squares=(4,)),
            KnownDeploy(address="bob", amount=10, squares=(4, 5)),
        ]

        outcome = RoundOutcomeResolver().resolve(
            round_id=2,
            winning_square=4,
            per_square_deployed=_vector(s4=40, s5=10),
            known_deploys=deploys,
        )

        shares = {w.address: w.share_pct for w in outcome.resolved_winners}
        assert shares == {"alice": 75.0, "bob": 25.0}
        assert outcome.resolved_winners[0].address == "alice"

    def test_losers_are_not_winners(self):
        deploy = KnownDeploy(address="carol", amount=10, squares=(1,))

        outcome = RoundOutcomeResolver().resolve(3, 2, _vector(s1=10, s2=5), [deploy])

        assert outcome.resolved_winners == ()

    def test_zero_competition_on_winning_square(self):
        """Observed deploy the vector has not caught up with yet"""
        deploy = KnownDeploy(address="dave", amount=8, squares=(9,))

        outcome = RoundOutcomeResolver().resolve(4, 9, _vector(s1=100), [deploy])

        winner = outcome.resolved_winners[0]
        assert winner.share == 1.0
        assert winner.amount_won == 8

    def test_winner_keeps_each_covering_deploy(self):
        deploys = [
            KnownDeploy(address="erin", amount=10, squares=(1,)),
            KnownDeploy(address="erin", amount=20, squares=(2,)),
            KnownDeploy(address="erin", amount=30, squares=(1, 4, 6)),
        ]

        outcome = RoundOutcomeResolver().resolve(5, 1, _vector(s1=40, s2=20, s4=30, s6=30), deploys)

        winner = outcome.resolved_winners[0]
        assert winner.squares == (1, 2, 4, 6)
        assert winner.amount_on_square == 40
        assert winner.winning_deploys == ((1, 10), (3, 30))
        assert RoundOutcome.from_dict(outcome.to_dict()).resolved_winners[0].winning_deploys == ((1, 10), (3, 30))


class TestClassification:
    """Full win / split / jackpot"""

    def test_small_round_is_full_win(self):
        outcome = RoundOutcomeResolver().resolve(1, 0, _vector(s0=LAMPORTS_PER_SOL))

        assert outcome.outcome_class is OutcomeClass.FULL_WIN
        assert outcome.is_full_win
        assert outcome.ore_estimate == 1.0

    def test_large_round_is_split(self):
        vector = [LAMPORTS_PER_SOL] * 25

        outcome = RoundOutcomeResolver().resolve(1, 0, vector)

        assert outcome.outcome_class is OutcomeClass.SPLIT
        assert outcome.num_deployers == 25
        assert outcome.ore_estimate == pytest.approx(2.0 / 25)

    def test_jackpot_flag_wins(self):
        outcome = RoundOutcomeResolver().resolve(1, 0, _vector(s0=10), is_jackpot=True)

        assert outcome.outcome_class is OutcomeClass.JACKPOT

    def test_estimate_ore_capped(self):
        assert RoundOutcomeResolver.estimate_ore(OutcomeClass.SPLIT, 2) == 1.0
        assert RoundOutcomeResolver.estimate_ore(OutcomeClass.SPLIT, 4) == 0.5


class TestInvalidInputs:

    @pytest.mark.parametrize("round_id", [0, -3, None])
    def test_unresolved_round_id(self, round_id):
        with pytest.raises(StateInvariantViolation):
            RoundOutcomeResolver().resolve(round_id, 0, [0] * 25)

    def test_bad_square(self):
        with pytest.raises(StateInvariantViolation):
            RoundOutcomeResolver().resolve(1, 25, [0] * 25)

    def test_bad_vector_length(self):
        with pytest.raises(StateInvariantViolation):
            RoundOutcomeResolver().resolve(1, 0, [0] * 24)


def test_outcome_dict_round_trip():
    deploy = KnownDeploy(address="erin", amount=5, squares=(2,))
    outcome = RoundOutcomeResolver().resolve(6, 2, _vector(s2=5), [deploy], slot=44)

    assert RoundOutcome.from_dict(outcome.to_dict()) == outcome
