"""
EV Optimizer
Turns learned square-count statistics, the current round's competition and
optional hints into a stake Recommendation.

decide() always returns a Recommendation. Bad input becomes a skip with a
reason; only tracker invariant violations propagate.
"""

import math
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ore_learner.core.accounts import RoundAccount
from ore_learner.core.competition import CompetitionTier, classify_tier
from ore_learner.core.config import OptimizerConfig
from ore_learner.core.constants import BOARD_SIZE, LAMPORTS_PER_SOL, UNIFORM_WIN_PROBABILITY
from ore_learner.core.learning import DetectedStrategy
from ore_learner.core.logger import get_logger
from ore_learner.core.metrics import get_metrics
from ore_learner.core.square_signals import ConsensusHint
from ore_learner.core.state_tracker import StateTracker


logger = get_logger(__name__)
metrics = get_metrics()


@dataclass(frozen=True)
class CurrentRoundState:
    """What the optimizer needs to know about the open round"""
    round_id: int
    deployed: Tuple[int, ...]
    num_deployers: int = 0
    end_slot: int = 0

    @property
    def total_deployed(self) -> int:
        return sum(self.deployed)

    @property
    def empty_squares(self) -> List[int]:
        return [i for i, amount in enumerate(self.deployed) if amount == 0]

    @classmethod
    def from_round_account(cls, account: RoundAccount, end_slot: int = 0) -> "CurrentRoundState":
        return cls(
            round_id=account.round_id,
            deployed=tuple(account.deployed),
            num_deployers=account.miner_entries,
            end_slot=end_slot,
        )


@dataclass(frozen=True)
class Recommendation:
    round_id: int
    should_stake: bool
    squares: Tuple[int, ...] = ()
    per_square_stake: Tuple[int, ...] = ()
    total_stake: int = 0
    expected_value: float = 0.0
    expected_ore: float = 0.0
    competition_tier: Optional[CompetitionTier] = None
    rationale: str = ""
    skip_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "round_id": self.round_id,
            "should_stake": self.should_stake,
            "squares": list(self.squares),
            "per_square_stake": list(self.per_square_stake),
            "total_stake": self.total_stake,
            "expected_value": self.expected_value,
            "expected_ore": self.expected_ore,
            "competition_tier": self.competition_tier.value if self.competition_tier else None,
            "rationale": self.rationale,
            "skip_reason": self.skip_reason,
        }


@dataclass(frozen=True)
class SquareCountDecision:
    count: int
    expected_value: float
    reasoning: str
    exploring: bool = False


class EVOptimizer:
    """
    Square-count EV search, square selection and stake sizing

    The random source is only used for exploration and can be seeded for
    reproducible decisions.
    """

    def __init__(
        self,
        tracker: StateTracker,
        config: Optional[OptimizerConfig] = None,
        rng: Optional[random.Random] = None
    ):
        self.tracker = tracker
        self.config = config or OptimizerConfig()
        self.rng = rng or random.Random()

    # -- decision ----------------------------------------------------------

    def decide(
        self,
        wallet_balance: int,
        round_state: CurrentRoundState,
        consensus_hint: Optional[ConsensusHint] = None,
        strategy_hint: Optional[DetectedStrategy] = None
    ) -> Recommendation:
        """
        Recommend whether and how to stake in the open round

        Args:
            wallet_balance: Wallet balance in lamports
            round_state: Deployment vector of the open round
            consensus_hint: Square consensus from the signal engine
            strategy_hint: Best detected strategy, if any
        """
        round_id = getattr(round_state, "round_id", 0)

        problem = self.check_inputs(wallet_balance, round_state)
        if problem:
            return self._skip(round_id, problem)

        reserve = self.config.min_wallet_lamports
        if wallet_balance < reserve:
            return self._skip(
                round_id,
                f"Wallet balance {wallet_balance / LAMPORTS_PER_SOL:.4f} SOL below minimum "
                f"{self.config.min_wallet_sol:.4f} SOL",
            )

        tier = classify_tier(round_state.total_deployed, self.config.tier_thresholds_sol)
        hint_confidence = consensus_hint.confidence if consensus_hint else 0.0
        if tier is CompetitionTier.VERY_HIGH:
            return self._skip(round_id, "Very high competition - skip for better ORE splits", tier)
        if tier is CompetitionTier.HIGH and hint_confidence <= self.config.high_tier_min_confidence:
            return self._skip(round_id, "High competition, low confidence - skipping", tier)

        decision = self.get_optimal_square_count()
        squares = self.select_squares(decision.count, round_state.deployed, consensus_hint)

        budget = min(wallet_balance - reserve, self.config.max_bet_per_round_lamports)
        strategy_note = ""
        if strategy_hint is not None and strategy_hint.confidence > self.config.strategy_min_confidence:
            if 0 < strategy_hint.stake_size < budget:
                budget = strategy_hint.stake_size
            strategy_note = f", following {strategy_hint.name}"

        if self.config.sizing_mode == "kelly":
            squares, stakes = self.size_kelly(squares, round_state.deployed, budget)
        else:
            squares, stakes = self.size_even(squares, budget)

        if not stakes:
            return self._skip(round_id, "No stake left after sizing", tier)

        total_stake = sum(stakes)
        expected_ore = len(squares) / BOARD_SIZE * tier.ore_multiplier
        rationale = (
            f"Competition: {tier.value} ({tier.ore_multiplier}x ORE), {len(squares)} squares "
            f"({decision.reasoning}), {total_stake / LAMPORTS_PER_SOL:.4f} SOL total{strategy_note}"
        )

        metrics.increment_counter("recommendations", labels={"should_stake": "true"})
        logger.info(
            "stake_recommended",
            round_id=round_id,
            tier=tier.value,
            squares=list(squares),
            total_sol=total_stake / LAMPORTS_PER_SOL,
            exploring=decision.exploring,
        )
        return Recommendation(
            round_id=round_id,
            should_stake=True,
            squares=tuple(squares),
            per_square_stake=tuple(stakes),
            total_stake=total_stake,
            expected_value=decision.expected_value,
            expected_ore=expected_ore,
            competition_tier=tier,
            rationale=rationale,
        )

    def check_inputs(self, wallet_balance, round_state) -> Optional[str]:
        """Why the inputs cannot be used, or None"""
        if isinstance(wallet_balance, bool) or not isinstance(wallet_balance, int) or wallet_balance < 0:
            return f"Invalid wallet balance: {wallet_balance!r}"
        deployed = getattr(round_state, "deployed", None)
        if not isinstance(deployed, (list, tuple)) or len(deployed) != BOARD_SIZE:
            return f"Deployment vector must have {BOARD_SIZE} entries"
        if any(not isinstance(x, int) or x < 0 for x in deployed):
            return "Deployment vector holds negative or non-integer amounts"
        return None

    def _skip(self, round_id: int, reason: str, tier: Optional[CompetitionTier] = None) -> Recommendation:
        metrics.increment_counter("recommendations", labels={"should_stake": "false"})
        logger.info("stake_skipped", round_id=round_id, reason=reason)
        return Recommendation(
            round_id=round_id,
            should_stake=False,
            competition_tier=tier,
            skip_reason=reason,
        )

    # -- square count ------------------------------------------------------

    def get_optimal_square_count(self) -> SquareCountDecision:
        """
        EV search over counts 1..25

        EV(count) = p * reward - count * cost_per_square. Learned p and
        reward are used once a count has enough samples and a win. Until any
        count has a win, every count uses the theoretical model.
        """
        min_samples = self.config.exploration_min_samples
        cost = self.config.cost_per_square_sol
        stats = self.tracker.count_stats

        any_wins = any(
            s.times_used >= min_samples and s.times_won > 0 for s in stats.values()
        )

        best_count, best_ev, reasoning = 0, -math.inf, ""
        for count in range(1, BOARD_SIZE + 1):
            stat = stats[count]
            learned = any_wins and stat.times_used >= min_samples and stat.times_won > 0
            if learned:
                p = stat.win_rate
            elif any_wins and stat.times_used >= min_samples:
                # Tried without a win
                p = 0.5 * count / BOARD_SIZE
            else:
                p = count / BOARD_SIZE

            if learned and stat.avg_ore_per_win > 0:
                reward = stat.avg_ore_per_win
            else:
                reward = 1.0 / math.sqrt(count)

            ev = p * reward - count * cost
            if ev > best_ev:
                best_count, best_ev = count, ev
                if learned:
                    reasoning = (
                        f"LEARNED: {count} squares, EV={ev:.4f}, {stat.win_rate * 100:.1f}% win rate "
                        f"({stat.times_won} wins), {stat.avg_ore_per_win:.3f} avg ORE"
                    )
                else:
                    reasoning = f"EV-OPTIMAL: {count} squares (EV={ev:.4f}), theoretical estimate"

        if best_ev <= 0:
            count = self._pick_exploration_count()
            return SquareCountDecision(
                count=count,
                expected_value=0.0,
                reasoning=f"EXPLORING: {count} squares - gathering data across 1-{BOARD_SIZE} range",
                exploring=True,
            )
        return SquareCountDecision(count=best_count, expected_value=best_ev, reasoning=reasoning)

    def _pick_exploration_count(self) -> int:
        """Least-observed counts are the likeliest picks"""
        counts = list(range(1, BOARD_SIZE + 1))
        weights = [1000 // (self.tracker.count_stats[c].times_used + 1) for c in counts]
        if sum(weights) == 0:
            return min(counts, key=lambda c: (self.tracker.count_stats[c].times_used, c))
        return self.rng.choices(counts, weights=weights, k=1)[0]

    # -- squares -----------------------------------------------------------

    def select_squares(
        self,
        count: int,
        deployed: Sequence[int],
        consensus_hint: Optional[ConsensusHint] = None
    ) -> List[int]:
        """
        Pick `count` distinct squares

        Consensus squares first (when confident enough), then squares with no
        stake yet, then an even spread across the board.
        """
        count = max(1, min(count, BOARD_SIZE))
        chosen: List[int] = []

        def take(candidates):
            for square in candidates:
                if len(chosen) >= count:
                    return
                if isinstance(square, int) and 0 <= square < BOARD_SIZE and square not in chosen:
                    chosen.append(square)

        if consensus_hint is not None and consensus_hint.confidence > self.config.consensus_confidence_threshold:
            take(consensus_hint.squares)
        take(i for i, amount in enumerate(deployed) if amount == 0)
        take(sorted({(i * BOARD_SIZE) // count for i in range(count)}))
        take(range(BOARD_SIZE))
        return chosen

    # -- sizing ------------------------------------------------------------

    def size_even(self, squares: Sequence[int], budget: int) -> Tuple[List[int], List[int]]:
        if not squares:
            return [], []
        per_square = budget // len(squares)
        if per_square <= 0:
            return [], []
        return list(squares), [per_square] * len(squares)

    def size_kelly(
        self,
        squares: Sequence[int],
        deployed: Sequence[int],
        budget: int
    ) -> Tuple[List[int], List[int]]:
        """
        Fractional Kelly per square

        p is the square's learned win rate once it has enough observed
        rounds, b the payout odds implied by its share of the pot.
        """
        total = sum(deployed)
        fractions = []
        for square in squares:
            stat = self.tracker.square(square)
            if stat.rounds_observed >= self.config.exploration_min_samples:
                p = stat.win_rate
            else:
                p = UNIFORM_WIN_PROBABILITY
            share = deployed[square] / total if total > 0 else 0.0
            b = 1.0 / share - 1.0 if share > 0 else float(BOARD_SIZE - 1)
            if b <= 0:
                fractions.append(0.0)
                continue
            f = max(0.0, (b * p - (1.0 - p)) / b) * self.config.kelly_fraction
            fractions.append(f)

        fraction_sum = sum(fractions)
        if fraction_sum > 1.0:
            fractions = [f / fraction_sum for f in fractions]

        kept_squares, stakes = [], []
        for square, f in zip(squares, fractions):
            stake = int(budget * f)
            if stake > 0:
                kept_squares.append(square)
                stakes.append(stake)
        return kept_squares, stakes

    # -- reporting ---------------------------------------------------------

    def estimate_rounds_remaining(self, wallet_balance: int) -> int:
        playable = max(wallet_balance - self.config.min_wallet_lamports, 0)
        max_bet = self.config.max_bet_per_round_lamports
        return playable // max_bet if max_bet > 0 else 0

    def get_summary(self) -> dict:
        decision = self.get_optimal_square_count()
        sampled = [
            s for s in self.tracker.count_stats.values()
            if s.times_used >= self.config.exploration_min_samples
        ]
        sampled.sort(key=lambda s: (-s.win_rate, s.count))
        return {
            "optimal_square_count": decision.count,
            "optimal_reasoning": decision.reasoning,
            "best_square_counts": [
                {
                    "squares": s.count,
                    "win_rate": s.win_rate,
                    "roi": s.roi,
                    "samples": s.times_used,
                }
                for s in sampled[:5]
            ],
            "config": {
                "min_wallet_sol": self.config.min_wallet_sol,
                "max_bet_per_round_sol": self.config.max_bet_per_round_sol,
                "sizing_mode": self.config.sizing_mode,
                "kelly_fraction": self.config.kelly_fraction,
            },
        }
