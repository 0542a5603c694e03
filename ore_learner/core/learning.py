"""
Learning Engine
Mines resolved wins for repeatable staking patterns.

Every analysis pass regenerates the detected strategy list from the win
history and participant profiles; nothing is mutated incrementally, so two
passes with no new wins in between return identical lists.
"""

import time
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass
from enum import Enum
from statistics import mean
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from ore_learner.core.competition import CompetitionTier, classify_tier
from ore_learner.core.config import LearningConfig
from ore_learner.core.constants import LAMPORTS_PER_SOL
from ore_learner.core.logger import get_logger
from ore_learner.core.metrics import get_metrics
from ore_learner.core.outcome import RoundOutcome
from ore_learner.core.state_tracker import ParticipantProfile, StateTracker


logger = get_logger(__name__)
metrics = get_metrics()

LOW_SQUARE_MAX = 3
HIGH_COVERAGE_MIN = 10
JACKPOT_MIN_SAMPLES = 5
FULL_WIN_MIN_SAMPLES = 10
COPY_MIN_ROUNDS = 20
COPY_MIN_WINS = 5
COPY_TOP_N = 3
EXAMPLE_ADDRESSES = 5
PREFERRED_SQUARES = 5


class StrategyKind(str, Enum):
    """Closed set of pattern detectors"""
    LOW_SQUARE = "low_square"
    HIGH_COVERAGE = "high_coverage"
    JACKPOT_HUNTER = "jackpot_hunter"
    LOW_COMPETITION = "low_competition"
    FULL_WIN = "full_win"
    COPY_PLAYER = "copy_player"


@dataclass(frozen=True)
class WinRecord:
    """One resolved winner of one round"""
    round_id: int
    winner_address: str
    winning_square: int
    amount_bet: int
    amount_won: int
    payout: int
    squares_bet: Tuple[int, ...]
    total_round_deployed: int
    num_deployers: int
    is_jackpot: bool
    is_full_win: bool
    ore_earned: float
    competition_on_square: int
    winner_share_pct: float
    slot: int = 0
    timestamp: float = 0.0
    winning_deploys: Tuple[Tuple[int, int], ...] = ()  # (square count, amount)

    @property
    def num_squares(self) -> int:
        return len(self.squares_bet)

    @property
    def roi(self) -> float:
        if self.amount_bet == 0:
            return 0.0
        return (self.payout - self.amount_bet) / self.amount_bet

    @classmethod
    def from_outcome(cls, outcome: RoundOutcome, timestamp: float = 0.0) -> List["WinRecord"]:
        return [
            cls(
                round_id=outcome.round_id,
                winner_address=winner.address,
                winning_square=outcome.winning_square,
                amount_bet=winner.amount_bet,
                amount_won=winner.amount_won,
                payout=winner.payout,
                squares_bet=winner.squares,
                total_round_deployed=outcome.total_deployed,
                num_deployers=outcome.num_deployers,
                is_jackpot=outcome.is_jackpot,
                is_full_win=outcome.is_full_win,
                ore_earned=outcome.ore_estimate * winner.share,
                competition_on_square=outcome.competition_on_square,
                winner_share_pct=winner.share_pct,
                slot=outcome.slot,
                timestamp=timestamp,
                winning_deploys=winner.winning_deploys,
            )
            for winner in outcome.resolved_winners
        ]


@dataclass(frozen=True)
class DetectedStrategy:
    kind: StrategyKind
    name: str
    description: str
    square_count: int
    stake_size: int  # lamports per round
    target_competition_tier: CompetitionTier
    confidence: float
    sample_size: int
    win_rate: float
    avg_roi: float
    avg_ore_per_round: float
    consistency_flag: bool
    preferred_squares: Tuple[int, ...] = ()
    play_jackpot: bool = False
    example_addresses: Tuple[str, ...] = ()

    @property
    def score(self) -> float:
        return self.confidence * self.avg_roi

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "description": self.description,
            "square_count": self.square_count,
            "stake_size": self.stake_size,
            "target_competition_tier": self.target_competition_tier.value,
            "confidence": self.confidence,
            "sample_size": self.sample_size,
            "win_rate": self.win_rate,
            "avg_roi": self.avg_roi,
            "avg_ore_per_round": self.avg_ore_per_round,
            "consistency_flag": self.consistency_flag,
            "preferred_squares": list(self.preferred_squares),
            "play_jackpot": self.play_jackpot,
            "example_addresses": list(self.example_addresses),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DetectedStrategy":
        return cls(
            kind=StrategyKind(data["kind"]),
            name=data["name"],
            description=data.get("description", ""),
            square_count=data["square_count"],
            stake_size=data["stake_size"],
            target_competition_tier=CompetitionTier(data["target_competition_tier"]),
            confidence=data["confidence"],
            sample_size=data["sample_size"],
            win_rate=data.get("win_rate", 0.0),
            avg_roi=data.get("avg_roi", 0.0),
            avg_ore_per_round=data.get("avg_ore_per_round", 0.0),
            consistency_flag=data.get("consistency_flag", False),
            preferred_squares=tuple(data.get("preferred_squares", [])),
            play_jackpot=data.get("play_jackpot", False),
            example_addresses=tuple(data.get("example_addresses", [])),
        )


@dataclass
class _WinSummary:
    """Aggregates over a filtered slice of the win history"""
    n: int
    avg_roi: float
    avg_ore: float
    avg_bet: int
    avg_total: int
    full_win_pct: float
    square_count: int
    preferred_squares: Tuple[int, ...]
    examples: Tuple[str, ...]


def _summarize(wins: Sequence[WinRecord]) -> _WinSummary:
    counts = Counter(w.num_squares for w in wins)
    # most common count, ties to the smaller count
    square_count = min(counts.items(), key=lambda item: (-item[1], item[0]))[0]
    squares = Counter(w.winning_square for w in wins)
    preferred = tuple(
        sq for sq, _ in sorted(squares.items(), key=lambda item: (-item[1], item[0]))[:PREFERRED_SQUARES]
    )
    examples: List[str] = []
    for w in wins:
        if w.winner_address not in examples:
            examples.append(w.winner_address)
        if len(examples) == EXAMPLE_ADDRESSES:
            break

    return _WinSummary(
        n=len(wins),
        avg_roi=mean(w.roi for w in wins),
        avg_ore=mean(w.ore_earned for w in wins),
        avg_bet=int(mean(w.amount_bet for w in wins)),
        avg_total=int(mean(w.total_round_deployed for w in wins)),
        full_win_pct=sum(1 for w in wins if w.is_full_win) / len(wins),
        square_count=square_count,
        preferred_squares=preferred,
        examples=tuple(examples),
    )


class LearningEngine:
    """
    Owns the win history and the detected strategy list

    Profiles and per-count statistics live in the StateTracker; wins are
    credited through it.
    """

    def __init__(self, tracker: StateTracker, config: Optional[LearningConfig] = None):
        self.tracker = tracker
        self.config = config or LearningConfig()

        self.win_history: Deque[WinRecord] = deque(maxlen=self.config.max_win_history)
        self.strategies: List[DetectedStrategy] = []
        self.total_wins_tracked = 0
        self.full_wins_tracked = 0
        self.jackpot_wins_tracked = 0
        self.analysis_passes = 0
        self._recorded_rounds: "OrderedDict[int, None]" = OrderedDict()

        self._detectors: Dict[StrategyKind, Callable[[List[WinRecord]], List[DetectedStrategy]]] = {
            StrategyKind.LOW_SQUARE: self._detect_low_square,
            StrategyKind.HIGH_COVERAGE: self._detect_high_coverage,
            StrategyKind.JACKPOT_HUNTER: self._detect_jackpot_hunter,
            StrategyKind.LOW_COMPETITION: self._detect_low_competition,
            StrategyKind.FULL_WIN: self._detect_full_win,
            StrategyKind.COPY_PLAYER: self._detect_copy_players,
        }

    # -- ingestion ---------------------------------------------------------

    def record_outcome(self, outcome: RoundOutcome) -> List[WinRecord]:
        """
        Record every resolved winner of a round

        A round id is accepted once; repeats are ignored.
        """
        if outcome.round_id in self._recorded_rounds:
            logger.warning("round_already_recorded", round_id=outcome.round_id)
            metrics.increment_counter("duplicate_rounds_ignored")
            return []

        self._recorded_rounds[outcome.round_id] = None
        while len(self._recorded_rounds) > self.config.max_recorded_rounds:
            self._recorded_rounds.popitem(last=False)

        wins = WinRecord.from_outcome(outcome, timestamp=time.time())
        for win in wins:
            self.record_win(win)
        return wins

    def record_win(self, win: WinRecord) -> None:
        """Credit the winner and append to history; re-analyze every N wins"""
        self.tracker.credit_win(
            address=win.winner_address,
            payout=win.payout,
            ore_earned=win.ore_earned,
            winning_deploys=win.winning_deploys,
            is_full_win=win.is_full_win,
            is_jackpot=win.is_jackpot,
            slot=win.slot,
        )
        self.win_history.append(win)
        self.total_wins_tracked += 1
        if win.is_full_win:
            self.full_wins_tracked += 1
        if win.is_jackpot:
            self.jackpot_wins_tracked += 1

        metrics.increment_counter("wins_recorded")

        if self.total_wins_tracked % self.config.analysis_interval == 0:
            self.analyze_and_detect_strategies()

    def load_history(self, outcomes: Iterable[RoundOutcome]) -> int:
        """
        Rebuild win history from persisted outcomes, oldest first

        Profiles are restored separately, so nothing is credited again.
        """
        loaded = 0
        for outcome in outcomes:
            self._recorded_rounds[outcome.round_id] = None
            for win in WinRecord.from_outcome(outcome):
                self.win_history.append(win)
                self.total_wins_tracked += 1
                self.full_wins_tracked += int(win.is_full_win)
                self.jackpot_wins_tracked += int(win.is_jackpot)
                loaded += 1
        logger.info("win_history_loaded", wins=loaded)
        return loaded

    # -- analysis ----------------------------------------------------------

    def analyze_and_detect_strategies(self) -> List[DetectedStrategy]:
        """
        Regenerate the ranked strategy list

        Each detector runs independently over the current history and emits
        nothing below its sample threshold. Ranked by confidence x avg ROI,
        ties by name.
        """
        wins = list(self.win_history)
        detected: List[DetectedStrategy] = []
        for kind in StrategyKind:
            detected.extend(self._detectors[kind](wins))

        detected.sort(key=lambda s: (-s.score, s.name))
        self.strategies = detected
        self.analysis_passes += 1

        metrics.set_gauge("strategies_detected", len(detected))
        logger.info(
            "strategies_analyzed",
            wins=len(wins),
            strategies=len(detected),
            best=detected[0].name if detected else None,
        )
        return list(detected)

    def _count_win_rate(self, square_count: int) -> float:
        stat = self.tracker.count_stats.get(square_count)
        return stat.win_rate if stat else 0.0

    def _strategy(
        self,
        kind: StrategyKind,
        name: str,
        description: str,
        summary: _WinSummary,
        confidence: float,
        consistent: bool,
        tier: Optional[CompetitionTier] = None,
        play_jackpot: bool = False
    ) -> DetectedStrategy:
        return DetectedStrategy(
            kind=kind,
            name=name,
            description=description,
            square_count=summary.square_count,
            stake_size=summary.avg_bet,
            target_competition_tier=tier or classify_tier(summary.avg_total),
            confidence=min(confidence, 1.0),
            sample_size=summary.n,
            win_rate=self._count_win_rate(summary.square_count),
            avg_roi=summary.avg_roi,
            avg_ore_per_round=summary.avg_ore,
            consistency_flag=consistent,
            preferred_squares=summary.preferred_squares,
            play_jackpot=play_jackpot,
            example_addresses=summary.examples,
        )

    def _detect_low_square(self, wins: List[WinRecord]) -> List[DetectedStrategy]:
        hits = [w for w in wins if w.num_squares <= LOW_SQUARE_MAX]
        if len(hits) < self.config.min_samples_for_strategy:
            return []
        summary = _summarize(hits)
        return [self._strategy(
            StrategyKind.LOW_SQUARE,
            "Low Square Focus",
            f"Winners staking {LOW_SQUARE_MAX} or fewer squares",
            summary,
            confidence=summary.n / 100,
            consistent=summary.full_win_pct > 0.3,
        )]

    def _detect_high_coverage(self, wins: List[WinRecord]) -> List[DetectedStrategy]:
        hits = [w for w in wins if w.num_squares >= HIGH_COVERAGE_MIN]
        if len(hits) < self.config.min_samples_for_strategy:
            return []
        summary = _summarize(hits)
        return [self._strategy(
            StrategyKind.HIGH_COVERAGE,
            "High Coverage",
            f"Winners staking {HIGH_COVERAGE_MIN} or more squares",
            summary,
            confidence=summary.n / 100,
            consistent=summary.avg_roi > 0,
        )]

    def _detect_jackpot_hunter(self, wins: List[WinRecord]) -> List[DetectedStrategy]:
        hits = [w for w in wins if w.is_jackpot]
        if len(hits) < JACKPOT_MIN_SAMPLES:
            return []
        summary = _summarize(hits)
        return [self._strategy(
            StrategyKind.JACKPOT_HUNTER,
            "Motherlode Hunter",
            "Winners of motherlode rounds",
            summary,
            confidence=summary.n / 20,
            consistent=summary.n >= 10,
            play_jackpot=True,
        )]

    def _detect_low_competition(self, wins: List[WinRecord]) -> List[DetectedStrategy]:
        threshold = self.config.full_win_threshold_lamports
        hits = [w for w in wins if w.total_round_deployed < threshold]
        if len(hits) < self.config.min_samples_for_strategy:
            return []
        summary = _summarize(hits)
        return [self._strategy(
            StrategyKind.LOW_COMPETITION,
            "Low Competition Hunter",
            f"Winners of rounds under {self.config.full_win_threshold_sol} SOL total",
            summary,
            confidence=summary.n / 100,
            consistent=summary.full_win_pct > 0.4,
        )]

    def _detect_full_win(self, wins: List[WinRecord]) -> List[DetectedStrategy]:
        hits = [w for w in wins if w.is_full_win]
        if len(hits) < FULL_WIN_MIN_SAMPLES:
            return []
        summary = _summarize(hits)
        return [self._strategy(
            StrategyKind.FULL_WIN,
            "Full ORE Winner",
            "Square counts and stakes behind full-reward wins",
            summary,
            confidence=summary.n / 50,
            consistent=summary.n >= 2 * FULL_WIN_MIN_SAMPLES,
        )]

    def _detect_copy_players(self, wins: List[WinRecord]) -> List[DetectedStrategy]:
        candidates = [
            p for p in self.tracker.profiles.values()
            if p.round_count >= COPY_MIN_ROUNDS and p.win_count >= COPY_MIN_WINS
        ]
        candidates.sort(key=lambda p: (-(p.roi * p.win_rate * p.ore_per_sol), p.address))

        strategies = []
        for profile in candidates[:COPY_TOP_N]:
            square_count = profile.preferred_square_count or max(1, int(round(profile.avg_squares_per_deploy)))
            strategies.append(DetectedStrategy(
                kind=StrategyKind.COPY_PLAYER,
                name=f"Copy {profile.address[:8]}",
                description=f"Mirror {profile.address}",
                square_count=min(square_count, 25),
                stake_size=int(profile.avg_bet_size),
                target_competition_tier=classify_tier(int(profile.avg_round_competition * LAMPORTS_PER_SOL)),
                confidence=min(profile.round_count / 100, 1.0) * profile.win_rate,
                sample_size=profile.round_count,
                win_rate=profile.win_rate,
                avg_roi=profile.roi,
                avg_ore_per_round=profile.ore_earned / profile.round_count,
                consistency_flag=profile.roi > 0,
                preferred_squares=tuple(profile.favorite_squares[:PREFERRED_SQUARES]),
                play_jackpot=profile.plays_motherlode,
                example_addresses=(profile.address,),
            ))
        return strategies

    # -- queries -----------------------------------------------------------

    def has_recorded(self, round_id: int) -> bool:
        return round_id in self._recorded_rounds

    def get_best_strategy(self) -> Optional[DetectedStrategy]:
        return self.strategies[0] if self.strategies else None

    def get_all_strategies(self) -> List[DetectedStrategy]:
        return list(self.strategies)

    def get_players_to_copy(self, limit: int = 5) -> List[Tuple[ParticipantProfile, float]]:
        """Consistent winners scored by roi x win rate x sample weight"""
        scored = []
        for profile in self.tracker.profiles.values():
            if profile.round_count < 15 or profile.win_count < 3:
                continue
            score = profile.roi * profile.win_rate * min(profile.win_count / 10, 1.0)
            scored.append((profile, score))
        scored.sort(key=lambda item: (-item[1], item[0].address))
        return scored[:limit]

    def get_summary(self) -> dict:
        best = self.get_best_strategy()
        return {
            "total_wins_tracked": self.total_wins_tracked,
            "full_wins": self.full_wins_tracked,
            "jackpot_wins": self.jackpot_wins_tracked,
            "players_tracked": len(self.tracker.profiles),
            "strategies_detected": len(self.strategies),
            "best_strategy": None if best is None else {
                "name": best.name,
                "description": best.description,
                "square_count": best.square_count,
                "bet_size_sol": best.stake_size / LAMPORTS_PER_SOL,
                "target_competition": best.target_competition_tier.value,
                "confidence": best.confidence,
            },
            "top_players": [
                {
                    "address": profile.address,
                    "score": score,
                    "wins": profile.win_count,
                    "rounds": profile.round_count,
                    "win_rate": profile.win_rate,
                    "roi": profile.roi,
                }
                for profile, score in self.get_players_to_copy(5)
            ],
        }
