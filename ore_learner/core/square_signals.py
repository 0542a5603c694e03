"""
Square Signal Engine
Battery of square-level heuristics over the tracker's statistics. Their
confidence-weighted vote is the consensus hint handed to the optimizer.
"""

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ore_learner.core.constants import BOARD_SIZE, BOARD_WIDTH, UNIFORM_WIN_PROBABILITY
from ore_learner.core.logger import get_logger
from ore_learner.core.state_tracker import StateTracker


logger = get_logger(__name__)

MAX_CONSENSUS_CONFIDENCE = 0.85
CORNERS = (0, 4, 20, 24)
CENTER = (6, 7, 8, 11, 12, 13, 16, 17, 18)
DIAGONAL = (0, 6, 12, 18, 24)


class SignalKind(str, Enum):
    MOMENTUM = "momentum"
    CONTRARIAN_VALUE = "contrarian_value"
    EDGE_HUNTING = "edge_hunting"
    STREAK_REVERSAL = "streak_reversal"
    LOW_COMPETITION = "low_competition"
    WHALE_FOLLOWING = "whale_following"
    PATTERN_ADJACENCY = "pattern_adjacency"
    KELLY = "kelly"
    QUADRANT = "quadrant"
    MEAN_REVERSION = "mean_reversion"


@dataclass(frozen=True)
class SquareSignal:
    kind: SignalKind
    squares: Tuple[int, ...]
    weights: Tuple[float, ...]
    confidence: float
    expected_roi: float
    reasoning: str


@dataclass(frozen=True)
class ConsensusHint:
    """Squares the signal battery agrees on, best first"""
    squares: Tuple[int, ...] = ()
    weights: Tuple[float, ...] = ()
    confidence: float = 0.0
    contributors: Tuple[SignalKind, ...] = ()

    @classmethod
    def empty(cls) -> "ConsensusHint":
        return cls()


def _ranked(scores: Iterable[Tuple[int, float]]) -> List[Tuple[int, float]]:
    """Highest score first, ties by square index"""
    return sorted(scores, key=lambda item: (-item[1], item[0]))


def _normalized(values: Sequence[float]) -> Tuple[float, ...]:
    total = sum(values)
    if total <= 0:
        return tuple(1.0 / len(values) for _ in values) if values else ()
    return tuple(v / total for v in values)


def neighbours(square: int) -> Tuple[int, ...]:
    """The up to eight squares touching `square` on the 5x5 grid"""
    row, col = divmod(square, BOARD_WIDTH)
    result = []
    for dr in (-1, 0, 1):
        for dc in (-1, 0, 1):
            if dr == 0 and dc == 0:
                continue
            r, c = row + dr, col + dc
            if 0 <= r < BOARD_WIDTH and 0 <= c < BOARD_WIDTH:
                result.append(r * BOARD_WIDTH + c)
    return tuple(result)


class SquareSignalEngine:
    """
    Runs each SignalKind through one dispatch table

    Signals with nothing to say (too little history, no edge) are left out
    rather than reported with zero confidence.
    """

    def __init__(
        self,
        tracker: StateTracker,
        enabled: Optional[Iterable[SignalKind]] = None,
        whale_count: int = 10
    ):
        self.tracker = tracker
        self.enabled = tuple(enabled) if enabled is not None else tuple(SignalKind)
        self.whale_count = whale_count

        self._signals: Dict[SignalKind, Callable[[Sequence[int]], Optional[SquareSignal]]] = {
            SignalKind.MOMENTUM: self._momentum,
            SignalKind.CONTRARIAN_VALUE: self._contrarian_value,
            SignalKind.EDGE_HUNTING: self._edge_hunting,
            SignalKind.STREAK_REVERSAL: self._streak_reversal,
            SignalKind.LOW_COMPETITION: self._low_competition,
            SignalKind.WHALE_FOLLOWING: self._whale_following,
            SignalKind.PATTERN_ADJACENCY: self._pattern_adjacency,
            SignalKind.KELLY: self._kelly,
            SignalKind.QUADRANT: self._quadrant,
            SignalKind.MEAN_REVERSION: self._mean_reversion,
        }

    def generate(self, current_deployed: Sequence[int]) -> List[SquareSignal]:
        """All signals with something to say, most confident first"""
        signals = []
        for kind in self.enabled:
            signal = self._signals[kind](current_deployed)
            if signal is not None and signal.squares:
                signals.append(signal)
        signals.sort(key=lambda s: (-s.confidence, s.kind.value))
        return signals

    def consensus(self, current_deployed: Sequence[int], num_squares: int = 5) -> ConsensusHint:
        """
        Confidence-weighted vote across signals

        Args:
            current_deployed: Per-square stake of the open round
            num_squares: How many squares to return (clamped to 1..25)
        """
        num_squares = max(1, min(num_squares, BOARD_SIZE))
        signals = self.generate(current_deployed)

        scores = [0.0] * BOARD_SIZE
        for signal in signals:
            for square, weight in zip(signal.squares, signal.weights):
                scores[square] += weight * signal.confidence

        top = [(sq, s) for sq, s in _ranked(enumerate(scores)) if s > 0][:num_squares]
        if not top:
            return ConsensusHint.empty()

        total = sum(s for _, s in top)
        return ConsensusHint(
            squares=tuple(sq for sq, _ in top),
            weights=_normalized([s for _, s in top]),
            confidence=min(total / num_squares, MAX_CONSENSUS_CONFIDENCE),
            contributors=tuple(s.kind for s in signals),
        )

    # -- signals -----------------------------------------------------------

    def _momentum(self, current: Sequence[int]) -> Optional[SquareSignal]:
        recent = Counter(self.tracker.recent_winners)
        scored = _ranked(
            (stat.index, recent.get(stat.index, 0) + (stat.streak * 0.5 if stat.streak > 0 else 0.0))
            for stat in self.tracker.squares
        )[:3]
        total = sum(s for _, s in scored)
        if total <= 0:
            return None
        confidence = 0.7 if total > 15 else 0.5 if total > 10 else 0.3
        return SquareSignal(
            SignalKind.MOMENTUM,
            tuple(sq for sq, _ in scored),
            _normalized([s for _, s in scored]),
            confidence,
            0.15,
            "Recently hot squares",
        )

    def _contrarian_value(self, current: Sequence[int]) -> Optional[SquareSignal]:
        total = sum(current)
        if total == 0:
            return SquareSignal(
                SignalKind.CONTRARIAN_VALUE, DIAGONAL, (0.2,) * 5, 0.3, 0.0,
                "No deployment yet, diagonal spread",
            )
        scored = _ranked(
            (stat.index, stat.edge * 10 + (UNIFORM_WIN_PROBABILITY - current[stat.index] / total) * 5)
            for stat in self.tracker.squares
        )[:5]
        picked = [(sq, s) for sq, s in scored if s > 0]
        if not picked:
            return None
        return SquareSignal(
            SignalKind.CONTRARIAN_VALUE,
            tuple(sq for sq, _ in picked),
            _normalized([max(s, 0.1) for _, s in picked]),
            0.6,
            0.25,
            "Historical edge while under-staked this round",
        )

    def _edge_hunting(self, current: Sequence[int]) -> Optional[SquareSignal]:
        edges = _ranked(
            (stat.index, stat.edge)
            for stat in self.tracker.squares
            if stat.edge > 0.005 and stat.rounds_observed > 50
        )
        if not edges:
            return None
        total_edge = sum(e for _, e in edges)
        return SquareSignal(
            SignalKind.EDGE_HUNTING,
            tuple(sq for sq, _ in edges),
            _normalized([e for _, e in edges]),
            min(total_edge * 10, 0.8),
            total_edge,
            f"Squares beating 4% by {total_edge * 100:.1f}% combined",
        )

    def _streak_reversal(self, current: Sequence[int]) -> Optional[SquareSignal]:
        cold = _ranked(
            (stat.index, float(-stat.streak))
            for stat in self.tracker.squares
            if stat.streak < -5
        )[:5]
        if not cold:
            return None
        return SquareSignal(
            SignalKind.STREAK_REVERSAL,
            tuple(sq for sq, _ in cold),
            _normalized([s for _, s in cold]),
            0.35,
            0.1,
            "Long losing streaks",
        )

    def _low_competition(self, current: Sequence[int]) -> Optional[SquareSignal]:
        total = sum(current)
        if total == 0:
            return SquareSignal(
                SignalKind.LOW_COMPETITION,
                tuple(range(BOARD_SIZE)),
                (1.0 / BOARD_SIZE,) * BOARD_SIZE,
                0.5,
                0.0,
                "Board empty, even spread",
            )
        quiet = sorted(
            (amount, square) for square, amount in enumerate(current)
            if amount / total < 0.02
        )[:5]
        if not quiet:
            return None
        return SquareSignal(
            SignalKind.LOW_COMPETITION,
            tuple(square for _, square in quiet),
            (0.2,) * len(quiet),
            0.55,
            0.5,
            "Under 2% of the pot",
        )

    def _whale_following(self, current: Sequence[int]) -> Optional[SquareSignal]:
        whales = [p for p in self.tracker.get_top_deployers(self.whale_count) if p.round_count > 0]
        counts: Counter = Counter()
        for profile in whales:
            counts.update(profile.favorite_squares)
        scored = _ranked((sq, float(c)) for sq, c in counts.items())[:5]
        if not scored:
            return None
        return SquareSignal(
            SignalKind.WHALE_FOLLOWING,
            tuple(sq for sq, _ in scored),
            _normalized([c for _, c in scored]),
            0.5,
            0.15,
            f"Favorites of the top {len(whales)} deployers",
        )

    def _pattern_adjacency(self, current: Sequence[int]) -> Optional[SquareSignal]:
        if len(self.tracker.recent_winners) < BOARD_SIZE:
            return None
        last_winner = self.tracker.recent_winners[-1]
        adjacent = neighbours(last_winner)
        return SquareSignal(
            SignalKind.PATTERN_ADJACENCY,
            adjacent,
            (1.0 / len(adjacent),) * len(adjacent),
            0.4,
            0.1,
            f"Neighbours of last winner {last_winner}",
        )

    def _kelly(self, current: Sequence[int]) -> Optional[SquareSignal]:
        total = sum(current)
        if total == 0:
            return None
        scored = []
        for stat in self.tracker.squares:
            if stat.rounds_observed < 30:
                continue
            share = current[stat.index] / total
            if share < 0.001:
                continue
            b = 1.0 / share - 1.0
            if b <= 0:
                continue
            p = stat.win_rate
            f = (b * p - (1 - p)) / b
            if f > 0:
                scored.append((stat.index, f))
        if not scored:
            return None
        scored = _ranked(scored)
        total_kelly = sum(f for _, f in scored)
        top = scored[:5]
        return SquareSignal(
            SignalKind.KELLY,
            tuple(sq for sq, _ in top),
            tuple(f * 0.5 / total_kelly for _, f in top),
            0.65,
            total_kelly * 0.5,
            "Positive Kelly fraction at current odds",
        )

    def _quadrant(self, current: Sequence[int]) -> Optional[SquareSignal]:
        rounds = self.tracker.squares[0].rounds_observed
        if rounds == 0:
            return SquareSignal(SignalKind.QUADRANT, (12,), (1.0,), 0.2, 0.0, "No data, center")

        corner_rate = sum(self.tracker.squares[i].times_won for i in CORNERS) / rounds
        center_rate = sum(self.tracker.squares[i].times_won for i in CENTER) / rounds
        corner_edge = corner_rate - len(CORNERS) / BOARD_SIZE
        center_edge = center_rate - len(CENTER) / BOARD_SIZE

        if corner_edge > center_edge and corner_edge > 0.02:
            squares, reasoning = CORNERS, f"Corners ahead by {corner_edge * 100:.1f}%"
        elif center_edge > 0.02:
            squares, reasoning = CENTER, f"Center ahead by {center_edge * 100:.1f}%"
        else:
            squares, reasoning = (12,), "No region edge, center"
        return SquareSignal(
            SignalKind.QUADRANT,
            squares,
            (1.0 / len(squares),) * len(squares),
            0.45,
            0.1,
            reasoning,
        )

    def _mean_reversion(self, current: Sequence[int]) -> Optional[SquareSignal]:
        rounds = self.tracker.rounds_recorded
        if rounds < 100:
            return None
        expected = rounds / BOARD_SIZE
        behind = _ranked(
            (stat.index, expected - stat.times_won)
            for stat in self.tracker.squares
            if expected - stat.times_won > 2
        )[:5]
        if not behind:
            return None
        return SquareSignal(
            SignalKind.MEAN_REVERSION,
            tuple(sq for sq, _ in behind),
            _normalized([d for _, d in behind]),
            0.4,
            0.15,
            "Below expected win count",
        )
