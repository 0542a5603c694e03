"""
Round Outcome Resolver
Turns a finished round's deployment vector and winning square into a
RoundOutcome with per-winner shares.

Full-win classification is a heuristic: a round whose total deployment is
below the configured threshold is assumed to pay the whole ORE reward to
the winning square. The protocol exposes no such flag.
"""

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Tuple

from ore_learner.core.constants import BOARD_SIZE, LAMPORTS_PER_SOL
from ore_learner.core.errors import StateInvariantViolation
from ore_learner.core.logger import get_logger
from ore_learner.core.metrics import get_metrics
from ore_learner.core.state_tracker import KnownDeploy, validate_square


logger = get_logger(__name__)
metrics = get_metrics()

DEFAULT_FULL_WIN_THRESHOLD = 2 * LAMPORTS_PER_SOL


class OutcomeClass(str, Enum):
    FULL_WIN = "full_win"
    SPLIT = "split"
    JACKPOT = "jackpot"


@dataclass(frozen=True)
class ResolvedWinner:
    address: str
    amount_bet: int  # everything the address deployed this round
    amount_on_square: int  # stake that covered the winning square
    amount_won: int  # share of the winning square's stake
    share_pct: float
    payout: int  # amount_won plus the pro-rata cut of losing squares
    squares: Tuple[int, ...]
    # (square count, amount) of each deploy that covered the winning square
    winning_deploys: Tuple[Tuple[int, int], ...] = ()

    @property
    def share(self) -> float:
        return self.share_pct / 100.0


@dataclass(frozen=True)
class RoundOutcome:
    round_id: int
    winning_square: int
    total_deployed: int
    competitors: Tuple[int, ...]
    is_jackpot: bool
    outcome_class: OutcomeClass
    ore_estimate: float
    num_deployers: int  # squares that received any stake
    resolved_winners: Tuple[ResolvedWinner, ...] = ()
    slot: int = 0

    @property
    def competition_on_square(self) -> int:
        return self.competitors[self.winning_square]

    @property
    def is_full_win(self) -> bool:
        return self.outcome_class is OutcomeClass.FULL_WIN

    def to_dict(self) -> dict:
        return {
            "round_id": self.round_id,
            "winning_square": self.winning_square,
            "total_deployed": self.total_deployed,
            "competitors": list(self.competitors),
            "is_jackpot": self.is_jackpot,
            "outcome_class": self.outcome_class.value,
            "ore_estimate": self.ore_estimate,
            "num_deployers": self.num_deployers,
            "slot": self.slot,
            "resolved_winners": [
                {
                    "address": w.address,
                    "amount_bet": w.amount_bet,
                    "amount_on_square": w.amount_on_square,
                    "amount_won": w.amount_won,
                    "share_pct": w.share_pct,
                    "payout": w.payout,
                    "squares": list(w.squares),
                    "winning_deploys": [list(d) for d in w.winning_deploys],
                }
                for w in self.resolved_winners
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RoundOutcome":
        return cls(
            round_id=data["round_id"],
            winning_square=validate_square(data["winning_square"]),
            total_deployed=data["total_deployed"],
            competitors=tuple(data["competitors"]),
            is_jackpot=data.get("is_jackpot", False),
            outcome_class=OutcomeClass(data["outcome_class"]),
            ore_estimate=data.get("ore_estimate", 0.0),
            num_deployers=data.get("num_deployers", 0),
            slot=data.get("slot", 0),
            resolved_winners=tuple(
                ResolvedWinner(
                    address=w["address"],
                    amount_bet=w["amount_bet"],
                    amount_on_square=w["amount_on_square"],
                    amount_won=w["amount_won"],
                    share_pct=w["share_pct"],
                    payout=w["payout"],
                    squares=tuple(w["squares"]),
                    winning_deploys=tuple(
                        (int(c), int(a)) for c, a in w.get("winning_deploys", ())
                    ),
                )
                for w in data.get("resolved_winners", [])
            ),
        )


def validate_round(
    round_id: int,
    winning_square: int,
    per_square_deployed: Optional[Sequence[int]] = None
) -> None:
    """Raise StateInvariantViolation unless the round can be resolved"""
    if not isinstance(round_id, int) or round_id <= 0:
        raise StateInvariantViolation(f"Unresolved round id: {round_id!r}")
    validate_square(winning_square)
    if per_square_deployed is not None and len(per_square_deployed) != BOARD_SIZE:
        raise StateInvariantViolation(
            f"Deployment vector has {len(per_square_deployed)} entries, expected {BOARD_SIZE}"
        )


class RoundOutcomeResolver:
    """Stateless apart from its full-win threshold"""

    def __init__(self, full_win_threshold: int = DEFAULT_FULL_WIN_THRESHOLD):
        self.full_win_threshold = full_win_threshold

    def resolve(
        self,
        round_id: int,
        winning_square: int,
        per_square_deployed: Sequence[int],
        known_deploys: Iterable[KnownDeploy] = (),
        is_jackpot: bool = False,
        slot: int = 0
    ) -> RoundOutcome:
        """
        Resolve one finished round

        Args:
            round_id: Positive round id taken from board state
            winning_square: Revealed square, 0..24
            per_square_deployed: 25 per-square totals (lamports)
            known_deploys: Deploys observed during the round
            is_jackpot: Motherlode flag carried from the round result

        Raises:
            StateInvariantViolation: bad round id, square or vector length
        """
        validate_round(round_id, winning_square, per_square_deployed)

        competitors = tuple(int(x) for x in per_square_deployed)
        total = sum(competitors)
        competition = competitors[winning_square]
        losing_pot = total - competition
        num_deployers = sum(1 for x in competitors if x > 0)

        winners = []
        for address, (amount_bet, on_square, squares, covering) in self._aggregate(known_deploys, winning_square).items():
            if on_square == 0:
                continue
            if competition > 0:
                share = min(on_square / competition, 1.0)
                amount_won = int(round(competition * share))
            else:
                # Vector lags the observed deploys: sole known winner takes all
                share = 1.0
                amount_won = on_square
            winners.append(ResolvedWinner(
                address=address,
                amount_bet=amount_bet,
                amount_on_square=on_square,
                amount_won=amount_won,
                share_pct=share * 100.0,
                payout=amount_won + int(losing_pot * share),
                squares=squares,
                winning_deploys=covering,
            ))

        if is_jackpot:
            outcome_class = OutcomeClass.JACKPOT
        elif total < self.full_win_threshold:
            outcome_class = OutcomeClass.FULL_WIN
        else:
            outcome_class = OutcomeClass.SPLIT

        ore_estimate = self.estimate_ore(outcome_class, num_deployers)

        outcome = RoundOutcome(
            round_id=round_id,
            winning_square=winning_square,
            total_deployed=total,
            competitors=competitors,
            is_jackpot=is_jackpot,
            outcome_class=outcome_class,
            ore_estimate=ore_estimate,
            num_deployers=num_deployers,
            resolved_winners=tuple(sorted(winners, key=lambda w: (-w.amount_on_square, w.address))),
            slot=slot,
        )

        metrics.increment_counter("rounds_resolved", labels={"class": outcome_class.value})
        logger.info(
            "round_resolved",
            round_id=round_id,
            winning_square=winning_square,
            total_sol=total / LAMPORTS_PER_SOL,
            competition_sol=competition / LAMPORTS_PER_SOL,
            outcome_class=outcome_class.value,
            winners=len(winners),
        )
        return outcome

    @staticmethod
    def estimate_ore(outcome_class: OutcomeClass, num_deployers: int) -> float:
        """ORE credited to the winning square: whole reward on a full win, else split"""
        if outcome_class is OutcomeClass.FULL_WIN or num_deployers <= 2:
            return 1.0
        return 2.0 / num_deployers

    @staticmethod
    def _aggregate(
        known_deploys: Iterable[KnownDeploy],
        winning_square: int
    ) -> Dict[str, Tuple[int, int, Tuple[int, ...], Tuple[Tuple[int, int], ...]]]:
        """
        address -> (amount deployed, amount covering the winning square,
        squares, (square count, amount) per covering deploy)
        """
        totals: "OrderedDict[str, Tuple[int, int, set, list]]" = OrderedDict()
        for deploy in known_deploys:
            bet, on_square, squares, covering = totals.get(deploy.address, (0, 0, set(), []))
            bet += deploy.amount
            if winning_square in deploy.squares:
                on_square += deploy.amount
                covering = covering + [(len(deploy.squares), deploy.amount)]
            squares = squares | set(deploy.squares)
            totals[deploy.address] = (bet, on_square, squares, covering)

        return {
            address: (bet, on_square, tuple(sorted(squares)), tuple(covering))
            for address, (bet, on_square, squares, covering) in totals.items()
        }
