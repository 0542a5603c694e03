"""
State Tracker
Running per-square, per-square-count and per-participant aggregates built
from the classified event stream.

apply() is the only event mutation entry point. It does not deduplicate:
callers must not deliver the same signature twice.
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from ore_learner.core.classifier import EventKind, ParsedEvent
from ore_learner.core.constants import BOARD_SIZE, LAMPORTS_PER_SOL, UNIFORM_WIN_PROBABILITY
from ore_learner.core.errors import StateInvariantViolation
from ore_learner.core.instructions import InstructionKind
from ore_learner.core.logger import get_logger
from ore_learner.core.metrics import get_metrics


logger = get_logger(__name__)
metrics = get_metrics()

MAX_STREAK = 20
FAVORITE_SQUARES_CAP = 10
LOW_COMPETITION_SOL = 5.0


def validate_square(index: int) -> int:
    """Reject square indices outside [0, 25); never wrap"""
    if not isinstance(index, int) or not 0 <= index < BOARD_SIZE:
        raise StateInvariantViolation(f"Square index out of range: {index!r}")
    return index


@dataclass
class SquareStat:
    """Aggregates for one board square"""
    index: int
    times_deployed_to: int = 0
    total_deployed: int = 0
    times_won: int = 0
    rounds_observed: int = 0
    competition_total: int = 0  # stake on this square summed over resolved rounds
    streak: int = 0  # >0 consecutive wins, <0 consecutive misses

    @property
    def win_rate(self) -> float:
        if self.rounds_observed == 0:
            return 0.0
        return self.times_won / self.rounds_observed

    @property
    def edge(self) -> float:
        """Win rate above the uniform 1/25 expectation"""
        return self.win_rate - UNIFORM_WIN_PROBABILITY

    @property
    def avg_competition(self) -> float:
        if self.rounds_observed == 0:
            return 0.0
        return self.competition_total / self.rounds_observed

    def record_round(self, won: bool, competition: int) -> None:
        self.rounds_observed += 1
        self.competition_total += competition
        if won:
            self.times_won += 1
            self.streak = min(max(self.streak, 0) + 1, MAX_STREAK)
        else:
            self.streak = max(min(self.streak, 0) - 1, -MAX_STREAK)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "times_deployed_to": self.times_deployed_to,
            "total_deployed": self.total_deployed,
            "times_won": self.times_won,
            "rounds_observed": self.rounds_observed,
            "competition_total": self.competition_total,
            "streak": self.streak,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SquareStat":
        stat = cls(
            index=validate_square(data["index"]),
            times_deployed_to=data.get("times_deployed_to", 0),
            total_deployed=data.get("total_deployed", 0),
            times_won=data.get("times_won", 0),
            rounds_observed=data.get("rounds_observed", 0),
            competition_total=data.get("competition_total", 0),
            streak=data.get("streak", 0),
        )
        if stat.times_won > stat.rounds_observed:
            raise StateInvariantViolation(
                f"Square {stat.index} won {stat.times_won} of {stat.rounds_observed} rounds"
            )
        return stat


@dataclass
class SquareCountStat:
    """Outcomes of deploys that picked exactly `count` squares"""
    count: int
    times_used: int = 0
    times_won: int = 0
    total_deployed: int = 0
    total_won: int = 0
    total_ore: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.times_won / self.times_used if self.times_used else 0.0

    @property
    def roi(self) -> float:
        if self.total_deployed == 0:
            return 0.0
        return (self.total_won - self.total_deployed) / self.total_deployed

    @property
    def avg_ore_per_win(self) -> float:
        return self.total_ore / self.times_won if self.times_won else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "times_used": self.times_used,
            "times_won": self.times_won,
            "total_deployed": self.total_deployed,
            "total_won": self.total_won,
            "total_ore": self.total_ore,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SquareCountStat":
        return cls(
            count=data["count"],
            times_used=data.get("times_used", 0),
            times_won=data.get("times_won", 0),
            total_deployed=data.get("total_deployed", 0),
            total_won=data.get("total_won", 0),
            total_ore=data.get("total_ore", 0.0),
        )


@dataclass
class ParticipantProfile:
    """Everything observed about one wallet"""
    address: str
    first_seen_slot: int = 0
    last_seen_slot: int = 0
    total_deployed: int = 0
    total_won: int = 0  # estimated gross payout
    round_count: int = 0
    win_count: int = 0
    squares_total: int = 0
    square_counts: Counter = field(default_factory=Counter)
    rounds_played_total_sol: float = 0.0
    rounds_played: int = 0
    plays_motherlode: bool = False
    jackpot_wins: int = 0
    full_win_count: int = 0
    ore_earned: float = 0.0
    automation_enabled: bool = False
    claim_sol_count: int = 0
    claim_ore_count: int = 0
    deposited: int = 0
    withdrawn: int = 0
    yield_claims: int = 0

    @property
    def claim_count(self) -> int:
        return self.claim_sol_count + self.claim_ore_count

    @property
    def avg_squares_per_deploy(self) -> float:
        return self.squares_total / self.round_count if self.round_count else 0.0

    @property
    def avg_bet_size(self) -> float:
        return self.total_deployed / self.round_count if self.round_count else 0.0

    @property
    def favorite_squares(self) -> List[int]:
        """Most-used squares, at most 10, ties broken by index"""
        ranked = sorted(self.square_counts.items(), key=lambda item: (-item[1], item[0]))
        return [square for square, _ in ranked[:FAVORITE_SQUARES_CAP]]

    @property
    def preferred_square_count(self) -> Optional[int]:
        if self.win_count <= 3 or self.round_count == 0:
            return None
        return int(round(self.avg_squares_per_deploy))

    @property
    def win_rate(self) -> float:
        return self.win_count / self.round_count if self.round_count else 0.0

    @property
    def roi(self) -> float:
        if self.total_deployed == 0:
            return 0.0
        return (self.total_won - self.total_deployed) / self.total_deployed

    @property
    def ore_per_sol(self) -> float:
        if self.total_deployed == 0:
            return 0.0
        return self.ore_earned / (self.total_deployed / LAMPORTS_PER_SOL)

    @property
    def avg_round_competition(self) -> float:
        """Average round total (SOL) across resolved rounds this wallet played"""
        return self.rounds_played_total_sol / self.rounds_played if self.rounds_played else 0.0

    @property
    def prefers_low_competition(self) -> bool:
        return self.rounds_played > 0 and self.avg_round_competition < LOW_COMPETITION_SOL

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "first_seen_slot": self.first_seen_slot,
            "last_seen_slot": self.last_seen_slot,
            "total_deployed": self.total_deployed,
            "total_won": self.total_won,
            "round_count": self.round_count,
            "win_count": self.win_count,
            "squares_total": self.squares_total,
            "square_counts": {str(k): v for k, v in self.square_counts.items()},
            "rounds_played_total_sol": self.rounds_played_total_sol,
            "rounds_played": self.rounds_played,
            "plays_motherlode": self.plays_motherlode,
            "jackpot_wins": self.jackpot_wins,
            "full_win_count": self.full_win_count,
            "ore_earned": self.ore_earned,
            "automation_enabled": self.automation_enabled,
            "claim_sol_count": self.claim_sol_count,
            "claim_ore_count": self.claim_ore_count,
            "deposited": self.deposited,
            "withdrawn": self.withdrawn,
            "yield_claims": self.yield_claims,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ParticipantProfile":
        counts = Counter({
            validate_square(int(k)): v
            for k, v in (data.get("square_counts") or {}).items()
        })
        return cls(
            address=data["address"],
            first_seen_slot=data.get("first_seen_slot", 0),
            last_seen_slot=data.get("last_seen_slot", 0),
            total_deployed=data.get("total_deployed", 0),
            total_won=data.get("total_won", 0),
            round_count=data.get("round_count", 0),
            win_count=data.get("win_count", 0),
            squares_total=data.get("squares_total", 0),
            square_counts=counts,
            rounds_played_total_sol=data.get("rounds_played_total_sol", 0.0),
            rounds_played=data.get("rounds_played", 0),
            plays_motherlode=data.get("plays_motherlode", False),
            jackpot_wins=data.get("jackpot_wins", 0),
            full_win_count=data.get("full_win_count", 0),
            ore_earned=data.get("ore_earned", 0.0),
            automation_enabled=data.get("automation_enabled", False),
            claim_sol_count=data.get("claim_sol_count", 0),
            claim_ore_count=data.get("claim_ore_count", 0),
            deposited=data.get("deposited", 0),
            withdrawn=data.get("withdrawn", 0),
            yield_claims=data.get("yield_claims", 0),
        )


@dataclass(frozen=True)
class KnownDeploy:
    """A deploy observed in the current round"""
    address: str
    amount: int
    squares: Tuple[int, ...]
    slot: int = 0
    signature: str = ""


@dataclass(frozen=True)
class RoundSnapshot:
    """Deploys collected for one round, handed to the outcome resolver"""
    known_deploys: Tuple[KnownDeploy, ...]
    observed_deployed: Tuple[int, ...]


class StateTracker:
    """
    Owns SquareStat[25], SquareCountStat[1..25] and the participant map

    Usage:
        tracker = StateTracker()
        for event in events:
            tracker.apply(event)
        snapshot = tracker.close_round()
    """

    def __init__(self, recent_window: int = 100):
        self.squares: List[SquareStat] = [SquareStat(index=i) for i in range(BOARD_SIZE)]
        self.count_stats: Dict[int, SquareCountStat] = {
            c: SquareCountStat(count=c) for c in range(1, BOARD_SIZE + 1)
        }
        self.profiles: Dict[str, ParticipantProfile] = {}
        self.recent_winners: Deque[int] = deque(maxlen=recent_window)

        self._round_deploys: List[KnownDeploy] = []
        self._round_deployed: List[int] = [0] * BOARD_SIZE

        self.instruction_counts: Counter = Counter()
        self.events_applied = 0
        self.failed_events_skipped = 0
        self.empty_deploys_skipped = 0
        self.deploy_events = 0
        self.deploy_volume = 0  # sum of deploy amounts, each counted once
        self.square_attributed_total = 0  # sum of amount * distinct squares
        self.rounds_recorded = 0

        self._handlers: Dict[EventKind, Callable[[ParsedEvent, ParticipantProfile], None]] = {
            EventKind.DEPLOY: self._apply_deploy,
            EventKind.CLAIM: self._apply_claim,
            EventKind.AUTOMATE: self._apply_automate,
            EventKind.DEPOSIT: self._apply_deposit,
            EventKind.WITHDRAW: self._apply_withdraw,
            EventKind.YIELD: self._apply_yield,
        }

    # -- event application -------------------------------------------------

    def apply(self, event: ParsedEvent) -> None:
        """
        Fold one event into the aggregates

        Failed transactions are counted and otherwise ignored. Events
        without a dedicated handler (round results, admin instructions,
        unknown payloads) only refresh the signer's profile.
        """
        if not event.success:
            self.failed_events_skipped += 1
            metrics.increment_counter("tracker_failed_events_skipped")
            return

        self.events_applied += 1
        self.instruction_counts[event.instruction_kind.name] += 1

        profile = self._touch(event.signer, event.slot)
        handler = self._handlers.get(event.kind)
        if handler is not None:
            handler(event, profile)

    def _touch(self, address: str, slot: int) -> ParticipantProfile:
        profile = self.profiles.get(address)
        if profile is None:
            # Unknown -> Tracked
            profile = ParticipantProfile(address=address, first_seen_slot=slot)
            self.profiles[address] = profile
            metrics.set_gauge("profiles_tracked", len(self.profiles))
        profile.last_seen_slot = max(profile.last_seen_slot, slot)
        return profile

    def _apply_deploy(self, event: ParsedEvent, profile: ParticipantProfile) -> None:
        fields = event.payload
        squares = tuple(sorted({validate_square(s) for s in fields.squares}))
        if not squares:
            self.empty_deploys_skipped += 1
            logger.debug("deploy_without_squares", signature=event.signature)
            return

        amount = fields.amount
        for square in squares:
            stat = self.squares[square]
            stat.times_deployed_to += 1
            stat.total_deployed += amount
            self._round_deployed[square] += amount

        count_stat = self.count_stats[len(squares)]
        count_stat.times_used += 1
        count_stat.total_deployed += amount

        profile.total_deployed += amount
        profile.round_count += 1
        profile.squares_total += len(squares)
        profile.square_counts.update(squares)

        self.deploy_events += 1
        self.deploy_volume += amount
        self.square_attributed_total += amount * len(squares)

        self._round_deploys.append(KnownDeploy(
            address=profile.address,
            amount=amount,
            squares=squares,
            slot=event.slot,
            signature=event.signature,
        ))

    def _apply_claim(self, event: ParsedEvent, profile: ParticipantProfile) -> None:
        if event.instruction_kind is InstructionKind.CLAIM_SOL:
            profile.claim_sol_count += 1
        else:
            profile.claim_ore_count += 1

    def _apply_automate(self, event: ParsedEvent, profile: ParticipantProfile) -> None:
        profile.automation_enabled = True

    def _apply_deposit(self, event: ParsedEvent, profile: ParticipantProfile) -> None:
        profile.deposited += event.payload.amount

    def _apply_withdraw(self, event: ParsedEvent, profile: ParticipantProfile) -> None:
        profile.withdrawn += event.payload.amount

    def _apply_yield(self, event: ParsedEvent, profile: ParticipantProfile) -> None:
        profile.yield_claims += 1

    # -- round lifecycle ---------------------------------------------------

    @property
    def round_deployed(self) -> Tuple[int, ...]:
        """Per-square stake observed so far in the open round"""
        return tuple(self._round_deployed)

    @property
    def round_deploys(self) -> Tuple[KnownDeploy, ...]:
        return tuple(self._round_deploys)

    def close_round(self, before_slot: Optional[int] = None) -> RoundSnapshot:
        """
        Hand over the open round's deploys and start a fresh round

        Args:
            before_slot: When set, deploys at or after this slot already
                belong to the next round and stay open
        """
        closing, carried = [], []
        for deploy in self._round_deploys:
            if before_slot is not None and deploy.slot >= before_slot:
                carried.append(deploy)
            else:
                closing.append(deploy)

        observed = [0] * BOARD_SIZE
        for deploy in closing:
            for square in deploy.squares:
                observed[square] += deploy.amount

        self._round_deploys = carried
        self._round_deployed = [
            total - closed for total, closed in zip(self._round_deployed, observed)
        ]
        return RoundSnapshot(known_deploys=tuple(closing), observed_deployed=tuple(observed))

    def record_round(self, outcome, known_deploys: Iterable[KnownDeploy] = ()) -> None:
        """
        Fold a resolved round into square statistics

        Args:
            outcome: RoundOutcome from the resolver
            known_deploys: Deploys of that round, used for each
                participant's competition preference
        """
        winning = validate_square(outcome.winning_square)
        for stat, competition in zip(self.squares, outcome.competitors):
            stat.record_round(stat.index == winning, competition)
        self.recent_winners.append(winning)
        self.rounds_recorded += 1

        round_sol = outcome.total_deployed / LAMPORTS_PER_SOL
        for address in {deploy.address for deploy in known_deploys}:
            profile = self.profiles.get(address)
            if profile is not None:
                profile.rounds_played += 1
                profile.rounds_played_total_sol += round_sol

    def credit_win(
        self,
        address: str,
        payout: int,
        ore_earned: float,
        winning_deploys: Sequence[Tuple[int, int]],
        is_full_win: bool,
        is_jackpot: bool,
        slot: int = 0
    ) -> ParticipantProfile:
        """
        Credit a resolved win to the winner's profile and count stats

        Each deploy that covered the winning square credits the count stat
        of its own square count, with payout and ORE split by stake.
        """
        profile = self._touch(address, slot)
        profile.win_count += 1
        profile.total_won += payout
        profile.ore_earned += ore_earned
        if is_full_win:
            profile.full_win_count += 1
        if is_jackpot:
            profile.jackpot_wins += 1
            profile.plays_motherlode = True

        covered = sum(amount for _, amount in winning_deploys)
        for num_squares, amount in winning_deploys:
            count_stat = self.count_stats.get(num_squares)
            if count_stat is None:
                continue
            weight = amount / covered if covered else 1.0 / len(winning_deploys)
            count_stat.times_won += 1
            count_stat.total_won += int(payout * weight)
            count_stat.total_ore += ore_earned * weight
        return profile

    # -- queries -----------------------------------------------------------

    def square(self, index: int) -> SquareStat:
        return self.squares[validate_square(index)]

    def conservation_holds(self) -> bool:
        return sum(s.total_deployed for s in self.squares) == self.square_attributed_total

    def get_top_deployers(self, limit: int = 10) -> List[ParticipantProfile]:
        return sorted(
            self.profiles.values(),
            key=lambda p: (-p.total_deployed, p.address),
        )[:limit]

    def get_stats(self) -> dict:
        return {
            "events_applied": self.events_applied,
            "failed_events_skipped": self.failed_events_skipped,
            "empty_deploys_skipped": self.empty_deploys_skipped,
            "deploy_events": self.deploy_events,
            "deploy_volume_sol": self.deploy_volume / LAMPORTS_PER_SOL,
            "rounds_recorded": self.rounds_recorded,
            "profiles_tracked": len(self.profiles),
            "instruction_counts": dict(self.instruction_counts),
        }

    # -- snapshots ---------------------------------------------------------

    def export_square_stats(self) -> List[dict]:
        return [stat.to_dict() for stat in self.squares]

    def export_count_stats(self) -> List[dict]:
        return [self.count_stats[c].to_dict() for c in sorted(self.count_stats)]

    def load_snapshot(
        self,
        square_stats: Sequence[SquareStat] = (),
        profiles: Optional[Dict[str, ParticipantProfile]] = None,
        count_stats: Sequence[SquareCountStat] = ()
    ) -> None:
        """Restore persisted aggregates; missing entries keep their defaults"""
        for stat in square_stats:
            self.squares[validate_square(stat.index)] = stat
        for stat in count_stats:
            if stat.count in self.count_stats:
                self.count_stats[stat.count] = stat
        if profiles:
            self.profiles.update(profiles)
        self.square_attributed_total = sum(s.total_deployed for s in self.squares)
        logger.info(
            "tracker_snapshot_loaded",
            squares=len(square_stats),
            profiles=len(profiles or {}),
            count_stats=len(count_stats),
        )
