"""
ORE Pipeline
One engine object owning the classifier, tracker, resolver, learning
engine, signal engine and optimizer. Runs decode, classify, apply,
resolve, learn and decide in that order.

Single writer: callers serialize ingest() and complete_round().
"""

import random
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from ore_learner.core.classifier import EventClassifier, EventKind, ParsedEvent, RawTransaction
from ore_learner.core.config import AppConfig, LearningConfig, OptimizerConfig
from ore_learner.core.constants import ORE_PROGRAM_ID
from ore_learner.core.logger import get_logger, round_context
from ore_learner.core.metrics import get_metrics
from ore_learner.core.optimizer import CurrentRoundState, EVOptimizer, Recommendation
from ore_learner.core.outcome import RoundOutcome, RoundOutcomeResolver, validate_round
from ore_learner.core.learning import LearningEngine
from ore_learner.core.square_signals import SquareSignalEngine
from ore_learner.core.state_tracker import StateTracker


logger = get_logger(__name__)
metrics = get_metrics()

CONSENSUS_SQUARES = 5


class OrePipeline:
    """
    Usage:
        pipeline = OrePipeline()
        pipeline.ingest_many(transactions)
        pipeline.complete_round(round_id, winning_square)
        recommendation = pipeline.decide(wallet_balance)
    """

    def __init__(
        self,
        program_id: str = ORE_PROGRAM_ID,
        learning_config: Optional[LearningConfig] = None,
        optimizer_config: Optional[OptimizerConfig] = None,
        rng: Optional[random.Random] = None,
        auto_complete_rounds: bool = True
    ):
        self.learning_config = learning_config or LearningConfig()
        self.optimizer_config = optimizer_config or OptimizerConfig()

        self.classifier = EventClassifier(program_id)
        self.tracker = StateTracker()
        self.resolver = RoundOutcomeResolver(self.learning_config.full_win_threshold_lamports)
        self.learning = LearningEngine(self.tracker, self.learning_config)
        self.signals = SquareSignalEngine(self.tracker)
        self.optimizer = EVOptimizer(self.tracker, self.optimizer_config, rng)

        # Complete rounds from Reset events using the stream-observed vector
        self.auto_complete_rounds = auto_complete_rounds
        self.current_round_id = 0
        # Outcomes resolved since the last drain, for persistence
        self.pending_outcomes: List[RoundOutcome] = []

    @classmethod
    def from_config(cls, config: AppConfig, rng: Optional[random.Random] = None) -> "OrePipeline":
        return cls(
            program_id=config.decoder_config.program_id,
            learning_config=config.learning_config,
            optimizer_config=config.optimizer_config,
            rng=rng,
        )

    # -- ingestion ---------------------------------------------------------

    def ingest(self, raw_tx: Union[RawTransaction, Dict[str, Any]]) -> List[ParsedEvent]:
        """
        Classify and apply every tracked invocation of one transaction

        Accepts a RawTransaction or a getTransaction result dict.
        """
        tx = raw_tx if isinstance(raw_tx, RawTransaction) else RawTransaction.from_rpc(raw_tx)
        events = self.classifier.classify_all(tx)

        for event in events:
            self.tracker.apply(event)
            if event.is_gap:
                metrics.increment_counter("classification_gaps")
            if event.kind is EventKind.ROUND_RESULT and event.success:
                self._on_round_result(event)

        return events

    def ingest_many(self, raw_txs: Iterable[Union[RawTransaction, Dict[str, Any]]]) -> List[ParsedEvent]:
        """Ingest in the order given"""
        events: List[ParsedEvent] = []
        for raw_tx in raw_txs:
            events.extend(self.ingest(raw_tx))
        return events

    def _on_round_result(self, event: ParsedEvent) -> None:
        result = event.payload
        if result is None or not result.round_known:
            logger.info(
                "round_result_unresolved",
                signature=event.signature,
                slot=event.slot,
                winning_square=getattr(result, "winning_square", None),
            )
            return
        if not self.auto_complete_rounds:
            logger.debug("round_result_deferred", round_id=result.round_id, signature=event.signature)
            return
        self.complete_round(
            result.round_id,
            result.winning_square,
            is_jackpot=result.is_jackpot,
            slot=event.slot,
        )

    # -- rounds ------------------------------------------------------------

    def complete_round(
        self,
        round_id: int,
        winning_square: int,
        per_square_deployed: Optional[Sequence[int]] = None,
        is_jackpot: bool = False,
        slot: int = 0,
        before_slot: Optional[int] = None
    ) -> Optional[RoundOutcome]:
        """
        Resolve the open round and feed the learner

        Args:
            round_id: Finished round id
            winning_square: Revealed square
            per_square_deployed: Authoritative vector from the Round
                account; defaults to the deploys observed in the stream
            is_jackpot: Motherlode flag
            before_slot: Start slot of the next round; later deploys stay open

        Returns:
            The outcome, or None when the round was already completed

        Raises:
            StateInvariantViolation: bad round id, square or vector length;
                the open round is left untouched
        """
        validate_round(round_id, winning_square, per_square_deployed)
        if self.learning.has_recorded(round_id):
            logger.debug("round_already_completed", round_id=round_id)
            return None

        with round_context(round_id):
            snapshot = self.tracker.close_round(before_slot)
            vector = per_square_deployed if per_square_deployed is not None else snapshot.observed_deployed

            outcome = self.resolver.resolve(
                round_id,
                winning_square,
                vector,
                known_deploys=snapshot.known_deploys,
                is_jackpot=is_jackpot,
                slot=slot,
            )
            self.tracker.record_round(outcome, snapshot.known_deploys)
            self.learning.record_outcome(outcome)

        self.pending_outcomes.append(outcome)
        self.current_round_id = max(self.current_round_id, round_id + 1)
        metrics.set_gauge("last_completed_round", round_id)
        return outcome

    def drain_outcomes(self) -> List[RoundOutcome]:
        outcomes, self.pending_outcomes = self.pending_outcomes, []
        return outcomes

    # -- decisions ---------------------------------------------------------

    def decide(
        self,
        wallet_balance: int,
        round_state: Optional[CurrentRoundState] = None
    ) -> Recommendation:
        """Recommendation for the open round; defaults to the observed stream"""
        if round_state is None:
            round_state = CurrentRoundState(
                round_id=self.current_round_id,
                deployed=self.tracker.round_deployed,
                num_deployers=len({d.address for d in self.tracker.round_deploys}),
            )

        consensus = None
        if self.optimizer.check_inputs(wallet_balance, round_state) is None:
            consensus = self.signals.consensus(round_state.deployed, CONSENSUS_SQUARES)

        return self.optimizer.decide(
            wallet_balance,
            round_state,
            consensus_hint=consensus,
            strategy_hint=self.learning.get_best_strategy(),
        )

    def get_learning_summary(self) -> dict:
        """JSON-shaped snapshot; key names are a stable export contract"""
        summary = self.learning.get_summary()
        summary.update(self.optimizer.get_summary())
        summary["squares"] = [
            {
                "square": stat.index,
                "times_won": stat.times_won,
                "rounds_observed": stat.rounds_observed,
                "win_rate": stat.win_rate,
                "edge": stat.edge,
                "streak": stat.streak,
                "total_deployed": stat.total_deployed,
            }
            for stat in self.tracker.squares
        ]
        return summary
