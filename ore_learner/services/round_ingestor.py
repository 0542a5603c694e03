"""
Round Ingestor
Single polling pass wiring the RPC client and the learning store to the
pipeline. The caller owns the loop and its cadence.
"""

import random
from dataclasses import dataclass
from typing import List, Optional

from ore_learner.clients.rpc_client import OreRpcClient
from ore_learner.core.config import AppConfig, IngestConfig
from ore_learner.core.logger import get_logger, setup_logging
from ore_learner.core.metrics import get_metrics, init_metrics
from ore_learner.core.outcome import RoundOutcome
from ore_learner.core.pipeline import OrePipeline
from ore_learner.storage.learning_store import LearningStore


logger = get_logger(__name__)
metrics = get_metrics()


@dataclass
class PollResult:
    """What one poll_once() pass did"""
    signatures_seen: int = 0
    transactions_ingested: int = 0
    already_processed: int = 0
    missing_transactions: int = 0
    board_round_id: Optional[int] = None
    rounds_completed: int = 0


class RoundIngestor:
    """
    Feeds new ORE transactions into the pipeline and persists what it learns

    Usage:
        ingestor = RoundIngestor(rpc, pipeline, store)
        await ingestor.restore()
        while running:
            await ingestor.poll_once()
            await asyncio.sleep(interval)
    """

    def __init__(
        self,
        rpc: OreRpcClient,
        pipeline: OrePipeline,
        store: LearningStore,
        config: Optional[IngestConfig] = None
    ):
        self.rpc = rpc
        self.pipeline = pipeline
        self.store = store
        self.config = config or IngestConfig()

        self.last_signature: Optional[str] = None
        self.current_round_id: Optional[int] = None
        # Finished rounds whose slot hash was not revealed yet
        self.unresolved_rounds: List[int] = []

        # Rounds complete from the Round account vector, never from Reset events
        self.pipeline.auto_complete_rounds = False

    async def restore(self) -> None:
        """Load persisted aggregates, history and strategies into the pipeline"""
        square_stats = await self.store.load_square_stats()
        count_stats = await self.store.load_count_stats()
        profiles = await self.store.load_participant_profiles()
        self.pipeline.tracker.load_snapshot(square_stats, profiles, count_stats)

        outcomes = await self.store.load_round_outcomes()
        self.pipeline.learning.load_history(outcomes)
        for outcome in outcomes:
            self.pipeline.tracker.recent_winners.append(outcome.winning_square)
        self.pipeline.tracker.rounds_recorded = max(
            (stat.rounds_observed for stat in square_stats), default=0
        )

        self.pipeline.learning.strategies = await self.store.load_detected_strategies()
        logger.info(
            "ingestor_restored",
            squares=len(square_stats),
            profiles=len(profiles),
            outcomes=len(outcomes),
            strategies=len(self.pipeline.learning.strategies),
        )

    async def poll_once(self) -> PollResult:
        """
        One pass: ingest new signatures oldest first, then resolve any
        round the board has moved past, then persist

        Raises:
            RpcError: If every RPC endpoint failed
        """
        result = PollResult()

        records = await self._fetch_new_signatures()
        result.signatures_seen = len(records)

        for record in reversed(records):
            signature = record.get("signature")
            if not signature:
                continue
            if await self.store.is_processed(signature):
                result.already_processed += 1
                continue

            tx = await self.rpc.get_transaction(signature)
            if tx is None:
                # Not yet available at this commitment; retried next pass
                result.missing_transactions += 1
                logger.debug("transaction_not_available", signature=signature)
                continue

            self.pipeline.ingest(tx)
            await self.store.mark_processed(signature, tx.get("slot", record.get("slot", 0)))
            result.transactions_ingested += 1

        if records and result.missing_transactions == 0:
            self.last_signature = records[0].get("signature") or self.last_signature

        result.rounds_completed = await self._check_round_change(result)
        await self._persist()

        metrics.increment_counter("ingest_polls")
        metrics.increment_counter("transactions_ingested", value=result.transactions_ingested)
        logger.info(
            "poll_completed",
            signatures=result.signatures_seen,
            ingested=result.transactions_ingested,
            skipped=result.already_processed,
            board_round_id=result.board_round_id,
            rounds_completed=result.rounds_completed,
        )
        return result

    async def _fetch_new_signatures(self) -> List[dict]:
        """
        Newest-first records since the cursor, paging backwards with `before`

        Without a cursor the walk stops after `max_backfill_pages` pages.
        """
        limit = self.config.signature_batch_size
        records: List[dict] = []
        before: Optional[str] = None
        pages = 0
        while True:
            page = await self.rpc.get_signatures_for_address(
                limit=limit,
                before=before,
                until=self.last_signature,
            )
            records.extend(page)
            pages += 1
            if len(page) < limit or not page[-1].get("signature"):
                break
            if self.last_signature is None and pages >= self.config.max_backfill_pages:
                logger.info("signature_backfill_capped", pages=pages, signatures=len(records))
                break
            before = page[-1]["signature"]

        if pages > 1:
            logger.debug("signature_pages_fetched", pages=pages, signatures=len(records))
        return records

    async def _check_round_change(self, result: PollResult) -> int:
        board = await self.rpc.get_board()
        if board is None:
            logger.warning("board_account_missing")
            return 0

        result.board_round_id = board.round_id
        if self.current_round_id is not None and board.round_id > self.current_round_id:
            self.unresolved_rounds.append(self.current_round_id)
        self.current_round_id = board.round_id
        self.pipeline.current_round_id = board.round_id

        completed = 0
        still_open = []
        for round_id in self.unresolved_rounds:
            if self.pipeline.learning.has_recorded(round_id):
                continue
            outcome = await self._resolve_round(round_id, board.start_slot)
            if outcome is None:
                still_open.append(round_id)
            else:
                completed += 1
        self.unresolved_rounds = still_open
        return completed

    async def _resolve_round(self, round_id: int, next_round_start: int) -> Optional[RoundOutcome]:
        account = await self.rpc.get_round(round_id)
        if account is None:
            logger.warning("round_account_missing", round_id=round_id)
            return None

        winning_square = account.winning_square()
        if winning_square is None:
            logger.info("round_not_revealed", round_id=round_id)
            return None

        return self.pipeline.complete_round(
            round_id,
            winning_square,
            per_square_deployed=account.deployed,
            is_jackpot=account.hit_motherlode(),
            slot=next_round_start,
            before_slot=next_round_start,
        )

    async def _persist(self) -> None:
        outcomes = self.pipeline.drain_outcomes()
        if not outcomes:
            return

        for outcome in outcomes:
            await self.store.save_round_outcome(outcome)

        tracker = self.pipeline.tracker
        await self.store.save_square_stats(tracker.squares)
        await self.store.save_count_stats(tracker.count_stats.values())
        await self.store.save_participant_profiles(tracker.profiles.values())
        await self.store.save_detected_strategies(self.pipeline.learning.get_all_strategies())
        logger.info("learning_state_persisted", outcomes=len(outcomes))


def create_ingestor(app_config: AppConfig, rng: Optional[random.Random] = None) -> RoundIngestor:
    """
    Wire logging, metrics, RPC, store and pipeline from a loaded AppConfig

    The caller still starts the RPC client and connects the store.
    """
    setup_logging(app_config.log_config)
    init_metrics(
        enable_histogram=app_config.metrics_config.enable_histogram,
        window_size=app_config.metrics_config.window_size,
    )

    rpc = OreRpcClient(app_config.rpc_config, program_id=app_config.decoder_config.program_id)
    store = LearningStore(app_config.storage_config.db_path)
    pipeline = OrePipeline.from_config(app_config, rng)
    return RoundIngestor(rpc, pipeline, store, app_config.ingest_config)
