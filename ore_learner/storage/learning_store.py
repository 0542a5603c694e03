"""
Learning Store
SQLite persistence for learned aggregates, resolved rounds and detected
strategies, so a restarted process resumes where it stopped.
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import aiosqlite

from ore_learner.core.learning import DetectedStrategy
from ore_learner.core.logger import get_logger
from ore_learner.core.outcome import RoundOutcome
from ore_learner.core.state_tracker import ParticipantProfile, SquareCountStat, SquareStat


logger = get_logger(__name__)


class LearningStore:
    """
    SQLite storage for the learner

    Schema:
    - square_stats: one row per square index
    - count_stats: one row per square count 1..25
    - participant_profiles: profile JSON keyed by address
    - round_outcomes: resolved rounds keyed by round id
    - detected_strategies: latest analysis pass, in rank order
    - processed_signatures: transactions already ingested
    """

    def __init__(self, db_path: str = "data/ore_learner.db"):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info("learning_store_initialized", db_path=db_path)

    async def connect(self) -> None:
        """Connect to database and create tables"""
        self._connection = await aiosqlite.connect(self.db_path)
        await self._create_tables()
        logger.info("learning_store_connected")

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("learning_store_closed")

    async def __aenter__(self) -> "LearningStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _create_tables(self) -> None:
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS square_stats (
                square INTEGER PRIMARY KEY,
                times_deployed_to INTEGER NOT NULL,
                total_deployed INTEGER NOT NULL,
                times_won INTEGER NOT NULL,
                rounds_observed INTEGER NOT NULL,
                competition_total INTEGER NOT NULL,
                streak INTEGER NOT NULL,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS count_stats (
                square_count INTEGER PRIMARY KEY,
                times_used INTEGER NOT NULL,
                times_won INTEGER NOT NULL,
                total_deployed INTEGER NOT NULL,
                total_won INTEGER NOT NULL,
                total_ore REAL NOT NULL,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS participant_profiles (
                address TEXT PRIMARY KEY,
                total_deployed INTEGER NOT NULL,
                win_count INTEGER NOT NULL,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS round_outcomes (
                round_id INTEGER PRIMARY KEY,
                winning_square INTEGER NOT NULL,
                total_deployed INTEGER NOT NULL,
                outcome_class TEXT NOT NULL,
                is_jackpot INTEGER NOT NULL,
                slot INTEGER NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS detected_strategies (
                rank INTEGER PRIMARY KEY,
                kind TEXT NOT NULL,
                name TEXT NOT NULL,
                confidence REAL NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS processed_signatures (
                signature TEXT PRIMARY KEY,
                slot INTEGER NOT NULL,
                processed_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_outcomes_slot ON round_outcomes(slot)
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_signatures_slot ON processed_signatures(slot)
        """)

        await self._connection.commit()
        logger.info("learning_tables_created")

    # -- square and count stats --------------------------------------------

    async def save_square_stats(self, stats: Iterable[SquareStat]) -> None:
        await self._connection.executemany("""
            INSERT OR REPLACE INTO square_stats (
                square, times_deployed_to, total_deployed, times_won,
                rounds_observed, competition_total, streak
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [
            (s.index, s.times_deployed_to, s.total_deployed, s.times_won,
             s.rounds_observed, s.competition_total, s.streak)
            for s in stats
        ])
        await self._connection.commit()

    async def load_square_stats(self) -> List[SquareStat]:
        cursor = await self._connection.execute("""
            SELECT square, times_deployed_to, total_deployed, times_won,
                   rounds_observed, competition_total, streak
            FROM square_stats ORDER BY square
        """)
        rows = await cursor.fetchall()
        return [
            SquareStat.from_dict({
                "index": row[0],
                "times_deployed_to": row[1],
                "total_deployed": row[2],
                "times_won": row[3],
                "rounds_observed": row[4],
                "competition_total": row[5],
                "streak": row[6],
            })
            for row in rows
        ]

    async def save_count_stats(self, stats: Iterable[SquareCountStat]) -> None:
        await self._connection.executemany("""
            INSERT OR REPLACE INTO count_stats (
                square_count, times_used, times_won, total_deployed, total_won, total_ore
            ) VALUES (?, ?, ?, ?, ?, ?)
        """, [
            (s.count, s.times_used, s.times_won, s.total_deployed, s.total_won, s.total_ore)
            for s in stats
        ])
        await self._connection.commit()

    async def load_count_stats(self) -> List[SquareCountStat]:
        cursor = await self._connection.execute("""
            SELECT square_count, times_used, times_won, total_deployed, total_won, total_ore
            FROM count_stats ORDER BY square_count
        """)
        rows = await cursor.fetchall()
        columns = [desc[0] for desc in cursor.description]
        stats = []
        for row in rows:
            data = dict(zip(columns, row))
            data["count"] = data.pop("square_count")
            stats.append(SquareCountStat.from_dict(data))
        return stats

    # -- profiles ----------------------------------------------------------

    async def save_participant_profiles(self, profiles: Iterable[ParticipantProfile]) -> None:
        await self._connection.executemany("""
            INSERT OR REPLACE INTO participant_profiles (
                address, total_deployed, win_count, data
            ) VALUES (?, ?, ?, ?)
        """, [
            (p.address, p.total_deployed, p.win_count, json.dumps(p.to_dict()))
            for p in profiles
        ])
        await self._connection.commit()

    async def load_participant_profiles(self) -> Dict[str, ParticipantProfile]:
        cursor = await self._connection.execute("SELECT address, data FROM participant_profiles")
        rows = await cursor.fetchall()
        return {address: ParticipantProfile.from_dict(json.loads(data)) for address, data in rows}

    # -- outcomes ----------------------------------------------------------

    async def save_round_outcome(self, outcome: RoundOutcome) -> None:
        await self._connection.execute("""
            INSERT OR REPLACE INTO round_outcomes (
                round_id, winning_square, total_deployed, outcome_class,
                is_jackpot, slot, data
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            outcome.round_id,
            outcome.winning_square,
            outcome.total_deployed,
            outcome.outcome_class.value,
            int(outcome.is_jackpot),
            outcome.slot,
            json.dumps(outcome.to_dict()),
        ))
        await self._connection.commit()

    async def load_round_outcomes(self, limit: int = 1000) -> List[RoundOutcome]:
        """Most recent `limit` outcomes, oldest first"""
        cursor = await self._connection.execute("""
            SELECT data FROM (
                SELECT round_id, data FROM round_outcomes ORDER BY round_id DESC LIMIT ?
            ) ORDER BY round_id ASC
        """, (limit,))
        rows = await cursor.fetchall()
        return [RoundOutcome.from_dict(json.loads(row[0])) for row in rows]

    # -- strategies --------------------------------------------------------

    async def save_detected_strategies(self, strategies: List[DetectedStrategy]) -> None:
        """Replace the stored list with the latest analysis pass"""
        await self._connection.execute("DELETE FROM detected_strategies")
        await self._connection.executemany("""
            INSERT INTO detected_strategies (rank, kind, name, confidence, data)
            VALUES (?, ?, ?, ?, ?)
        """, [
            (rank, s.kind.value, s.name, s.confidence, json.dumps(s.to_dict()))
            for rank, s in enumerate(strategies)
        ])
        await self._connection.commit()

    async def load_detected_strategies(self) -> List[DetectedStrategy]:
        cursor = await self._connection.execute("SELECT data FROM detected_strategies ORDER BY rank")
        rows = await cursor.fetchall()
        return [DetectedStrategy.from_dict(json.loads(row[0])) for row in rows]

    # -- processed signatures ----------------------------------------------

    async def mark_processed(self, signature: str, slot: int = 0) -> None:
        await self._connection.execute(
            "INSERT OR IGNORE INTO processed_signatures (signature, slot) VALUES (?, ?)",
            (signature, slot)
        )
        await self._connection.commit()

    async def is_processed(self, signature: str) -> bool:
        cursor = await self._connection.execute(
            "SELECT 1 FROM processed_signatures WHERE signature = ?", (signature,)
        )
        return await cursor.fetchone() is not None
