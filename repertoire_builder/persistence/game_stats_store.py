# repertoire_builder/persistence/game_stats_store.py
"""
Data Access Layer for per-game analysis statistics.

After a game has been analyzed, its per-side average centipawn loss and
accuracy are stored here together with the annotated PGN. The batch coordinator
also asks this store which games are already analyzed so that "unanalyzed only"
runs can skip them. Connections are opened per transaction so the store is
safe to share between concurrently finishing games.
"""
import asyncio
from pathlib import Path
from typing import List, Tuple, Type

import aiosqlite
import structlog

from repertoire_builder.exceptions import PersistenceError
from repertoire_builder.types import GameAnalysisResult
from repertoire_builder.utils.retry import retry_with_backoff

RETRYABLE_DB_EXCEPTIONS: Tuple[Type[Exception], ...] = (aiosqlite.OperationalError,)
logger = structlog.get_logger(__name__)


class SqliteGameStatsStore:
    """An async, stateless `GameStatsStore` over a SQLite file."""

    _SCHEMA: str = """
        PRAGMA journal_mode=WAL;
        CREATE TABLE IF NOT EXISTS game_stats (
            game_id TEXT PRIMARY KEY,
            white_acpl REAL,
            white_accuracy REAL,
            black_acpl REAL,
            black_accuracy REAL,
            output_path TEXT,
            analyzed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        CREATE TABLE IF NOT EXISTS annotated_games (
            game_id TEXT PRIMARY KEY,
            pgn_text TEXT NOT NULL
        );
    """

    _UPSERT_STATS_SQL = """
        INSERT INTO game_stats (game_id, white_acpl, white_accuracy, black_acpl, black_accuracy, output_path)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (game_id) DO UPDATE SET
            white_acpl = excluded.white_acpl, white_accuracy = excluded.white_accuracy,
            black_acpl = excluded.black_acpl, black_accuracy = excluded.black_accuracy,
            output_path = excluded.output_path, analyzed_at = CURRENT_TIMESTAMP
    """

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize_db(self) -> None:
        """Creates the database file and schema if they don't exist. Idempotent."""
        async with self._init_lock:
            if self._initialized:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                async with aiosqlite.connect(self._db_path) as conn:
                    await conn.executescript(self._SCHEMA)
                    await conn.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to initialize game stats database at '{self._db_path}'") from e
            self._initialized = True
            logger.info("Game stats database ready.", db_path=str(self._db_path))

    @retry_with_backoff(exceptions_to_catch=RETRYABLE_DB_EXCEPTIONS, db_type="stats")
    async def save_game_stats(self, result: GameAnalysisResult) -> None:
        """Stores one game's statistics and annotated PGN in a single transaction."""
        await self.initialize_db()
        try:
            async with aiosqlite.connect(self._db_path, timeout=10) as conn:
                await conn.execute(
                    self._UPSERT_STATS_SQL,
                    (
                        result.game_id,
                        result.white.acpl, result.white.accuracy_percent,
                        result.black.acpl, result.black.accuracy_percent,
                        result.output_path,
                    ),
                )
                await conn.execute(
                    "INSERT OR REPLACE INTO annotated_games (game_id, pgn_text) VALUES (?, ?)",
                    (result.game_id, result.annotated_pgn),
                )
                await conn.commit()
        except aiosqlite.OperationalError:
            raise
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to save statistics for game '{result.game_id}'") from e

    async def analyzed_game_ids(self) -> List[str]:
        await self.initialize_db()
        try:
            async with aiosqlite.connect(self._db_path, timeout=10) as conn:
                async with conn.execute("SELECT game_id FROM game_stats") as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError("Failed to list analyzed games.") from e
        return [row[0] for row in rows]
