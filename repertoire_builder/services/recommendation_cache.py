# repertoire_builder/services/recommendation_cache.py
"""
Persistent storage and freshness rules for engine move recommendations.

Asking the engine for the best move in a position is the most expensive step
of a tree build, so every answer is stored keyed by the position's identity and
the engine that produced it, together with the search time it was given. A
stored answer is reused only when it was searched at least as long as the
current run requests; a shallower one is refreshed by a new query whose result
overwrites it.

`SqliteRecommendationStore` is the durable layer. `RecommendationCache` wraps it
with the freshness predicate and with degraded-storage handling: the first
storage failure in a run is logged once and turns the cache off for the rest of
that run, so every later lookup is a quiet miss.
"""

from pathlib import Path
from typing import Iterable, Optional, Tuple, Type, TYPE_CHECKING

import aiosqlite
import structlog

from repertoire_builder.exceptions import (CacheConnectionError, CacheError,
                                           CacheReadError, CacheWriteError)
from repertoire_builder.types import (CachedRecommendation, IdentityKey,
                                      RecommendationStore, UCI)
from repertoire_builder.utils import metrics
from repertoire_builder.utils.retry import retry_with_backoff

if TYPE_CHECKING:
    from repertoire_builder.config.settings import CacheSettings

logger = structlog.get_logger(__name__)

# "database is locked" under WAL mode is transient.
RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    aiosqlite.OperationalError,
)

# One row per (position identity, engine). Writes overwrite unconditionally.
CREATE_CACHE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS variant_positions (
    identity_key TEXT NOT NULL,
    engine_id TEXT NOT NULL,
    recommended_move TEXT NOT NULL,
    budget_ms INTEGER NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (identity_key, engine_id)
)
"""

UPSERT_SQL = """
INSERT INTO variant_positions (identity_key, engine_id, recommended_move, budget_ms)
VALUES (?, ?, ?, ?)
ON CONFLICT (identity_key, engine_id) DO UPDATE SET
    recommended_move = excluded.recommended_move,
    budget_ms = excluded.budget_ms,
    updated_at = CURRENT_TIMESTAMP
"""


class SqliteRecommendationStore:
    """
    A `RecommendationStore` implementation using a local SQLite database.

    This class is an async context manager, managing its own database connection
    lifecycle.
    """

    def __init__(self, settings: "CacheSettings"):
        self._db_path = Path(settings.db_filepath)
        self._connection: Optional[aiosqlite.Connection] = None

    async def __aenter__(self) -> "SqliteRecommendationStore":
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(self._db_path, timeout=10.0)
            await self._connection.execute("PRAGMA journal_mode=WAL;")
            await self._connection.execute(CREATE_CACHE_TABLE_SQL)
            await self._connection.commit()
        except (aiosqlite.Error, OSError) as e:
            raise CacheConnectionError(f"Failed to initialize recommendation cache: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._connection:
            await self._connection.close()
            self._connection = None

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise CacheConnectionError("Recommendation cache is not connected.")
        return self._connection

    @retry_with_backoff(exceptions_to_catch=RETRYABLE_EXCEPTIONS, db_type="cache")
    async def fetch(self, identity: IdentityKey, engine_id: str) -> Optional[CachedRecommendation]:
        """
        Looks up the stored recommendation for one position and engine.

        Raises:
            CacheReadError: If a non-retriable database error occurs.
        """
        conn = self._ensure_connected()
        query = "SELECT recommended_move, budget_ms FROM variant_positions WHERE identity_key = ? AND engine_id = ?"
        try:
            async with conn.execute(query, (identity, engine_id)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.OperationalError:
            raise
        except aiosqlite.Error as e:
            raise CacheReadError(f"Failed to read recommendation: {e}") from e
        if row is None or not row[0]:
            return None
        return CachedRecommendation(recommended_move=row[0], search_budget_ms=int(row[1]), engine_id=engine_id)

    @retry_with_backoff(exceptions_to_catch=RETRYABLE_EXCEPTIONS, db_type="cache")
    async def upsert(self, identity: IdentityKey, engine_id: str, move: UCI, budget_ms: int) -> None:
        """
        Stores a recommendation, replacing any previous one for the same key.

        Raises:
            CacheWriteError: If a non-retriable database error occurs.
        """
        conn = self._ensure_connected()
        try:
            await conn.execute(UPSERT_SQL, (identity, engine_id, move, int(budget_ms)))
            await conn.commit()
        except aiosqlite.OperationalError:
            await conn.rollback()
            raise
        except aiosqlite.Error as e:
            await conn.rollback()
            raise CacheWriteError(f"Failed to store recommendation: {e}") from e


class RecommendationCache:
    """Freshness rules and degraded-storage handling over a `RecommendationStore`."""

    def __init__(self, store: RecommendationStore):
        self._store = store
        self._unavailable = False

    @property
    def is_available(self) -> bool:
        return not self._unavailable

    def reset_availability(self) -> None:
        """Re-enables the cache; called at the start of every build run."""
        self._unavailable = False

    def _report_failure(self, error: Exception) -> None:
        if self._unavailable:
            return
        self._unavailable = True
        logger.warning(
            "Recommendation cache unavailable; continuing without it for this run.",
            error=str(error),
        )

    @staticmethod
    def is_fresh(entry: Optional[CachedRecommendation], requested_budget_ms: int) -> bool:
        """A cached answer is final only if it was searched at least as long as requested."""
        return entry is not None and entry.search_budget_ms >= requested_budget_ms

    async def get(self, identity: IdentityKey, engine_id: str) -> Optional[CachedRecommendation]:
        """Returns the stored entry, or None on a miss or while storage is unavailable."""
        if self._unavailable:
            return None
        try:
            return await self._store.fetch(identity, engine_id)
        except (CacheError, aiosqlite.Error) as e:
            self._report_failure(e)
            return None

    async def best_of(self, identity: IdentityKey, engine_ids: Iterable[str]) -> Optional[CachedRecommendation]:
        """
        Returns the deepest-searched entry among several identifiers of one engine.

        An engine can be known under more than one identifier (its executable
        path and its display name); the value, not the identifier, decides reuse.
        """
        best: Optional[CachedRecommendation] = None
        for engine_id in engine_ids:
            entry = await self.get(identity, engine_id)
            if entry is not None and (best is None or entry.search_budget_ms > best.search_budget_ms):
                best = entry
        source = "cache_hit" if best is not None else "cache_miss"
        metrics.RECOMMENDATIONS_TOTAL.labels(source=source).inc()
        return best

    async def put(self, identity: IdentityKey, engine_id: str, move: UCI, budget_ms: int) -> None:
        """Overwrites the entry for (identity, engine_id). Storage errors are absorbed."""
        if self._unavailable:
            return
        try:
            await self._store.upsert(identity, engine_id, move, budget_ms)
        except (CacheError, aiosqlite.Error) as e:
            self._report_failure(e)
