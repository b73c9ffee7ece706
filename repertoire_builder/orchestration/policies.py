# repertoire_builder/orchestration/policies.py
"""
Move selection policies used by the tree builder.

At every node the builder asks a policy which moves to branch into. The
`EnginePolicy` returns one move for a position: a cached recommendation when a
fresh one exists, otherwise the engine's best line (or its near-equal second
line, when that line rejoins the existing tree). The `DatabasePolicy` returns
the automated side's best-scoring database move, or the set of opponent
replies that together cover the configured share of games.

All collaborator calls run through a `QueryRunner`, which routes them through
the run's ExclusiveQueue and decides whether a failed query aborts the run or
only skips the node.
"""

import asyncio
from dataclasses import dataclass, field
from typing import AbstractSet, Awaitable, Callable, Dict, FrozenSet, List, Optional, TypeVar

import structlog

from repertoire_builder.config.settings import BuildConfig
from repertoire_builder.core.move_selection import (normalize_db_move, rank_by_win_rate,
                                                    second_line_is_near_equal, select_coverage_moves)
from repertoire_builder.core.position_identity import canonicalize
from repertoire_builder.exceptions import (DatabaseQueryError, EngineError,
                                           InvalidPositionError)
from repertoire_builder.services.exclusive_queue import ExclusiveQueue
from repertoire_builder.services.recommendation_cache import RecommendationCache
from repertoire_builder.types import (FEN, UCI, Color, EngineLine, IdentityKey,
                                      OpeningDatabase, PathKey, PositionService,
                                      SAN, TreeEngineService, TreePath)
from repertoire_builder.utils import metrics

T = TypeVar("T")
logger = structlog.get_logger(__name__)

# Errors from the engine or reference database that a policy may recover from.
COLLABORATOR_ERRORS = (EngineError, DatabaseQueryError)


@dataclass(frozen=True)
class NodeContext:
    """Everything a policy needs to know about the node being expanded."""
    fen: FEN
    path: TreePath
    turn: Color
    existing_children_san: FrozenSet[SAN] = frozenset()
    owners: Dict[IdentityKey, PathKey] = field(default_factory=dict)
    # Owner paths created by the current run; moves transposing into them are not added.
    run_created: AbstractSet[PathKey] = frozenset()

    @property
    def identity(self) -> IdentityKey:
        return canonicalize(self.fen)


class QueryRunner:
    """
    Serializes collaborator queries for one run and tracks whether any succeeded.

    A failure before the first successful query means the engine or database
    is unreachable, and it propagates so the run can abort. Any later failure
    is logged and reported as None, and the node is skipped.
    """

    def __init__(self, queue: ExclusiveQueue, cancel_event: asyncio.Event):
        self.queue = queue
        self.cancel_event = cancel_event
        self.succeeded = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def query(self, factory: Callable[[], Awaitable[T]], source: str) -> Optional[T]:
        try:
            result = await self.queue.run(factory)
        except COLLABORATOR_ERRORS as e:
            if self.succeeded == 0:
                raise
            logger.warning("Query failed; skipping node.", source=source, error=str(e))
            return None
        self.succeeded += 1
        return result


class EnginePolicy:
    """Chooses one move per position from the cache or the engine."""

    def __init__(
        self,
        engine: TreeEngineService,
        cache: RecommendationCache,
        positions: PositionService,
        config: BuildConfig,
        runner: QueryRunner,
    ):
        self._engine = engine
        self._cache = cache
        self._positions = positions
        self._config = config
        self._runner = runner

    def _engine_ids(self) -> List[str]:
        ids = [self._engine.engine_id, self._engine.engine_name]
        return [engine_id for index, engine_id in enumerate(ids) if engine_id and engine_id not in ids[:index]]

    def _rejoins_tree(self, ctx: NodeContext, move: UCI) -> bool:
        """
        True if `move` is already a child of this node, or leads to a position
        that was in the tree before this run started.
        """
        try:
            if self._positions.to_san(ctx.fen, move) in ctx.existing_children_san:
                return True
            owner = ctx.owners.get(canonicalize(self._positions.apply(ctx.fen, move)))
        except InvalidPositionError:
            return False
        return owner is not None and owner not in ctx.run_created

    async def _from_cache(self, ctx: NodeContext) -> Optional[UCI]:
        cached = await self._runner.queue.run(lambda: self._cache.best_of(ctx.identity, self._engine_ids()))
        if not self._cache.is_fresh(cached, self._config.engine_budget_ms):
            return None
        if self._positions.parse_move(ctx.fen, cached.recommended_move) is None:
            logger.warning("Ignoring illegal cached move.", identity=ctx.identity, move=cached.recommended_move)
            return None
        if cached.engine_id != self._engine.engine_id:
            # Re-key the entry under the primary identifier, keeping its budget.
            await self._runner.queue.run(
                lambda: self._cache.put(ctx.identity, self._engine.engine_id,
                                        cached.recommended_move, cached.search_budget_ms)
            )
        return cached.recommended_move

    async def choose(self, ctx: NodeContext) -> Optional[UCI]:
        """
        Returns the move to play at `ctx`, or None if nothing could be chosen.

        Raises:
            EngineError: If the very first engine query of the run fails.
        """
        if self._runner.cancelled:
            return None
        cached_move = await self._from_cache(ctx)
        if cached_move is not None:
            return cached_move
        if self._runner.cancelled:
            return None

        budget_ms = self._config.engine_budget_ms
        lines: Optional[List[EngineLine]] = await self._runner.query(
            lambda: self._engine.best_lines(ctx.fen, self._config.min_engine_lines, budget_ms), source="engine"
        )
        if not lines or self._runner.cancelled:
            return None
        metrics.RECOMMENDATIONS_TOTAL.labels(source="engine_run").inc()

        primary = lines[0]
        await self._runner.queue.run(
            lambda: self._cache.put(ctx.identity, self._engine.engine_id, primary.uci, budget_ms)
        )
        second = second_line_is_near_equal(lines, self._config.tie_break_cp)
        if second is not None and self._rejoins_tree(ctx, second.uci):
            logger.debug("Preferring near-equal second line that rejoins the tree.",
                         identity=ctx.identity, first=primary.uci, second=second.uci)
            return second.uci
        return primary.uci

    async def propose(self, ctx: NodeContext) -> List[UCI]:
        move = await self.choose(ctx)
        return [move] if move else []


class DatabasePolicy:
    """Chooses moves from reference game statistics."""

    def __init__(
        self,
        database: OpeningDatabase,
        positions: PositionService,
        config: BuildConfig,
        runner: QueryRunner,
    ):
        self._database = database
        self._positions = positions
        self._config = config
        self._runner = runner

    def _to_uci(self, fen: FEN, move: str) -> Optional[UCI]:
        normalized = normalize_db_move(move)
        if not normalized:
            return None
        return self._positions.parse_move(fen, normalized)

    async def propose(self, ctx: NodeContext) -> List[UCI]:
        """
        Returns the best-scoring move for the automated side, or the covering
        set of replies for the opponent. Database moves that do not parse as
        legal moves in the position are dropped.
        """
        stats = await self._runner.query(lambda: self._database.stats_for_position(ctx.fen), source="database")
        if not stats or self._runner.cancelled:
            return []

        if ctx.turn is self._config.automated_color:
            for move, _score in rank_by_win_rate(stats, ctx.turn):
                if uci := self._to_uci(ctx.fen, move):
                    return [uci]
            return []

        selected = select_coverage_moves(stats, self._config.coverage_percent, self._config.min_moves)
        moves: List[UCI] = []
        for stat in selected:
            if uci := self._to_uci(ctx.fen, stat.move):
                moves.append(uci)
            else:
                logger.debug("Dropping unparseable database move.", identity=ctx.identity, move=stat.move)
        return moves
