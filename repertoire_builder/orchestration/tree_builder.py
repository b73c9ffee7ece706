# repertoire_builder/orchestration/tree_builder.py
"""
The automated variant-tree builder.

Starting from one node of a `MoveTree`, the builder walks depth-first and, at
each position, asks a move selection policy what comes next: for the
repertoire owner (the automated colour) a single best move from the engine or
the database, for the opponent the set of book replies that cover most games.
Each accepted move becomes a child node and is expanded in turn until the
configured number of automated decisions has been made along the line.

Bookkeeping for one run lives in a `_RunContext`:

* the ownership map, seeded from the existing tree, which assigns every
  position identity to the first path that reached it so transpositions are
  expanded once;
* the work stack of `_Frame`s, which replaces recursion;
* the `QueryRunner`, which serializes engine and database access through an
  `ExclusiveQueue` and classifies query failures.

A run ends in one of four states: COMPLETED, NO_PROGRESS (nothing was added),
CANCELLED (partial nodes are kept) or FAILED (invalid start position or an
unreachable collaborator). `run` reports the outcome; it does not raise for any
of them.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

import structlog

from repertoire_builder.config.settings import BuildConfig
from repertoire_builder.core.move_tree import MoveNode, MoveTree, path_key
from repertoire_builder.core.position_identity import canonicalize
from repertoire_builder.exceptions import (BuilderBusyError, DatabaseQueryError,
                                           EngineError, InvalidPositionError)
from repertoire_builder.orchestration.policies import (DatabasePolicy, EnginePolicy,
                                                       NodeContext, QueryRunner)
from repertoire_builder.services.exclusive_queue import ExclusiveQueue
from repertoire_builder.services.recommendation_cache import RecommendationCache
from repertoire_builder.types import (UCI, BuilderState, BuildMode, BuildOutcome,
                                      BuildReport, IdentityKey, OpeningDatabase,
                                      PathKey, PositionService, SAN, TreeEngineService,
                                      TreePath)
from repertoire_builder.utils import metrics

logger = structlog.get_logger(__name__)

NodeAddedCallback = Callable[[TreePath, MoveNode], Awaitable[None]]

_OUTCOME_STATES = {
    BuildOutcome.COMPLETED: BuilderState.COMPLETED,
    BuildOutcome.NO_PROGRESS: BuilderState.NO_PROGRESS,
    BuildOutcome.CANCELLED: BuilderState.CANCELLED,
    BuildOutcome.FAILED: BuilderState.FAILED,
}


@dataclass
class _Frame:
    """One node on the work stack; `pending` is None until the node has been visited."""
    path: TreePath
    plies_left: int
    pending: Optional[Deque[UCI]] = None
    seen_san: Set[SAN] = field(default_factory=set)


@dataclass
class _RunContext:
    """Mutable state for a single build run. Discarded when the run ends."""
    tree: MoveTree
    config: BuildConfig
    runner: QueryRunner
    session_id: str
    owners: Dict[IdentityKey, PathKey] = field(default_factory=dict)
    created_keys: Set[PathKey] = field(default_factory=set)
    added_paths: List[TreePath] = field(default_factory=list)
    engine_policy: Optional[EnginePolicy] = None
    database_policy: Optional[DatabasePolicy] = None

    @property
    def cancelled(self) -> bool:
        return self.runner.cancelled


class TreeBuilder:
    """
    Expands a subtree of a `MoveTree` using an engine and/or an opening database.

    One instance runs one build at a time; a concurrent second `run` raises
    `BuilderBusyError`.
    """

    def __init__(
        self,
        positions: PositionService,
        cache: RecommendationCache,
        engine: Optional[TreeEngineService] = None,
        database: Optional[OpeningDatabase] = None,
        on_node_added: Optional[NodeAddedCallback] = None,
    ):
        self._positions = positions
        self._cache = cache
        self._engine = engine
        self._database = database
        self._on_node_added = on_node_added
        self.state = BuilderState.IDLE

    @property
    def is_running(self) -> bool:
        return self.state is BuilderState.RUNNING

    async def run(
        self,
        tree: MoveTree,
        start_path: TreePath,
        config: BuildConfig,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BuildReport:
        """
        Expands the subtree rooted at `start_path`.

        Args:
            tree: The tree to grow. It must not be edited elsewhere during the run.
            start_path: Path of the node to expand from; () is the root.
            config: Every threshold for this run.
            cancel_event: Set it to stop the run at the next query or descent.

        Returns:
            A `BuildReport` with the outcome and the paths of the new nodes.

        Raises:
            BuilderBusyError: If this builder is already running.
        """
        if self.is_running:
            raise BuilderBusyError("A tree build is already running on this builder.")
        self.state = BuilderState.RUNNING
        cancel_event = cancel_event or asyncio.Event()
        session_id = f"tree_builder_{uuid.uuid4().hex[:8]}"
        log = logger.bind(session_id=session_id, start_path=path_key(start_path), mode=config.mode.value)
        started = time.perf_counter()
        self._cache.reset_availability()

        ctx: Optional[_RunContext] = None
        try:
            async with ExclusiveQueue(name="tree_builder") as queue:
                ctx = _RunContext(
                    tree=tree, config=config, session_id=session_id,
                    runner=QueryRunner(queue, cancel_event),
                )
                report = await self._run_with_context(ctx, tuple(start_path), log)
        except (InvalidPositionError, EngineError, DatabaseQueryError) as e:
            log.error("Tree build failed.", error=str(e))
            added = ctx.added_paths if ctx else []
            report = BuildReport(outcome=BuildOutcome.FAILED, nodes_added=len(added),
                                 added_paths=list(added), error=str(e))
        finally:
            await self._stop_engine(session_id, log)

        self.state = _OUTCOME_STATES[report.outcome]
        metrics.TREE_BUILDS_TOTAL.labels(outcome=report.outcome.value).inc()
        log.info("Tree build finished.", outcome=report.outcome.value, nodes_added=report.nodes_added,
                 duration_s=round(time.perf_counter() - started, 2))
        return report

    async def _run_with_context(self, ctx: _RunContext, start_path: TreePath, log) -> BuildReport:
        start_node = ctx.tree.node_at(start_path)
        if not self._positions.is_valid(start_node.fen):
            raise InvalidPositionError(f"Start position '{start_node.fen}' is not a valid chess position.")
        if self._engine is None and (ctx.config.mode is BuildMode.ENGINE or self._database is None):
            raise EngineError("An engine is required for this build configuration.")

        if self._engine is not None:
            ctx.engine_policy = EnginePolicy(self._engine, self._cache, self._positions, ctx.config, ctx.runner)
        if self._database is not None:
            ctx.database_policy = DatabasePolicy(self._database, self._positions, ctx.config, ctx.runner)

        self._seed_owners(ctx)
        log.info("Tree build started.", owned_positions=len(ctx.owners), max_plies=ctx.config.max_plies)

        await self._expand(ctx, start_path)

        if ctx.cancelled:
            outcome = BuildOutcome.CANCELLED
        elif not ctx.added_paths:
            outcome = BuildOutcome.NO_PROGRESS
        else:
            outcome = BuildOutcome.COMPLETED
        return BuildReport(outcome=outcome, nodes_added=len(ctx.added_paths), added_paths=list(ctx.added_paths))

    @staticmethod
    def _seed_owners(ctx: _RunContext) -> None:
        """Assigns every identity already in the tree to the first path (pre-order) that reaches it."""
        for path, node in ctx.tree.walk():
            ctx.owners.setdefault(canonicalize(node.fen), path_key(path))

    async def _expand(self, ctx: _RunContext, start_path: TreePath) -> None:
        """Depth-first expansion over an explicit stack of frames."""
        stack: List[_Frame] = [_Frame(path=start_path, plies_left=ctx.config.max_plies)]
        while stack:
            if ctx.cancelled:
                return
            frame = stack[-1]
            if frame.pending is None:
                frame.pending = deque(await self._visit(ctx, frame))
                continue
            if not frame.pending:
                stack.pop()
                if ctx.config.step_delay_s > 0 and not ctx.cancelled:
                    await asyncio.sleep(ctx.config.step_delay_s)
                continue

            move = frame.pending.popleft()
            child_path = await self._accept(ctx, frame, move)
            if child_path is not None and not ctx.cancelled:
                stack.append(_Frame(path=child_path, plies_left=frame.plies_left - 1))

    async def _visit(self, ctx: _RunContext, frame: _Frame) -> List[UCI]:
        """Decides the moves to play at a node; an empty list means the node is not expanded."""
        if frame.plies_left <= 0:
            return []
        node = ctx.tree.node_at(frame.path)
        key = path_key(frame.path)
        identity = canonicalize(node.fen)
        owner = ctx.owners.setdefault(identity, key)
        if owner != key:
            metrics.TREE_NODES_SKIPPED_TOTAL.labels(reason="transposition").inc()
            logger.debug("Position already covered by another line.", path=key, owner=owner)
            return []
        if self._positions.is_game_over(node.fen):
            metrics.TREE_NODES_SKIPPED_TOTAL.labels(reason="game_over").inc()
            return []

        turn = self._positions.side_to_move(node.fen)
        node_ctx = NodeContext(
            fen=node.fen, path=frame.path, turn=turn,
            existing_children_san=frozenset(child.san for child in node.children if child.san),
            owners=ctx.owners, run_created=ctx.created_keys,
        )
        moves = await self._propose(ctx, node_ctx)
        if not moves:
            metrics.TREE_NODES_SKIPPED_TOTAL.labels(reason="no_candidate").inc()
            logger.info("No usable move for position; not expanding.", path=key, turn=turn.value)
        return moves

    async def _propose(self, ctx: _RunContext, node_ctx: NodeContext) -> List[UCI]:
        if ctx.cancelled:
            return []
        automated = node_ctx.turn is ctx.config.automated_color
        use_database = ctx.database_policy is not None and (
            not automated or ctx.config.mode is BuildMode.DATABASE
        )
        if use_database:
            moves = await ctx.database_policy.propose(node_ctx)
            if moves or ctx.engine_policy is None or ctx.cancelled:
                return moves
            logger.debug("No database moves; falling back to the engine.", path=path_key(node_ctx.path))
        if ctx.engine_policy is None:
            return []
        return await ctx.engine_policy.propose(node_ctx)

    async def _accept(self, ctx: _RunContext, frame: _Frame, move: UCI) -> Optional[TreePath]:
        """
        Adds `move` under the frame's node and returns the child's path if it
        should be expanded, or None.
        """
        parent = ctx.tree.node_at(frame.path)
        try:
            san = self._positions.to_san(parent.fen, move)
            child_identity = canonicalize(self._positions.apply(parent.fen, move))
        except InvalidPositionError:
            logger.warning("Dropping illegal move.", path=path_key(frame.path), move=move)
            return None
        if san in frame.seen_san:
            return None
        frame.seen_san.add(san)

        existing = parent.child_index_for_san(san)
        owner = ctx.owners.get(child_identity)
        if existing == -1 and owner in ctx.created_keys:
            # Another line created this run already reaches the position.
            metrics.TREE_NODES_SKIPPED_TOTAL.labels(reason="transposition").inc()
            return None

        child_path, created = ctx.tree.add_move(frame.path, move)
        child_key = path_key(child_path)
        if created:
            ctx.created_keys.add(child_key)
            ctx.added_paths.append(child_path)
            metrics.TREE_NODES_ADDED_TOTAL.inc()
            logger.debug("Node added.", path=child_key, san=san)
            if self._on_node_added is not None:
                await self._on_node_added(child_path, ctx.tree.node_at(child_path))

        owner = ctx.owners.setdefault(child_identity, child_key)
        if owner != child_key:
            return None
        return child_path

    async def _stop_engine(self, session_id: str, log) -> None:
        if self._engine is None:
            return
        try:
            await self._engine.stop(session_id)
        except EngineError as e:
            log.warning("Failed to stop engine session.", error=str(e))
