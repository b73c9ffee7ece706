# repertoire_builder/orchestration/batch_coordinator.py
"""
Bounded-parallel analysis of many independent games.

Games are processed in fixed-size batches. Every game gets its own
single-threaded engine session, so the games of one batch run side by side
while each game's own analysis stays sequential. A game that fails is counted
and logged; its batch-mates carry on. Cancellation is checked before and after
every batch, and setting the cancel event also closes every engine session
still running so in-flight games stop promptly. Results saved before a
cancellation stay saved.
"""

import asyncio
import dataclasses
import re
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

import structlog

from repertoire_builder.config.settings import BatchSettings, EngineSettings
from repertoire_builder.orchestration.game_analyzer import GameAnalyzer
from repertoire_builder.services.pgn_service import PgnService
from repertoire_builder.tracing import CorrelationID
from repertoire_builder.types import (AnalyzeMode, BatchReport, GameEngineSession,
                                      GameRecord, GameStatsStore)
from repertoire_builder.utils import metrics
from repertoire_builder.utils.system_utils import default_batch_size

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, int], Awaitable[None]]
SessionFactory = Callable[[EngineSettings], Awaitable[GameEngineSession]]

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class BatchAnalysisCoordinator:
    """Runs `GameAnalyzer` over a list of games in concurrent batches."""

    def __init__(
        self,
        analyzer: GameAnalyzer,
        session_factory: SessionFactory,
        engine_settings: EngineSettings,
        stats_store: GameStatsStore,
        settings: BatchSettings,
        pgn_service: Optional[PgnService] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self._analyzer = analyzer
        self._session_factory = session_factory
        # One search thread per session; parallelism comes from running games side by side.
        self._engine_settings = engine_settings.model_copy(
            update={
                "depth": settings.depth,
                "parameters": {**engine_settings.parameters, "Threads": 1},
            }
        )
        self._stats_store = stats_store
        self._settings = settings
        self._pgn_service = pgn_service or PgnService()
        self._progress_callback = progress_callback
        self._batch_size = settings.batch_size or default_batch_size()
        self._active_sessions: Dict[str, GameEngineSession] = {}

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def select_games(self, games: Sequence[GameRecord]) -> List[GameRecord]:
        """Drops games that are too short and, in UNANALYZED mode, games already analyzed."""
        analyzed: Set[str] = set()
        if self._settings.analyze_mode is AnalyzeMode.UNANALYZED:
            analyzed = set(await self._stats_store.analyzed_game_ids())

        selected = []
        for game in games:
            if self._pgn_service.count_mainline_plies(game.pgn) < self._settings.min_plies:
                continue
            if self._settings.analyze_mode is AnalyzeMode.UNANALYZED and (
                game.game_id in analyzed or self._pgn_service.is_analyzed(game.pgn)
            ):
                continue
            selected.append(game)
        return selected

    def _output_path(self, game_id: str) -> Path:
        return Path(self._settings.output_dir) / f"{_UNSAFE_FILENAME_CHARS.sub('_', game_id)}.pgn"

    async def _stop_active_sessions(self) -> None:
        sessions = list(self._active_sessions.values())
        self._active_sessions.clear()
        if sessions:
            logger.info("Stopping in-flight engine sessions.", count=len(sessions))
            await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)

    async def _watch_cancellation(self, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        await self._stop_active_sessions()

    async def _process_one(
        self, game: GameRecord, index: int, run_id: str, report: BatchReport, cancel_event: asyncio.Event
    ) -> None:
        session_id = f"analyze_all_{index}_{uuid.uuid4().hex[:8]}"
        CorrelationID(run_id=run_id, game_id=game.game_id, session_id=session_id).bind()
        session: Optional[GameEngineSession] = None
        try:
            if cancel_event.is_set():
                return
            session = await self._session_factory(self._engine_settings)
            self._active_sessions[session_id] = session
            if cancel_event.is_set():
                # Cancelled while the session was starting; the watcher has already run.
                return
            result = await self._analyzer.analyze(game, session, cancel_event)
            if result is None or cancel_event.is_set():
                return

            output_path = self._output_path(game.game_id)
            await self._pgn_service.export_pgn(result.annotated_pgn, output_path)
            result = dataclasses.replace(result, output_path=str(output_path))
            await self._stats_store.save_game_stats(result)

            report.succeeded += 1
            report.results.append(result)
            metrics.GAMES_ANALYZED_TOTAL.inc()
        except Exception as e:
            if cancel_event.is_set():
                logger.info("Game analysis interrupted by cancellation.", game_id=game.game_id)
                return
            report.failed += 1
            metrics.GAMES_FAILED_TOTAL.labels(error_type=type(e).__name__).inc()
            logger.error("Game analysis failed.", game_id=game.game_id, error=str(e), exc_info=True)
        finally:
            if self._active_sessions.pop(session_id, None) is not None and session is not None:
                await session.close()
            report.completed += 1
            structlog.contextvars.clear_contextvars()
            if self._progress_callback:
                await self._progress_callback(report.completed, report.total)

    async def run(self, games: Sequence[GameRecord], cancel_event: Optional[asyncio.Event] = None) -> BatchReport:
        """
        Analyzes the selected games, `batch_size` at a time.

        Args:
            games: Candidate games; they are filtered by `select_games` first.
            cancel_event: Set it to stop after the current batch and close its sessions.

        Returns:
            A `BatchReport` with per-run counters and the saved results.
        """
        cancel_event = cancel_event or asyncio.Event()
        run_id = f"batch-{uuid.uuid4().hex[:8]}"
        selected = await self.select_games(games)
        report = BatchReport(total=len(selected))
        logger.info("Batch analysis started.", run_id=run_id, total=report.total,
                    skipped=len(games) - len(selected), batch_size=self._batch_size)

        watcher = asyncio.create_task(self._watch_cancellation(cancel_event))
        try:
            for start in range(0, len(selected), self._batch_size):
                if cancel_event.is_set():
                    break
                batch = selected[start:start + self._batch_size]
                await asyncio.gather(*(
                    self._process_one(game, start + offset, run_id, report, cancel_event)
                    for offset, game in enumerate(batch)
                ))
                if cancel_event.is_set():
                    break
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            await self._stop_active_sessions()

        report.cancelled = cancel_event.is_set()
        logger.info("Batch analysis finished.", run_id=run_id, succeeded=report.succeeded,
                    failed=report.failed, cancelled=report.cancelled)
        return report
