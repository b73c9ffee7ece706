# repertoire_builder/services/uci_engine_service.py
"""
A time-budgeted, multi-PV engine session for tree building.

The tree builder asks one question of the engine: "given this position and
this much search time, what are your best few moves and how do they score?"
This adapter answers it over the UCI protocol using python-chess's asyncio
engine driver. The engine process is started lazily on the first query and
terminated by `stop`, so one service instance can serve several build runs,
each of which ends by stopping its session.
"""

import asyncio
import time
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

import chess
import chess.engine
import structlog

from repertoire_builder.exceptions import EngineAnalysisError, EngineInitializationError
from repertoire_builder.types import FEN, EngineLine
from repertoire_builder.utils import metrics

if TYPE_CHECKING:
    from repertoire_builder.config.settings import EngineSettings

logger = structlog.get_logger(__name__)

# Options python-chess manages itself and refuses to configure directly.
_MANAGED_OPTIONS = {"multipv", "ponder", "uci_chess960"}
# Extra time allowed on top of the requested budget before a query is abandoned.
_QUERY_GRACE_S = 5.0
# How long a failed or stopped engine gets to exit on "quit" before it is killed.
_QUIT_TIMEOUT_S = 2.0


def _line_from_info(info: chess.engine.InfoDict, fallback_rank: int) -> Optional[EngineLine]:
    """Converts one python-chess info dict into an EngineLine, or None without a PV."""
    pv = info.get("pv")
    if not pv:
        return None
    score_cp: Optional[int] = None
    score_mate: Optional[int] = None
    pov_score = info.get("score")
    if pov_score is not None:
        relative = pov_score.relative
        if relative.is_mate():
            score_mate = relative.mate()
        else:
            score_cp = relative.score()
    return EngineLine(
        rank=int(info.get("multipv", fallback_rank)),
        uci=pv[0].uci(),
        score_cp=score_cp,
        score_mate=score_mate,
    )


class UciEngineService:
    """
    A `TreeEngineService` backed by a UCI engine subprocess.

    The service does not serialize concurrent callers itself; the tree builder
    routes every call through its ExclusiveQueue.
    """

    def __init__(self, settings: "EngineSettings"):
        self._settings = settings
        self._path = Path(settings.path)
        self._engine: Optional[chess.engine.UciProtocol] = None
        self._transport: Optional[asyncio.SubprocessTransport] = None
        self.engine_id = str(self._path.resolve()) if settings.path else ""
        self.engine_name = settings.name or self._path.stem

    async def _ensure_started(self) -> chess.engine.UciProtocol:
        if self._engine is not None:
            return self._engine
        if not self._path.is_file():
            raise EngineInitializationError(f"Engine executable not found at {self._path}")
        try:
            transport, engine = await chess.engine.popen_uci(str(self._path))
            options = {
                name: value for name, value in self._settings.parameters.items()
                if name.lower() not in _MANAGED_OPTIONS
            }
            if options:
                await engine.configure(options)
        except (chess.engine.EngineError, OSError) as e:
            raise EngineInitializationError(f"Failed to start engine {self._path}: {e}", engine=self) from e
        if not self._settings.name:
            self.engine_name = engine.id.get("name", self.engine_name)
        logger.info("Engine session started.", engine=self.engine_name, path=self.engine_id)
        self._engine, self._transport = engine, transport
        return engine

    async def best_lines(self, fen: FEN, min_lines: int, budget_ms: int) -> List[EngineLine]:
        """
        Searches `fen` for `budget_ms` milliseconds and returns ranked lines.

        Args:
            fen: The position to search.
            min_lines: Number of principal variations to request (at least 2).
            budget_ms: Search time in milliseconds.

        Returns:
            Lines ordered by rank, each scored from the side to move's view.
            Fewer lines than requested are returned when the position has
            fewer legal moves.

        Raises:
            EngineInitializationError: If the engine process cannot be started.
            EngineAnalysisError: If the engine fails or crashes during the search.
        """
        engine = await self._ensure_started()
        board = chess.Board(fen)
        limit = chess.engine.Limit(time=max(1, budget_ms) / 1000)
        started = time.perf_counter()
        try:
            infos = await asyncio.wait_for(
                engine.analyse(board, limit, multipv=max(2, min_lines)),
                timeout=budget_ms / 1000 + _QUERY_GRACE_S,
            )
        except (chess.engine.EngineError, chess.engine.EngineTerminatedError, asyncio.TimeoutError) as e:
            await self._shutdown(reason="search_failed")
            raise EngineAnalysisError(f"Engine failed while searching '{fen}': {e}", engine=self) from e
        finally:
            metrics.ENGINE_QUERY_DURATION_SECONDS.observe(time.perf_counter() - started)

        lines = [line for rank, info in enumerate(infos, start=1) if (line := _line_from_info(info, rank))]
        lines.sort(key=lambda line: line.rank)
        return lines

    async def _shutdown(self, reason: str) -> bool:
        """
        Asks the engine process to quit and kills it if it does not exit in
        time. Returns False if there was no process.
        """
        engine, self._engine = self._engine, None
        transport, self._transport = self._transport, None
        if engine is None:
            return False
        try:
            await asyncio.wait_for(engine.quit(), timeout=_QUIT_TIMEOUT_S)
        except chess.engine.EngineTerminatedError:
            pass
        except (chess.engine.EngineError, asyncio.TimeoutError) as e:
            logger.warning("Engine did not quit; killing it.", reason=reason, error=str(e) or type(e).__name__)
            if transport is not None:
                transport.kill()
        if transport is not None:
            transport.close()
        return True

    async def stop(self, session_id: str) -> None:
        """Terminates the engine process backing `session_id`. Safe to call repeatedly."""
        if await self._shutdown(reason="stopped"):
            logger.info("Engine session stopped.", session_id=session_id, engine=self.engine_name)
